from __future__ import annotations
"""
Pumpsheet — FastAPI Backend
============================
Main application entry point. Defines app, lifespan, CORS, and includes
route modules. All route handlers live in core/routes/.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core import config
from core.backend_client import BackendClient
from core.recommendations import RecommendationClient
from core.routes import pump

logger = logging.getLogger("pumpsheet")


# ---------------------------------------------------------------------------
# Lifespan (startup / shutdown)
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    backend = BackendClient()
    recommender = RecommendationClient(backend)
    pump.init_services(recommender)
    print(f"[startup] Datasheet backend: {backend.base_url}")
    print(f"[startup] Recommendation cache TTL: {config.RECOMMENDATION_TTL_SECONDS:.0f}s")
    if not config.DENSITY_CORRECTION:
        print("[startup] Density correction disabled, using water head constants")

    yield

    # Shutdown: close sessions, cancel pending recommendation fetches
    pump.shutdown_services()
    backend.session.close()


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Pumpsheet",
    description="Pump hydraulic calculation data sheets with field recommendations",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "pumpsheet"}


# ---------------------------------------------------------------------------
# Include route modules
# ---------------------------------------------------------------------------

app.include_router(pump.router, tags=["Pump"])
