from __future__ import annotations
"""
Pumpsheet — Pump Data Sheet Routes

Handlers that can block on a session or the datasheet backend are plain
`def`, which FastAPI runs in its threadpool.
"""
import logging

from fastapi import APIRouter, HTTPException, Response

from core.edit_session import EditSession, SessionRegistry
from core.errors import CalculatedFieldEditError, ExportError, PersistenceError, UnknownFieldError
from core.fields import sections_as_dicts
from core.hydraulics import formula_groups, recalculate, validate_numeric_inputs
from core.models import (
    AutoFillRequest,
    FieldEditRequest,
    OpenSessionRequest,
    RecalculateRequest,
    RecommendationRefreshRequest,
    SubmitRequest,
)
from core.recommendations import FetchContext, RecommendationClient
from core.reference_data import EXPORT_FORMATS

logger = logging.getLogger(__name__)

router = APIRouter()

# Set by init_services() during app startup
_recommender: RecommendationClient | None = None
_registry: SessionRegistry | None = None


def init_services(recommender: RecommendationClient, registry: SessionRegistry | None = None) -> None:
    global _recommender, _registry
    _recommender = recommender
    _registry = registry or SessionRegistry(recommender=recommender, backend=recommender.backend)


def shutdown_services() -> None:
    global _recommender, _registry
    if _registry is not None:
        _registry.close_all()
    if _recommender is not None:
        _recommender.close()
    _recommender = None
    _registry = None


def _services() -> tuple[RecommendationClient, SessionRegistry]:
    if _recommender is None or _registry is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return _recommender, _registry


def _session(session_id: str) -> EditSession:
    _, registry = _services()
    session = registry.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


# ===========================================================================
# Routes: Stateless engine
# ===========================================================================

@router.get("/api/pump/fields")
async def list_fields():
    """Section and field metadata for building the form."""
    return {"sections": sections_as_dicts(), "formula_groups": formula_groups()}


@router.post("/api/pump/recalculate")
async def recalculate_record(req: RecalculateRequest):
    record = recalculate(req.record, req.changed_field, req.density_correction)
    return {"record": record, "numeric_errors": validate_numeric_inputs(record)}


# ===========================================================================
# Routes: Edit sessions
# ===========================================================================

@router.post("/api/pump/sessions")
def open_session(req: OpenSessionRequest):
    _, registry = _services()
    try:
        session = registry.open(req.record, fetch_recommendations=req.fetch_recommendations)
    except (CalculatedFieldEditError, UnknownFieldError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return session.to_dict()


@router.get("/api/pump/sessions/{session_id}")
def get_session(session_id: str):
    return _session(session_id).to_dict()


@router.patch("/api/pump/sessions/{session_id}/fields")
def edit_field(session_id: str, req: FieldEditRequest):
    session = _session(session_id)
    try:
        session.apply_edit(req.field, req.value)
    except (CalculatedFieldEditError, UnknownFieldError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return session.to_dict()


@router.get("/api/pump/sessions/{session_id}/suggestions/{field_name}")
def field_suggestions(session_id: str, field_name: str):
    return _session(session_id).suggestions(field_name)


@router.post("/api/pump/sessions/{session_id}/autofill")
def autofill(session_id: str, req: AutoFillRequest | None = None):
    session = _session(session_id)
    updates = session.auto_fill(req.fields if req else None)
    return {"filled": updates, **session.to_dict()}


@router.post("/api/pump/sessions/{session_id}/submit")
def submit(session_id: str, req: SubmitRequest):
    session = _session(session_id)
    try:
        calc_id = session.submit(draft=req.draft)
    except PersistenceError as e:
        raise HTTPException(status_code=400, detail=e.user_message())
    return {"calc_id": calc_id, "status": session.status()}


@router.get("/api/pump/sessions/{session_id}/export/{fmt}")
def export(session_id: str, fmt: str):
    if fmt not in EXPORT_FORMATS:
        raise HTTPException(status_code=400, detail=f"Unsupported format '{fmt}'")
    session = _session(session_id)
    try:
        datasheet = session.export(fmt)
    except ExportError as e:
        detail = {"message": e.message, "remediation": e.remediation}
        raise HTTPException(status_code=502, detail=detail)

    disposition = f'attachment; filename="{datasheet.filename}"'
    return Response(
        content=datasheet.content,
        media_type=datasheet.content_type,
        headers={"Content-Disposition": disposition},
    )


@router.delete("/api/pump/sessions/{session_id}")
def close_session(session_id: str):
    _, registry = _services()
    if not registry.close(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"closed": session_id}


# ===========================================================================
# Routes: Recommendations cache
# ===========================================================================

@router.post("/api/pump/recommendations/refresh")
def refresh_recommendations(req: RecommendationRefreshRequest):
    recommender, _ = _services()
    context = FetchContext(req.project_no, req.tag_prefix, req.limit)
    recs = recommender.fetch(context, force_refresh=True)
    return recs.model_dump()


@router.delete("/api/pump/recommendations/cache")
def clear_recommendations_cache():
    recommender, _ = _services()
    recommender.clear_cache()
    return {"cleared": True}
