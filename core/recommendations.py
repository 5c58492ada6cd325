"""
Pumpsheet — Field Recommendation Engine
========================================
Fetches aggregated statistics over previously submitted pump calculations
(most-common values, averages, maxima, cross-field correlations) and turns
them into non-binding suggestions and a one-shot auto-fill.

Recommendations never block form use: any fetch failure degrades to an
empty RecommendationSet. Results are cached per request context for a fixed
TTL, and concurrent fetches for the same context share one request.
"""
from __future__ import annotations

import enum
import hashlib
import json
import logging
import threading
import time
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

import requests
from pydantic import BaseModel, ConfigDict, Field

from core import config
from core.backend_client import BackendClient
from core.fields import api_key_for

logger = logging.getLogger(__name__)

# Field groups the backend aggregates, by API key
FIELD_CATEGORIES = {
    "PROJECT_INFO": ["agreement_no", "project_no", "revision", "document_class"],
    "PUMP_SPECS": ["tag_no", "service", "motor_classification", "type_of_motor"],
    "THERMAL": ["temperature", "fluid_viscosity_at_temp", "density"],
    "POWER": ["hp", "motor_rating", "motor_efficiency", "pump_efficiency"],
    "SAFETY": ["safety_margin_npsha", "cv_rangeability"],
}

# Fields the form's one-click auto-fill targets, by record key
AUTO_FILL_FIELDS = [
    "revision", "documentClass", "fluidViscosityAtTemp",
    "pumpEfficiency", "motorEfficiency",
    "safetyMarginNpsha",
    "temperature", "density",
]

MOTOR_EFFICIENCY_COMBINATION = "motor_classification_efficiency"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class CommonValue(BaseModel):
    value: Any
    count: int = 0


class TextFieldStats(BaseModel):
    most_common: list[CommonValue] = Field(default_factory=list)
    recent_values: list[Any] = Field(default_factory=list)


class NumericFieldStats(BaseModel):
    suggested_default: Optional[float] = None
    average: Optional[float] = None
    max: Optional[float] = None
    most_common: list[Any] = Field(default_factory=list)


class RecommendationContext(BaseModel):
    model_config = ConfigDict(extra="allow")

    total_records_analyzed: int = 0


class RecommendationSet(BaseModel):
    """Aggregated historical statistics for one request context."""

    model_config = ConfigDict(frozen=True)

    text_fields: dict[str, TextFieldStats] = Field(default_factory=dict)
    numeric_fields: dict[str, NumericFieldStats] = Field(default_factory=dict)
    smart_combinations: dict[str, list[dict[str, Any]]] = Field(default_factory=dict)
    context: RecommendationContext = Field(default_factory=RecommendationContext)

    @classmethod
    def empty(cls) -> "RecommendationSet":
        return cls()

    @property
    def is_empty(self) -> bool:
        return not (self.text_fields or self.numeric_fields or self.smart_combinations)

    # Convenience wrappers over the module-level query functions
    def text_suggestions(self, field_name: str) -> list[dict]:
        return text_suggestions(self, field_name)

    def numeric_suggestion(self, field_name: str) -> dict | None:
        return numeric_suggestion(self, field_name)

    def motor_efficiency_suggestion(self, classification: str | None) -> float | None:
        return motor_efficiency_suggestion(self, classification)

    def auto_fill(self, field_names: Iterable[str], record: dict[str, Any]) -> dict[str, Any]:
        return auto_fill(self, field_names, record)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def _lookup(stats: dict, field_name: str):
    if field_name in stats:
        return stats[field_name]
    return stats.get(api_key_for(field_name))


def text_suggestions(recs: RecommendationSet, field_name: str) -> list[dict]:
    """Most-common values first, then recent ones not already listed.

    Capped at MAX_TEXT_SUGGESTIONS entries.
    """
    stats: TextFieldStats | None = _lookup(recs.text_fields, field_name)
    if stats is None:
        return []

    limit = config.MAX_TEXT_SUGGESTIONS
    suggestions: list[dict] = []
    seen: set = set()

    for item in stats.most_common:
        if len(suggestions) >= limit:
            break
        if item.value in seen:
            continue
        suggestions.append({
            "value": item.value,
            "label": str(item.value),
            "badge": f"Used {item.count}x",
            "priority": "high",
            "count": item.count,
        })
        seen.add(item.value)

    for value in stats.recent_values:
        if len(suggestions) >= limit:
            break
        if value in seen:
            continue
        suggestions.append({
            "value": value,
            "label": str(value),
            "badge": "Recent",
            "priority": "medium",
        })
        seen.add(value)

    return suggestions


def _fmt_stat(value: float | None) -> str:
    return "N/A" if value is None else f"{value:.2f}"


def numeric_suggestion(recs: RecommendationSet, field_name: str) -> dict | None:
    """Backend default plus descriptive statistics; None when the backend has none."""
    stats: NumericFieldStats | None = _lookup(recs.numeric_fields, field_name)
    if stats is None:
        return None
    return {
        "suggested": stats.suggested_default,
        "average": stats.average,
        "max": stats.max,
        "common_values": list(stats.most_common),
        "tooltip": f"Avg: {_fmt_stat(stats.average)}, Max: {_fmt_stat(stats.max)}",
    }


def motor_efficiency_suggestion(recs: RecommendationSet, classification: str | None) -> float | None:
    """Typical efficiency for the first matching motor classification."""
    if not classification:
        return None
    for combo in recs.smart_combinations.get(MOTOR_EFFICIENCY_COMBINATION, []):
        if combo.get("motor_classification") == classification:
            return combo.get("typical_efficiency")
    return None


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def contextual_suggestion(recs: RecommendationSet, field_name: str, record: dict[str, Any]) -> Any:
    """Single best suggestion for a field: text, then numeric, then smart combination."""
    if _lookup(recs.text_fields, field_name) is not None:
        options = text_suggestions(recs, field_name)
        if options:
            return options[0]["value"]

    numeric = numeric_suggestion(recs, field_name)
    if numeric is not None and numeric["suggested"] is not None:
        return numeric["suggested"]

    if api_key_for(field_name) == "motor_efficiency":
        classification = record.get("motorClassification") or record.get("motor_classification")
        return motor_efficiency_suggestion(recs, classification)

    return None


def auto_fill(recs: RecommendationSet, field_names: Iterable[str], record: dict[str, Any]) -> dict[str, Any]:
    """Suggested values for the requested fields that are still empty.

    Returns only the updates; the caller merges them into its record.
    Fields that already hold a value are never touched.
    """
    updates: dict[str, Any] = {}
    for name in field_names:
        if not _is_empty(record.get(name)):
            continue
        suggestion = contextual_suggestion(recs, name, record)
        if suggestion is not None:
            updates[name] = suggestion
    return updates


# ---------------------------------------------------------------------------
# Request context
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FetchContext:
    """Filters sent with a recommendation request."""

    project_no: Optional[str] = None
    tag_prefix: Optional[str] = None
    limit: Optional[int] = None

    @classmethod
    def from_record(cls, record: dict[str, Any], limit: int | None = None) -> "FetchContext":
        tag_no = record.get("tagNo") or record.get("tag_no")
        project_no = record.get("projectNo") or record.get("project_no")
        return cls(
            project_no=str(project_no) if project_no else None,
            tag_prefix=str(tag_no)[: config.TAG_PREFIX_LENGTH] if tag_no else None,
            limit=limit if limit is not None else config.RECOMMENDATION_LIMIT,
        )

    @classmethod
    def coerce(cls, context: "FetchContext | dict | None") -> "FetchContext":
        if context is None:
            return cls()
        if isinstance(context, FetchContext):
            return context
        return cls(
            project_no=context.get("project_no") or None,
            tag_prefix=context.get("tag_prefix") or None,
            limit=context.get("limit") or None,
        )

    def params(self) -> dict[str, Any]:
        """Query parameters; empty filters are left out."""
        params: dict[str, Any] = {}
        if self.project_no:
            params["project_no"] = self.project_no
        if self.tag_prefix:
            params["tag_prefix"] = self.tag_prefix
        if self.limit:
            params["limit"] = self.limit
        return params

    def key(self) -> str:
        raw = json.dumps(self.params(), sort_keys=True, default=str)
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

class CacheState(str, enum.Enum):
    EMPTY = "empty"
    FETCHING = "fetching"
    POPULATED = "populated"
    STALE = "stale"


@dataclass(frozen=True)
class CacheEntry:
    data: RecommendationSet
    fetched_at: float


class RecommendationCache:
    """Per-context cache with a fixed time-to-live. Not thread-safe on its own."""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    def get(self, key: str) -> CacheEntry | None:
        return self._entries.get(key)

    def put(self, key: str, data: RecommendationSet) -> None:
        self._entries[key] = CacheEntry(data, self._clock())

    def discard(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def is_stale(self, entry: CacheEntry) -> bool:
        return (self._clock() - entry.fetched_at) >= self.ttl

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

def _completed(data: RecommendationSet) -> Future:
    future: Future = Future()
    future.set_result(data)
    return future


class RecommendationClient:
    """Fetches and caches recommendation sets from the datasheet backend."""

    def __init__(
        self,
        backend: BackendClient | None = None,
        ttl: float | None = None,
        max_workers: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.backend = backend or BackendClient()
        self.cache = RecommendationCache(
            ttl if ttl is not None else config.RECOMMENDATION_TTL_SECONDS, clock
        )
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or config.RECOMMENDATION_WORKERS,
            thread_name_prefix="recommendations",
        )
        self._lock = threading.Lock()
        self._inflight: dict[str, Future] = {}
        self._tickets: dict[str, object] = {}
        # Callers still waiting on each in-flight fetch
        self._subscribers: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    def fetch(self, context: FetchContext | dict | None = None, force_refresh: bool = False) -> RecommendationSet:
        """Recommendations for `context`, from cache while fresh.

        Never raises for backend failures; a cancelled fetch returns
        whatever is cached, or an empty set.
        """
        ctx = FetchContext.coerce(context)
        future = self.fetch_async(ctx, force_refresh)
        try:
            return future.result()
        except CancelledError:
            return self.peek(ctx) or RecommendationSet.empty()

    def fetch_async(self, context: FetchContext | dict | None = None, force_refresh: bool = False) -> Future:
        """Start (or join) a fetch and return its future.

        Each call that gets back a pending future counts as one subscriber
        until the fetch completes or the caller hands it back with `cancel`.
        """
        ctx = FetchContext.coerce(context)
        key = ctx.key()
        with self._lock:
            if force_refresh:
                self.cache.discard(key)
            else:
                entry = self.cache.get(key)
                if entry is not None and not self.cache.is_stale(entry):
                    logger.debug(f"[recommendations] Using cached recommendations ({key})")
                    return _completed(entry.data)

            pending = self._inflight.get(key)
            if pending is not None and not pending.done():
                self._subscribers[key] = self._subscribers.get(key, 0) + 1
                return pending

            ticket = object()
            self._tickets[key] = ticket
            self._subscribers[key] = 1
            future = self._executor.submit(self._load, ctx, key, ticket)
            self._inflight[key] = future
            return future

    def _load(self, ctx: FetchContext, key: str, ticket: object) -> RecommendationSet:
        logger.info(f"[recommendations] Fetching recommendations {ctx.params()}")
        data: RecommendationSet | None = None
        try:
            payload = self.backend.get_json(config.RECOMMENDATIONS_PATH, params=ctx.params())
            data = RecommendationSet.model_validate(payload)
        except (requests.RequestException, ValueError) as e:
            logger.error(f"[recommendations] Failed to fetch recommendations: {e}")

        with self._lock:
            current = self._tickets.get(key) is ticket
            if current:
                self._tickets.pop(key, None)
                self._inflight.pop(key, None)
                self._subscribers.pop(key, None)

            if data is not None:
                if current:
                    self.cache.put(key, data)
                    logger.info(
                        f"[recommendations] Fetched; {data.context.total_records_analyzed} records analyzed"
                    )
                else:
                    logger.info(f"[recommendations] Discarding result of cancelled fetch ({key})")
                return data

            stale = self.cache.get(key)
            if stale is not None:
                logger.warning(f"[recommendations] Serving stale recommendations ({key})")
                return stale.data
        return RecommendationSet.empty()

    def cancel(self, context: FetchContext | dict | None = None) -> bool:
        """Give up one subscription to an in-flight fetch.

        The fetch itself is discarded only when its last subscriber leaves;
        its result then never reaches the cache. Returns False when nothing
        was in flight for `context`.
        """
        key = FetchContext.coerce(context).key()
        with self._lock:
            future = self._inflight.get(key)
            if future is None:
                return False
            remaining = self._subscribers.get(key, 1) - 1
            if remaining > 0:
                self._subscribers[key] = remaining
                logger.debug(f"[recommendations] Detached from shared fetch ({key}, {remaining} left)")
                return True
            self._subscribers.pop(key, None)
            self._tickets.pop(key, None)
            self._inflight.pop(key, None)
        future.cancel()
        logger.info(f"[recommendations] Cancelled in-flight fetch ({key})")
        return True

    # ------------------------------------------------------------------
    # Cache access
    # ------------------------------------------------------------------

    def peek(self, context: FetchContext | dict | None = None) -> RecommendationSet | None:
        """Cached set for `context`, stale or not, without fetching."""
        entry = self.cache.get(FetchContext.coerce(context).key())
        return entry.data if entry else None

    def state(self, context: FetchContext | dict | None = None) -> CacheState:
        key = FetchContext.coerce(context).key()
        with self._lock:
            pending = self._inflight.get(key)
            if pending is not None and not pending.done():
                return CacheState.FETCHING
            entry = self.cache.get(key)
        if entry is None:
            return CacheState.EMPTY
        return CacheState.STALE if self.cache.is_stale(entry) else CacheState.POPULATED

    def clear_cache(self) -> None:
        """Drop all cached sets and orphan in-flight fetches."""
        with self._lock:
            self.cache.clear()
            self._tickets.clear()
            self._inflight.clear()
            self._subscribers.clear()
        logger.info("[recommendations] Recommendations cache cleared")

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
