"""
Pumpsheet — Edit Sessions
==========================
An EditSession exclusively owns one engineering record while a user edits it.
Edits are serialised under a lock and each one triggers a dependency-driven
recalculation before the record is readable again. The session also owns the
background recommendation fetch for its context and the transient
submit/export status flags shown in the form's banner.
"""
from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import CancelledError, Future, TimeoutError as FetchTimeout
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from core import config
from core.backend_client import BackendClient, Datasheet
from core.errors import (
    CalculatedFieldEditError,
    ExportError,
    PersistenceError,
    UnknownFieldError,
)
from core.fields import FIELDS, is_calculated, missing_required
from core.hydraulics import recalculate, validate_numeric_inputs
from core.recommendations import (
    AUTO_FILL_FIELDS,
    FetchContext,
    RecommendationClient,
    RecommendationSet,
    contextual_suggestion,
)
from core.reference_data import (
    DEFAULT_MOTOR_CLASSIFICATION,
    STATUS_DRAFT,
    STATUS_ISSUED_FOR_REVIEW,
)

logger = logging.getLogger(__name__)

# Edits to these change the recommendation request context
CONTEXT_FIELDS = ("projectNo", "tagNo")


# ---------------------------------------------------------------------------
# Status flags
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StatusFlag:
    """A success/error banner that expires on its own."""

    kind: str  # success | error
    message: str
    expires_at: Optional[float] = None
    remediation: Optional[str] = None

    def active(self, now: float) -> bool:
        return self.expires_at is None or now < self.expires_at

    def to_dict(self) -> dict:
        data = {"kind": self.kind, "message": self.message}
        if self.remediation:
            data["remediation"] = self.remediation
        return data


def check_editable(field_name: str) -> None:
    """Raise unless `field_name` is a field the user may set."""
    if field_name not in FIELDS:
        raise UnknownFieldError(field_name)
    if is_calculated(field_name):
        raise CalculatedFieldEditError(field_name)


def initial_record() -> dict[str, Any]:
    """Blank record with the form's defaults filled in."""
    record = {name: spec.default for name, spec in FIELDS.items() if spec.default is not None}
    record["motorClassification"] = DEFAULT_MOTOR_CLASSIFICATION
    return record


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class EditSession:
    def __init__(
        self,
        record: dict[str, Any] | None = None,
        recommender: RecommendationClient | None = None,
        backend: BackendClient | None = None,
        session_id: str | None = None,
        clock: Callable[[], float] = time.monotonic,
        fetch_recommendations: bool = True,
    ):
        self.id = session_id or uuid.uuid4().hex[:12]
        self.recommender = recommender
        self.backend = backend or (recommender.backend if recommender else BackendClient())
        self.calc_id: Any = None
        self._clock = clock
        self._lock = threading.RLock()
        self._flags: dict[str, StatusFlag] = {}
        self._fetch: Future | None = None
        self._context: FetchContext | None = None
        self.closed = False

        self.record = initial_record()
        if record:
            for field_name in record:
                check_editable(field_name)
            self.record.update(record)
            self.record = recalculate(self.record)

        if fetch_recommendations and recommender is not None:
            self.refresh_recommendations()

    # ------------------------------------------------------------------
    # Record access and edits
    # ------------------------------------------------------------------

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return dict(self.record)

    def apply_edit(self, field_name: str, value: Any) -> dict[str, Any]:
        """Set one user-editable field and recalculate its dependents.

        Returns a snapshot of the updated record.
        """
        check_editable(field_name)

        with self._lock:
            updated = dict(self.record)
            updated[field_name] = value
            self.record = recalculate(updated, field_name)
            snapshot = dict(self.record)

        if field_name in CONTEXT_FIELDS and self.recommender is not None:
            self.refresh_recommendations()
        return snapshot

    def validation(self) -> dict[str, Any]:
        """Hints for the form: unparsable numbers and empty required fields."""
        with self._lock:
            record = dict(self.record)
        return {
            "numeric_errors": validate_numeric_inputs(record),
            "missing_required": missing_required(record),
        }

    # ------------------------------------------------------------------
    # Recommendations
    # ------------------------------------------------------------------

    def refresh_recommendations(self, force_refresh: bool = False) -> Future | None:
        """(Re)start the background fetch for the record's current context.

        A session holds at most one subscription on the recommender: an
        unchanged context with its fetch still pending is reused, otherwise
        the pending one is released first.
        """
        if self.recommender is None or self.closed:
            return None
        context = FetchContext.from_record(self.snapshot())
        with self._lock:
            previous = self._context
            if self._fetch is not None and not self._fetch.done():
                if previous == context and not force_refresh:
                    return self._fetch
                self.recommender.cancel(previous)
            self._context = context
            self._fetch = self.recommender.fetch_async(context, force_refresh)
            return self._fetch

    def recommendations(self, wait: bool = False, timeout: float | None = None) -> RecommendationSet:
        """Current recommendations; empty until the first fetch lands."""
        if self.recommender is None:
            return RecommendationSet.empty()
        with self._lock:
            future, context = self._fetch, self._context
        if future is not None and (wait or future.done()):
            try:
                return future.result(timeout=timeout)
            except CancelledError:
                pass
            except FetchTimeout:
                logger.warning(f"[session] {self.id}: recommendation fetch still pending")
        return self.recommender.peek(context) or RecommendationSet.empty()

    def suggestions(self, field_name: str) -> dict[str, Any]:
        recs = self.recommendations()
        result = {
            "field": field_name,
            "text": recs.text_suggestions(field_name),
            "numeric": recs.numeric_suggestion(field_name),
            "records_analyzed": recs.context.total_records_analyzed,
        }
        if field_name == "motorEfficiency":
            classification = self.snapshot().get("motorClassification")
            result["motor_efficiency"] = recs.motor_efficiency_suggestion(classification)
        return result

    def auto_fill(self, field_names: Iterable[str] | None = None, wait: bool = True) -> dict[str, Any]:
        """Merge suggestions into empty fields; returns what was filled."""
        names = list(field_names) if field_names is not None else list(AUTO_FILL_FIELDS)
        recs = self.recommendations(wait=wait, timeout=config.API_TIMEOUT)

        with self._lock:
            # Suggestions never target calculated fields
            updates = {
                name: value for name, value in recs.auto_fill(names, self.record).items()
                if not is_calculated(name)
            }
            record = dict(self.record)
            for field_name, value in updates.items():
                record[field_name] = value
                record = recalculate(record, field_name)
            self.record = record

        if updates:
            logger.info(f"[session] {self.id}: auto-filled {sorted(updates)}")
        return updates

    def contextual_suggestion(self, field_name: str) -> Any:
        return contextual_suggestion(self.recommendations(), field_name, self.snapshot())

    # ------------------------------------------------------------------
    # Submit / export
    # ------------------------------------------------------------------

    def _set_flag(self, slot: str, kind: str, message: str, remediation: str | None = None) -> None:
        expires = self._clock() + config.STATUS_CLEAR_SECONDS
        with self._lock:
            self._flags[slot] = StatusFlag(kind, message, expires, remediation)

    def status(self) -> dict[str, dict]:
        """Active status flags by slot (`submit`, `export`); expired ones are dropped."""
        now = self._clock()
        with self._lock:
            for slot in [s for s, flag in self._flags.items() if not flag.active(now)]:
                del self._flags[slot]
            return {slot: flag.to_dict() for slot, flag in self._flags.items()}

    def submit(self, draft: bool = False) -> Any:
        status = STATUS_DRAFT if draft else STATUS_ISSUED_FOR_REVIEW
        record = self.snapshot()
        try:
            calc_id = self.backend.save(record, status)
        except PersistenceError as e:
            self._set_flag("submit", "error", e.user_message())
            raise
        with self._lock:
            self.calc_id = calc_id
        verb = "saved as draft" if draft else "submitted for review"
        self._set_flag("submit", "success", f"Pump calculation {verb}")
        logger.info(f"[session] {self.id}: calculation {calc_id} {verb}")
        return calc_id

    def export(self, fmt: str) -> Datasheet:
        record = self.snapshot()
        try:
            calc_id, datasheet = self.backend.export_datasheet(record, fmt, self.calc_id)
        except ExportError as e:
            self._set_flag("export", "error", f"{fmt.upper()} export failed: {e.message}", e.remediation)
            raise
        with self._lock:
            self.calc_id = calc_id
        self._set_flag("export", "success", f"{fmt.upper()} datasheet downloaded: {datasheet.filename}")
        return datasheet

    def close(self) -> None:
        with self._lock:
            self.closed = True
            future, context = self._fetch, self._context
            self._fetch = None
        if future is not None and not future.done() and self.recommender is not None:
            self.recommender.cancel(context)
        logger.info(f"[session] {self.id}: closed")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "calc_id": self.calc_id,
            "record": self.snapshot(),
            "validation": self.validation(),
            "status": self.status(),
        }


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class SessionRegistry:
    """Open edit sessions by id."""

    def __init__(self, recommender: RecommendationClient | None = None, backend: BackendClient | None = None):
        self.recommender = recommender
        self.backend = backend
        self._sessions: dict[str, EditSession] = {}
        self._lock = threading.Lock()

    def open(self, record: dict[str, Any] | None = None, fetch_recommendations: bool = True) -> EditSession:
        session = EditSession(
            record,
            recommender=self.recommender,
            backend=self.backend,
            fetch_recommendations=fetch_recommendations,
        )
        with self._lock:
            self._sessions[session.id] = session
        logger.info(f"[session] Opened {session.id}")
        return session

    def get(self, session_id: str) -> EditSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def close(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.close()
        return True

    def close_all(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
