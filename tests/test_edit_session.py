#!/usr/bin/env python3
"""
Edit Session Tests
===================
Validates core/edit_session.py: serialised edits with recalculation,
calculated-field protection, auto-fill, submit/export status flags and
cancellation of the background recommendation fetch.
"""
from __future__ import annotations
import sys
import threading
from concurrent.futures import Future
from pathlib import Path
from unittest.mock import Mock

import pytest
import requests

sys.path.insert(0, str(Path(__file__).parent.parent))

from core import config
from core.backend_client import Datasheet
from core.edit_session import EditSession, SessionRegistry, initial_record
from core.errors import CalculatedFieldEditError, ExportError, PersistenceError, UnknownFieldError
from core.recommendations import FetchContext, RecommendationClient
from core.reference_data import DEFAULT_DESTINATION_DESCRIPTION, DEFAULT_MOTOR_CLASSIFICATION

from test_recommendations import PAYLOAD, FakeClock


def _recommender(payload=PAYLOAD, side_effect=None):
    backend = Mock()
    backend.get_json.return_value = payload
    if side_effect is not None:
        backend.get_json.side_effect = side_effect
    return RecommendationClient(backend=backend), backend


# ── Record edits ────────────────────────────────────────────────────────

def test_initial_record_defaults():
    record = initial_record()
    assert record["destinationDescription"] == DEFAULT_DESTINATION_DESCRIPTION
    assert record["motorClassification"] == DEFAULT_MOTOR_CLASSIFICATION


def test_edit_recalculates_dependents():
    session = EditSession(backend=Mock())
    session.apply_edit("cvMax", 80)
    record = session.apply_edit("cvMin", 40)
    assert record["cvRatio"] == "2.00"
    assert session.snapshot()["cvRatio"] == "2.00"


def test_opening_with_record_recalculates():
    session = EditSession({"destinationPressure": 2, "lineFrictionLoss": 0.9}, backend=Mock())
    assert session.snapshot()["totalDischargePressure"] == "2.90"


def test_calculated_fields_are_read_only():
    session = EditSession(backend=Mock())
    with pytest.raises(CalculatedFieldEditError):
        session.apply_edit("totalDischargePressure", 6)
    with pytest.raises(UnknownFieldError):
        session.apply_edit("flowRate", 6)


def test_opening_record_rejects_calculated_and_unknown_fields():
    with pytest.raises(CalculatedFieldEditError):
        EditSession({"cvMax": 80, "cvRatio": "999"}, backend=Mock())
    with pytest.raises(CalculatedFieldEditError):
        EditSession({"breakHorsePower": "123456"}, backend=Mock())
    with pytest.raises(UnknownFieldError):
        EditSession({"bogusField": 1}, backend=Mock())


def test_validation_hints():
    session = EditSession(backend=Mock())
    session.apply_edit("hp", "lots")
    hints = session.validation()
    assert "hp" in hints["numeric_errors"]
    assert "agreementNo" in hints["missing_required"]
    assert "destinationDescription" not in hints["missing_required"]


# ── Recommendations ─────────────────────────────────────────────────────

def test_fetch_uses_record_context():
    recommender, backend = _recommender()
    session = EditSession({"projectNo": "P-100", "tagNo": "P-101A"}, recommender=recommender)
    recs = session.recommendations(wait=True, timeout=5)
    assert recs.context.total_records_analyzed == 42
    backend.get_json.assert_called_once_with(
        config.RECOMMENDATIONS_PATH,
        params={"project_no": "P-100", "tag_prefix": "P-1", "limit": config.RECOMMENDATION_LIMIT},
    )
    recommender.close()


def test_auto_fill_merges_and_recalculates():
    recommender, _ = _recommender()
    session = EditSession(
        {"revision": "3", "hydraulicPower": 50, "pumpEfficiency": 80},
        recommender=recommender,
    )
    updates = session.auto_fill(["revision", "motorEfficiency"])
    assert updates == {"motorEfficiency": 92.5}
    record = session.snapshot()
    assert record["revision"] == "3"
    assert record["breakHorsePower"] == "62.500"
    assert record["powerConsumption"] == "67.568"
    recommender.close()


def test_auto_fill_reports_only_applied_fields():
    numeric = {**PAYLOAD["numeric_fields"], "cv_ratio": {"suggested_default": 2.5}}
    recommender, _ = _recommender({**PAYLOAD, "numeric_fields": numeric})
    session = EditSession(recommender=recommender)
    assert session.auto_fill(["cvRatio", "motorEfficiency"]) == {"motorEfficiency": 92.5}
    assert "cvRatio" not in session.snapshot()
    recommender.close()


def test_fetch_failure_leaves_form_usable():
    recommender, _ = _recommender(side_effect=requests.ConnectionError("down"))
    session = EditSession(recommender=recommender)
    assert session.recommendations(wait=True, timeout=5).is_empty
    assert session.auto_fill() == {}
    assert session.suggestions("service")["text"] == []
    recommender.close()


def test_suggestions_include_motor_efficiency_hint():
    recommender, _ = _recommender()
    session = EditSession(recommender=recommender)
    session.recommendations(wait=True, timeout=5)
    result = session.suggestions("motorEfficiency")
    assert result["numeric"]["suggested"] == 92.5
    assert result["motor_efficiency"] == 93
    recommender.close()


def test_context_edit_restarts_fetch():
    recommender = Mock(spec=RecommendationClient)
    recommender.fetch_async.side_effect = lambda ctx, force=False: Future()
    session = EditSession({"projectNo": "P-100"}, recommender=recommender, backend=Mock())
    session.apply_edit("tagNo", "X-200")

    assert recommender.fetch_async.call_count == 2
    recommender.cancel.assert_called_once_with(FetchContext(project_no="P-100", limit=config.RECOMMENDATION_LIMIT))
    assert recommender.fetch_async.call_args.args[0].tag_prefix == "X-2"


def test_close_cancels_pending_fetch():
    recommender = Mock(spec=RecommendationClient)
    recommender.fetch_async.return_value = Future()
    session = EditSession(recommender=recommender, backend=Mock())
    session.close()
    recommender.cancel.assert_called_once()
    assert session.refresh_recommendations() is None


def _gated_recommender():
    gate = threading.Event()

    def slow(path, params=None):
        gate.wait(5)
        return PAYLOAD

    recommender, backend = _recommender(side_effect=slow)
    return recommender, backend, gate


def test_closing_one_session_keeps_shared_fetch_for_others():
    recommender, backend, gate = _gated_recommender()
    a = EditSession({"projectNo": "P1"}, recommender=recommender)
    b = EditSession({"projectNo": "P1"}, recommender=recommender)
    a.close()
    gate.set()

    assert b.recommendations(wait=True, timeout=5).context.total_records_analyzed == 42
    assert recommender.peek(FetchContext.from_record({"projectNo": "P1"})) is not None
    assert backend.get_json.call_count == 1
    recommender.close()


def test_last_session_closing_discards_shared_fetch():
    recommender, _, gate = _gated_recommender()
    a = EditSession({"projectNo": "P1"}, recommender=recommender)
    b = EditSession({"projectNo": "P1"}, recommender=recommender)
    a.close()
    b.close()
    gate.set()

    context = FetchContext.from_record({"projectNo": "P1"})
    assert not recommender.cancel(context)
    assert recommender.peek(context) is None
    recommender.close()


def test_unchanged_context_reuses_pending_fetch():
    recommender, _, gate = _gated_recommender()
    session = EditSession({"projectNo": "P1"}, recommender=recommender)
    first = session.refresh_recommendations()
    session.apply_edit("projectNo", "P1")
    assert session.refresh_recommendations() is first

    # One subscription, so closing drops the fetch
    session.close()
    assert not recommender.cancel(FetchContext.from_record({"projectNo": "P1"}))
    gate.set()
    recommender.close()


# ── Submit / export ─────────────────────────────────────────────────────

def test_submit_sets_auto_clearing_flag():
    clock = FakeClock()
    backend = Mock()
    backend.save.return_value = 11
    session = EditSession(backend=backend, clock=clock)

    assert session.submit(draft=True) == 11
    assert backend.save.call_args.args[1] == "draft"
    assert session.calc_id == 11
    assert session.status()["submit"]["kind"] == "success"

    clock.now += config.STATUS_CLEAR_SECONDS + 1
    assert session.status() == {}


def test_submit_failure_flags_error():
    backend = Mock()
    backend.save.side_effect = PersistenceError("cv_max: A valid number is required.")
    session = EditSession(backend=backend)
    with pytest.raises(PersistenceError):
        session.submit()
    assert backend.save.call_args.args[1] == "ifr"
    flag = session.status()["submit"]
    assert flag == {"kind": "error", "message": "cv_max: A valid number is required."}


def test_export_reuses_calculation_id():
    backend = Mock()
    backend.export_datasheet.return_value = (12, Datasheet("a.pdf", b"%PDF", "application/pdf"))
    session = EditSession(backend=backend)

    sheet = session.export("pdf")
    assert sheet.filename == "a.pdf"
    assert backend.export_datasheet.call_args.args[1:] == ("pdf", None)
    session.export("pdf")
    assert backend.export_datasheet.call_args.args[1:] == ("pdf", 12)
    assert "a.pdf" in session.status()["export"]["message"]


def test_export_failure_carries_remediation():
    backend = Mock()
    backend.export_datasheet.side_effect = ExportError("xlsx", "Document No already exists", "Change it")
    session = EditSession(backend=backend)
    with pytest.raises(ExportError):
        session.export("xlsx")
    flag = session.status()["export"]
    assert flag["kind"] == "error"
    assert flag["remediation"] == "Change it"


# ── Registry ────────────────────────────────────────────────────────────

def test_registry_open_get_close():
    registry = SessionRegistry(backend=Mock())
    session = registry.open({"cvMax": 10, "cvMin": 5})
    assert registry.get(session.id) is session
    assert len(registry) == 1
    assert registry.close(session.id)
    assert registry.get(session.id) is None
    assert not registry.close(session.id)


if __name__ == "__main__":
    tests = [v for k, v in sorted(globals().items()) if k.startswith("test_") and callable(v)]
    for t in tests:
        t()
        print(f"  ✅ {t.__name__}")
    print(f"\n{len(tests)} passed")
