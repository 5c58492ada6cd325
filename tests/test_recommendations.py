#!/usr/bin/env python3
"""
Field Recommendation Engine Tests
==================================
Validates core/recommendations.py: suggestion queries, auto-fill, and the
per-context cache with in-flight deduplication. The backend is mocked.
"""
from __future__ import annotations
import sys
import threading
from pathlib import Path
from unittest.mock import Mock

import requests

sys.path.insert(0, str(Path(__file__).parent.parent))

from core import config
from core.recommendations import (
    CacheState,
    FetchContext,
    RecommendationClient,
    RecommendationSet,
    auto_fill,
    contextual_suggestion,
)

PAYLOAD = {
    "text_fields": {
        "service": {
            "most_common": [
                {"value": "Cooling Water", "count": 5},
                {"value": "Fire Water", "count": 2},
            ],
            "recent_values": ["Fire Water", "Boiler Feed"],
        },
        "revision": {"most_common": [{"value": "0", "count": 12}], "recent_values": ["1"]},
    },
    "numeric_fields": {
        "motor_efficiency": {"suggested_default": 92.5, "average": 91.234, "max": 96, "most_common": [92.5, 95]},
        "temperature": {"suggested_default": None, "average": None, "max": 80},
    },
    "smart_combinations": {
        "motor_classification_efficiency": [
            {"motor_classification": "General Purpose", "typical_efficiency": 93},
            {"motor_classification": "General Purpose", "typical_efficiency": 88},
            {"motor_classification": "Class I, Division 1", "typical_efficiency": 90},
        ],
    },
    "context": {"total_records_analyzed": 42, "project_no": "P-100"},
}


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _client(payload=PAYLOAD, side_effect=None, clock=None):
    backend = Mock()
    backend.get_json.return_value = payload
    if side_effect is not None:
        backend.get_json.side_effect = side_effect
    return RecommendationClient(backend=backend, clock=clock or FakeClock()), backend


RECS = RecommendationSet.model_validate(PAYLOAD)


# ── Text suggestions ────────────────────────────────────────────────────

def test_text_suggestions_merge_common_then_recent():
    suggestions = RECS.text_suggestions("service")
    assert [s["value"] for s in suggestions] == ["Cooling Water", "Fire Water", "Boiler Feed"]
    assert suggestions[0]["badge"] == "Used 5x"
    assert suggestions[0]["priority"] == "high"
    assert suggestions[0]["count"] == 5
    assert suggestions[2]["badge"] == "Recent"
    assert suggestions[2]["priority"] == "medium"


def test_text_suggestions_capped():
    recs = RecommendationSet.model_validate({"text_fields": {"tag_no": {
        "most_common": [{"value": f"P-{i}", "count": 10 - i} for i in range(8)],
        "recent_values": [f"R-{i}" for i in range(5)],
    }}})
    suggestions = recs.text_suggestions("tagNo")
    assert len(suggestions) == config.MAX_TEXT_SUGGESTIONS
    assert suggestions[-1]["value"] == "R-1"


def test_text_suggestions_unknown_field():
    assert RECS.text_suggestions("agreementNo") == []


# ── Numeric and smart-combination suggestions ───────────────────────────

def test_numeric_suggestion():
    s = RECS.numeric_suggestion("motorEfficiency")
    assert s["suggested"] == 92.5
    assert s["tooltip"] == "Avg: 91.23, Max: 96.00"
    assert s["common_values"] == [92.5, 95]

    missing = RECS.numeric_suggestion("temperature")
    assert missing["suggested"] is None
    assert missing["tooltip"] == "Avg: N/A, Max: 80.00"
    assert RECS.numeric_suggestion("hp") is None


def test_motor_efficiency_first_match_wins():
    assert RECS.motor_efficiency_suggestion("General Purpose") == 93
    assert RECS.motor_efficiency_suggestion("Class I, Division 1") == 90
    assert RECS.motor_efficiency_suggestion("Class II, Division 2") is None
    assert RECS.motor_efficiency_suggestion(None) is None


def test_contextual_suggestion_falls_back_to_combination():
    recs = RecommendationSet.model_validate({
        "smart_combinations": PAYLOAD["smart_combinations"],
    })
    record = {"motorClassification": "General Purpose"}
    assert contextual_suggestion(recs, "motorEfficiency", record) == 93
    assert contextual_suggestion(RECS, "motorEfficiency", record) == 92.5
    assert contextual_suggestion(RECS, "service", record) == "Cooling Water"
    assert contextual_suggestion(RECS, "hp", record) is None


# ── Auto-fill ───────────────────────────────────────────────────────────

def test_auto_fill_never_overwrites():
    record = {"revision": "3"}
    assert RECS.auto_fill(["revision"], record) == {}
    assert record == {"revision": "3"}


def test_auto_fill_fills_only_empty_fields():
    record = {"revision": "", "motorEfficiency": 0, "service": None}
    updates = auto_fill(RECS, ["revision", "motorEfficiency", "service", "pumpEfficiency"], record)
    assert updates == {"revision": "0", "service": "Cooling Water"}


def test_empty_set_suggests_nothing():
    empty = RecommendationSet.empty()
    assert empty.is_empty
    assert empty.context.total_records_analyzed == 0
    assert empty.auto_fill(["revision"], {}) == {}


# ── Fetching ────────────────────────────────────────────────────────────

def test_fetch_context_params():
    ctx = FetchContext.from_record({"projectNo": "P-100", "tagNo": "P-101A"}, limit=5)
    assert ctx.params() == {"project_no": "P-100", "tag_prefix": "P-1", "limit": 5}
    assert FetchContext(project_no="P-1").params() == {"project_no": "P-1"}
    assert FetchContext.coerce({"project_no": "", "limit": 3}).params() == {"limit": 3}
    assert FetchContext(project_no="A").key() != FetchContext(project_no="B").key()


def test_fetch_failure_yields_empty_set():
    client, backend = _client(side_effect=requests.ConnectionError("down"))
    recs = client.fetch({"project_no": "P-100"})
    assert recs.context.total_records_analyzed == 0
    assert recs.text_fields == {} and recs.numeric_fields == {}
    # Failures are not cached
    assert client.peek({"project_no": "P-100"}) is None
    client.close()


def test_malformed_payload_yields_empty_set():
    client, _ = _client(payload={"text_fields": "nope"})
    assert client.fetch().is_empty
    client.close()


def test_fetch_caches_per_context():
    client, backend = _client()
    ctx = FetchContext(project_no="P-100", limit=5)
    first = client.fetch(ctx)
    second = client.fetch(ctx)
    assert first is second
    assert backend.get_json.call_count == 1
    backend.get_json.assert_called_with(config.RECOMMENDATIONS_PATH, params={"project_no": "P-100", "limit": 5})

    client.fetch(FetchContext(project_no="P-200"))
    assert backend.get_json.call_count == 2

    client.fetch(ctx, force_refresh=True)
    assert backend.get_json.call_count == 3
    client.close()


def test_ttl_expiry_and_stale_serving():
    clock = FakeClock()
    client, backend = _client(clock=clock)
    client.fetch()
    assert client.state() == CacheState.POPULATED

    clock.now += config.RECOMMENDATION_TTL_SECONDS + 1
    assert client.state() == CacheState.STALE
    assert client.peek() is not None

    backend.get_json.side_effect = requests.Timeout("slow")
    recs = client.fetch()
    assert recs.context.total_records_analyzed == 42
    assert backend.get_json.call_count == 2
    client.close()


def test_clear_cache_forces_refetch():
    client, backend = _client()
    client.fetch()
    client.clear_cache()
    assert client.state() == CacheState.EMPTY
    client.fetch()
    assert backend.get_json.call_count == 2
    client.close()


def _blocking_client():
    gate = threading.Event()
    started = threading.Event()

    def slow(path, params=None):
        started.set()
        gate.wait(5)
        return PAYLOAD

    client, backend = _client(side_effect=slow)
    return client, backend, gate, started


def test_concurrent_fetches_share_one_request():
    client, backend, gate, started = _blocking_client()
    a = client.fetch_async({"project_no": "P-100"})
    b = client.fetch_async({"project_no": "P-100"})
    assert a is b
    assert started.wait(5)
    assert client.state({"project_no": "P-100"}) == CacheState.FETCHING
    gate.set()
    assert a.result(5).context.total_records_analyzed == 42
    assert backend.get_json.call_count == 1
    assert client.state({"project_no": "P-100"}) == CacheState.POPULATED
    client.close()


def test_cancelled_fetch_does_not_populate_cache():
    client, backend, gate, started = _blocking_client()
    future = client.fetch_async({"project_no": "P-100"})
    assert started.wait(5)
    assert client.cancel({"project_no": "P-100"})
    gate.set()
    future.result(5)
    assert client.peek({"project_no": "P-100"}) is None
    assert not client.cancel({"project_no": "P-100"})
    client.close()


def test_cancel_detaches_one_subscriber_of_shared_fetch():
    client, backend, gate, started = _blocking_client()
    a = client.fetch_async({"project_no": "P-100"})
    b = client.fetch_async({"project_no": "P-100"})
    assert started.wait(5)

    assert client.cancel({"project_no": "P-100"})
    assert not b.cancelled()
    assert client.state({"project_no": "P-100"}) == CacheState.FETCHING

    gate.set()
    assert a.result(5).context.total_records_analyzed == 42
    assert client.peek({"project_no": "P-100"}) is not None
    assert backend.get_json.call_count == 1
    client.close()


if __name__ == "__main__":
    tests = [v for k, v in sorted(globals().items()) if k.startswith("test_") and callable(v)]
    for t in tests:
        t()
        print(f"  ✅ {t.__name__}")
    print(f"\n{len(tests)} passed")
