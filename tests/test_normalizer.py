import json
from datetime import datetime, timezone

import pytest

from burnwatch.errors import MalformedRecord
from burnwatch.normalizer import is_usage_record, normalize, parse_timestamp
from burnwatch.pricing import entry_cost


class TestNormalizeCliRecord:
    def test_parses_all_fields(self, make_raw: "object") -> "None":
        raw = make_raw(
            cache_creation_input_tokens=200,
            cache_read_input_tokens=3000,
        )
        entry = normalize(raw)

        assert entry.entry_id == raw["uuid"]
        assert entry.timestamp == datetime(2025, 6, 2, 9, 30, tzinfo=timezone.utc)
        assert entry.model == "claude-sonnet-4-20250514"
        assert entry.input_tokens == 400
        assert entry.output_tokens == 600
        assert entry.cache_creation_tokens == 200
        assert entry.cache_read_tokens == 3000
        assert entry.total_tokens == 4200
        assert entry.cost_usd == 0.01
        assert entry.session_id == "s1"
        assert entry.project_path == "/home/dev/demo"
        assert entry.project == "demo"
        assert entry.request_id == raw["requestId"]
        assert entry.message_id == raw["message"]["id"]

    def test_accepts_json_text(self, make_raw: "object") -> "None":
        raw = make_raw()
        assert normalize(json.dumps(raw)) == normalize(raw)

    def test_missing_cache_counts_default_to_zero(self, make_raw: "object") -> "None":
        entry = normalize(make_raw())
        assert entry.cache_creation_tokens == 0
        assert entry.cache_read_tokens == 0

    def test_cost_computed_when_absent(self, make_raw: "object") -> "None":
        entry = normalize(make_raw(cost_usd=None, input_tokens=1_000_000, output_tokens=0))
        assert entry.cost_usd == pytest.approx(3.0)

    def test_dedup_key_uses_message_and_request_ids(self, make_raw: "object") -> "None":
        raw = make_raw()
        entry = normalize(raw)
        assert entry.dedup_key == f"{raw['message']['id']}:{raw['requestId']}"


class TestNormalizeFlatRecord:
    def test_parses_legacy_shape(self) -> "None":
        entry = normalize(
            {
                "timestamp": "2025-06-02T09:30:00Z",
                "model": "claude-3-5-haiku-20241022",
                "usage": {"input_tokens": 100, "output_tokens": 50},
                "session_id": "legacy-session",
                "project_path": "/work/api",
            }
        )
        assert entry.session_id == "legacy-session"
        assert entry.project == "api"
        assert entry.cost_usd == pytest.approx(
            entry_cost("claude-3-5-haiku-20241022", 100, 50)
        )

    def test_missing_id_is_deterministic(self) -> "None":
        raw = {
            "timestamp": "2025-06-02T09:30:00Z",
            "model": "claude-3-5-haiku-20241022",
            "usage": {"input_tokens": 100, "output_tokens": 50},
        }
        assert normalize(raw).entry_id == normalize(dict(raw)).entry_id

    def test_conversation_id_used_as_session(self) -> "None":
        entry = normalize(
            {
                "timestamp": "2025-06-02T09:30:00Z",
                "model": "m",
                "usage": {"input_tokens": 1, "output_tokens": 1},
                "conversation_id": "conv-1",
            }
        )
        assert entry.session_id == "conv-1"


class TestNormalizeRejects:
    @pytest.mark.parametrize(
        "timestamp",
        ["", "yesterday", "2025-13-45T00:00:00Z", None, 1717320600],
    )
    def test_bad_timestamp(self, make_raw: "object", timestamp: "object") -> "None":
        raw = make_raw()
        raw["timestamp"] = timestamp
        with pytest.raises(MalformedRecord) as exc_info:
            normalize(raw)
        assert exc_info.value.reason == "bad_timestamp"

    def test_missing_model(self, make_raw: "object") -> "None":
        raw = make_raw()
        del raw["message"]["model"]
        with pytest.raises(MalformedRecord) as exc_info:
            normalize(raw)
        assert exc_info.value.reason == "missing_field"

    def test_missing_output_tokens(self, make_raw: "object") -> "None":
        raw = make_raw()
        del raw["message"]["usage"]["output_tokens"]
        with pytest.raises(MalformedRecord) as exc_info:
            normalize(raw)
        assert exc_info.value.reason == "missing_field"

    @pytest.mark.parametrize(
        "value",
        ["12", -1, float("nan"), float("inf"), True, 1.5],
    )
    def test_bad_token_count(self, make_raw: "object", value: "object") -> "None":
        raw = make_raw()
        raw["message"]["usage"]["input_tokens"] = value
        with pytest.raises(MalformedRecord) as exc_info:
            normalize(raw)
        assert exc_info.value.reason == "bad_number"

    def test_bad_cost(self, make_raw: "object") -> "None":
        with pytest.raises(MalformedRecord):
            normalize(make_raw(cost_usd=float("nan")))

    def test_invalid_json_text(self) -> "None":
        with pytest.raises(MalformedRecord) as exc_info:
            normalize("{not json")
        assert exc_info.value.reason == "bad_json"

    def test_non_object_json(self) -> "None":
        with pytest.raises(MalformedRecord):
            normalize("[1, 2]")


class TestParseTimestamp:
    def test_offset_is_normalized_to_utc(self) -> "None":
        parsed = parse_timestamp("2025-06-02T11:30:00+02:00")
        assert parsed == datetime(2025, 6, 2, 9, 30, tzinfo=timezone.utc)
        assert parsed.utcoffset().total_seconds() == 0

    def test_naive_is_read_as_utc(self) -> "None":
        parsed = parse_timestamp("2025-06-02T09:30:00")
        assert parsed.tzinfo is not None
        assert parsed == datetime(2025, 6, 2, 9, 30, tzinfo=timezone.utc)


class TestIsUsageRecord:
    def test_assistant_message_with_usage(self, make_raw: "object") -> "None":
        assert is_usage_record(make_raw()) is True

    def test_user_message_is_not_usage(self, make_raw: "object") -> "None":
        raw = make_raw()
        raw["type"] = "user"
        assert is_usage_record(raw) is False

    def test_summary_line_is_not_usage(self) -> "None":
        assert is_usage_record({"type": "summary", "summary": "x"}) is False

    def test_legacy_record_is_usage(self) -> "None":
        assert is_usage_record({"model": "m", "usage": {}}) is True

    def test_non_mapping(self) -> "None":
        assert is_usage_record([1, 2]) is False
