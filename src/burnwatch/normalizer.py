import hashlib
import json
import math
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from burnwatch.errors import MalformedRecord
from burnwatch.models import UsageEntry
from burnwatch.pricing import entry_cost

UNKNOWN_SESSION = "default"
UNKNOWN_PROJECT = "unknown"


def is_usage_record(data: "Any") -> "bool":
    """
    tells whether a decoded log line describes an API call at all.
    Transcript lines for user turns, summaries or tool progress carry
    no usage and are skipped by the log source rather than rejected.
    """
    if not isinstance(data, Mapping):
        return False

    if "sessionId" in data and "message" in data:
        message = data.get("message")
        return (
            data.get("type") == "assistant"
            and isinstance(message, Mapping)
            and isinstance(message.get("usage"), Mapping)
        )

    return "usage" in data and "model" in data


def normalize(raw: "Mapping[str, Any] | str | bytes") -> "UsageEntry":
    """
    turns one raw usage record into a UsageEntry.

    Accepts either a Claude CLI transcript line or the older flat record
    shape, as a mapping or as JSON text. Raises MalformedRecord when the
    timestamp, model or token counts are missing or invalid.
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise MalformedRecord("bad_json", str(exc)) from exc

    if not isinstance(raw, Mapping):
        raise MalformedRecord("bad_json", f"expected an object, got {type(raw).__name__}")

    if "sessionId" in raw and isinstance(raw.get("message"), Mapping):
        return _normalize_cli_record(raw)

    return _normalize_flat_record(raw)


def _normalize_cli_record(data: "Mapping[str, Any]") -> "UsageEntry":
    message = data["message"]
    usage = message.get("usage")
    if not isinstance(usage, Mapping):
        raise MalformedRecord("missing_field", "message.usage")

    model = _require_model(message.get("model"))
    timestamp = parse_timestamp(data.get("timestamp"))
    input_tokens = _token_count(usage, "input_tokens", required=True)
    output_tokens = _token_count(usage, "output_tokens", required=True)
    cache_creation = _token_count(usage, "cache_creation_input_tokens")
    cache_read = _token_count(usage, "cache_read_input_tokens")
    cost = _cost(
        data.get("costUSD"),
        model,
        input_tokens,
        output_tokens,
        cache_creation,
        cache_read,
    )

    return UsageEntry(
        entry_id=str(data.get("uuid") or _content_id(data)),
        timestamp=timestamp,
        model=model,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cache_creation_tokens=cache_creation,
        cache_read_tokens=cache_read,
        cost_usd=cost,
        session_id=str(data.get("sessionId") or UNKNOWN_SESSION),
        project_path=str(data.get("cwd") or UNKNOWN_PROJECT),
        request_id=_optional_str(data.get("requestId")),
        message_id=_optional_str(message.get("id")),
    )


def _normalize_flat_record(data: "Mapping[str, Any]") -> "UsageEntry":
    usage = data.get("usage")
    if not isinstance(usage, Mapping):
        raise MalformedRecord("missing_field", "usage")

    model = _require_model(data.get("model"))
    timestamp = parse_timestamp(data.get("timestamp"))
    input_tokens = _token_count(usage, "input_tokens", required=True)
    output_tokens = _token_count(usage, "output_tokens", required=True)
    cache_creation = _token_count(usage, "cache_creation_input_tokens") or _token_count(
        usage, "cache_creation_tokens"
    )
    cache_read = _token_count(usage, "cache_read_input_tokens") or _token_count(
        usage, "cache_read_tokens"
    )
    cost = _cost(
        data.get("cost_usd"),
        model,
        input_tokens,
        output_tokens,
        cache_creation,
        cache_read,
    )
    session = data.get("session_id") or data.get("conversation_id") or UNKNOWN_SESSION

    return UsageEntry(
        entry_id=str(data.get("id") or _content_id(data)),
        timestamp=timestamp,
        model=model,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cache_creation_tokens=cache_creation,
        cache_read_tokens=cache_read,
        cost_usd=cost,
        session_id=str(session),
        project_path=str(data.get("project_path") or UNKNOWN_PROJECT),
        request_id=_optional_str(data.get("conversation_id")),
    )


def parse_timestamp(value: "Any") -> "datetime":
    """
    parses an ISO 8601 timestamp into an aware UTC datetime.
    Naive values are read as UTC. Anything unparsable is rejected
    instead of defaulted, since it would corrupt block boundaries.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise MalformedRecord("bad_timestamp", repr(value)) from exc
    else:
        raise MalformedRecord("bad_timestamp", repr(value))

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _require_model(value: "Any") -> "str":
    if not isinstance(value, str) or not value.strip():
        raise MalformedRecord("missing_field", "model")
    return value.strip()


def _token_count(
    usage: "Mapping[str, Any]",
    key: "str",
    required: "bool" = False,
) -> "int":
    value = usage.get(key)
    if value is None:
        if required:
            raise MalformedRecord("missing_field", f"usage.{key}")
        return 0

    # bool is an int subclass, but never a token count
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedRecord("bad_number", f"usage.{key}={value!r}")
    if not math.isfinite(value) or value < 0 or value != int(value):
        raise MalformedRecord("bad_number", f"usage.{key}={value!r}")
    return int(value)


def _cost(
    value: "Any",
    model: "str",
    input_tokens: "int",
    output_tokens: "int",
    cache_creation: "int",
    cache_read: "int",
) -> "float":
    if value is None:
        return entry_cost(model, input_tokens, output_tokens, cache_creation, cache_read)

    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedRecord("bad_number", f"cost={value!r}")
    if not math.isfinite(value) or value < 0:
        raise MalformedRecord("bad_number", f"cost={value!r}")
    return float(value)


def _optional_str(value: "Any") -> "str | None":
    if value is None or value == "":
        return None
    return str(value)


def _content_id(data: "Mapping[str, Any]") -> "str":
    """
    deterministic id for records without one, so reading the same line
    twice produces the same entry.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha1(canonical.encode("utf-8")).hexdigest()
