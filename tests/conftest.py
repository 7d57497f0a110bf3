from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest
from prometheus_client import CollectorRegistry

from burnwatch.models import UsageEntry

T0 = datetime(2025, 6, 2, 9, 30, tzinfo=timezone.utc)


class FakeClock:
    """
    a settable clock so block expiry and burn rates are deterministic.
    """

    def __init__(self, now: "datetime") -> "None":
        self.now = now

    def __call__(self) -> "datetime":
        return self.now

    def advance(self, delta: "timedelta") -> "None":
        self.now = self.now + delta


@pytest.fixture()
def registry() -> "CollectorRegistry":
    """
    fresh Prometheus registry to avoid cross-test state.
    """
    return CollectorRegistry()


@pytest.fixture()
def clock() -> "FakeClock":
    return FakeClock(T0)


@pytest.fixture()
def make_entry() -> "Callable[..., UsageEntry]":
    """
    builds UsageEntry objects with 1000 total tokens and $0.01 cost
    unless overridden.
    """
    counter = {"n": 0}

    def _make(
        timestamp: "datetime" = T0,
        project_path: "str" = "/home/dev/demo",
        session_id: "str" = "s1",
        **overrides: "Any",
    ) -> "UsageEntry":
        counter["n"] += 1
        fields: "dict[str, Any]" = dict(
            entry_id=f"entry-{counter['n']}",
            timestamp=timestamp,
            model="claude-sonnet-4-20250514",
            input_tokens=400,
            output_tokens=600,
            cache_creation_tokens=0,
            cache_read_tokens=0,
            cost_usd=0.01,
            session_id=session_id,
            project_path=project_path,
        )
        fields.update(overrides)
        return UsageEntry(**fields)

    return _make


@pytest.fixture()
def make_raw() -> "Callable[..., dict[str, Any]]":
    """
    builds Claude CLI transcript lines for an assistant message.
    """
    counter = {"n": 0}

    def _make(
        timestamp: "datetime" = T0,
        cwd: "str" = "/home/dev/demo",
        session_id: "str" = "s1",
        input_tokens: "int" = 400,
        output_tokens: "int" = 600,
        cost_usd: "float | None" = 0.01,
        **usage_extra: "Any",
    ) -> "dict[str, Any]":
        counter["n"] += 1
        record: "dict[str, Any]" = {
            "type": "assistant",
            "uuid": f"uuid-{counter['n']}",
            "sessionId": session_id,
            "timestamp": timestamp.isoformat().replace("+00:00", "Z"),
            "cwd": cwd,
            "requestId": f"req-{counter['n']}",
            "message": {
                "id": f"msg-{counter['n']}",
                "role": "assistant",
                "model": "claude-sonnet-4-20250514",
                "usage": {
                    "input_tokens": input_tokens,
                    "output_tokens": output_tokens,
                    **usage_extra,
                },
            },
        }
        if cost_usd is not None:
            record["costUSD"] = cost_usd
        return record

    return _make
