"""
Historical billing block views computed on demand from a batch of
usage entries, independently of the live tracker.
"""

from collections.abc import Iterable
from datetime import datetime, timedelta, timezone

import structlog

from burnwatch.block_tracker import DEFAULT_WINDOW
from burnwatch.burn_rate import rate_from_totals, remaining_hours
from burnwatch.classifier import DEFAULT_THRESHOLDS, BurnRateThresholds, block_status
from burnwatch.models import (
    BillingBlock,
    BillingBlockSummary,
    BurnRateLevel,
    BurnRateStatus,
    CurrentBlockStatus,
    ProjectTokenStats,
    SessionBlock,
    TokenBreakdown,
    TokenCounts,
    UsageEntry,
)
from burnwatch.pricing import token_breakdown

logger = structlog.get_logger()

RECENT_BLOCKS_LIMIT = 10

EMPTY_STATUS = BurnRateStatus(
    level=BurnRateLevel.LOW,
    tokens_per_minute=0.0,
    cost_per_hour=0.0,
    projected_block_cost=0.0,
)


def floor_to_hour(timestamp: "datetime") -> "datetime":
    return timestamp.replace(minute=0, second=0, microsecond=0)


def align_to_window(timestamp: "datetime", window: "timedelta" = DEFAULT_WINDOW) -> "datetime":
    """
    floors a timestamp to the hour, then to the start of the window
    slot it falls in, counting slots from UTC midnight. With the
    default five hour window blocks start at 00, 05, 10, 15 and 20 UTC.
    """
    hour = floor_to_hour(timestamp.astimezone(timezone.utc))
    midnight = hour.replace(hour=0)
    return midnight + ((hour - midnight) // window) * window


def billing_block_id(start_time: "datetime") -> "str":
    return f"block_{int(start_time.timestamp() * 1000)}"


def summarize_window(
    entries: "Iterable[UsageEntry]",
    start: "datetime",
    end: "datetime",
    now: "datetime",
) -> "BillingBlock":
    """
    totals the entries whose timestamp falls in [start, end) and reports
    elapsed and remaining time against the window length.

    For the same entries and window this yields the same token and cost
    totals as the live block tracker.
    """
    if end <= start:
        raise ValueError("window end must be after its start")

    tokens = TokenCounts()
    total_cost = 0.0
    entry_ids: "list[str]" = []
    selected = [e for e in entries if start <= e.timestamp < end]
    for entry in sorted(selected, key=lambda e: e.timestamp):
        tokens = tokens.plus(entry)
        total_cost += entry.cost_usd
        entry_ids.append(entry.entry_id)

    duration_minutes = (end - start).total_seconds() / 60
    elapsed = (min(now, end) - start).total_seconds() / 60
    elapsed = min(max(0.0, elapsed), duration_minutes)
    is_active = start <= now < end
    remaining = (end - now).total_seconds() / 60 if is_active else 0.0

    rate = rate_from_totals(tokens.total, total_cost, elapsed)
    projected = total_cost + rate.cost_per_hour * remaining / 60

    return BillingBlock(
        block_id=billing_block_id(start),
        start_time=start,
        end_time=end,
        is_active=is_active,
        total_cost=total_cost,
        tokens=tokens,
        burn_rate=rate,
        projected_cost=projected,
        elapsed_minutes=elapsed,
        remaining_minutes=remaining,
        entry_ids=tuple(entry_ids),
    )


def group_billing_blocks(
    entries: "Iterable[UsageEntry]",
    window: "timedelta" = DEFAULT_WINDOW,
) -> "list[tuple[datetime, datetime]]":
    """
    splits an account's entries into consecutive billing windows.

    A window starts at the UTC-aligned slot of the first entry it
    holds (see align_to_window), and the first entry at or past its end
    starts the next one. A window never starts before the previous one
    ends, which matters for the slot that crosses midnight.
    """
    windows: "list[tuple[datetime, datetime]]" = []
    current_end: "datetime | None" = None

    for entry in sorted(entries, key=lambda e: e.timestamp):
        if current_end is not None and entry.timestamp < current_end:
            continue
        start = align_to_window(entry.timestamp, window)
        if current_end is not None and start < current_end:
            start = current_end
        current_end = start + window
        windows.append((start, current_end))

    return windows


def summarize_billing_blocks(
    entries: "Iterable[UsageEntry]",
    now: "datetime",
    window: "timedelta" = DEFAULT_WINDOW,
    recent_limit: "int" = RECENT_BLOCKS_LIMIT,
) -> "BillingBlockSummary":
    entries = list(entries)
    blocks = [
        summarize_window(entries, start, end, now)
        for start, end in group_billing_blocks(entries, window)
    ]

    current = next((b for b in blocks if b.is_active), None)
    recent = sorted(
        (b for b in blocks if not b.is_active),
        key=lambda b: b.start_time,
        reverse=True,
    )[:recent_limit]

    total_cost = sum(b.total_cost for b in blocks)
    summary = BillingBlockSummary(
        current_block=current,
        recent_blocks=tuple(recent),
        total_blocks=len(blocks),
        average_block_cost=total_cost / len(blocks) if blocks else 0.0,
        peak_burn_rate=max((b.burn_rate.tokens_per_minute for b in blocks), default=0.0),
    )

    logger.debug(
        "billing_blocks_summarized",
        total_blocks=summary.total_blocks,
        current_block=current.block_id if current else None,
    )
    return summary


def current_block_status(
    block: "SessionBlock | None",
    now: "datetime",
    thresholds: "BurnRateThresholds" = DEFAULT_THRESHOLDS,
    strict: "bool" = False,
) -> "CurrentBlockStatus":
    """
    projects one live block into the status shown for the current window.
    Without a block the status is inactive and empty.
    """
    if block is None:
        return CurrentBlockStatus(
            is_active=False,
            start_time=None,
            end_time=None,
            remaining_minutes=0.0,
            total_cost=0.0,
            total_tokens=0,
            burn_rate_status=EMPTY_STATUS,
        )

    is_active = block.is_active and now < block.end_time
    return CurrentBlockStatus(
        is_active=is_active,
        start_time=block.start_time,
        end_time=block.end_time,
        remaining_minutes=remaining_hours(block, now) * 60 if is_active else 0.0,
        total_cost=block.cost_usd,
        total_tokens=block.tokens.total,
        burn_rate_status=block_status(block, now, thresholds, strict=strict),
    )


def cache_efficiency(cache_read: "int", cache_creation: "int") -> "int":
    total = cache_read + cache_creation
    if total == 0:
        return 0
    return round(cache_read / total * 100)


def project_token_stats(
    entries: "Iterable[UsageEntry]",
    current_window: "tuple[datetime, datetime] | None" = None,
) -> "list[ProjectTokenStats]":
    """
    rolls entries up per project with a per-category token and cost
    breakdown. When a current window is given, each project's share of
    the cost spent inside it is reported as a percentage.
    """
    breakdowns: "dict[str, TokenBreakdown]" = {}
    names: "dict[str, str]" = {}
    window_cost: "dict[str, float]" = {}

    for entry in entries:
        breakdown = token_breakdown(entry)
        project_id = entry.project_path
        names.setdefault(project_id, entry.project)
        breakdowns[project_id] = breakdowns.get(project_id, TokenBreakdown()) + breakdown

        if current_window is not None:
            start, end = current_window
            if start <= entry.timestamp < end:
                window_cost[project_id] = (
                    window_cost.get(project_id, 0.0) + breakdown.total_cost
                )

    window_total = sum(window_cost.values())
    stats = [
        ProjectTokenStats(
            project_id=project_id,
            project_name=names[project_id],
            tokens=breakdown,
            cache_efficiency=cache_efficiency(
                breakdown.cache_read.count, breakdown.cache_creation.count
            ),
            contribution_to_current_block=(
                round(window_cost.get(project_id, 0.0) / window_total * 100)
                if window_total > 0
                else 0
            ),
        )
        for project_id, breakdown in breakdowns.items()
    ]
    stats.sort(key=lambda s: (-s.tokens.total_cost, s.project_id))
    return stats
