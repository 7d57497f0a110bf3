from datetime import datetime

import structlog

from burnwatch.errors import InvariantViolation
from burnwatch.models import ZERO_BURN_RATE, BurnRate, ProjectedUsage, SessionBlock

logger = structlog.get_logger()

# floor for the elapsed time of a block, avoids dividing by zero
# right after the block was opened
MIN_ELAPSED_MINUTES = 1.0


def elapsed_minutes(block: "SessionBlock", now: "datetime") -> "float":
    """
    minutes between the block start and now, without the floor applied.
    """
    return (now - block.start_time).total_seconds() / 60


def remaining_hours(block: "SessionBlock", now: "datetime") -> "float":
    """
    hours left until the block ends, floored at zero.
    """
    return max(0.0, (block.end_time - now).total_seconds() / 3600)


def calculate_burn_rate(
    block: "SessionBlock",
    now: "datetime",
    strict: "bool" = False,
) -> "BurnRate":
    """
    computes tokens per minute and cost per hour for a block, measured
    from its start to now.

    A now earlier than the block start means the clock or the log
    timestamps went wrong. In strict mode that raises; otherwise it is
    logged and a zero rate is returned so consumers keep working.
    """
    elapsed = elapsed_minutes(block, now)
    if elapsed < 0:
        if strict:
            raise InvariantViolation(
                f"block {block.block_id} starts after now ({elapsed:.2f} min)"
            )
        logger.error(
            "negative_elapsed_time",
            block_id=block.block_id,
            elapsed_minutes=elapsed,
        )
        return ZERO_BURN_RATE

    return rate_from_totals(block.tokens.total, block.cost_usd, elapsed)


def rate_from_totals(
    total_tokens: "int",
    cost_usd: "float",
    elapsed: "float",
) -> "BurnRate":
    elapsed = max(MIN_ELAPSED_MINUTES, elapsed)
    tokens_per_minute = total_tokens / elapsed
    return BurnRate(
        tokens_per_minute=tokens_per_minute,
        tokens_per_minute_for_indicator=tokens_per_minute,
        cost_per_hour=(cost_usd / elapsed) * 60,
    )


def project_block_usage(
    block: "SessionBlock",
    now: "datetime",
    strict: "bool" = False,
) -> "ProjectedUsage | None":
    """
    extrapolates an active block to its end at the current burn rate.
    Returns None for closed, gap or empty blocks and for blocks with
    no time left.
    """
    if not block.is_active or block.is_gap or not block.entries:
        return None

    remaining = (block.end_time - now).total_seconds() / 60
    if remaining <= 0:
        return None

    rate = calculate_burn_rate(block, now, strict=strict)
    return ProjectedUsage(
        total_tokens=block.tokens.total + rate.tokens_per_minute * remaining,
        total_cost=block.cost_usd + rate.cost_per_hour / 60 * remaining,
        remaining_minutes=remaining,
    )
