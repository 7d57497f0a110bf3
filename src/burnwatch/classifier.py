from dataclasses import dataclass
from datetime import datetime

from burnwatch.burn_rate import calculate_burn_rate, remaining_hours
from burnwatch.models import BurnRate, BurnRateLevel, BurnRateStatus, SessionBlock

WARNING_MESSAGES: "dict[BurnRateLevel, str]" = {
    BurnRateLevel.HIGH: "High usage rate detected",
    BurnRateLevel.CRITICAL: "Critical usage rate - consider reducing activity",
}


@dataclass(frozen=True, slots=True)
class BurnRateThresholds:
    """
    BurnRateThresholds holds the lower bound, in tokens per minute,
    of each level above LOW. Set once at process start.
    """

    moderate: "float" = 500.0
    high: "float" = 1000.0
    critical: "float" = 2000.0

    def __post_init__(self) -> "None":
        if not 0 <= self.moderate <= self.high <= self.critical:
            raise ValueError(
                "thresholds must satisfy 0 <= moderate <= high <= critical, got "
                f"{self.moderate}/{self.high}/{self.critical}"
            )

    def level_for(self, tokens_per_minute: "float") -> "BurnRateLevel":
        if tokens_per_minute >= self.critical:
            return BurnRateLevel.CRITICAL
        if tokens_per_minute >= self.high:
            return BurnRateLevel.HIGH
        if tokens_per_minute >= self.moderate:
            return BurnRateLevel.MODERATE
        return BurnRateLevel.LOW


DEFAULT_THRESHOLDS = BurnRateThresholds()


def classify(
    burn_rate: "BurnRate",
    thresholds: "BurnRateThresholds" = DEFAULT_THRESHOLDS,
    remaining_hours_in_block: "float" = 0.0,
) -> "BurnRateStatus":
    """
    maps a burn rate to a severity level. HIGH and CRITICAL carry a
    warning message. The projected cost covers only the remainder of
    the block at the current hourly cost.
    """
    level = thresholds.level_for(burn_rate.tokens_per_minute_for_indicator)
    return BurnRateStatus(
        level=level,
        tokens_per_minute=burn_rate.tokens_per_minute,
        cost_per_hour=burn_rate.cost_per_hour,
        projected_block_cost=burn_rate.cost_per_hour * max(0.0, remaining_hours_in_block),
        warning_message=WARNING_MESSAGES.get(level),
    )


def block_status(
    block: "SessionBlock",
    now: "datetime",
    thresholds: "BurnRateThresholds" = DEFAULT_THRESHOLDS,
    strict: "bool" = False,
) -> "BurnRateStatus":
    rate = calculate_burn_rate(block, now, strict=strict)
    return classify(rate, thresholds, remaining_hours(block, now))
