import os
from dataclasses import dataclass
from datetime import timedelta

from burnwatch.classifier import BurnRateThresholds

_TRUTHY = {"1", "true", "yes", "on"}


def _default_log_dir() -> "str":
    # honour a relocated Claude config directory
    config_dir = os.environ.get("CLAUDE_CONFIG_DIR", "")
    if config_dir:
        return os.path.join(config_dir, "projects")
    return "~/.claude/projects"


@dataclass
class Config:
    # listen_address: format ":9186" or
    # "0.0.0.0:9186"
    listen_address: "str" = ":9186"
    # aggregation interval in seconds
    refresh_interval: "float" = 1.0
    log_level: "str" = "info"
    # "console" or "json"
    log_format: "str" = "console"
    log_dir: "str" = "~/.claude/projects"

    # billing window length in hours
    block_hours: "float" = 5.0
    # minutes a block stays open past its end for late log lines
    idle_grace_minutes: "float" = 2.0
    # tokens per minute at which each level starts
    threshold_moderate: "float" = 500.0
    threshold_high: "float" = 1000.0
    threshold_critical: "float" = 2000.0

    # raise on internal invariant violations instead of degrading
    strict: "bool" = False
    # load the logs, report once and exit
    once: "bool" = False

    @classmethod
    def from_env(cls) -> "Config":
        return cls(
            log_dir=os.environ.get("BURNWATCH_LOG_DIR", "") or _default_log_dir(),
            block_hours=float(os.environ.get("BURNWATCH_BLOCK_HOURS", "5")),
            idle_grace_minutes=float(os.environ.get("BURNWATCH_IDLE_GRACE_MINUTES", "2")),
            threshold_moderate=float(
                os.environ.get("BURNWATCH_THRESHOLD_MODERATE", "500")
            ),
            threshold_high=float(os.environ.get("BURNWATCH_THRESHOLD_HIGH", "1000")),
            threshold_critical=float(
                os.environ.get("BURNWATCH_THRESHOLD_CRITICAL", "2000")
            ),
            strict=os.environ.get("BURNWATCH_STRICT", "").lower() in _TRUTHY,
        )

    @property
    def window(self) -> "timedelta":
        return timedelta(hours=self.block_hours)

    @property
    def idle_grace(self) -> "timedelta":
        return timedelta(minutes=self.idle_grace_minutes)

    @property
    def thresholds(self) -> "BurnRateThresholds":
        return BurnRateThresholds(
            moderate=self.threshold_moderate,
            high=self.threshold_high,
            critical=self.threshold_critical,
        )
