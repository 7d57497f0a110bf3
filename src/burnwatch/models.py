import enum
from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True, slots=True)
class UsageEntry:
    """
    UsageEntry represents a single API call read from
    the local usage logs.
    """

    entry_id: "str"
    # always timezone-aware UTC
    timestamp: "datetime"
    model: "str"
    input_tokens: "int"
    output_tokens: "int"
    cache_creation_tokens: "int"
    cache_read_tokens: "int"
    cost_usd: "float"
    session_id: "str"
    # working directory the CLI was started in
    project_path: "str"
    request_id: "str | None" = None
    message_id: "str | None" = None

    @property
    def project(self) -> "str":
        """
        human-readable project label, the last component of the project path.
        """
        label = self.project_path.replace("\\", "/").rstrip("/").rsplit("/", 1)[-1]
        return label or "unknown"

    @property
    def total_tokens(self) -> "int":
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_tokens
            + self.cache_read_tokens
        )

    @property
    def dedup_key(self) -> "str":
        # the same message can be copied into several transcript files,
        # message and request ids survive the copy while line uuids don't
        if self.message_id and self.request_id:
            return f"{self.message_id}:{self.request_id}"
        return self.entry_id


@dataclass(frozen=True, slots=True)
class TokenCounts:
    input_tokens: "int" = 0
    output_tokens: "int" = 0
    cache_creation_tokens: "int" = 0
    cache_read_tokens: "int" = 0

    @property
    def total(self) -> "int":
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_tokens
            + self.cache_read_tokens
        )

    def plus(self, entry: "UsageEntry") -> "TokenCounts":
        return TokenCounts(
            input_tokens=self.input_tokens + entry.input_tokens,
            output_tokens=self.output_tokens + entry.output_tokens,
            cache_creation_tokens=self.cache_creation_tokens + entry.cache_creation_tokens,
            cache_read_tokens=self.cache_read_tokens + entry.cache_read_tokens,
        )


@dataclass(frozen=True, slots=True)
class SessionBlock:
    """
    SessionBlock is a read-only view of one billing window for a
    (project, session) pair. The block tracker keeps its own mutable
    state and hands out a new SessionBlock every time it is asked,
    so a view never changes after it was taken.
    """

    block_id: "str"
    # display label, the last component of project_path
    project: "str"
    project_path: "str"
    session_id: "str"
    start_time: "datetime"
    # always start_time + window duration
    end_time: "datetime"
    entries: "tuple[UsageEntry, ...]" = ()
    tokens: "TokenCounts" = TokenCounts()
    cost_usd: "float" = 0.0
    is_active: "bool" = True
    # filler between two blocks of a project, never holds entries
    is_gap: "bool" = False

    def contains(self, timestamp: "datetime") -> "bool":
        # half-open: an entry at end_time belongs to the next block
        return self.start_time <= timestamp < self.end_time


@dataclass(frozen=True, slots=True)
class BurnRate:
    tokens_per_minute: "float"
    # same figure as tokens_per_minute, compared against a display
    # ceiling by consumers; never clamped here
    tokens_per_minute_for_indicator: "float"
    cost_per_hour: "float"


ZERO_BURN_RATE = BurnRate(
    tokens_per_minute=0.0,
    tokens_per_minute_for_indicator=0.0,
    cost_per_hour=0.0,
)


class BurnRateLevel(enum.IntEnum):
    LOW = 0
    MODERATE = 1
    HIGH = 2
    CRITICAL = 3


@dataclass(frozen=True, slots=True)
class BurnRateStatus:
    level: "BurnRateLevel"
    tokens_per_minute: "float"
    cost_per_hour: "float"
    # cost expected for the rest of the block at the current rate
    projected_block_cost: "float"
    warning_message: "str | None" = None


@dataclass(frozen=True, slots=True)
class RealtimeStats:
    """
    RealtimeStats is an immutable snapshot of every open billing
    window and its burn rate. A new snapshot replaces the previous
    one wholesale.
    """

    active_blocks: "tuple[SessionBlock, ...]"
    # (block_id, rate) pairs in the same order as active_blocks
    burn_rates: "tuple[tuple[str, BurnRate], ...]"
    total_active_tokens_per_minute: "float"
    total_active_cost_per_hour: "float"
    last_update: "datetime"

    def burn_rate_for(self, block_id: "str") -> "BurnRate | None":
        for candidate, rate in self.burn_rates:
            if candidate == block_id:
                return rate
        return None


@dataclass(frozen=True, slots=True)
class BillingBlock:
    block_id: "str"
    start_time: "datetime"
    end_time: "datetime"
    is_active: "bool"
    total_cost: "float"
    tokens: "TokenCounts"
    burn_rate: "BurnRate"
    projected_cost: "float"
    elapsed_minutes: "float"
    remaining_minutes: "float"
    entry_ids: "tuple[str, ...]"

    @property
    def total_tokens(self) -> "int":
        return self.tokens.total


@dataclass(frozen=True, slots=True)
class BillingBlockSummary:
    current_block: "BillingBlock | None"
    # newest first
    recent_blocks: "tuple[BillingBlock, ...]"
    total_blocks: "int"
    average_block_cost: "float"
    peak_burn_rate: "float"


@dataclass(frozen=True, slots=True)
class TokenCategory:
    count: "int" = 0
    cost: "float" = 0.0


@dataclass(frozen=True, slots=True)
class TokenBreakdown:
    input: "TokenCategory" = TokenCategory()
    output: "TokenCategory" = TokenCategory()
    cache_creation: "TokenCategory" = TokenCategory()
    cache_read: "TokenCategory" = TokenCategory()

    @property
    def total_cost(self) -> "float":
        return (
            self.input.cost
            + self.output.cost
            + self.cache_creation.cost
            + self.cache_read.cost
        )

    def __add__(self, other: "TokenBreakdown") -> "TokenBreakdown":
        def _sum(a: "TokenCategory", b: "TokenCategory") -> "TokenCategory":
            return TokenCategory(count=a.count + b.count, cost=a.cost + b.cost)

        return TokenBreakdown(
            input=_sum(self.input, other.input),
            output=_sum(self.output, other.output),
            cache_creation=_sum(self.cache_creation, other.cache_creation),
            cache_read=_sum(self.cache_read, other.cache_read),
        )


@dataclass(frozen=True, slots=True)
class ProjectTokenStats:
    project_id: "str"
    project_name: "str"
    tokens: "TokenBreakdown"
    # percentage of cache reads over all cache operations
    cache_efficiency: "int"
    # percentage of the current block's cost spent by this project
    contribution_to_current_block: "int"


@dataclass(frozen=True, slots=True)
class CurrentBlockStatus:
    is_active: "bool"
    start_time: "datetime | None"
    end_time: "datetime | None"
    remaining_minutes: "float"
    total_cost: "float"
    total_tokens: "int"
    burn_rate_status: "BurnRateStatus"


@dataclass(frozen=True, slots=True)
class ProjectedUsage:
    """
    ProjectedUsage extrapolates an active block to its end at the
    current burn rate.
    """

    total_tokens: "float"
    total_cost: "float"
    remaining_minutes: "float"


@dataclass(frozen=True, slots=True)
class ProjectStats:
    project: "str"
    # open and closed blocks of the project, oldest start first
    blocks: "tuple[SessionBlock, ...]"
    active_burn_rate: "BurnRate | None"
    total_cost: "float"
    total_tokens: "int"
