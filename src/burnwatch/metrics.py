from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

from burnwatch.models import BurnRateLevel, RealtimeStats, UsageEntry


def create_block_metrics(
    registry: "CollectorRegistry" = REGISTRY,
) -> "dict[str, Gauge]":
    """
    creates the per-block gauge families, labeled by project label,
    project path and session. The path keeps two projects that share a
    directory name apart.
     - tokens_per_minute: current token burn rate of the open block.
     - cost_per_hour: current USD burn rate of the open block.
     - level: burn rate level, 0 (LOW) to 3 (CRITICAL).
    """
    labels = ["project", "project_path", "session"]
    return {
        "tokens_per_minute": Gauge(
            "burnwatch_block_tokens_per_minute",
            "Token burn rate of an open billing block",
            labels,
            registry=registry,
        ),
        "cost_per_hour": Gauge(
            "burnwatch_block_cost_per_hour_usd",
            "USD burn rate of an open billing block",
            labels,
            registry=registry,
        ),
        "level": Gauge(
            "burnwatch_block_burn_rate_level",
            "Burn rate level of an open billing block (0=LOW .. 3=CRITICAL)",
            labels,
            registry=registry,
        ),
    }


class MetricsUpdater:
    """
    applies usage entries and realtime snapshots to Prometheus metrics.
    """

    def __init__(self, registry: "CollectorRegistry" = REGISTRY) -> "None":
        self._registry: "CollectorRegistry" = registry
        self._block_metrics: "dict[str, Gauge]" = create_block_metrics(registry)
        # label sets currently exported, so closed blocks can be removed
        self._block_labels: "set[tuple[str, str, str]]" = set()

        self._tokens: "Counter" = Counter(
            "burnwatch_tokens_total",
            "Total tokens ingested from usage logs",
            ["model", "project", "direction"],
            registry=registry,
        )
        self._cost: "Counter" = Counter(
            "burnwatch_cost_usd_total",
            "Total cost in USD ingested from usage logs",
            ["project"],
            registry=registry,
        )
        self._malformed: "Counter" = Counter(
            "burnwatch_malformed_records_total",
            "Total number of rejected usage records by reason",
            ["reason"],
            registry=registry,
        )
        self._source_errors: "Counter" = Counter(
            "burnwatch_source_errors_total",
            "Total number of failures reading the usage log source",
            ["source"],
            registry=registry,
        )
        self._active_blocks: "Gauge" = Gauge(
            "burnwatch_active_blocks",
            "Number of open billing blocks",
            registry=registry,
        )
        self._total_tokens_per_minute: "Gauge" = Gauge(
            "burnwatch_active_tokens_per_minute",
            "Sum of token burn rates across open blocks",
            registry=registry,
        )
        self._total_cost_per_hour: "Gauge" = Gauge(
            "burnwatch_active_cost_per_hour_usd",
            "Sum of USD burn rates across open blocks",
            registry=registry,
        )
        self._refresh_duration: "Histogram" = Histogram(
            "burnwatch_refresh_duration_seconds",
            "Duration of realtime aggregation cycles",
            registry=registry,
        )
        self._last_refresh: "Gauge" = Gauge(
            "burnwatch_last_refresh_timestamp_seconds",
            "Unix timestamp of the last published snapshot",
            registry=registry,
        )

    def update_usage(self, entry: "UsageEntry") -> "None":
        """
        updates the token and cost counters from one accepted entry.
        """
        labels = {"model": entry.model, "project": entry.project}
        self._tokens.labels(**labels, direction="input").inc(entry.input_tokens)
        self._tokens.labels(**labels, direction="output").inc(entry.output_tokens)
        self._tokens.labels(**labels, direction="cache_creation").inc(
            entry.cache_creation_tokens
        )
        self._tokens.labels(**labels, direction="cache_read").inc(
            entry.cache_read_tokens
        )
        self._cost.labels(project=entry.project).inc(entry.cost_usd)

    def update_snapshot(
        self,
        stats: "RealtimeStats",
        levels: "dict[str, BurnRateLevel]",
    ) -> "None":
        """
        mirrors a realtime snapshot into the gauges. Label sets of blocks
        that are no longer open are removed.
        """
        current: "set[tuple[str, str, str]]" = set()
        for block in stats.active_blocks:
            rate = stats.burn_rate_for(block.block_id)
            if rate is None:
                continue
            key = (block.project, block.project_path, block.session_id)
            current.add(key)
            self._block_metrics["tokens_per_minute"].labels(*key).set(
                rate.tokens_per_minute
            )
            self._block_metrics["cost_per_hour"].labels(*key).set(rate.cost_per_hour)
            self._block_metrics["level"].labels(*key).set(
                int(levels.get(block.block_id, BurnRateLevel.LOW))
            )

        for key in self._block_labels - current:
            for gauge in self._block_metrics.values():
                gauge.remove(*key)
        self._block_labels = current

        self._active_blocks.set(len(stats.active_blocks))
        self._total_tokens_per_minute.set(stats.total_active_tokens_per_minute)
        self._total_cost_per_hour.set(stats.total_active_cost_per_hour)
        self._last_refresh.set(stats.last_update.timestamp())

    def inc_malformed(self, reason: "str") -> "None":
        self._malformed.labels(reason=reason).inc()

    def inc_source_error(self, source: "str") -> "None":
        self._source_errors.labels(source=source).inc()

    def observe_refresh_duration(self, duration_seconds: "float") -> "None":
        self._refresh_duration.observe(duration_seconds)
