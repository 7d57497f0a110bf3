import asyncio
import signal

import structlog
from prometheus_client import start_http_server

from burnwatch.cli import parse_args
from burnwatch.config import Config
from burnwatch.errors import LogSourceError
from burnwatch.logging import setup_logging
from burnwatch.metrics import MetricsUpdater
from burnwatch.models import RealtimeStats
from burnwatch.monitor import RealtimeMonitor
from burnwatch.source.base import UsageSource
from burnwatch.source.claude_logs import ClaudeLogSource

logger = structlog.get_logger()


def _parse_listen_address(addr: "str") -> "tuple[str, int]":
    """
    parses listen address in format ':9186' or '0.0.0.0:9186'.
    """
    if addr.startswith(":"):
        return ("0.0.0.0", int(addr[1:]))

    host, port = addr.rsplit(":", 1)
    return (host, int(port))


def _log_snapshot(stats: "RealtimeStats") -> "None":
    logger.debug(
        "snapshot_published",
        active_blocks=len(stats.active_blocks),
        tokens_per_minute=round(stats.total_active_tokens_per_minute, 1),
        cost_per_hour=round(stats.total_active_cost_per_hour, 4),
    )


def build_monitor(
    config: "Config",
    metrics: "MetricsUpdater | None",
    source: "UsageSource | None",
) -> "RealtimeMonitor":
    return RealtimeMonitor(
        source=source,
        metrics=metrics,
        window=config.window,
        thresholds=config.thresholds,
        refresh_interval=config.refresh_interval,
        idle_grace=config.idle_grace,
        strict=config.strict,
    )


async def report_once(config: "Config") -> "None":
    """
    loads every log line once and logs the billing picture.
    """
    source = ClaudeLogSource(config.log_dir)
    monitor = build_monitor(config, metrics=None, source=None)
    try:
        monitor.ingest_many(await source.read_records())

        summary = monitor.get_billing_blocks_summary()
        current = summary.current_block
        logger.info(
            "billing_summary",
            total_blocks=summary.total_blocks,
            average_block_cost=round(summary.average_block_cost, 4),
            peak_tokens_per_minute=round(summary.peak_burn_rate, 1),
            current_block=current.block_id if current else None,
            current_cost=round(current.total_cost, 4) if current else 0.0,
            current_projected_cost=round(current.projected_cost, 4) if current else 0.0,
        )

        status = monitor.get_current_block_status()
        logger.info(
            "current_block_status",
            is_active=status.is_active,
            remaining_minutes=round(status.remaining_minutes),
            total_tokens=status.total_tokens,
            total_cost=round(status.total_cost, 4),
            level=status.burn_rate_status.level.name,
            warning=status.burn_rate_status.warning_message,
        )

        for stats in monitor.get_project_token_stats():
            logger.info(
                "project_usage",
                project=stats.project_name,
                cost=round(stats.tokens.total_cost, 4),
                cache_efficiency=stats.cache_efficiency,
                contribution_to_current_block=stats.contribution_to_current_block,
            )
    finally:
        await source.close()


def main() -> "None":
    config = parse_args()
    setup_logging(config.log_level, config.log_format)

    if config.once:
        try:
            asyncio.run(report_once(config))
        except LogSourceError as exc:
            raise SystemExit(f"Cannot read usage logs: {exc}") from exc
        return

    metrics_updater = MetricsUpdater()
    host, port = _parse_listen_address(config.listen_address)
    start_http_server(port, addr=host)
    logger.info("metrics_server_started", host=host, port=port)

    monitor = build_monitor(config, metrics_updater, ClaudeLogSource(config.log_dir))
    monitor.subscribe(_log_snapshot)

    async def _run() -> "None":
        loop = asyncio.get_running_loop()
        # for SIGINT and SIGTERM, signal the monitor
        # to stop gracefully
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, monitor.stop)

        try:
            await monitor.start_monitoring()
            await monitor.wait()
        finally:
            logger.info("shutting_down")
            await monitor.close()
            logger.info("shutdown_complete")

    try:
        asyncio.run(_run())
    except LogSourceError as exc:
        raise SystemExit(f"Cannot read usage logs: {exc}") from exc


if __name__ == "__main__":
    main()
