import asyncio
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

import structlog

from burnwatch.billing import current_block_status, project_token_stats, summarize_billing_blocks
from burnwatch.block_tracker import DEFAULT_WINDOW, SessionBlockTracker
from burnwatch.burn_rate import calculate_burn_rate
from burnwatch.classifier import DEFAULT_THRESHOLDS, BurnRateThresholds
from burnwatch.errors import LogSourceError, MalformedRecord
from burnwatch.metrics import MetricsUpdater
from burnwatch.models import (
    BillingBlockSummary,
    BurnRate,
    BurnRateLevel,
    CurrentBlockStatus,
    ProjectStats,
    ProjectTokenStats,
    RealtimeStats,
    SessionBlock,
    UsageEntry,
)
from burnwatch.normalizer import normalize
from burnwatch.record_tracker import RecordTracker
from burnwatch.source.base import UsageSource

logger = structlog.get_logger()

MIN_REFRESH_INTERVAL = 1.0
MAX_REFRESH_INTERVAL = 60.0

# keep dedup keys and closed blocks for a week by default
_DEFAULT_RETENTION = timedelta(days=7)

RawRecord = Mapping[str, Any] | str | bytes
Subscriber = Callable[[RealtimeStats], None]
Clock = Callable[[], datetime]


def utc_now() -> "datetime":
    return datetime.now(timezone.utc)


def clamp_refresh_interval(seconds: "float") -> "float":
    return max(MIN_REFRESH_INTERVAL, min(MAX_REFRESH_INTERVAL, seconds))


@dataclass(frozen=True, slots=True)
class IngestResult:
    accepted: "int"
    duplicates: "int"
    rejected: "int"


class RealtimeMonitor:
    """
    RealtimeMonitor is the single owner of the live billing state. It
    feeds usage records through the normalizer into the block tracker,
    and on every aggregation cycle expires finished blocks, computes a
    burn rate per open block and publishes an immutable RealtimeStats
    snapshot to subscribers. Readers only ever see published snapshots.

    When a source is attached, start_monitoring() loads it once and
    then polls it on a fixed interval until stop() is called.
    """

    def __init__(
        self,
        source: "UsageSource | None" = None,
        metrics: "MetricsUpdater | None" = None,
        record_tracker: "RecordTracker | None" = None,
        window: "timedelta" = DEFAULT_WINDOW,
        thresholds: "BurnRateThresholds" = DEFAULT_THRESHOLDS,
        refresh_interval: "float" = 1.0,
        idle_grace: "timedelta" = timedelta(0),
        retention: "timedelta" = _DEFAULT_RETENTION,
        strict: "bool" = False,
        clock: "Clock" = utc_now,
    ) -> "None":
        self._source = source
        self._metrics = metrics
        self._record_tracker = record_tracker or RecordTracker()
        self._tracker = SessionBlockTracker(window, idle_grace)
        self._thresholds = thresholds
        self._interval = clamp_refresh_interval(refresh_interval)
        self._retention = retention
        self._strict = strict
        self._clock = clock

        # guards publication order; reentrant so a subscriber may ingest
        self._publish_lock: "threading.RLock" = threading.RLock()
        self._snapshot: "RealtimeStats | None" = None
        self._subscribers: "list[Subscriber]" = []

        self._stop_event: "asyncio.Event" = asyncio.Event()
        self._start_lock: "asyncio.Lock" = asyncio.Lock()
        self._task: "asyncio.Task[None] | None" = None

    @property
    def is_running(self) -> "bool":
        return self._task is not None and not self._task.done()

    @property
    def refresh_interval(self) -> "float":
        return self._interval

    # ingestion

    def ingest(self, raw: "RawRecord") -> "UsageEntry | None":
        """
        applies one raw usage record and publishes a fresh snapshot.
        Returns the entry, or None when it was already applied before.
        Raises MalformedRecord for unparsable or out-of-window records.
        """
        try:
            entry = normalize(raw)
        except MalformedRecord as exc:
            self._reject(exc)
            raise

        applied = self._apply(entry)
        if applied is not None:
            self.refresh()
        return applied

    def ingest_many(
        self,
        raws: "Iterable[RawRecord]",
        publish: "bool" = True,
    ) -> "IngestResult":
        """
        applies a batch of raw records in timestamp order. Rejected
        records are counted and logged and never abort the batch.
        Publishes a single snapshot at the end when anything was applied.
        """
        entries: "list[UsageEntry]" = []
        rejected = 0
        for raw in raws:
            try:
                entries.append(normalize(raw))
            except MalformedRecord as exc:
                self._reject(exc)
                rejected += 1

        # block boundaries depend on per-session arrival order
        entries.sort(key=lambda e: e.timestamp)

        accepted = 0
        duplicates = 0
        for entry in entries:
            try:
                applied = self._apply(entry)
            except MalformedRecord:
                rejected += 1
                continue
            if applied is None:
                duplicates += 1
            else:
                accepted += 1

        if accepted and publish:
            self.refresh()
        return IngestResult(accepted=accepted, duplicates=duplicates, rejected=rejected)

    def _apply(self, entry: "UsageEntry") -> "UsageEntry | None":
        if not self._record_tracker.is_new(entry.dedup_key, entry.timestamp):
            logger.debug("duplicate_entry_skipped", entry_id=entry.entry_id)
            return None

        try:
            self._tracker.add(entry)
        except MalformedRecord as exc:
            # not applied, so it must not count as seen
            self._record_tracker.forget(entry.dedup_key)
            self._reject(exc)
            raise

        if self._metrics is not None:
            self._metrics.update_usage(entry)
        return entry

    def _reject(self, exc: "MalformedRecord") -> "None":
        logger.warning("record_rejected", reason=exc.reason, detail=exc.detail)
        if self._metrics is not None:
            self._metrics.inc_malformed(exc.reason)

    # aggregation

    def refresh(self) -> "RealtimeStats":
        """
        runs one aggregation cycle and publishes its snapshot.
        """
        cycle_start = time.monotonic()

        with self._publish_lock:
            now = self._clock()
            previous = self._snapshot
            # snapshots never go back in time, even if the clock does
            if previous is not None and now < previous.last_update:
                now = previous.last_update

            self._tracker.expire(now)
            blocks = self._tracker.open_blocks()

            rates: "list[tuple[str, BurnRate]]" = []
            levels: "dict[str, BurnRateLevel]" = {}
            total_tokens_per_minute = 0.0
            total_cost_per_hour = 0.0
            for block in blocks:
                rate = calculate_burn_rate(block, now, strict=self._strict)
                rates.append((block.block_id, rate))
                levels[block.block_id] = self._thresholds.level_for(
                    rate.tokens_per_minute_for_indicator
                )
                total_tokens_per_minute += rate.tokens_per_minute
                total_cost_per_hour += rate.cost_per_hour

            stats = RealtimeStats(
                active_blocks=tuple(blocks),
                burn_rates=tuple(rates),
                total_active_tokens_per_minute=total_tokens_per_minute,
                total_active_cost_per_hour=total_cost_per_hour,
                last_update=now,
            )
            self._snapshot = stats

            if self._metrics is not None:
                self._metrics.update_snapshot(stats, levels)
                self._metrics.observe_refresh_duration(time.monotonic() - cycle_start)

            for callback in list(self._subscribers):
                try:
                    callback(stats)
                except Exception:
                    logger.exception("subscriber_error", callback=repr(callback))

        return stats

    def get_realtime_stats(self) -> "RealtimeStats":
        """
        returns the most recently published snapshot, computing the
        first one on demand.
        """
        snapshot = self._snapshot
        if snapshot is None:
            return self.refresh()
        return snapshot

    def subscribe(self, callback: "Subscriber") -> "Callable[[], None]":
        """
        registers a callback invoked with every published snapshot.
        Returns a function that removes the subscription.
        """
        with self._publish_lock:
            self._subscribers.append(callback)

        def unsubscribe() -> "None":
            with self._publish_lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    # views

    def get_current_block_status(self) -> "CurrentBlockStatus":
        """
        projects the most recently started open block, if any.
        """
        now = self._clock()
        blocks = self._tracker.open_blocks()
        latest = max(blocks, key=lambda b: b.start_time, default=None)
        return current_block_status(latest, now, self._thresholds, strict=self._strict)

    def get_billing_blocks_summary(
        self,
        entries: "Iterable[UsageEntry] | None" = None,
    ) -> "BillingBlockSummary":
        """
        summarizes the given entries, or every retained entry when
        none are given, into account-wide billing blocks.
        """
        if entries is None:
            entries = self._tracker.entries()
        return summarize_billing_blocks(entries, self._clock(), self._tracker.window)

    def get_project_token_stats(self) -> "list[ProjectTokenStats]":
        entries = self._tracker.entries()
        summary = summarize_billing_blocks(entries, self._clock(), self._tracker.window)
        current = summary.current_block
        window = (current.start_time, current.end_time) if current else None
        return project_token_stats(entries, window)

    def get_project_stats(self, project: "str") -> "ProjectStats":
        """
        rolls up every retained block of one project, given by path or
        by display label, with the burn rate of its newest open block.
        """
        now = self._clock()
        blocks = self._tracker.blocks_for_project(project)
        active = [b for b in blocks if b.is_active]
        rate = (
            calculate_burn_rate(active[-1], now, strict=self._strict) if active else None
        )
        return ProjectStats(
            project=project,
            blocks=tuple(blocks),
            active_burn_rate=rate,
            total_cost=sum(b.cost_usd for b in blocks),
            total_tokens=sum(b.tokens.total for b in blocks),
        )

    def get_project_gaps(self, project: "str") -> "list[SessionBlock]":
        return self._tracker.detect_gaps(project)

    # lifecycle

    async def start_monitoring(self) -> "bool":
        """
        loads the source and starts the refresh loop in the background.
        Calling it while monitoring is already running does nothing and
        returns False. Raises LogSourceError if the source can't be read.
        """
        async with self._start_lock:
            if self.is_running:
                logger.warning("monitoring_already_running")
                return False

            self._stop_event.clear()
            if self._source is not None:
                await self._poll_source(raise_errors=True)
            self.refresh()

            self._task = asyncio.create_task(self.run())
            logger.info(
                "monitoring_started",
                source=self._source.name if self._source else None,
                refresh_interval=self._interval,
            )
            return True

    def stop(self) -> "None":
        """
        signals the refresh loop to stop after the current cycle.
        """
        self._stop_event.set()

    async def wait(self) -> "None":
        if self._task is not None:
            await self._task

    async def close(self) -> "None":
        """
        stops the loop, waits for it and closes the source.
        """
        self.stop()
        await self.wait()
        if self._source is not None:
            await self._source.close()
        logger.info("monitoring_stopped")

    async def run(self) -> "None":
        """
        runs the refresh loop. Runs until stop() is called.
        """
        while not self._stop_event.is_set():
            await self._tick()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except TimeoutError:
                pass

    async def _tick(self) -> "None":
        if self._source is not None:
            await self._poll_source(raise_errors=False)

        # evict old history to prevent unbounded memory growth
        cutoff = self._clock() - self._retention
        evicted_keys = self._record_tracker.evict_before(cutoff)
        evicted_blocks = self._tracker.evict_closed_before(cutoff)
        if evicted_keys or evicted_blocks:
            logger.debug(
                "history_evicted",
                keys=evicted_keys,
                blocks=evicted_blocks,
                cutoff=cutoff.isoformat(),
            )

        self.refresh()

    async def _poll_source(self, raise_errors: "bool") -> "None":
        assert self._source is not None
        try:
            records = await self._source.read_records()
        except LogSourceError:
            if self._metrics is not None:
                self._metrics.inc_source_error(self._source.name)
            if raise_errors:
                raise
            # keep serving the last snapshot
            logger.exception("source_read_error", source=self._source.name)
            return

        if not records:
            return

        result = self.ingest_many(records, publish=False)
        logger.info(
            "records_ingested",
            source=self._source.name,
            accepted=result.accepted,
            duplicates=result.duplicates,
            rejected=result.rejected,
        )
