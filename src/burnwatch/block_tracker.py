import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import structlog

from burnwatch.errors import MalformedRecord
from burnwatch.models import SessionBlock, TokenCounts, UsageEntry

logger = structlog.get_logger()

DEFAULT_WINDOW = timedelta(hours=5)

# (project_path, session_id)
BlockKey = tuple[str, str]


def make_block_id(project_path: "str", session_id: "str", start_time: "datetime") -> "str":
    """
    constructs a stable block id from the block's key and start instant.
    """
    return f"{project_path}|{session_id}|{int(start_time.timestamp() * 1000)}"


@dataclass(slots=True)
class _OpenBlock:
    """
    mutable state of an open block, private to the tracker.
    """

    block_id: "str"
    project: "str"
    project_path: "str"
    session_id: "str"
    start_time: "datetime"
    end_time: "datetime"
    entries: "list[UsageEntry]" = field(default_factory=list)
    tokens: "TokenCounts" = TokenCounts()
    cost_usd: "float" = 0.0

    def add(self, entry: "UsageEntry") -> "None":
        self.entries.append(entry)
        self.tokens = self.tokens.plus(entry)
        self.cost_usd += entry.cost_usd

    def view(self, is_active: "bool" = True) -> "SessionBlock":
        return SessionBlock(
            block_id=self.block_id,
            project=self.project,
            project_path=self.project_path,
            session_id=self.session_id,
            start_time=self.start_time,
            end_time=self.end_time,
            entries=tuple(self.entries),
            tokens=self.tokens,
            cost_usd=self.cost_usd,
            is_active=is_active,
        )


class SessionBlockTracker:
    """
    SessionBlockTracker assigns usage entries to fixed-duration billing
    windows, one open window per (project, session) at most.

    A window opens at the timestamp of the first entry for its key and
    ends exactly one window duration later. It closes either when an
    entry at or past its end arrives for the same key (which opens the
    next window) or when expire() sees wall-clock time past its end.
    Closed windows are kept, immutable, for historical summaries.

    The whole block map is guarded by one lock so a block is always
    observed as a whole. Every block handed out is a frozen view.
    """

    def __init__(
        self,
        window: "timedelta" = DEFAULT_WINDOW,
        idle_grace: "timedelta" = timedelta(0),
    ) -> "None":
        if window <= timedelta(0):
            raise ValueError("window must be positive")
        if idle_grace < timedelta(0):
            raise ValueError("idle_grace must not be negative")

        self._window = window
        self._idle_grace = idle_grace
        self._lock: "threading.Lock" = threading.Lock()
        self._open: "dict[BlockKey, _OpenBlock]" = {}
        self._closed: "list[SessionBlock]" = []
        # end of the most recently closed block per key, used to reject
        # late entries that would overlap an already closed window
        self._last_closed_end: "dict[BlockKey, datetime]" = {}

    @property
    def window(self) -> "timedelta":
        return self._window

    def add(self, entry: "UsageEntry") -> "SessionBlock":
        """
        applies an entry and returns a view of the block it joined.
        Raises MalformedRecord when the entry falls before the window
        its key is currently in.
        """
        key: "BlockKey" = (entry.project_path, entry.session_id)

        with self._lock:
            block = self._open.get(key)

            if block is not None and entry.timestamp < block.start_time:
                raise MalformedRecord(
                    "out_of_window",
                    f"entry {entry.entry_id} at {entry.timestamp.isoformat()} "
                    f"precedes block {block.block_id}",
                )

            if block is not None and entry.timestamp >= block.end_time:
                self._close(key, block, reason="superseded")
                block = None

            if block is None:
                closed_end = self._last_closed_end.get(key)
                if closed_end is not None and entry.timestamp < closed_end:
                    raise MalformedRecord(
                        "out_of_window",
                        f"entry {entry.entry_id} at {entry.timestamp.isoformat()} "
                        f"falls in a closed block ending {closed_end.isoformat()}",
                    )
                block = self._open_block(key, entry)

            block.add(entry)
            return block.view()

    def expire(self, now: "datetime") -> "list[SessionBlock]":
        """
        closes every open block whose end (plus the idle grace period)
        is at or before now. Returns the closed blocks.
        """
        closed: "list[SessionBlock]" = []
        with self._lock:
            for key, block in list(self._open.items()):
                if now >= block.end_time + self._idle_grace:
                    closed.append(self._close(key, block, reason="idle"))
        return closed

    def open_blocks(self) -> "list[SessionBlock]":
        """
        returns the open blocks, oldest start first.
        """
        with self._lock:
            blocks = [b.view() for b in self._open.values()]
        blocks.sort(key=lambda b: (b.start_time, b.block_id))
        return blocks

    def closed_blocks(self) -> "list[SessionBlock]":
        with self._lock:
            return list(self._closed)

    def blocks_for_project(self, project: "str") -> "list[SessionBlock]":
        """
        open and closed blocks of one project, matched by project path
        or by display label, oldest start first.
        """
        with self._lock:
            blocks = [b for b in self._closed if project in (b.project, b.project_path)]
            blocks.extend(
                b.view()
                for b in self._open.values()
                if project in (b.project, b.project_path)
            )
        blocks.sort(key=lambda b: (b.start_time, b.block_id))
        return blocks

    def detect_gaps(
        self,
        project: "str",
        gap_threshold: "timedelta | None" = None,
    ) -> "list[SessionBlock]":
        """
        returns empty gap blocks spanning the idle stretches between
        consecutive blocks of a project that are longer than
        gap_threshold, which defaults to the window length.
        """
        threshold = self._window if gap_threshold is None else gap_threshold
        blocks = self.blocks_for_project(project)

        gaps: "list[SessionBlock]" = []
        for current, following in zip(blocks, blocks[1:]):
            if following.start_time - current.end_time <= threshold:
                continue
            gaps.append(
                SessionBlock(
                    block_id="gap|" + make_block_id(
                        current.project_path, current.session_id, current.end_time
                    ),
                    project=current.project,
                    project_path=current.project_path,
                    session_id=current.session_id,
                    start_time=current.end_time,
                    end_time=following.start_time,
                    is_active=False,
                    is_gap=True,
                )
            )
        return gaps

    def entries(self) -> "list[UsageEntry]":
        """
        every retained entry, from closed and open blocks.
        """
        with self._lock:
            result = [e for b in self._closed for e in b.entries]
            for block in self._open.values():
                result.extend(block.entries)
        return result

    def evict_closed_before(self, cutoff: "datetime") -> "int":
        """
        drops closed blocks that ended before cutoff.
        Returns the number of evicted blocks.
        """
        with self._lock:
            kept = [b for b in self._closed if b.end_time >= cutoff]
            evicted = len(self._closed) - len(kept)
            self._closed = kept
            for key, end in list(self._last_closed_end.items()):
                if end < cutoff:
                    del self._last_closed_end[key]
            return evicted

    def clear(self) -> "None":
        with self._lock:
            self._open.clear()
            self._closed.clear()
            self._last_closed_end.clear()

    def _open_block(self, key: "BlockKey", entry: "UsageEntry") -> "_OpenBlock":
        start = entry.timestamp
        block = _OpenBlock(
            block_id=make_block_id(entry.project_path, entry.session_id, start),
            project=entry.project,
            project_path=entry.project_path,
            session_id=entry.session_id,
            start_time=start,
            end_time=start + self._window,
        )
        self._open[key] = block
        logger.debug(
            "block_opened",
            block_id=block.block_id,
            project=block.project,
            session_id=block.session_id,
            end_time=block.end_time.isoformat(),
        )
        return block

    def _close(self, key: "BlockKey", block: "_OpenBlock", reason: "str") -> "SessionBlock":
        closed = block.view(is_active=False)
        del self._open[key]
        self._closed.append(closed)
        self._last_closed_end[key] = closed.end_time
        logger.info(
            "block_closed",
            block_id=closed.block_id,
            project=closed.project,
            reason=reason,
            entries=len(closed.entries),
            tokens=closed.tokens.total,
            cost_usd=round(closed.cost_usd, 6),
        )
        return closed
