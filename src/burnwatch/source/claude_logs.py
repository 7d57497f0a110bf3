import asyncio
import json
from pathlib import Path
from typing import Any

import structlog

from burnwatch.errors import LogSourceError
from burnwatch.normalizer import is_usage_record

logger = structlog.get_logger()

DEFAULT_LOG_DIR = Path("~/.claude/projects")


def discover_jsonl_files(log_dir: "Path") -> "list[Path]":
    """
    finds all transcript files in the log directory, excluding
    subagent logs which duplicate their parent session's usage.
    """
    results: "list[Path]" = []
    for jsonl_file in log_dir.rglob("*.jsonl"):
        if "subagents" in jsonl_file.parts:
            continue
        results.append(jsonl_file)
    results.sort()
    return results


class ClaudeLogSource:
    """
    ClaudeLogSource implements the UsageSource protocol over the
    Claude Code transcript directory. Each file is tailed by byte
    offset so every poll only returns lines appended since the last
    one; an incomplete trailing line is left for the next poll.
    """

    def __init__(self, log_dir: "Path" = DEFAULT_LOG_DIR) -> "None":
        self._log_dir: "Path" = Path(log_dir).expanduser()
        # path -> offset of the first unread byte
        self._offsets: "dict[Path, int]" = {}
        self._read_lock: "asyncio.Lock" = asyncio.Lock()

    @property
    def name(self) -> "str":
        return "claude_logs"

    @property
    def log_dir(self) -> "Path":
        return self._log_dir

    async def read_records(self) -> "list[dict[str, Any]]":
        """
        reads the usage records appended since the previous call.
        File I/O runs in a worker thread so the event loop keeps ticking.
        """
        async with self._read_lock:
            return await asyncio.to_thread(self._read_new_records)

    async def close(self) -> "None":
        self._offsets.clear()

    def _read_new_records(self) -> "list[dict[str, Any]]":
        if not self._log_dir.is_dir():
            raise LogSourceError(f"log directory not found: {self._log_dir}")

        try:
            files = discover_jsonl_files(self._log_dir)
        except OSError as exc:
            raise LogSourceError(f"cannot list {self._log_dir}: {exc}") from exc

        records: "list[dict[str, Any]]" = []
        for path in files:
            try:
                records.extend(self._read_file(path))
            except FileNotFoundError:
                # removed between listing and reading
                self._offsets.pop(path, None)
            except OSError:
                logger.warning("log_file_read_error", path=str(path), exc_info=True)

        logger.debug(
            "claude_logs_read",
            file_count=len(files),
            record_count=len(records),
        )
        return records

    def _read_file(self, path: "Path") -> "list[dict[str, Any]]":
        size = path.stat().st_size
        offset = self._offsets.get(path, 0)

        if size < offset:
            logger.info("log_file_truncated", path=str(path))
            offset = 0
            self._offsets[path] = 0
        if size == offset:
            return []

        with open(path, "rb") as f:
            f.seek(offset)
            chunk = f.read(size - offset)

        last_newline = chunk.rfind(b"\n")
        if last_newline == -1:
            # a single line still being written
            return []
        self._offsets[path] = offset + last_newline + 1

        records: "list[dict[str, Any]]" = []
        for line in chunk[:last_newline].splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
            except ValueError:
                logger.debug("log_line_undecodable", path=str(path))
                continue

            if not is_usage_record(data):
                continue

            # transcripts live in projects/<encoded cwd>/<session>.jsonl
            if "sessionId" in data and not data.get("cwd"):
                data["cwd"] = path.parent.name
            records.append(data)

        return records
