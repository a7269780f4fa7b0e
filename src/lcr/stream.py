"""
Progress stream protocol.

Provides:
- LogCollector: append-only StreamLog sequence with a publish hook
- SnapshotChannel: single-writer, fan-out channel of full-state snapshots
- encode_snapshot / NDJSONDecoder: newline-delimited JSON wire format
- read_snapshots: parse a byte stream into ResearchState snapshots
- replay_progress: rebuild node counts from a captured log sequence

Every snapshot is the complete orchestrator state, never a diff, so a reader
that joins late still ends with a self-describing final snapshot.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, AsyncIterator, Callable

import orjson

from lcr.logging import get_logger, log_stream_event
from lcr.types import LogType, ResearchState, StreamLog

logger = get_logger(__name__)

NDJSON_MEDIA_TYPE = "application/x-ndjson"


class LogCollector:
    """Append-only log sequence. Emission order is the total order."""

    def __init__(self, on_log: Callable[[StreamLog], None] | None = None) -> None:
        self.logs: list[StreamLog] = []
        self._on_log = on_log

    def add(self, type: LogType, message: str, data: dict[str, Any] | None = None) -> StreamLog:
        """Append a log, mirror it to diagnostics and fire the publish hook."""
        log = StreamLog(type=type, message=message, data=data)
        self.logs.append(log)
        log_stream_event(log.type.value, message, data)
        if self._on_log is not None:
            self._on_log(log)
        return log


class SnapshotChannel:
    """Fan-out channel of serialized state snapshots.

    One writer publishes; any number of readers iterate lazily. A reader
    receives every snapshot published after it subscribes, preceded by the
    latest snapshot at subscription time. Only that latest snapshot is
    retained by the channel itself, so memory is bounded by how far the
    slowest reader lags behind the writer.
    """

    def __init__(self) -> None:
        self._latest: dict[str, Any] | None = None
        self._published = 0
        self._closed = False
        self._readers: list[asyncio.Queue[dict[str, Any] | None]] = []

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def latest(self) -> dict[str, Any] | None:
        return self._latest

    @property
    def published(self) -> int:
        """Number of snapshots published so far."""
        return self._published

    @property
    def reader_count(self) -> int:
        return len(self._readers)

    def publish(self, state: ResearchState) -> None:
        """Serialize the current state and hand it to every reader.

        Raises:
            RuntimeError: If the channel is already closed.
        """
        if self._closed:
            raise RuntimeError("Cannot publish to a closed channel")
        snapshot = state.to_dict()
        self._latest = snapshot
        self._published += 1
        for queue in self._readers:
            queue.put_nowait(snapshot)

    def close(self) -> None:
        """Mark the stream finished; readers drain and stop."""
        if self._closed:
            return
        self._closed = True
        for queue in self._readers:
            queue.put_nowait(None)
        self._readers.clear()

    def subscribe(self) -> AsyncIterator[dict[str, Any]]:
        """Register a reader now and return its snapshot iterator.

        Registration is immediate, so a reader subscribed before the writer
        starts sees every snapshot.
        """
        queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        if self._latest is not None:
            queue.put_nowait(self._latest)
        if self._closed:
            queue.put_nowait(None)
        else:
            self._readers.append(queue)
        return self._drain(queue)

    async def _drain(self, queue: asyncio.Queue[dict[str, Any] | None]) -> AsyncIterator[dict[str, Any]]:
        try:
            while True:
                snapshot = await queue.get()
                if snapshot is None:
                    return
                yield snapshot
        finally:
            if queue in self._readers:
                self._readers.remove(queue)

    def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        return self.subscribe()

    async def lines(self) -> AsyncIterator[bytes]:
        """Iterate snapshots as NDJSON lines."""
        async for snapshot in self:
            yield encode_snapshot(snapshot)


def encode_snapshot(snapshot: ResearchState | dict[str, Any]) -> bytes:
    """Encode one snapshot as a single NDJSON line."""
    data = snapshot.to_dict() if isinstance(snapshot, ResearchState) else snapshot
    return orjson.dumps(data) + b"\n"


class NDJSONDecoder:
    """Incremental NDJSON decoder.

    Bytes after the last newline are buffered until the line completes;
    blank lines are skipped.
    """

    def __init__(self) -> None:
        self._buffer = b""

    @property
    def pending(self) -> bytes:
        """Buffered bytes of an incomplete trailing line."""
        return self._buffer

    def feed(self, chunk: bytes) -> list[dict[str, Any]]:
        """Add a chunk and return every object completed by it.

        Raises:
            orjson.JSONDecodeError: If a completed line is not valid JSON.
        """
        self._buffer += chunk
        *complete, self._buffer = self._buffer.split(b"\n")
        return [orjson.loads(line) for line in complete if line.strip()]

    def flush(self) -> list[dict[str, Any]]:
        """Decode whatever is left at end of stream.

        A truncated final line is dropped with a warning.
        """
        remainder, self._buffer = self._buffer, b""
        if not remainder.strip():
            return []
        try:
            return [orjson.loads(remainder)]
        except orjson.JSONDecodeError:
            logger.warning("Dropping truncated NDJSON line", size=len(remainder))
            return []


async def read_snapshots(chunks: AsyncIterable[bytes]) -> AsyncIterator[ResearchState]:
    """Parse a chunked NDJSON byte stream into ResearchState snapshots."""
    decoder = NDJSONDecoder()
    async for chunk in chunks:
        for obj in decoder.feed(chunk):
            yield ResearchState.from_dict(obj)
    for obj in decoder.flush():
        yield ResearchState.from_dict(obj)


@dataclass
class ReplayProgress:
    """Progress reconstructed from a log sequence alone."""

    total_nodes: int = 0
    completed_nodes: int = 0
    topics: list[str] = field(default_factory=list)
    report_id: str | None = None
    errored: bool = False


def replay_progress(logs: list[StreamLog]) -> ReplayProgress:
    """Rebuild investigation progress from captured logs, in order.

    totalNodes comes from the plan summary log; a node is completed once an
    analysisProgress log reports findingsCount > 0 for its nodeId.
    """
    progress = ReplayProgress()
    completed: set[str] = set()

    for log in logs:
        data = log.data or {}
        if log.type == LogType.PLAN and "chains" in data:
            chains = data["chains"]
            progress.topics = [c.get("topic", "") for c in chains]
            progress.total_nodes = sum(int(c.get("steps", 0)) for c in chains)
        elif log.type == LogType.ANALYSIS_PROGRESS and "findingsCount" in data:
            if int(data["findingsCount"]) > 0 and data.get("nodeId"):
                completed.add(data["nodeId"])
        elif log.type == LogType.ANALYSIS_PROGRESS and data.get("error"):
            progress.errored = True
        elif log.type == LogType.FINAL_REPORT and data.get("reportId"):
            progress.report_id = data["reportId"]

    progress.completed_nodes = len(completed)
    return progress
