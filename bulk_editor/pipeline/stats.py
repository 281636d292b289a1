"""Run statistics owned by a single aggregator task.

Stage workers never touch the counters; they send deltas over a queue and
the aggregator applies them in order.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import fields

from bulk_editor.pipeline.types import RunStatistics

logger = logging.getLogger(__name__)

_COUNTERS = frozenset(f.name for f in fields(RunStatistics) if f.name != "stage_seconds")
_STOP = object()


class StatisticsAggregator:
    def __init__(self) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._stats = RunStatistics()
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="stats-aggregator")

    def add(self, **counts: float) -> None:
        unknown = set(counts) - _COUNTERS
        if unknown:
            raise ValueError(f"unknown statistics fields: {sorted(unknown)}")
        self._queue.put_nowait(("add", counts))

    def add_stage_time(self, stage: str, seconds: float) -> None:
        self._queue.put_nowait(("stage", (stage, seconds)))

    async def close(self) -> RunStatistics:
        """Drain pending deltas, stop the task and return the final totals."""
        if self._task is None:
            self._apply_pending()
            return self._stats
        await self._queue.put(_STOP)
        await self._task
        return self._stats

    def snapshot(self) -> RunStatistics:
        return RunStatistics(**{f.name: getattr(self._stats, f.name) for f in fields(RunStatistics)})

    def _apply(self, msg: object) -> None:
        kind, payload = msg  # type: ignore[misc]
        if kind == "add":
            for name, value in payload.items():
                setattr(self._stats, name, getattr(self._stats, name) + value)
        else:
            stage, seconds = payload
            self._stats.stage_seconds[stage] = self._stats.stage_seconds.get(stage, 0.0) + seconds

    def _apply_pending(self) -> None:
        while not self._queue.empty():
            msg = self._queue.get_nowait()
            if msg is not _STOP:
                self._apply(msg)

    async def _run(self) -> None:
        while True:
            msg = await self._queue.get()
            if msg is _STOP:
                return
            self._apply(msg)
