"""A linear graph of async stages joined by bounded queues.

Each stage owns an inbox queue and a fixed pool of workers. A worker takes an
item, awaits the stage handler, and forwards a non-None result to the next
stage's inbox (or to the sink after the last stage). A None result drops the
item; nothing downstream ever sees it.

Because inboxes are bounded, ``submit`` blocks while the first stage is full,
which is what keeps a generator from racing ahead of the stages.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger("sso_transfer.pipeline")

Handler = Callable[[Any], Awaitable[Optional[Any]]]
Sink = Callable[[Any], None]


@dataclass
class StageStats:
    completed: int = 0
    dropped: int = 0
    failed: int = 0


class Stage:
    def __init__(self, name: str, handler: Handler, workers: int = 1) -> None:
        if workers < 1:
            raise ValueError(f"Stage {name} needs at least one worker")
        self.name = name
        self.handler = handler
        self.workers = workers
        self.stats = StageStats()
        self.inbox: Optional[asyncio.Queue] = None
        self._forward: Optional[Callable[[Any], Awaitable[None]]] = None

    def bind(self, capacity: int, forward: Callable[[Any], Awaitable[None]]) -> None:
        self.inbox = asyncio.Queue(maxsize=capacity)
        self._forward = forward

    async def put(self, item: Any) -> None:
        await self.inbox.put(item)

    async def run_worker(self) -> None:
        while True:
            item = await self.inbox.get()
            try:
                await self._process(item)
            finally:
                self.inbox.task_done()

    async def _process(self, item: Any) -> None:
        try:
            result = await self.handler(item)
        except Exception:
            # Handlers drop expected per-record failures themselves; anything
            # reaching here is unexpected, but must not stall the queue.
            self.stats.failed += 1
            logger.exception(
                "Unhandled error in %s stage, dropping %r",
                self.name,
                item,
                extra={"stage": self.name},
            )
            return

        if result is None:
            self.stats.dropped += 1
            return
        self.stats.completed += 1
        await self._forward(result)


class Pipeline:
    """Stages wired in order. Build it, ``start()``, ``submit()``, ``drain()``, ``stop()``."""

    def __init__(
        self,
        stages: list[Stage],
        sink: Optional[Sink] = None,
        capacity: int = 50,
    ) -> None:
        self.stages = stages
        self.sink = sink
        self.capacity = capacity
        self._tasks: list[asyncio.Task] = []

    async def _to_sink(self, item: Any) -> None:
        if self.sink is not None:
            self.sink(item)

    def _wire(self) -> None:
        # back to front, so each stage forwards into an already bound inbox
        forward = self._to_sink
        for stage in reversed(self.stages):
            stage.bind(self.capacity, forward)
            forward = stage.put

    async def start(self) -> None:
        self._wire()
        for stage in self.stages:
            for i in range(stage.workers):
                self._tasks.append(
                    asyncio.create_task(
                        stage.run_worker(), name=f"{stage.name}-worker-{i}"
                    )
                )
        logger.info(
            "Pipeline started: %s",
            " -> ".join(s.name for s in self.stages) or "(no stages)",
        )

    async def submit(self, item: Any) -> None:
        if self.stages:
            await self.stages[0].put(item)
        else:
            await self._to_sink(item)

    async def drain(self) -> None:
        """Wait until every submitted item has left the last stage or been dropped.

        Workers forward an item before marking it done, so joining the inboxes
        in stage order cannot miss an item still in flight.
        """
        for stage in self.stages:
            await stage.inbox.join()

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    def stats(self) -> dict[str, StageStats]:
        return {stage.name: stage.stats for stage in self.stages}
