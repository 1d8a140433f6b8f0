"""Owns the background workers and their shared cancel event."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol

logger = logging.getLogger("pg_billing.worker")


class Worker(Protocol):
    async def start(self, cancel_event: asyncio.Event) -> None:
        ...

    def stop(self) -> None:
        ...

    def health_check(self) -> Dict[str, Any]:
        ...


class WorkerManager:
    def __init__(self, shutdown_grace: float = 2.0, restart_pause: float = 1.0):
        self.shutdown_grace = shutdown_grace
        self.restart_pause = restart_pause
        self._workers: List[Worker] = []
        self._tasks: List[asyncio.Task] = []
        self._cancel_event: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def register_worker(self, worker: Worker) -> None:
        self._workers.append(worker)

    async def start_all(self) -> None:
        if self.running:
            logger.warning("[workers] start requested while workers are running; ignoring")
            return
        self._cancel_event = asyncio.Event()
        self._tasks = [
            asyncio.create_task(worker.start(self._cancel_event), name=f"worker_{i}")
            for i, worker in enumerate(self._workers)
        ]
        logger.info(f"[workers] started {len(self._tasks)} workers")

    async def stop_all(self) -> None:
        """Signal every worker, wait for all of them to return, then allow the grace period."""
        if self._cancel_event is not None:
            self._cancel_event.set()
        for worker in self._workers:
            worker.stop()

        if self._tasks:
            results = await asyncio.gather(*self._tasks, return_exceptions=True)
            for i, result in enumerate(results):
                if isinstance(result, BaseException) and not isinstance(result, asyncio.CancelledError):
                    logger.error(f"[workers] worker_{i} exited with error: {result}")
        self._tasks = []

        if self.shutdown_grace > 0:
            await asyncio.sleep(self.shutdown_grace)
        logger.info("[workers] all workers stopped")

    async def restart_all(self) -> None:
        await self.stop_all()
        if self.restart_pause > 0:
            await asyncio.sleep(self.restart_pause)
        await self.start_all()

    def get_worker_status(self) -> Dict[str, Dict[str, Any]]:
        return {f"worker_{i}": worker.health_check() for i, worker in enumerate(self._workers)}
