# celine/pubsub/core/registry.py
"""
Worker registry – at most one worker per topic.
"""
from __future__ import annotations

import logging
import threading
from typing import Iterator

from celine.pubsub.core.worker import Worker

logger = logging.getLogger(__name__)


class WorkerRegistry:
    """
    Lock-guarded mapping from topic name to worker.

    Registration is create-if-absent and never overwrites. Destroy removes
    the worker before stopping it, so no caller can look up a registered but
    stopped worker. Critical sections never await.
    """

    def __init__(self) -> None:
        self._workers: dict[str, Worker] = {}
        self._lock = threading.RLock()

    def register(self, worker: Worker) -> tuple[Worker, bool]:
        """
        Register ``worker`` under its topic unless one is already present.

        Returns:
            ``(worker, True)`` when newly registered, ``(existing, False)``
            otherwise.
        """
        with self._lock:
            existing = self._workers.get(worker.topic)
            if existing is not None:
                return existing, False
            self._workers[worker.topic] = worker

        logger.info("Registered worker: %s", worker.topic)
        return worker, True

    def get(self, topic: str) -> tuple[Worker | None, bool]:
        with self._lock:
            worker = self._workers.get(topic)
        return worker, worker is not None

    async def destroy(self, topic: str) -> bool:
        """
        Remove and stop the worker for ``topic``.

        Returns:
            True if a worker was registered, False otherwise.
        """
        with self._lock:
            worker = self._workers.pop(topic, None)

        if worker is None:
            return False

        await worker.stop()
        logger.info("Destroyed worker: %s", topic)
        return True

    def list(self) -> list[Worker]:
        """Snapshot of the registered workers, in no particular order."""
        with self._lock:
            return list(self._workers.values())

    def topics(self) -> list[str]:
        with self._lock:
            return list(self._workers.keys())

    def __iter__(self) -> Iterator[Worker]:
        return iter(self.list())

    def __contains__(self, topic: str) -> bool:
        with self._lock:
            return topic in self._workers

    def __len__(self) -> int:
        with self._lock:
            return len(self._workers)
