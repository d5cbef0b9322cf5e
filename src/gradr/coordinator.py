from __future__ import annotations

import logging
import threading
from typing import Any

from .app_logging import get_logger, log_with_fields
from .config import PollConfig
from .executor import BuildExecutor
from .notifications import NotificationSource, run_producer
from .queue import BuildQueue
from .worker import Worker


class Coordinator:
    """Runs a pool of workers and the notification producers against one queue."""

    def __init__(
        self,
        queue: BuildQueue,
        executor: BuildExecutor,
        worker_names: list[str],
        poll: PollConfig,
        sources: list[NotificationSource[Any]] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.queue = queue
        self.logger = get_logger(logger)
        self.workers = [Worker(name, queue, executor, poll, self.logger) for name in worker_names]
        self.sources = list(sources or [])
        self.threads: list[threading.Thread] = []

    def start(self) -> None:
        for worker in self.workers:
            thread = threading.Thread(target=worker.run_forever, name=worker.name, daemon=True)
            thread.start()
            self.threads.append(thread)
        for index, source in enumerate(self.sources, start=1):
            thread = threading.Thread(
                target=run_producer,
                args=(source, self.queue, self.logger),
                name=f"producer-{index}",
                daemon=True,
            )
            thread.start()
            self.threads.append(thread)

    def stop(self) -> None:
        for worker in self.workers:
            worker.stop()

    def join(self, timeout: float | None = None) -> None:
        for thread in self.threads:
            thread.join(timeout)

    def failed_workers(self) -> list[Worker]:
        return [worker for worker in self.workers if worker.error is not None]

    def wait(self) -> None:
        """Block until every worker thread has exited."""
        worker_names = {worker.name for worker in self.workers}
        for thread in self.threads:
            if thread.name in worker_names:
                while thread.is_alive():
                    thread.join(1.0)
        log_with_fields(self.logger, logging.INFO, "coordinator_stopped", workers=len(self.workers))
