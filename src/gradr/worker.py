from __future__ import annotations

import logging
import threading

from .app_logging import get_logger, log_with_fields
from .config import PollConfig
from .errors import ExecutorFault, StoreUnavailable
from .executor import BuildExecutor
from .models import StepOutcome
from .queue import BuildQueue


def worker_loop_step(
    queue: BuildQueue,
    executor: BuildExecutor,
    *,
    worker_name: str | None = None,
    logger: logging.Logger | None = None,
) -> StepOutcome:
    """Claim at most one entry, build it, and commit the result.

    Returns IDLE when nothing was claimable; sleeping before the next call is
    up to the caller. Any error from the executor is recorded on the entry and
    raised as ExecutorFault, leaving the entry InProgress until an operator
    resets it.
    """
    logger = get_logger(logger)
    entry = queue.get_pending(worker_name)
    if entry is None:
        return StepOutcome.IDLE

    request = entry.get_base()
    log_with_fields(
        logger,
        logging.INFO,
        "entry_claimed",
        entry_id=entry.entry_id,
        worker=worker_name,
        clone_url=request.clone_url,
        branch=request.branch,
    )
    try:
        result = executor.whole_build(request)
    except Exception as exc:
        error = str(exc) if isinstance(exc, ExecutorFault) else f"{type(exc).__name__}: {exc}"
        queue.record_fault(entry, error)
        log_with_fields(
            logger,
            logging.ERROR,
            "build_fault",
            entry_id=entry.entry_id,
            worker=worker_name,
            error=error,
        )
        if isinstance(exc, ExecutorFault):
            raise
        raise ExecutorFault(error) from exc

    queue.add_test_results(entry, result)
    log_with_fields(
        logger,
        logging.INFO,
        "build_completed",
        entry_id=entry.entry_id,
        worker=worker_name,
        passed=result.passed,
        returncode=result.returncode,
    )
    return StepOutcome.PASSED if result.passed else StepOutcome.FAILED


class Worker:
    def __init__(
        self,
        name: str,
        queue: BuildQueue,
        executor: BuildExecutor,
        poll: PollConfig,
        logger: logging.Logger | None = None,
    ) -> None:
        self.name = name
        self.queue = queue
        self.executor = executor
        self.poll = poll
        self.logger = get_logger(logger)
        self._stop = threading.Event()
        self.error: BaseException | None = None

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        self._stop.set()

    def run_once(self) -> StepOutcome:
        return worker_loop_step(self.queue, self.executor, worker_name=self.name, logger=self.logger)

    def run_until_idle(self) -> list[StepOutcome]:
        outcomes: list[StepOutcome] = []
        while not self.stopped:
            outcome = self.run_once()
            if outcome is StepOutcome.IDLE:
                break
            outcomes.append(outcome)
        return outcomes

    def run_forever(self) -> None:
        log_with_fields(self.logger, logging.INFO, "worker_started", worker=self.name)
        try:
            self._loop()
        except BaseException as exc:
            self.error = exc
            log_with_fields(
                self.logger,
                logging.CRITICAL,
                "worker_crashed",
                worker=self.name,
                error=f"{type(exc).__name__}: {exc}",
            )
            raise
        log_with_fields(self.logger, logging.INFO, "worker_stopped", worker=self.name)

    def _loop(self) -> None:
        while not self.stopped:
            try:
                outcome = self.run_once()
            except StoreUnavailable as exc:
                log_with_fields(
                    self.logger,
                    logging.WARNING,
                    "store_unavailable",
                    worker=self.name,
                    error=str(exc),
                    backoff_seconds=self.poll.error_backoff_seconds,
                )
                self._stop.wait(self.poll.error_backoff_seconds)
                continue
            except ExecutorFault:
                self._stop.wait(self.poll.error_backoff_seconds)
                continue
            if outcome is StepOutcome.IDLE:
                self._stop.wait(self.poll.interval_seconds)
