from __future__ import annotations

import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import replace

from .errors import InvalidTransition
from .models import BuildRequest, BuildResult, EntryStatus, QueueEntry
from .utils import utc_now_iso


class BuildQueue(ABC):
    """Shared backlog of build requests.

    Producers call `add_pending`; workers call `get_pending` and then
    `add_test_results` for every entry they claimed. An entry returned by
    `get_pending` is never returned again unless an operator resets it.
    """

    @abstractmethod
    def add_pending(self, request: BuildRequest) -> QueueEntry:
        raise NotImplementedError

    @abstractmethod
    def get_pending(self, worker_name: str | None = None) -> QueueEntry | None:
        """Claim the oldest Pending entry, or return None when there is none.

        None is not an error: the caller is expected to back off and poll
        again. This never waits for new entries to arrive.
        """
        raise NotImplementedError

    @abstractmethod
    def add_test_results(self, entry: QueueEntry, result: BuildResult) -> QueueEntry:
        raise NotImplementedError

    @abstractmethod
    def record_fault(self, entry: QueueEntry, error: str) -> None:
        """Attach an executor fault to a claimed entry; it stays InProgress."""
        raise NotImplementedError


def new_claim_token() -> str:
    return uuid.uuid4().hex


class MemoryQueue(BuildQueue):
    """Process-local queue, for tests and single-process embedding."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[int, QueueEntry] = {}
        self._next_id = 1

    def add_pending(self, request: BuildRequest) -> QueueEntry:
        with self._lock:
            entry = QueueEntry(
                entry_id=self._next_id,
                status=EntryStatus.PENDING,
                request=request,
                created_at=utc_now_iso(),
            )
            self._entries[entry.entry_id] = entry
            self._next_id += 1
            return replace(entry)

    def get_pending(self, worker_name: str | None = None) -> QueueEntry | None:
        with self._lock:
            for entry in self._entries.values():
                if entry.status is not EntryStatus.PENDING:
                    continue
                entry.status = EntryStatus.IN_PROGRESS
                entry.claim_token = new_claim_token()
                entry.claimed_by = worker_name
                entry.claimed_at = utc_now_iso()
                return replace(entry)
            return None

    def add_test_results(self, entry: QueueEntry, result: BuildResult) -> QueueEntry:
        with self._lock:
            stored = self._claimed(entry)
            stored.status = EntryStatus.DONE
            stored.results = result.serialize()
            stored.completed_at = utc_now_iso()
            return replace(stored)

    def record_fault(self, entry: QueueEntry, error: str) -> None:
        with self._lock:
            self._claimed(entry).last_error = error

    def get_entry(self, entry_id: int) -> QueueEntry | None:
        with self._lock:
            stored = self._entries.get(entry_id)
            return replace(stored) if stored is not None else None

    def _claimed(self, entry: QueueEntry) -> QueueEntry:
        stored = self._entries.get(entry.entry_id)
        if (
            stored is None
            or stored.status is not EntryStatus.IN_PROGRESS
            or stored.claim_token != entry.claim_token
        ):
            raise InvalidTransition(f"entry {entry.entry_id} is not in progress under this claim")
        return stored
