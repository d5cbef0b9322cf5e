from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from .errors import InvalidTransition, StoreUnavailable
from .models import BuildRequest, BuildResult, EntryStatus, QueueEntry
from .queue import BuildQueue, new_claim_token
from .utils import utc_iso_seconds_ago, utc_now_iso


def _row_to_entry(row: sqlite3.Row) -> QueueEntry:
    return QueueEntry(
        entry_id=int(row["id"]),
        status=EntryStatus(row["status"]),
        request=BuildRequest(
            clone_url=row["clone_url"],
            branch=row["branch"],
            commit=row["commit_sha"],
        ),
        created_at=row["created_at"],
        results=row["results"],
        claim_token=row["claim_token"],
        claimed_by=row["claimed_by"],
        claimed_at=row["claimed_at"],
        completed_at=row["completed_at"],
        last_error=row["last_error"],
    )


def _expect_one(rowcount: int, entry_id: int, action: str) -> None:
    if rowcount > 1:
        raise InvalidTransition(f"{action} on entry {entry_id} updated {rowcount} rows")
    if rowcount == 0:
        raise InvalidTransition(f"{action} rejected: entry {entry_id} is not in progress under this claim")


class SqliteQueue(BuildQueue):
    """Durable build queue on a single SQLite file.

    The connection is shared by every thread of the process and guarded by a
    lock; each public operation holds the lock for one transaction only, so a
    slow build never blocks other workers. Claims are conditional updates,
    which also keeps them unique across processes sharing the file.
    """

    def __init__(self, db_path: Path, *, timeout_seconds: float = 5.0) -> None:
        self.db_path = db_path
        self._lock = threading.Lock()
        self._closed = False
        try:
            self.conn = sqlite3.connect(str(db_path), timeout=timeout_seconds, check_same_thread=False)
        except sqlite3.OperationalError as exc:
            raise StoreUnavailable(f"cannot open {db_path}: {exc}") from exc
        self.conn.row_factory = sqlite3.Row

    def close(self) -> None:
        with self._lock:
            if not self._closed:
                self._closed = True
                self.conn.close()

    @contextmanager
    def _transaction(self, *, write: bool = True) -> Iterator[sqlite3.Connection]:
        with self._lock:
            if self._closed:
                raise StoreUnavailable(f"store {self.db_path} is closed")
            try:
                if write:
                    # writers hold the database write lock for the whole transaction
                    self.conn.execute("BEGIN IMMEDIATE")
                yield self.conn
                self.conn.commit()
            except sqlite3.OperationalError as exc:
                self._rollback()
                raise StoreUnavailable(str(exc)) from exc
            except BaseException:
                self._rollback()
                raise

    def _rollback(self) -> None:
        if self.conn.in_transaction:
            self.conn.rollback()

    def init_schema(self) -> None:
        with self._transaction(write=False) as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS builds (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    status INTEGER NOT NULL,
                    clone_url TEXT NOT NULL,
                    branch TEXT NOT NULL,
                    commit_sha TEXT,
                    results TEXT,
                    claim_token TEXT,
                    claimed_by TEXT,
                    created_at TEXT NOT NULL,
                    claimed_at TEXT,
                    completed_at TEXT,
                    last_error TEXT
                );

                CREATE TABLE IF NOT EXISTS build_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    build_id INTEGER NOT NULL,
                    event_type TEXT NOT NULL,
                    status_from INTEGER,
                    status_to INTEGER,
                    worker_name TEXT,
                    timestamp TEXT NOT NULL,
                    details_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_builds_status_id
                    ON builds(status, id);
                CREATE INDEX IF NOT EXISTS idx_build_events_build_timestamp
                    ON build_events(build_id, timestamp);
                """
            )

    def _add_event(
        self,
        conn: sqlite3.Connection,
        build_id: int,
        event_type: str,
        *,
        status_from: EntryStatus | None,
        status_to: EntryStatus | None,
        worker_name: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        conn.execute(
            """
            INSERT INTO build_events(
                build_id, event_type, status_from, status_to, worker_name, timestamp, details_json
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                build_id,
                event_type,
                None if status_from is None else int(status_from),
                None if status_to is None else int(status_to),
                worker_name,
                utc_now_iso(),
                json.dumps(details or {}, sort_keys=True),
            ),
        )

    def _fetch(self, conn: sqlite3.Connection, entry_id: int) -> QueueEntry | None:
        row = conn.execute("SELECT * FROM builds WHERE id = ?", (entry_id,)).fetchone()
        if row is None:
            return None
        return _row_to_entry(row)

    def _fetch_existing(self, conn: sqlite3.Connection, entry_id: int) -> QueueEntry:
        entry = self._fetch(conn, entry_id)
        if entry is None:
            raise InvalidTransition(f"entry {entry_id} vanished inside its own transaction")
        return entry

    def add_pending(self, request: BuildRequest) -> QueueEntry:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO builds(status, clone_url, branch, commit_sha, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (int(EntryStatus.PENDING), request.clone_url, request.branch, request.commit, utc_now_iso()),
            )
            entry_id = int(cursor.lastrowid)
            self._add_event(
                conn,
                entry_id,
                "enqueued",
                status_from=None,
                status_to=EntryStatus.PENDING,
                details=request.to_dict(),
            )
            return self._fetch_existing(conn, entry_id)

    def _select_candidate(self, conn: sqlite3.Connection) -> int | None:
        row = conn.execute(
            "SELECT id FROM builds WHERE status = ? ORDER BY id LIMIT 1",
            (int(EntryStatus.PENDING),),
        ).fetchone()
        if row is None:
            return None
        return int(row["id"])

    def _try_claim(
        self,
        conn: sqlite3.Connection,
        entry_id: int,
        claim_token: str,
        worker_name: str | None,
    ) -> bool:
        cursor = conn.execute(
            """
            UPDATE builds
            SET status = ?,
                claim_token = ?,
                claimed_by = ?,
                claimed_at = ?
            WHERE id = ? AND status = ?
            """,
            (
                int(EntryStatus.IN_PROGRESS),
                claim_token,
                worker_name,
                utc_now_iso(),
                entry_id,
                int(EntryStatus.PENDING),
            ),
        )
        if cursor.rowcount > 1:
            raise InvalidTransition(f"claim of entry {entry_id} updated {cursor.rowcount} rows")
        return cursor.rowcount == 1

    def get_pending(self, worker_name: str | None = None) -> QueueEntry | None:
        with self._transaction() as conn:
            while True:
                entry_id = self._select_candidate(conn)
                if entry_id is None:
                    return None
                claim_token = new_claim_token()
                if not self._try_claim(conn, entry_id, claim_token, worker_name):
                    # another claimant got there first
                    continue
                self._add_event(
                    conn,
                    entry_id,
                    "claimed",
                    status_from=EntryStatus.PENDING,
                    status_to=EntryStatus.IN_PROGRESS,
                    worker_name=worker_name,
                )
                return self._fetch(conn, entry_id)

    def add_test_results(self, entry: QueueEntry, result: BuildResult) -> QueueEntry:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE builds
                SET status = ?,
                    results = ?,
                    completed_at = ?
                WHERE id = ? AND status = ? AND claim_token = ?
                """,
                (
                    int(EntryStatus.DONE),
                    result.serialize(),
                    utc_now_iso(),
                    entry.entry_id,
                    int(EntryStatus.IN_PROGRESS),
                    entry.claim_token,
                ),
            )
            _expect_one(cursor.rowcount, entry.entry_id, "commit")
            self._add_event(
                conn,
                entry.entry_id,
                "completed",
                status_from=EntryStatus.IN_PROGRESS,
                status_to=EntryStatus.DONE,
                worker_name=entry.claimed_by,
                details={"pass": result.passed, "returncode": result.returncode},
            )
            return self._fetch_existing(conn, entry.entry_id)

    def record_fault(self, entry: QueueEntry, error: str) -> None:
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE builds SET last_error = ? WHERE id = ? AND status = ? AND claim_token = ?",
                (error, entry.entry_id, int(EntryStatus.IN_PROGRESS), entry.claim_token),
            )
            _expect_one(cursor.rowcount, entry.entry_id, "fault record")
            self._add_event(
                conn,
                entry.entry_id,
                "executor_fault",
                status_from=EntryStatus.IN_PROGRESS,
                status_to=EntryStatus.IN_PROGRESS,
                worker_name=entry.claimed_by,
                details={"error": error},
            )

    def reset_entry(self, entry_id: int) -> QueueEntry:
        """Put a stuck InProgress entry back to Pending. Operator action only."""
        with self._transaction() as conn:
            current = self._fetch(conn, entry_id)
            if current is None:
                raise InvalidTransition(f"entry {entry_id} does not exist")
            if current.status is not EntryStatus.IN_PROGRESS:
                raise InvalidTransition(
                    f"only in-progress entries can be reset, entry {entry_id} is {current.status.name.lower()}"
                )
            cursor = conn.execute(
                """
                UPDATE builds
                SET status = ?,
                    claim_token = NULL,
                    claimed_by = NULL,
                    claimed_at = NULL,
                    last_error = NULL
                WHERE id = ? AND status = ?
                """,
                (int(EntryStatus.PENDING), entry_id, int(EntryStatus.IN_PROGRESS)),
            )
            _expect_one(cursor.rowcount, entry_id, "reset")
            self._add_event(
                conn,
                entry_id,
                "reset",
                status_from=EntryStatus.IN_PROGRESS,
                status_to=EntryStatus.PENDING,
                details={
                    "previous_worker": current.claimed_by,
                    "claimed_at": current.claimed_at,
                    "last_error": current.last_error,
                },
            )
            return self._fetch_existing(conn, entry_id)

    def get_entry(self, entry_id: int) -> QueueEntry | None:
        with self._transaction(write=False) as conn:
            return self._fetch(conn, entry_id)

    def list_entries(self, status: EntryStatus) -> list[QueueEntry]:
        with self._transaction(write=False) as conn:
            rows = conn.execute(
                "SELECT * FROM builds WHERE status = ? ORDER BY id",
                (int(status),),
            ).fetchall()
        return [_row_to_entry(row) for row in rows]

    def list_stuck(self, older_than_seconds: float = 0) -> list[QueueEntry]:
        cutoff = utc_iso_seconds_ago(older_than_seconds)
        with self._transaction(write=False) as conn:
            rows = conn.execute(
                "SELECT * FROM builds WHERE status = ? AND claimed_at <= ? ORDER BY claimed_at",
                (int(EntryStatus.IN_PROGRESS), cutoff),
            ).fetchall()
        return [_row_to_entry(row) for row in rows]

    def list_events(self, entry_id: int) -> list[dict[str, Any]]:
        with self._transaction(write=False) as conn:
            rows = conn.execute(
                """
                SELECT event_type, status_from, status_to, worker_name, timestamp, details_json
                FROM build_events
                WHERE build_id = ?
                ORDER BY id
                """,
                (entry_id,),
            ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            output.append(
                {
                    "event_type": row["event_type"],
                    "status_from": row["status_from"],
                    "status_to": row["status_to"],
                    "worker_name": row["worker_name"],
                    "timestamp": row["timestamp"],
                    "details": json.loads(row["details_json"]),
                }
            )
        return output

    def summary_counts(self) -> dict[str, int]:
        with self._transaction(write=False) as conn:
            rows = conn.execute("SELECT status, COUNT(*) AS count FROM builds GROUP BY status").fetchall()
        output = {status.name.lower(): 0 for status in EntryStatus}
        for row in rows:
            output[EntryStatus(row["status"]).name.lower()] = int(row["count"])
        return output
