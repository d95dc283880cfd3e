"""SQLite-backed job store so jobs survive restarts and other CLI processes."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from threading import RLock
from typing import Iterator, Sequence

from ..errors import FatalStoreError, InvalidJobStateError, JobNotFoundError
from ..infra.storage import SQLiteManager
from .models import (
    CommitOutcome,
    ExtractionResult,
    Job,
    JobCounts,
    JobStatus,
    ResultStatus,
    WorkItem,
)
from .store import JobStore, new_job_id, rotate_after, utcnow

_ACTIVE = (JobStatus.PENDING.value, JobStatus.PROCESSING.value)


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteJobStore(JobStore):
    """Job store persisted in two tables: ``jobs`` and ``job_items``."""

    def __init__(self, manager: SQLiteManager, db_path: Path) -> None:
        self.manager = manager
        self.db_path = db_path
        self._lock = RLock()
        try:
            self._conn = self.manager.connect(db_path)
        except sqlite3.Error as exc:
            raise FatalStoreError(f"Cannot open job store {db_path}: {exc}") from exc

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise FatalStoreError(f"Job store unavailable: {exc}") from exc
            try:
                yield self._conn
            except sqlite3.Error as exc:
                self._conn.execute("ROLLBACK")
                raise FatalStoreError(f"Job store unavailable: {exc}") from exc
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                try:
                    self._conn.execute("COMMIT")
                except sqlite3.Error as exc:
                    raise FatalStoreError(f"Job store commit failed: {exc}") from exc

    # ------------------------------------------------------------------
    def create_job(self, identifiers: Sequence[str]) -> Job:
        job_id = new_job_id()
        now = utcnow()
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO jobs(id, status, total, created_at) VALUES (?, ?, ?, ?)",
                (job_id, JobStatus.PENDING.value, len(identifiers), _ts(now)),
            )
            conn.executemany(
                "INSERT INTO job_items(job_id, slot, identifier) VALUES (?, ?, ?)",
                [(job_id, slot, identifier) for slot, identifier in enumerate(identifiers)],
            )
            return self._snapshot(conn, job_id)

    def get_job(self, job_id: str, include_results: bool = False) -> Job:
        with self._transaction() as conn:
            return self._snapshot(conn, job_id, include_results)

    def list_jobs(
        self, status: JobStatus | None = None, archived: bool | None = False
    ) -> list[Job]:
        clauses: list[str] = []
        params: list[str] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if archived is not None:
            clauses.append("archived_at IS NOT NULL" if archived else "archived_at IS NULL")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT id FROM jobs {where} ORDER BY created_at, rowid", params
            ).fetchall()
            return [self._snapshot(conn, row["id"]) for row in rows]

    def claim_next(self, after_job_id: str | None = None) -> WorkItem | None:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT id FROM jobs WHERE status IN (?, ?) ORDER BY created_at, rowid",
                _ACTIVE,
            ).fetchall()
            for job_id in rotate_after([row["id"] for row in rows], after_job_id):
                candidate = conn.execute(
                    """
                    SELECT slot, identifier FROM job_items
                    WHERE job_id = ? AND state = 'pending'
                      AND identifier NOT IN (
                          SELECT identifier FROM job_items
                          WHERE job_id = ? AND state = 'in_flight'
                      )
                    ORDER BY slot
                    LIMIT 1
                    """,
                    (job_id, job_id),
                ).fetchone()
                if candidate is None:
                    continue
                conn.execute(
                    "UPDATE job_items SET state = 'in_flight', updated_at = ? WHERE job_id = ? AND slot = ?",
                    (_ts(utcnow()), job_id, candidate["slot"]),
                )
                conn.execute(
                    "UPDATE jobs SET status = ? WHERE id = ? AND status = ?",
                    (JobStatus.PROCESSING.value, job_id, JobStatus.PENDING.value),
                )
                return WorkItem(
                    job_id=job_id, slot=candidate["slot"], identifier=candidate["identifier"]
                )
        return None

    def release(self, item: WorkItem) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE job_items SET state = 'pending' WHERE job_id = ? AND slot = ? AND state = 'in_flight'",
                (item.job_id, item.slot),
            )

    def commit(self, item: WorkItem, result: ExtractionResult) -> CommitOutcome:
        with self._transaction() as conn:
            row = conn.execute("SELECT status FROM jobs WHERE id = ?", (item.job_id,)).fetchone()
            if row is None:
                return CommitOutcome(committed=False)
            if row["status"] not in _ACTIVE:
                conn.execute(
                    "UPDATE job_items SET state = 'pending' WHERE job_id = ? AND slot = ? AND state = 'in_flight'",
                    (item.job_id, item.slot),
                )
                return CommitOutcome(committed=False, job=self._snapshot(conn, item.job_id))
            now = utcnow()
            conn.execute(
                """
                UPDATE job_items
                SET state = 'done', result_status = ?, result = ?, updated_at = ?
                WHERE job_id = ? AND slot = ?
                """,
                (
                    result.status.value,
                    json.dumps(result.to_dict(), ensure_ascii=False),
                    _ts(now),
                    item.job_id,
                    item.slot,
                ),
            )
            completed = False
            counts = self._counts(conn, item.job_id)
            if counts.is_complete:
                cursor = conn.execute(
                    "UPDATE jobs SET status = ?, completed_at = ? WHERE id = ? AND status IN (?, ?)",
                    (JobStatus.COMPLETED.value, _ts(now), item.job_id, *_ACTIVE),
                )
                completed = cursor.rowcount == 1
            return CommitOutcome(
                committed=True,
                job=self._snapshot(conn, item.job_id),
                job_completed=completed,
            )

    def is_active(self, job_id: str) -> bool:
        with self._transaction() as conn:
            row = conn.execute("SELECT status FROM jobs WHERE id = ?", (job_id,)).fetchone()
            return row is not None and row["status"] in _ACTIVE

    def cancel(self, job_id: str) -> Job:
        with self._transaction() as conn:
            status = self._status(conn, job_id)
            if status is JobStatus.CANCELLED:
                return self._snapshot(conn, job_id)
            if not status.is_active:
                raise InvalidJobStateError(
                    f"Cannot cancel job {job_id} in status {status.value}"
                )
            conn.execute(
                "UPDATE jobs SET status = ?, completed_at = ? WHERE id = ?",
                (JobStatus.CANCELLED.value, _ts(utcnow()), job_id),
            )
            return self._snapshot(conn, job_id)

    def reset_failed(self, job_id: str) -> int:
        with self._transaction() as conn:
            status = self._status(conn, job_id)
            if self._archived(conn, job_id):
                raise InvalidJobStateError(f"Cannot retry archived job {job_id}")
            if status not in (JobStatus.COMPLETED, JobStatus.PROCESSING):
                raise InvalidJobStateError(
                    f"Cannot retry job {job_id} in status {status.value}"
                )
            cursor = conn.execute(
                """
                UPDATE job_items
                SET state = 'pending', result_status = NULL, result = NULL, updated_at = ?
                WHERE job_id = ? AND state = 'done' AND result_status = ?
                """,
                (_ts(utcnow()), job_id, ResultStatus.ERROR.value),
            )
            reset = cursor.rowcount
            if reset and status is JobStatus.COMPLETED:
                conn.execute(
                    "UPDATE jobs SET status = ?, completed_at = NULL WHERE id = ?",
                    (JobStatus.PROCESSING.value, job_id),
                )
            return reset

    def fail_job(self, job_id: str, message: str) -> Job:
        with self._transaction() as conn:
            self._status(conn, job_id)
            conn.execute(
                "UPDATE jobs SET status = ?, error_message = ?, completed_at = ? WHERE id = ? AND status IN (?, ?)",
                (JobStatus.FAILED.value, message, _ts(utcnow()), job_id, *_ACTIVE),
            )
            return self._snapshot(conn, job_id)

    def recover_in_flight(self, older_than: datetime | None = None) -> int:
        with self._transaction() as conn:
            if older_than is None:
                cursor = conn.execute(
                    "UPDATE job_items SET state = 'pending' WHERE state = 'in_flight'"
                )
            else:
                cursor = conn.execute(
                    "UPDATE job_items SET state = 'pending' WHERE state = 'in_flight' AND updated_at < ?",
                    (_ts(older_than),),
                )
            return cursor.rowcount

    def delete_job(self, job_id: str) -> None:
        with self._transaction() as conn:
            status = self._status(conn, job_id)
            if status.is_active:
                raise InvalidJobStateError(
                    f"Cannot remove job {job_id} in status {status.value}"
                )
            conn.execute("DELETE FROM job_items WHERE job_id = ?", (job_id,))
            conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))

    def set_archived(self, job_id: str, archived: bool) -> Job:
        with self._transaction() as conn:
            status = self._status(conn, job_id)
            if archived:
                if status is not JobStatus.COMPLETED:
                    raise InvalidJobStateError(
                        f"Cannot archive job {job_id} in status {status.value}"
                    )
                conn.execute(
                    "UPDATE jobs SET archived_at = ? WHERE id = ? AND archived_at IS NULL",
                    (_ts(utcnow()), job_id),
                )
            else:
                if not self._archived(conn, job_id):
                    raise InvalidJobStateError(f"Job {job_id} is not archived")
                conn.execute("UPDATE jobs SET archived_at = NULL WHERE id = ?", (job_id,))
            return self._snapshot(conn, job_id)

    def set_paused(self, paused: bool) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO queue_state(key, value) VALUES ('paused', ?)",
                ("1" if paused else "0",),
            )

    def is_paused(self) -> bool:
        with self._transaction() as conn:
            row = conn.execute("SELECT value FROM queue_state WHERE key = 'paused'").fetchone()
            return row is not None and row["value"] == "1"

    def delete_jobs_before(self, cutoff: datetime) -> int:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT id FROM jobs
                WHERE status NOT IN (?, ?) AND archived_at IS NULL
                  AND COALESCE(completed_at, created_at) < ?
                """,
                (*_ACTIVE, _ts(cutoff)),
            ).fetchall()
            job_ids = [(row["id"],) for row in rows]
            conn.executemany("DELETE FROM job_items WHERE job_id = ?", job_ids)
            conn.executemany("DELETE FROM jobs WHERE id = ?", job_ids)
            return len(job_ids)

    def close(self) -> None:
        self.manager.close_all()

    # ------------------------------------------------------------------
    @staticmethod
    def _status(conn: sqlite3.Connection, job_id: str) -> JobStatus:
        row = conn.execute("SELECT status FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            raise JobNotFoundError(job_id)
        return JobStatus(row["status"])

    @staticmethod
    def _archived(conn: sqlite3.Connection, job_id: str) -> bool:
        row = conn.execute("SELECT archived_at FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return row is not None and row["archived_at"] is not None

    @staticmethod
    def _counts(conn: sqlite3.Connection, job_id: str, total: int | None = None) -> JobCounts:
        if total is None:
            total = conn.execute(
                "SELECT total FROM jobs WHERE id = ?", (job_id,)
            ).fetchone()["total"]
        rows = conn.execute(
            """
            SELECT result_status, COUNT(*) AS n FROM job_items
            WHERE job_id = ? AND state = 'done'
            GROUP BY result_status
            """,
            (job_id,),
        ).fetchall()
        tally = {ResultStatus(row["result_status"]): row["n"] for row in rows}
        return JobCounts.from_status_counts(total, tally)

    def _snapshot(
        self, conn: sqlite3.Connection, job_id: str, include_results: bool = False
    ) -> Job:
        row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            raise JobNotFoundError(job_id)
        items = conn.execute(
            "SELECT slot, identifier, state, result FROM job_items WHERE job_id = ? ORDER BY slot",
            (job_id,),
        ).fetchall()
        results = None
        if include_results:
            results = {
                item["slot"]: ExtractionResult.from_dict(json.loads(item["result"]))
                for item in items
                if item["state"] == "done"
            }
        return Job(
            id=row["id"],
            identifiers=[item["identifier"] for item in items],
            status=JobStatus(row["status"]),
            counts=self._counts(conn, job_id, row["total"]),
            created_at=_parse_ts(row["created_at"]),
            completed_at=_parse_ts(row["completed_at"]),
            error_message=row["error_message"],
            archived_at=_parse_ts(row["archived_at"]),
            results=results,
        )


__all__ = ["SQLiteJobStore"]
