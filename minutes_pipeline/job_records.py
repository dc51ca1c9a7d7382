"""Job Record Store: durable job id -> multi-stage status document.

Every backend applies the same merge and transition rules. ``JobTracker`` is
the facade the pipeline talks to; it never lets a store failure escape into
the caller's in-flight work.
"""

from __future__ import annotations

import json
import logging
import os
import re
import sqlite3
import threading
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Protocol

from minutes_pipeline.db.postgres import PostgresTxRunner
from minutes_pipeline.errors import JobRecordExistsError, JobTransitionError

logger = logging.getLogger(__name__)

PENDING = "pending"
PROCESSING_AUDIO = "processing_audio"
TRANSCRIBING = "transcribing"
SUMMARIZING = "summarizing"
COMPLETED = "completed"
FAILED = "failed"

TERMINAL_STATUSES = frozenset({COMPLETED, FAILED})

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    PENDING: {PROCESSING_AUDIO, FAILED},
    PROCESSING_AUDIO: {TRANSCRIBING, FAILED},
    TRANSCRIBING: {SUMMARIZING, FAILED},
    SUMMARIZING: {COMPLETED, FAILED},
    COMPLETED: set(),
    FAILED: set(),
}

_PROTECTED_FIELDS = {"job_id", "status", "created_at", "updated_at"}

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def check_transition(*, job_id: str, current: str, target: str | None) -> None:
    """Terminal records are frozen: even a same-status or fields-only update is rejected."""
    if current in TERMINAL_STATUSES:
        raise JobTransitionError(job_id=job_id, current=current, target=target or current)
    if target is None or target == current:
        return
    if target not in ALLOWED_TRANSITIONS.get(current, set()):
        raise JobTransitionError(job_id=job_id, current=current, target=target)


def _deep_merge(base: dict[str, Any], extra: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in extra.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def merge_record(
    record: dict[str, Any],
    *,
    status: str | None,
    fields: Mapping[str, Any] | None,
    now: datetime,
) -> dict[str, Any]:
    check_transition(job_id=str(record["job_id"]), current=str(record["status"]), target=status)
    merged = dict(record)
    for key, value in (fields or {}).items():
        if key in _PROTECTED_FIELDS:
            continue
        if key == "result" and isinstance(value, Mapping):
            merged["result"] = _deep_merge(dict(merged.get("result") or {}), value)
        else:
            merged[key] = value
    if status is not None:
        merged["status"] = status
    merged["updated_at"] = now.isoformat()
    return merged


def new_record(job_id: str, *, status: str, fields: Mapping[str, Any] | None, now: datetime) -> dict[str, Any]:
    if status not in ALLOWED_TRANSITIONS:
        raise ValueError(f"unknown job status: {status}")
    record: dict[str, Any] = {
        "gcs_paths": [],
        "file_names": [],
        "slack_event": None,
        "error_details": None,
        "result": {},
    }
    for key, value in (fields or {}).items():
        if key not in _PROTECTED_FIELDS:
            record[key] = value
    record.update(
        {
            "job_id": job_id,
            "status": status,
            "created_at": now.isoformat(),
            "updated_at": now.isoformat(),
        }
    )
    return record


def _parse_ts(raw: Any) -> datetime | None:
    try:
        dt = datetime.fromisoformat(str(raw))
    except ValueError:
        return None
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=UTC)


def sla_exceeded(record: Mapping[str, Any], *, sla_minutes: int, now: datetime | None = None) -> bool:
    """Terminal jobs are measured to their last update, running jobs to ``now``."""
    started = _parse_ts(record.get("created_at"))
    if started is None:
        return False
    ended = None
    if record.get("status") in TERMINAL_STATUSES:
        ended = _parse_ts(record.get("updated_at"))
    if ended is None:
        ended = now or _utcnow()
    return ended - started > timedelta(minutes=sla_minutes)


class JobRecordStore(Protocol):
    def create(self, job_id: str, *, status: str = PENDING, fields: Mapping[str, Any] | None = None) -> dict[str, Any]: ...

    def update(
        self, job_id: str, *, status: str | None = None, fields: Mapping[str, Any] | None = None
    ) -> dict[str, Any] | None: ...

    def get(self, job_id: str) -> dict[str, Any] | None: ...

    def reset(self) -> None: ...


class InMemoryJobRecordStore:
    backend_name = "memory"

    def __init__(self, *, clock: Clock = _utcnow) -> None:
        self._lock = threading.RLock()
        self._records: dict[str, dict[str, Any]] = {}
        self._clock = clock

    def create(self, job_id: str, *, status: str = PENDING, fields: Mapping[str, Any] | None = None) -> dict[str, Any]:
        with self._lock:
            if job_id in self._records:
                raise JobRecordExistsError(job_id)
            record = new_record(job_id, status=status, fields=fields, now=self._clock())
            self._records[job_id] = record
            return dict(record)

    def update(
        self, job_id: str, *, status: str | None = None, fields: Mapping[str, Any] | None = None
    ) -> dict[str, Any] | None:
        with self._lock:
            current = self._records.get(job_id)
            if current is None:
                return None
            merged = merge_record(current, status=status, fields=fields, now=self._clock())
            self._records[job_id] = merged
            return dict(merged)

    def get(self, job_id: str) -> dict[str, Any] | None:
        with self._lock:
            record = self._records.get(job_id)
            return json.loads(json.dumps(record)) if record is not None else None

    def reset(self) -> None:
        with self._lock:
            self._records.clear()


class SqliteJobRecordStore:
    """SQLite-backed records that survive process restarts on a single host."""

    backend_name = "sqlite"

    def __init__(self, db_path: str | Path, *, clock: Clock = _utcnow) -> None:
        self._lock = threading.RLock()
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=5.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS job_records (
                    job_id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    document TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.commit()

    @staticmethod
    def _dump(record: Mapping[str, Any]) -> str:
        return json.dumps(record, ensure_ascii=False, sort_keys=True)

    def create(self, job_id: str, *, status: str = PENDING, fields: Mapping[str, Any] | None = None) -> dict[str, Any]:
        record = new_record(job_id, status=status, fields=fields, now=self._clock())
        with self._lock:
            with self._connect() as conn:
                try:
                    conn.execute(
                        """
                        INSERT INTO job_records(job_id, status, document, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        (job_id, record["status"], self._dump(record), record["created_at"], record["updated_at"]),
                    )
                except sqlite3.IntegrityError as exc:
                    raise JobRecordExistsError(job_id) from exc
                conn.commit()
        return record

    def update(
        self, job_id: str, *, status: str | None = None, fields: Mapping[str, Any] | None = None
    ) -> dict[str, Any] | None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute("SELECT document FROM job_records WHERE job_id = ?", (job_id,)).fetchone()
                if row is None:
                    conn.commit()
                    return None
                merged = merge_record(json.loads(row["document"]), status=status, fields=fields, now=self._clock())
                conn.execute(
                    "UPDATE job_records SET status = ?, document = ?, updated_at = ? WHERE job_id = ?",
                    (merged["status"], self._dump(merged), merged["updated_at"], job_id),
                )
                conn.commit()
                return merged

    def get(self, job_id: str) -> dict[str, Any] | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT document FROM job_records WHERE job_id = ?", (job_id,)).fetchone()
        return json.loads(row["document"]) if row is not None else None

    def reset(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM job_records")
                conn.commit()


class PostgresJobRecordStore:
    """Records kept as one jsonb document per job; updates lock the row for the merge."""

    backend_name = "postgres"

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "jobs", clock: Clock = _utcnow) -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)
        self._clock = clock

    def initialize_database(self) -> None:
        create_sql = f"""
            CREATE TABLE IF NOT EXISTS {self._table_name} (
              job_id TEXT PRIMARY KEY,
              status TEXT NOT NULL,
              document JSONB NOT NULL,
              created_at TIMESTAMPTZ NOT NULL,
              updated_at TIMESTAMPTZ NOT NULL
            )
        """
        index_sql = f"CREATE INDEX IF NOT EXISTS {self._table_name}_status_idx ON {self._table_name} (status)"

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(create_sql)
                cur.execute(index_sql)

        self._tx_runner.run_in_tx(_op)

    @staticmethod
    def _load(raw: Any) -> dict[str, Any]:
        if isinstance(raw, dict):
            return raw
        return json.loads(raw)

    def create(self, job_id: str, *, status: str = PENDING, fields: Mapping[str, Any] | None = None) -> dict[str, Any]:
        record = new_record(job_id, status=status, fields=fields, now=self._clock())
        sql = f"""
            INSERT INTO {self._table_name} (job_id, status, document, created_at, updated_at)
            VALUES (%s, %s, %s::jsonb, %s, %s)
            ON CONFLICT (job_id) DO NOTHING
        """

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        job_id,
                        record["status"],
                        json.dumps(record, ensure_ascii=False, sort_keys=True),
                        record["created_at"],
                        record["updated_at"],
                    ),
                )
                return int(cur.rowcount)

        if self._tx_runner.run_in_tx(_op) == 0:
            raise JobRecordExistsError(job_id)
        return record

    def update(
        self, job_id: str, *, status: str | None = None, fields: Mapping[str, Any] | None = None
    ) -> dict[str, Any] | None:
        select_sql = f"SELECT document FROM {self._table_name} WHERE job_id = %s FOR UPDATE"
        update_sql = f"""
            UPDATE {self._table_name}
            SET status = %s, document = %s::jsonb, updated_at = %s
            WHERE job_id = %s
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(select_sql, (job_id,))
                row = cur.fetchone()
                if row is None:
                    return None
                merged = merge_record(self._load(row[0]), status=status, fields=fields, now=self._clock())
                cur.execute(
                    update_sql,
                    (
                        merged["status"],
                        json.dumps(merged, ensure_ascii=False, sort_keys=True),
                        merged["updated_at"],
                        job_id,
                    ),
                )
            return merged

        return self._tx_runner.run_in_tx(_op)

    def get(self, job_id: str) -> dict[str, Any] | None:
        sql = f"SELECT document FROM {self._table_name} WHERE job_id = %s LIMIT 1"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (job_id,))
                row = cur.fetchone()
            return self._load(row[0]) if row is not None else None

        return self._tx_runner.run_in_tx(_op)

    def reset(self) -> None:
        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(f"DELETE FROM {self._table_name}")

        self._tx_runner.run_in_tx(_op)


class JobTracker:
    """Failure-tolerant facade over a JobRecordStore.

    Writes return ``True`` on success and ``False`` after logging otherwise, so
    that a broken or stale record never aborts the stage that is writing it.
    """

    def __init__(self, store: JobRecordStore) -> None:
        self.store = store

    def create(self, job_id: str, *, fields: Mapping[str, Any] | None = None) -> bool:
        try:
            self.store.create(job_id, status=PENDING, fields=fields)
        except JobRecordExistsError:
            logger.error("job_record_exists job_id=%s", job_id)
            return False
        except Exception as exc:
            logger.warning("job_record_create_failed job_id=%s error=%s", job_id, exc)
            return False
        logger.info("job_record_created job_id=%s status=%s", job_id, PENDING)
        return True

    def update(self, job_id: str, *, status: str | None = None, fields: Mapping[str, Any] | None = None) -> bool:
        try:
            updated = self.store.update(job_id, status=status, fields=fields)
        except JobTransitionError as exc:
            logger.warning("job_transition_rejected job_id=%s from=%s to=%s", job_id, exc.current, exc.target)
            return False
        except Exception as exc:
            logger.warning("job_record_update_failed job_id=%s status=%s error=%s", job_id, status, exc)
            return False
        if updated is None:
            logger.warning("job_record_missing job_id=%s status=%s", job_id, status)
            return False
        logger.info("job_status_updated job_id=%s status=%s", job_id, updated["status"])
        return True

    def get(self, job_id: str) -> dict[str, Any] | None:
        try:
            return self.store.get(job_id)
        except Exception as exc:
            logger.warning("job_record_read_failed job_id=%s error=%s", job_id, exc)
            return None


def create_job_store_from_env(
    environ: Mapping[str, str] | None = None,
) -> InMemoryJobRecordStore | SqliteJobRecordStore | PostgresJobRecordStore:
    env = os.environ if environ is None else environ
    backend = env.get("JOB_STORE_BACKEND", "memory").strip().lower()
    if backend == "memory":
        return InMemoryJobRecordStore()
    if backend == "sqlite":
        return SqliteJobRecordStore(env.get("JOB_STORE_SQLITE_PATH", ".runtime/jobs.sqlite3"))
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when JOB_STORE_BACKEND=postgres")
        store = PostgresJobRecordStore(
            tx_runner=PostgresTxRunner(dsn),
            table_name=env.get("JOB_STORE_TABLE", "jobs").strip() or "jobs",
        )
        try:
            store.initialize_database()
        except RuntimeError:
            raise
        except Exception as exc:
            raise RuntimeError(f"postgres job store unavailable: {exc}") from exc
        return store
    raise RuntimeError(f"unsupported job store backend: {backend}")
