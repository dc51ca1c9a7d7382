"""Seen-or-mark store used to gate duplicate webhook deliveries.

``seen_or_mark`` returns ``False`` exactly once per key inside the TTL window
and ``True`` afterwards. The durable backends (sqlite, redis) are wrapped in
``FallbackIdempotencyStore`` so that an unreachable backend degrades to a
process-local cache instead of refusing new work.
"""

from __future__ import annotations

import hashlib
import logging
import os
import sqlite3
import threading
import time
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, Protocol

from minutes_pipeline.config import IDEMPOTENCY_TTL_S, env_int

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


def event_fingerprint(*, event_id: str, channel: str, ts: str) -> str:
    return hashlib.sha256(f"{event_id}_{channel}_{ts}".encode("utf-8")).hexdigest()


class IdempotencyStore(Protocol):
    def seen_or_mark(self, key: str, *, ttl_s: int | None = None) -> bool: ...

    def clear(self) -> None: ...


class InMemoryIdempotencyStore:
    backend_name = "memory"

    def __init__(self, *, default_ttl_s: int = IDEMPOTENCY_TTL_S, clock: Clock = time.time) -> None:
        self._lock = threading.RLock()
        self._entries: dict[str, float] = {}
        self._default_ttl_s = default_ttl_s
        self._clock = clock

    def _purge_expired(self, now: float) -> None:
        expired = [key for key, expires_at in self._entries.items() if expires_at <= now]
        for key in expired:
            self._entries.pop(key, None)

    def seen_or_mark(self, key: str, *, ttl_s: int | None = None) -> bool:
        ttl = self._default_ttl_s if ttl_s is None else ttl_s
        with self._lock:
            now = self._clock()
            self._purge_expired(now)
            if key in self._entries:
                return True
            self._entries[key] = now + ttl
            return False

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            self._purge_expired(self._clock())
            return len(self._entries)


class SqliteIdempotencyStore:
    """SQLite-backed store for single-host deployments that must survive restarts."""

    backend_name = "sqlite"

    def __init__(
        self,
        db_path: str | Path,
        *,
        default_ttl_s: int = IDEMPOTENCY_TTL_S,
        clock: Clock = time.time,
    ) -> None:
        self._lock = threading.RLock()
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._default_ttl_s = default_ttl_s
        self._clock = clock
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self._db_path, timeout=5.0)

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS idempotency_keys (
                    key TEXT PRIMARY KEY,
                    created_at REAL NOT NULL,
                    expires_at REAL NOT NULL
                )
                """
            )
            conn.commit()

    def seen_or_mark(self, key: str, *, ttl_s: int | None = None) -> bool:
        ttl = self._default_ttl_s if ttl_s is None else ttl_s
        with self._lock:
            now = self._clock()
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                conn.execute("DELETE FROM idempotency_keys WHERE key = ? AND expires_at <= ?", (key, now))
                cur = conn.execute(
                    "INSERT OR IGNORE INTO idempotency_keys(key, created_at, expires_at) VALUES (?, ?, ?)",
                    (key, now, now + ttl),
                )
                conn.commit()
                return cur.rowcount == 0

    def clear(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM idempotency_keys")
                conn.commit()


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for IDEMPOTENCY_BACKEND=redis; install redis>=5") from exc
    return redis


class RedisIdempotencyStore:
    """SET NX EX per key; the TTL is enforced by redis itself."""

    backend_name = "redis"

    def __init__(
        self,
        *,
        dsn: str,
        namespace: str = "minutes",
        default_ttl_s: int = IDEMPOTENCY_TTL_S,
        socket_timeout_s: float = 2.0,
    ) -> None:
        if not dsn.strip():
            raise ValueError("REDIS_DSN must be provided for redis idempotency backend")
        self._namespace = namespace.strip() or "minutes"
        self._default_ttl_s = default_ttl_s
        redis = _import_redis()
        self._client = redis.Redis.from_url(
            dsn.strip(),
            decode_responses=True,
            socket_timeout=socket_timeout_s,
        )

    def _key(self, key: str) -> str:
        return f"{self._namespace}:idem:{key}"

    def seen_or_mark(self, key: str, *, ttl_s: int | None = None) -> bool:
        ttl = self._default_ttl_s if ttl_s is None else ttl_s
        created = self._client.set(self._key(key), str(int(time.time())), nx=True, ex=max(1, int(ttl)))
        return not bool(created)

    def clear(self) -> None:
        keys = list(self._client.scan_iter(match=f"{self._namespace}:idem:*"))
        if keys:
            self._client.delete(*keys)


class FallbackIdempotencyStore:
    """Durable store with a process-local cache used while the durable one is unreachable."""

    def __init__(self, *, primary: IdempotencyStore, fallback: InMemoryIdempotencyStore | None = None) -> None:
        self.primary = primary
        self.fallback = fallback or InMemoryIdempotencyStore()
        self.degraded = False

    @property
    def backend_name(self) -> str:
        return str(getattr(self.primary, "backend_name", "unknown"))

    def seen_or_mark(self, key: str, *, ttl_s: int | None = None) -> bool:
        try:
            seen = self.primary.seen_or_mark(key, ttl_s=ttl_s)
        except Exception as exc:
            if not self.degraded:
                logger.warning(
                    "idempotency_store_degraded backend=%s error=%s; using process-local cache",
                    self.backend_name,
                    exc,
                )
            self.degraded = True
            return self.fallback.seen_or_mark(key, ttl_s=ttl_s)
        if self.degraded:
            logger.info("idempotency_store_recovered backend=%s", self.backend_name)
            self.degraded = False
        return seen

    def clear(self) -> None:
        self.fallback.clear()
        try:
            self.primary.clear()
        except Exception as exc:
            logger.warning("idempotency_clear_failed backend=%s error=%s", self.backend_name, exc)


def create_idempotency_store_from_env(
    environ: Mapping[str, str] | None = None,
) -> InMemoryIdempotencyStore | FallbackIdempotencyStore:
    env = os.environ if environ is None else environ
    backend = env.get("IDEMPOTENCY_BACKEND", "memory").strip().lower()
    ttl_s = env_int(env, "IDEMPOTENCY_TTL_S", default=IDEMPOTENCY_TTL_S, minimum=1)
    if backend == "memory":
        return InMemoryIdempotencyStore(default_ttl_s=ttl_s)
    if backend == "sqlite":
        db_path = env.get("IDEMPOTENCY_SQLITE_PATH", ".runtime/idempotency.sqlite3")
        primary: IdempotencyStore = SqliteIdempotencyStore(db_path, default_ttl_s=ttl_s)
    elif backend == "redis":
        dsn = env.get("REDIS_DSN", "").strip()
        if not dsn:
            raise ValueError("REDIS_DSN must be set when IDEMPOTENCY_BACKEND=redis")
        primary = RedisIdempotencyStore(
            dsn=dsn,
            namespace=env.get("QUEUE_KEY_PREFIX", "minutes"),
            default_ttl_s=ttl_s,
        )
    else:
        raise RuntimeError(f"unsupported idempotency backend: {backend}")
    return FallbackIdempotencyStore(
        primary=primary,
        fallback=InMemoryIdempotencyStore(default_ttl_s=ttl_s),
    )
