"""Deduplication store and work queue for discovered listing ids.

Two backends implement the same contracts:

- ``InMemoryQueue`` for single-process runs
- ``PostgresQueue`` for resumable runs shared by separate discovery and
  enrichment processes (``FOR UPDATE SKIP LOCKED`` pops)
"""
from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional, Protocol, Tuple

import psycopg2
import psycopg2.pool

from ..errors import StoreUnavailableError

LOGGER = logging.getLogger(__name__)


class EntryStatus(str, Enum):
    """Lifecycle of a queued listing id."""

    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


@dataclass(frozen=True)
class QueueCounts:
    pending: int = 0
    processing: int = 0
    processed: int = 0
    failed: int = 0
    total_discovered: int = 0

    @property
    def outstanding(self) -> int:
        return self.pending + self.processing


class DeduplicationStore(Protocol):
    """Run-scoped set of every listing id seen so far."""

    def is_new(self, listing_id: str) -> bool:
        ...

    def mark_seen(self, listing_id: str, region_label: Optional[str] = None) -> None:
        ...

    def size(self) -> int:
        ...

    def admit(self, listing_id: str, region_label: Optional[str] = None) -> bool:
        """Atomically mark ``listing_id`` seen and enqueue it if it was new."""
        ...

    def admit_many(self, listing_ids: Iterable[str], region_label: Optional[str] = None) -> List[str]:
        """``admit`` for a batch; returns the ids that were new."""
        ...


class WorkQueue(Protocol):
    """At-least-once queue of listing ids awaiting enrichment."""

    def push(self, listing_id: str, delay: float = 0.0) -> None:
        ...

    def pop_blocking(self, timeout: float, worker_id: Optional[str] = None) -> Optional[str]:
        """Claim the next eligible id, or return None after ``timeout`` seconds."""
        ...

    def requeue(self, listing_id: str, delay: float = 0.0) -> None:
        ...

    def __len__(self) -> int:
        ...

    def increment_retry(self, listing_id: str) -> int:
        ...

    def mark_processed(self, listing_id: str) -> None:
        ...

    def mark_failed(self, listing_id: str, error: str) -> None:
        ...

    def counts(self) -> QueueCounts:
        ...


class ListingQueue(DeduplicationStore, WorkQueue, Protocol):
    """Backend implementing both contracts plus run bookkeeping."""

    def mark_run_started(self) -> datetime:
        ...

    def run_started_at(self) -> Optional[datetime]:
        ...

    def failed_ids(self) -> Dict[str, str]:
        ...

    def requeue_failed(self) -> int:
        ...

    def reset(self) -> None:
        ...

    def close(self) -> None:
        ...


class InMemoryQueue:
    """Thread-safe in-process backend.

    Pending ids sit in a heap ordered by (eligible-at, sequence), so
    immediately-available ids pop in FIFO order and backed-off ids wait
    until their delay expires.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._heap: List[Tuple[float, int, str]] = []
        self._seq = itertools.count()
        self._seen: set[str] = set()
        self._pending: set[str] = set()
        self._processing: Dict[str, float] = {}
        self._processed: set[str] = set()
        self._failed: Dict[str, str] = {}
        self._retries: Dict[str, int] = {}
        self._started_at: Optional[datetime] = None

    # -- deduplication -------------------------------------------------

    def is_new(self, listing_id: str) -> bool:
        with self._cond:
            return listing_id not in self._seen

    def mark_seen(self, listing_id: str, region_label: Optional[str] = None) -> None:
        with self._cond:
            self._seen.add(listing_id)

    def size(self) -> int:
        with self._cond:
            return len(self._seen)

    def admit(self, listing_id: str, region_label: Optional[str] = None) -> bool:
        with self._cond:
            if listing_id in self._seen:
                return False
            self._seen.add(listing_id)
            self._push_locked(listing_id, 0.0)
            return True

    def admit_many(self, listing_ids: Iterable[str], region_label: Optional[str] = None) -> List[str]:
        return [listing_id for listing_id in listing_ids if self.admit(listing_id, region_label)]

    # -- queue -------------------------------------------------------------

    def _push_locked(self, listing_id: str, delay: float) -> None:
        if listing_id in self._pending or listing_id in self._processing:
            return
        heapq.heappush(self._heap, (time.monotonic() + max(delay, 0.0), next(self._seq), listing_id))
        self._pending.add(listing_id)
        self._cond.notify()

    def push(self, listing_id: str, delay: float = 0.0) -> None:
        with self._cond:
            self._push_locked(listing_id, delay)

    def pop_blocking(self, timeout: float, worker_id: Optional[str] = None) -> Optional[str]:
        deadline = time.monotonic() + timeout
        with self._cond:
            while True:
                now = time.monotonic()
                if self._heap and self._heap[0][0] <= now:
                    _, _, listing_id = heapq.heappop(self._heap)
                    self._pending.discard(listing_id)
                    self._processing[listing_id] = now
                    return listing_id
                remaining = deadline - now
                if remaining <= 0:
                    return None
                if self._heap:
                    remaining = min(remaining, self._heap[0][0] - now)
                self._cond.wait(remaining)

    def requeue(self, listing_id: str, delay: float = 0.0) -> None:
        with self._cond:
            self._processing.pop(listing_id, None)
            self._push_locked(listing_id, delay)

    def __len__(self) -> int:
        with self._cond:
            return len(self._pending)

    def increment_retry(self, listing_id: str) -> int:
        with self._cond:
            self._retries[listing_id] = self._retries.get(listing_id, 0) + 1
            return self._retries[listing_id]

    def retry_count(self, listing_id: str) -> int:
        with self._cond:
            return self._retries.get(listing_id, 0)

    def mark_processed(self, listing_id: str) -> None:
        with self._cond:
            self._processing.pop(listing_id, None)
            self._retries.pop(listing_id, None)
            self._failed.pop(listing_id, None)
            self._processed.add(listing_id)
            self._cond.notify_all()

    def mark_failed(self, listing_id: str, error: str) -> None:
        with self._cond:
            self._processing.pop(listing_id, None)
            self._failed[listing_id] = error
            self._cond.notify_all()

    def counts(self) -> QueueCounts:
        with self._cond:
            return QueueCounts(
                pending=len(self._pending),
                processing=len(self._processing),
                processed=len(self._processed),
                failed=len(self._failed),
                total_discovered=len(self._seen),
            )

    def status(self, listing_id: str) -> Optional[EntryStatus]:
        with self._cond:
            if listing_id in self._pending:
                return EntryStatus.PENDING
            if listing_id in self._processing:
                return EntryStatus.PROCESSING
            if listing_id in self._failed:
                return EntryStatus.FAILED
            if listing_id in self._processed:
                return EntryStatus.PROCESSED
            return None

    # -- run bookkeeping ---------------------------------------------------

    def mark_run_started(self) -> datetime:
        with self._cond:
            if self._started_at is None:
                self._started_at = datetime.now(timezone.utc)
            return self._started_at

    def run_started_at(self) -> Optional[datetime]:
        return self._started_at

    def failed_ids(self) -> Dict[str, str]:
        with self._cond:
            return dict(self._failed)

    def processed_ids(self) -> set[str]:
        with self._cond:
            return set(self._processed)

    def requeue_failed(self) -> int:
        with self._cond:
            failed = list(self._failed)
            self._failed.clear()
            for listing_id in failed:
                self._retries.pop(listing_id, None)
                self._push_locked(listing_id, 0.0)
            return len(failed)

    def reset(self) -> None:
        with self._cond:
            self._heap.clear()
            self._seen.clear()
            self._pending.clear()
            self._processing.clear()
            self._processed.clear()
            self._failed.clear()
            self._retries.clear()
            self._started_at = None

    def close(self) -> None:
        pass


_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS listing_ids (
    listing_id TEXT PRIMARY KEY,
    region_label TEXT,
    discovered_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS listing_queue (
    listing_id TEXT PRIMARY KEY,
    seq BIGSERIAL,
    status VARCHAR(20) NOT NULL DEFAULT 'pending',
    available_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    started_at TIMESTAMPTZ,
    worker_id VARCHAR(100)
);

CREATE INDEX IF NOT EXISTS idx_listing_queue_ready
    ON listing_queue(status, available_at, seq);

CREATE TABLE IF NOT EXISTS listing_outcomes (
    listing_id TEXT PRIMARY KEY,
    outcome VARCHAR(20) NOT NULL,
    error_message TEXT,
    completed_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS listing_retries (
    listing_id TEXT PRIMARY KEY,
    retry_count INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS run_metadata (
    key VARCHAR(50) PRIMARY KEY,
    value TIMESTAMPTZ NOT NULL
);
"""

_ADMIT_SQL = """
WITH new_ids AS (
    INSERT INTO listing_ids (listing_id, region_label)
    SELECT DISTINCT id, %s FROM unnest(%s::text[]) AS id
    ON CONFLICT (listing_id) DO NOTHING
    RETURNING listing_id
)
INSERT INTO listing_queue (listing_id)
SELECT listing_id FROM new_ids
ON CONFLICT (listing_id) DO NOTHING
RETURNING listing_id
"""

_RECOVER_SQL = """
UPDATE listing_queue
SET status = 'pending',
    started_at = NULL,
    worker_id = NULL
WHERE status = 'processing'
  AND started_at < NOW() - make_interval(secs => %s)
RETURNING listing_id
"""

_POP_SQL = """
UPDATE listing_queue
SET status = 'processing',
    started_at = NOW(),
    worker_id = %s
WHERE listing_id = (
    SELECT listing_id
    FROM listing_queue
    WHERE status = 'pending'
      AND available_at <= NOW()
    ORDER BY available_at, seq
    LIMIT 1
    FOR UPDATE SKIP LOCKED
)
RETURNING listing_id
"""

_PUSH_SQL = """
INSERT INTO listing_queue (listing_id, available_at)
VALUES (%s, NOW() + make_interval(secs => %s))
ON CONFLICT (listing_id) DO {conflict}
"""

_OUTCOME_SQL = """
INSERT INTO listing_outcomes (listing_id, outcome, error_message)
VALUES (%s, %s, %s)
ON CONFLICT (listing_id) DO UPDATE
SET outcome = EXCLUDED.outcome,
    error_message = EXCLUDED.error_message,
    completed_at = NOW()
"""

_REQUEUE_FAILED_SQL = """
WITH moved AS (
    DELETE FROM listing_outcomes
    WHERE outcome = 'failed'
    RETURNING listing_id
), cleared AS (
    DELETE FROM listing_retries
    WHERE listing_id IN (SELECT listing_id FROM moved)
)
INSERT INTO listing_queue (listing_id)
SELECT listing_id FROM moved
ON CONFLICT (listing_id) DO NOTHING
"""

_CONNECTION_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError)


class PostgresQueue:
    """Durable backend over five tables.

    ``listing_ids`` is the discovery set, ``listing_queue`` holds pending and
    in-flight ids, ``listing_outcomes`` the processed/failed sets,
    ``listing_retries`` the retry counters and ``run_metadata`` the run start.
    """

    def __init__(
        self,
        conn_string: str,
        *,
        max_connections: int = 10,
        visibility_timeout: float = 600.0,
        poll_interval: float = 0.5,
    ) -> None:
        """Initialize Postgres queue.

        Parameters
        ----------
        conn_string : str
            PostgreSQL connection string
        max_connections : int
            Pool size; needs one connection per concurrently active thread
        visibility_timeout : float
            Seconds after which an unacknowledged ``processing`` id is pending again
        poll_interval : float
            Seconds between polls while ``pop_blocking`` waits
        """
        self.visibility_timeout = visibility_timeout
        self.poll_interval = poll_interval
        try:
            self._pool = psycopg2.pool.ThreadedConnectionPool(1, max_connections, conn_string)
        except _CONNECTION_ERRORS as exc:
            raise StoreUnavailableError(f"cannot connect to queue database: {exc}") from exc
        self._ensure_tables()

    @contextmanager
    def _connection(self) -> Iterator[psycopg2.extensions.connection]:
        try:
            conn = self._pool.getconn()
        except (psycopg2.pool.PoolError, *_CONNECTION_ERRORS) as exc:
            raise StoreUnavailableError(f"queue database unavailable: {exc}") from exc

        broken = False
        try:
            yield conn
            conn.commit()
        except _CONNECTION_ERRORS as exc:
            broken = True
            raise StoreUnavailableError(f"queue database unavailable: {exc}") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            self._pool.putconn(conn, close=broken)

    def _ensure_tables(self) -> None:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_SCHEMA_SQL)
        LOGGER.info("Ensured listing queue tables exist")

    # -- deduplication -------------------------------------------------

    def is_new(self, listing_id: str) -> bool:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 FROM listing_ids WHERE listing_id = %s", (listing_id,))
                return cur.fetchone() is None

    def mark_seen(self, listing_id: str, region_label: Optional[str] = None) -> None:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "INSERT INTO listing_ids (listing_id, region_label) VALUES (%s, %s) "
                    "ON CONFLICT (listing_id) DO NOTHING",
                    (listing_id, region_label),
                )

    def size(self) -> int:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT COUNT(*) FROM listing_ids")
                return cur.fetchone()[0]

    def admit(self, listing_id: str, region_label: Optional[str] = None) -> bool:
        return bool(self.admit_many([listing_id], region_label))

    def admit_many(self, listing_ids: Iterable[str], region_label: Optional[str] = None) -> List[str]:
        ids = list(dict.fromkeys(listing_ids))
        if not ids:
            return []
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_ADMIT_SQL, (region_label, ids))
                new_ids = {row[0] for row in cur.fetchall()}
        return [listing_id for listing_id in ids if listing_id in new_ids]

    # -- queue -------------------------------------------------------------

    def push(self, listing_id: str, delay: float = 0.0) -> None:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_PUSH_SQL.format(conflict="NOTHING"), (listing_id, max(delay, 0.0)))

    def _try_pop(self, worker_id: Optional[str]) -> Optional[str]:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_POP_SQL, (worker_id,))
                row = cur.fetchone()
        return row[0] if row else None

    def recover_stale(self) -> List[str]:
        """Return ids stuck in ``processing`` past the visibility timeout to pending."""
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_RECOVER_SQL, (self.visibility_timeout,))
                recovered = [row[0] for row in cur.fetchall()]
        if recovered:
            LOGGER.warning("Recovered %d stale in-flight id(s)", len(recovered))
        return recovered

    def pop_blocking(self, timeout: float, worker_id: Optional[str] = None) -> Optional[str]:
        deadline = time.monotonic() + timeout
        self.recover_stale()
        while True:
            listing_id = self._try_pop(worker_id)
            if listing_id is not None:
                return listing_id
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            time.sleep(min(self.poll_interval, remaining))

    def requeue(self, listing_id: str, delay: float = 0.0) -> None:
        conflict = (
            "UPDATE SET status = 'pending', available_at = EXCLUDED.available_at, "
            "started_at = NULL, worker_id = NULL"
        )
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_PUSH_SQL.format(conflict=conflict), (listing_id, max(delay, 0.0)))

    def __len__(self) -> int:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT COUNT(*) FROM listing_queue WHERE status = 'pending'")
                return cur.fetchone()[0]

    def increment_retry(self, listing_id: str) -> int:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO listing_retries (listing_id, retry_count) VALUES (%s, 1)
                    ON CONFLICT (listing_id) DO UPDATE
                    SET retry_count = listing_retries.retry_count + 1
                    RETURNING retry_count
                    """,
                    (listing_id,),
                )
                return cur.fetchone()[0]

    def retry_count(self, listing_id: str) -> int:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT retry_count FROM listing_retries WHERE listing_id = %s", (listing_id,))
                row = cur.fetchone()
        return row[0] if row else 0

    def mark_processed(self, listing_id: str) -> None:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM listing_queue WHERE listing_id = %s", (listing_id,))
                cur.execute("DELETE FROM listing_retries WHERE listing_id = %s", (listing_id,))
                cur.execute(_OUTCOME_SQL, (listing_id, EntryStatus.PROCESSED.value, None))
        LOGGER.debug("Marked %s as processed", listing_id)

    def mark_failed(self, listing_id: str, error: str) -> None:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM listing_queue WHERE listing_id = %s", (listing_id,))
                cur.execute(_OUTCOME_SQL, (listing_id, EntryStatus.FAILED.value, error))
        LOGGER.warning("Marked %s as failed: %s", listing_id, error)

    def counts(self) -> QueueCounts:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT
                        (SELECT COUNT(*) FROM listing_queue WHERE status = 'pending'),
                        (SELECT COUNT(*) FROM listing_queue WHERE status = 'processing'),
                        (SELECT COUNT(*) FROM listing_outcomes WHERE outcome = 'processed'),
                        (SELECT COUNT(*) FROM listing_outcomes WHERE outcome = 'failed'),
                        (SELECT COUNT(*) FROM listing_ids)
                    """
                )
                pending, processing, processed, failed, total = cur.fetchone()
        return QueueCounts(pending, processing, processed, failed, total)

    # -- run bookkeeping ---------------------------------------------------

    def mark_run_started(self) -> datetime:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "INSERT INTO run_metadata (key, value) VALUES ('started_at', NOW()) "
                    "ON CONFLICT (key) DO NOTHING"
                )
                cur.execute("SELECT value FROM run_metadata WHERE key = 'started_at'")
                return cur.fetchone()[0]

    def run_started_at(self) -> Optional[datetime]:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT value FROM run_metadata WHERE key = 'started_at'")
                row = cur.fetchone()
        return row[0] if row else None

    def failed_ids(self) -> Dict[str, str]:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT listing_id, error_message FROM listing_outcomes "
                    "WHERE outcome = 'failed' ORDER BY completed_at"
                )
                return {row[0]: row[1] or "" for row in cur.fetchall()}

    def requeue_failed(self) -> int:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_REQUEUE_FAILED_SQL)
                count = cur.rowcount
        if count > 0:
            LOGGER.info("Requeued %d failed id(s)", count)
        return count

    def reset(self) -> None:
        """Drop all discovery and queue state."""
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "TRUNCATE listing_ids, listing_queue, listing_outcomes, listing_retries, run_metadata"
                )
        LOGGER.info("Reset listing queue state")

    def close(self) -> None:
        self._pool.closeall()
