"""Enrichment worker: pops listing ids, fetches details, normalizes and sinks them."""
from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from ..antibot import RotationCadence
from ..errors import ListingNotFound, StoreUnavailableError
from ..models import IngestionPayload
from ..sink import ListingSink
from ..transport import RawRecord, SearchTransport
from .queue import WorkQueue
from .retry import RetryPolicy

LOGGER = logging.getLogger(__name__)


class Normalizer(Protocol):
    def normalize(self, raw: RawRecord) -> IngestionPayload:
        ...


@dataclass
class WorkerConfig:
    """Worker configuration."""

    worker_id: str
    pop_timeout: float = 5.0  # seconds a pop waits before re-checking termination
    request_delay: float = 5.0  # base rate-limit delay between fetches
    rotate_every: int = 10  # successful fetches per identity
    progress_every: int = 100
    max_tasks: Optional[int] = None  # stop after this many ids (for testing)


class Worker:
    """Queue consumer for detail enrichment.

    Each worker owns its transport, so identity rotation never overlaps a
    request in flight. A worker stops when ``stop_event`` is set, or when the
    producer reports it is done and nothing is pending or in flight.
    """

    def __init__(
        self,
        config: WorkerConfig,
        queue: WorkQueue,
        transport: SearchTransport,
        normalizer: Normalizer,
        sink: ListingSink,
        retry_policy: RetryPolicy,
        *,
        producer_done: Optional[Callable[[], bool]] = None,
        stop_event: Optional[threading.Event] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        """Initialize worker.

        Parameters
        ----------
        config : WorkerConfig
            Worker configuration
        queue : WorkQueue
            Shared queue backend
        transport : SearchTransport
            Portal client dedicated to this worker
        normalizer : Normalizer
            Maps raw detail records to ingestion payloads
        sink : ListingSink
            Destination for normalized records
        retry_policy : RetryPolicy
            Decides between requeue with backoff and permanent failure
        producer_done : callable, optional
            Returns True once discovery has finished; defaults to always done
        stop_event : threading.Event, optional
            Set to request a graceful stop between two ids
        sleep : callable
            Sleep function (replaced in tests)
        """
        self.config = config
        self.queue = queue
        self.transport = transport
        self.normalizer = normalizer
        self.sink = sink
        self.retry_policy = retry_policy
        self._producer_done = producer_done or (lambda: True)
        self.stop_event = stop_event or threading.Event()
        self._sleep = sleep
        self._rng = rng or random.Random()
        self.cadence = RotationCadence(transport.rotate, config.rotate_every)

        self.tasks_processed = 0
        self.tasks_succeeded = 0
        self.tasks_failed = 0
        self.tasks_not_found = 0
        self.tasks_retried = 0

    def run(self) -> None:
        """Run worker loop until drained or stopped."""
        LOGGER.info(
            "Starting worker %s (pop_timeout=%.1fs, delay=%.2fs, rotate_every=%d)",
            self.config.worker_id,
            self.config.pop_timeout,
            self.config.request_delay,
            self.config.rotate_every,
        )

        while not self.stop_event.is_set():
            if self.config.max_tasks is not None and self.tasks_processed >= self.config.max_tasks:
                LOGGER.info("Reached max tasks limit (%d), shutting down", self.config.max_tasks)
                break

            listing_id = self.queue.pop_blocking(self.config.pop_timeout, self.config.worker_id)
            if listing_id is None:
                if self._drained():
                    LOGGER.debug("Worker %s: queue drained", self.config.worker_id)
                    break
                continue

            self.process(listing_id)
            self.tasks_processed += 1
            if self.tasks_processed % self.config.progress_every == 0:
                self._log_stats("progress")

            if not self.stop_event.is_set():
                self._rate_limit()

        self._log_stats("shutting down")

    def _drained(self) -> bool:
        if not self._producer_done():
            return False
        return self.queue.counts().outstanding == 0

    def _rate_limit(self) -> None:
        delay = self.config.request_delay
        if delay > 0:
            self._sleep(self._rng.uniform(delay * 0.6, delay * 1.6))

    def process(self, listing_id: str) -> None:
        """Enrich one id and acknowledge it in the queue.

        ``StoreUnavailableError`` propagates; every other error goes through
        the retry policy.
        """
        start_time = time.monotonic()
        try:
            raw = self.transport.fetch_detail(listing_id)
            self.cadence.tick()
            payload = self.normalizer.normalize(raw)
            self.sink.ingest(payload)
        except ListingNotFound:
            LOGGER.info("Listing %s no longer exists, dropping", listing_id)
            self.queue.mark_processed(listing_id)
            self.tasks_not_found += 1
            return
        except StoreUnavailableError:
            raise
        except Exception as exc:
            self._handle_failure(listing_id, exc)
            return

        self.queue.mark_processed(listing_id)
        self.tasks_succeeded += 1
        LOGGER.debug(
            "Worker %s enriched %s (took %.2fs)",
            self.config.worker_id,
            listing_id,
            time.monotonic() - start_time,
        )

    def _handle_failure(self, listing_id: str, exc: Exception) -> None:
        error = f"{type(exc).__name__}: {exc}"
        attempts = self.queue.increment_retry(listing_id)
        decision = self.retry_policy.decide(attempts)

        if decision.retry:
            LOGGER.warning(
                "Listing %s failed (attempt %d/%d), retrying in %.1fs: %s",
                listing_id,
                attempts,
                self.retry_policy.max_retries,
                decision.delay,
                error,
            )
            self.queue.requeue(listing_id, decision.delay)
            self.tasks_retried += 1
            return

        LOGGER.error("Listing %s failed permanently after %d attempts: %s", listing_id, attempts, error)
        self.queue.mark_failed(listing_id, error)
        self.tasks_failed += 1

    def _log_stats(self, phase: str) -> None:
        LOGGER.info(
            "Worker %s %s: processed=%d, succeeded=%d, not_found=%d, retried=%d, failed=%d",
            self.config.worker_id,
            phase,
            self.tasks_processed,
            self.tasks_succeeded,
            self.tasks_not_found,
            self.tasks_retried,
            self.tasks_failed,
        )
