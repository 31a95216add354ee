"""Run orchestration: discovery over regions, enrichment workers, queue stats."""
from __future__ import annotations

import logging
import random
import signal
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional

from ..antibot import RotationCadence
from ..config import Settings
from ..discovery.discoverer import IdDiscoverer, RegionResult
from ..discovery.grid import Region
from ..errors import StoreUnavailableError
from ..sink import ListingSink
from ..transport import SearchTransport, TransportFactory
from .queue import ListingQueue
from .retry import RetryPolicy
from .worker import Normalizer, Worker, WorkerConfig

LOGGER = logging.getLogger(__name__)

PROGRESS_EVERY_REGIONS = 50


@dataclass
class DiscoverySummary:
    regions_processed: int = 0
    unique_ids_found: int = 0  # ids admitted for the first time in this pass
    ids_reported: int = 0  # ids returned across regions, duplicates included
    regions_with_listings: int = 0
    empty_regions: int = 0
    truncated_regions: int = 0
    total_discovered: int = 0  # discovery set size after the pass
    elapsed: float = 0.0
    regions: List[RegionResult] = field(default_factory=list)

    def record(self, result: RegionResult) -> None:
        self.regions_processed += 1
        self.unique_ids_found += result.new_ids
        self.ids_reported += len(result.ids)
        if result.has_listings:
            self.regions_with_listings += 1
        else:
            self.empty_regions += 1
        if result.truncated:
            self.truncated_regions += 1
        self.regions.append(result)


@dataclass
class EnrichmentSummary:
    total_ids: int = 0
    processed: int = 0  # includes ids acknowledged as not found
    failed: int = 0
    not_found: int = 0
    pending: int = 0
    elapsed: float = 0.0
    failed_ids: Dict[str, str] = field(default_factory=dict)

    @property
    def success_rate(self) -> float:
        if self.total_ids == 0:
            return 0.0
        return self.processed / self.total_ids * 100


@dataclass
class PipelineSummary:
    discovery: DiscoverySummary
    enrichment: EnrichmentSummary


@dataclass
class QueueStats:
    pending: int
    processing: int
    processed: int
    failed: int
    total_discovered: int
    processing_rate_per_minute: float
    estimated_completion: Optional[datetime]


def install_signal_handlers(stop_event: threading.Event) -> None:
    """Set ``stop_event`` on SIGINT/SIGTERM. Must be called from the main thread."""

    def _handle_shutdown(signum, frame) -> None:
        LOGGER.info("Received shutdown signal %s, stopping gracefully...", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_shutdown)
    signal.signal(signal.SIGTERM, _handle_shutdown)


class Coordinator:
    """Composes discovery, deduplication, queueing and enrichment for one run."""

    def __init__(
        self,
        settings: Settings,
        queue: ListingQueue,
        transport_factory: TransportFactory,
        normalizer: Optional[Normalizer] = None,
        sink: Optional[ListingSink] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        stop_event: Optional[threading.Event] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        """Initialize coordinator.

        Parameters
        ----------
        settings : Settings
            Page size, delays, retry bound, worker count and rotation cadences
        queue : ListingQueue
            Deduplication store and work queue backend
        transport_factory : callable
            Creates one transport per discovery thread and per worker
        normalizer : Normalizer, optional
            Required for enrichment
        sink : ListingSink, optional
            Required for enrichment
        sleep : callable
            Sleep function for rate limiting and backoff (replaced in tests)
        stop_event : threading.Event, optional
            Shared cancellation flag
        """
        self.settings = settings
        self.queue = queue
        self.transport_factory = transport_factory
        self.normalizer = normalizer
        self.sink = sink
        self._sleep = sleep
        self.stop_event = stop_event or threading.Event()
        self._rng = rng or random.Random()
        self._lock = threading.Lock()

    # -- discovery ---------------------------------------------------------

    def _make_discoverer(self, transport: SearchTransport) -> IdDiscoverer:
        return IdDiscoverer(
            transport,
            page_size=self.settings.page_size,
            max_attempts=self.settings.max_retries,
            backoff_base=self.settings.retry_base_delay,
            page_delay=self.settings.request_delay,
            cadence=RotationCadence(transport.rotate, self.settings.rotate_every_pages),
            sleep=self._sleep,
            should_stop=self.stop_event.is_set,
        )

    def _thread_discoverer(self, local: threading.local, transports: List[SearchTransport]) -> IdDiscoverer:
        discoverer = getattr(local, "discoverer", None)
        if discoverer is None:
            transport = self.transport_factory()
            with self._lock:
                transports.append(transport)
            discoverer = local.discoverer = self._make_discoverer(transport)
        return discoverer

    def _discover_one(
        self,
        region: Region,
        total_regions: int,
        summary: DiscoverySummary,
        local: threading.local,
        transports: List[SearchTransport],
    ) -> Optional[RegionResult]:
        if self.stop_event.is_set():
            return None

        try:
            result = self._thread_discoverer(local, transports).discover_region(region)
        except Exception as exc:
            LOGGER.exception("Region %s (%s): discovery failed, skipping", region.label, region.progress)
            result = RegionResult(region=region, truncated=True, error=f"{type(exc).__name__}: {exc}")
        new_ids = self.queue.admit_many(result.ids, region.label)
        result.new_ids = len(new_ids)

        with self._lock:
            summary.record(result)
            processed = summary.regions_processed
            unique = summary.unique_ids_found
            with_listings = summary.regions_with_listings

        if result.ids:
            LOGGER.debug(
                "Region %s: %d ids, %d new, %d page(s)%s",
                region.label,
                len(result.ids),
                result.new_ids,
                result.pages_fetched,
                " (truncated)" if result.truncated else "",
            )
        if processed % PROGRESS_EVERY_REGIONS == 0:
            LOGGER.info(
                "Progress: %d/%d regions (%.1f%%), %d unique ids, %d regions with listings",
                processed,
                total_regions,
                processed / total_regions * 100,
                unique,
                with_listings,
            )

        delay = self.settings.request_delay
        if delay > 0 and not self.stop_event.is_set():
            self._sleep(self._rng.uniform(delay * 0.3, delay * 0.8))
        return result

    def run_discovery(self, regions: Iterable[Region], parallelism: int = 1) -> DiscoverySummary:
        """Discover ids for every region and admit the new ones to the queue.

        Region failures are contained in their ``RegionResult``; only
        ``StoreUnavailableError`` aborts the pass.
        """
        if parallelism < 1:
            raise ValueError("parallelism must be at least 1")
        regions = list(regions)
        self.queue.mark_run_started()
        summary = DiscoverySummary()
        local = threading.local()
        transports: List[SearchTransport] = []
        start = time.monotonic()

        LOGGER.info("Starting discovery over %d regions (parallelism=%d)", len(regions), parallelism)
        try:
            if parallelism == 1:
                for region in regions:
                    if self._discover_one(region, len(regions), summary, local, transports) is None:
                        break
            else:
                with ThreadPoolExecutor(max_workers=parallelism, thread_name_prefix="discovery") as pool:
                    futures = [
                        pool.submit(self._discover_one, region, len(regions), summary, local, transports)
                        for region in regions
                    ]
                    try:
                        for future in futures:
                            future.result()
                    except StoreUnavailableError:
                        self.stop_event.set()
                        raise
        finally:
            for transport in transports:
                transport.close()

        summary.elapsed = time.monotonic() - start
        summary.total_discovered = self.queue.size()
        if self.stop_event.is_set():
            LOGGER.warning("Discovery stopped early after %d/%d regions", summary.regions_processed, len(regions))
        LOGGER.info(
            "Discovery complete: %d regions, %d with listings, %d empty, %d truncated, "
            "%d new unique ids (%d total) in %.1fs",
            summary.regions_processed,
            summary.regions_with_listings,
            summary.empty_regions,
            summary.truncated_regions,
            summary.unique_ids_found,
            summary.total_discovered,
            summary.elapsed,
        )
        return summary

    # -- enrichment --------------------------------------------------------

    def _make_worker(self, index: int, producer_done: Callable[[], bool]) -> Worker:
        if self.normalizer is None or self.sink is None:
            raise ValueError("enrichment requires a normalizer and a sink")
        config = WorkerConfig(
            worker_id=f"worker-{index}",
            pop_timeout=self.settings.pop_timeout,
            request_delay=self.settings.request_delay,
            rotate_every=self.settings.rotate_every_details,
        )
        return Worker(
            config,
            self.queue,
            self.transport_factory(),
            self.normalizer,
            self.sink,
            RetryPolicy(
                max_retries=self.settings.max_retries,
                base_delay=self.settings.retry_base_delay,
                rng=random.Random(self._rng.random()),
            ),
            producer_done=producer_done,
            stop_event=self.stop_event,
            sleep=self._sleep,
            rng=random.Random(self._rng.random()),
        )

    def _run_worker(self, worker: Worker, errors: List[BaseException]) -> None:
        try:
            worker.run()
        except Exception as exc:
            LOGGER.error("Worker %s aborted: %s", worker.config.worker_id, exc, exc_info=True)
            with self._lock:
                errors.append(exc)
            self.stop_event.set()
        finally:
            worker.transport.close()

    def _start_workers(self, worker_count: int, producer_done: Callable[[], bool]):
        workers = [self._make_worker(index, producer_done) for index in range(1, worker_count + 1)]
        errors: List[BaseException] = []
        threads = [
            threading.Thread(
                target=self._run_worker,
                args=(worker, errors),
                name=worker.config.worker_id,
                daemon=True,
            )
            for worker in workers
        ]
        for thread in threads:
            thread.start()
        return workers, threads, errors

    def _join_workers(self, workers: List[Worker], threads: List[threading.Thread], errors, start: float) -> EnrichmentSummary:
        for thread in threads:
            # Timed joins keep the main thread responsive to signals.
            while thread.is_alive():
                thread.join(0.5)
        if errors:
            raise errors[0]

        counts = self.queue.counts()
        summary = EnrichmentSummary(
            total_ids=counts.total_discovered,
            processed=counts.processed,
            failed=counts.failed,
            not_found=sum(worker.tasks_not_found for worker in workers),
            pending=counts.outstanding,
            elapsed=time.monotonic() - start,
            failed_ids=self.queue.failed_ids(),
        )
        LOGGER.info(
            "Enrichment finished: %d total, %d processed (%d not found), %d failed, %d pending, "
            "success rate %.1f%% in %.1fs",
            summary.total_ids,
            summary.processed,
            summary.not_found,
            summary.failed,
            summary.pending,
            summary.success_rate,
            summary.elapsed,
        )
        return summary

    def run_enrichment(self, worker_count: Optional[int] = None) -> EnrichmentSummary:
        """Drain the queue with ``worker_count`` workers."""
        worker_count = worker_count or self.settings.worker_count
        self.queue.mark_run_started()
        start = time.monotonic()
        LOGGER.info("Starting enrichment with %d worker(s), %d id(s) pending", worker_count, len(self.queue))
        workers, threads, errors = self._start_workers(worker_count, lambda: True)
        return self._join_workers(workers, threads, errors, start)

    def run_pipeline(
        self,
        regions: Iterable[Region],
        worker_count: Optional[int] = None,
        parallelism: int = 1,
    ) -> PipelineSummary:
        """Run discovery while workers consume; workers drain once discovery ends."""
        worker_count = worker_count or self.settings.worker_count
        self.queue.mark_run_started()
        start = time.monotonic()
        discovery_done = threading.Event()
        workers, threads, errors = self._start_workers(worker_count, discovery_done.is_set)
        try:
            discovery = self.run_discovery(regions, parallelism)
        except BaseException:
            self.stop_event.set()
            raise
        finally:
            discovery_done.set()
        enrichment = self._join_workers(workers, threads, errors, start)
        return PipelineSummary(discovery=discovery, enrichment=enrichment)

    # -- stats -------------------------------------------------------------

    def queue_stats(self) -> QueueStats:
        """Counts plus throughput since the run started and a completion estimate."""
        counts = self.queue.counts()
        started = self.queue.run_started_at()
        now = datetime.now(timezone.utc)

        rate = 0.0
        if started is not None:
            elapsed_minutes = (now - started).total_seconds() / 60
            if elapsed_minutes > 0:
                rate = (counts.processed + counts.failed) / elapsed_minutes

        estimate = None
        if rate > 0:
            estimate = now + timedelta(minutes=counts.outstanding / rate)

        return QueueStats(
            pending=counts.pending,
            processing=counts.processing,
            processed=counts.processed,
            failed=counts.failed,
            total_discovered=counts.total_discovered,
            processing_rate_per_minute=rate,
            estimated_completion=estimate,
        )
