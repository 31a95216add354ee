"""Paged listing-id discovery for one region at a time."""
from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..antibot import RotationCadence
from ..errors import TransientFetchError
from ..transport import SearchPage, SearchTransport
from .grid import Region

LOGGER = logging.getLogger(__name__)


@dataclass
class RegionResult:
    """Outcome of paging through one region."""

    region: Region
    ids: List[str] = field(default_factory=list)
    total_reported: int = 0
    pages_fetched: int = 0
    truncated: bool = False
    error: Optional[str] = None
    new_ids: int = 0  # set by the coordinator after deduplication

    @property
    def has_listings(self) -> bool:
        return self.total_reported > 0


class IdDiscoverer:
    """Pages the search endpoint for a region until its reported total is covered.

    A region whose first page reports zero listings ends after that single
    request. A page that still fails after retries truncates the region: ids
    gathered so far are kept and the result is flagged ``truncated``.
    """

    def __init__(
        self,
        transport: SearchTransport,
        *,
        page_size: int = 100,
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        page_delay: float = 0.0,
        cadence: Optional[RotationCadence] = None,
        sleep: Callable[[float], None] = time.sleep,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> None:
        """Initialize discoverer.

        Parameters
        ----------
        transport : SearchTransport
            Portal client (one per discovery thread)
        page_size : int
            Ids requested per page
        max_attempts : int
            Attempts per page before the region is truncated
        backoff_base : float
            Seconds; attempt n waits ``backoff_base * 2**(n-1)``
        page_delay : float
            Base delay between pages, jittered to 0.5-1.0x
        cadence : RotationCadence, optional
            Identity rotation ticked once per fetched page
        sleep : callable
            Sleep function (replaced in tests)
        should_stop : callable, optional
            Cancellation check evaluated between pages
        """
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self.transport = transport
        self.page_size = page_size
        self.page_delay = page_delay
        self.cadence = cadence
        self._sleep = sleep
        self._should_stop = should_stop or (lambda: False)
        self._retrying = Retrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=backoff_base, min=0),
            retry=retry_if_exception_type(TransientFetchError),
            sleep=sleep,
            reraise=True,
            before_sleep=before_sleep_log(LOGGER, logging.WARNING),
        )

    def discover_ids(self, region: Region, offset: int = 0) -> SearchPage:
        """Fetch one page of ids, retrying transient errors."""
        page = self._retrying(self.transport.fetch_ids, region, offset, self.page_size)
        if self.cadence is not None:
            self.cadence.tick()
        return page

    def discover_region(self, region: Region) -> RegionResult:
        """Collect every id the portal reports for ``region``."""
        result = RegionResult(region=region)

        try:
            first = self.discover_ids(region, 0)
        except TransientFetchError as exc:
            LOGGER.warning("Region %s (%s): first page failed, skipping: %s", region.label, region.progress, exc)
            result.truncated = True
            result.error = str(exc)
            return result

        result.pages_fetched = 1
        result.total_reported = first.total_reported
        if first.total_reported == 0:
            return result

        result.ids.extend(first.ids)
        LOGGER.info(
            "Region %s (%s) [%.2f, %.2f]: %d listings",
            region.label,
            region.progress,
            region.lat,
            region.lng,
            first.total_reported,
        )

        offset = self.page_size
        while offset < result.total_reported:
            if self._should_stop():
                LOGGER.info("Stop requested, truncating region %s at offset %d", region.label, offset)
                result.truncated = True
                break
            if self.page_delay > 0:
                self._sleep(random.uniform(self.page_delay * 0.5, self.page_delay))

            try:
                page = self.discover_ids(region, offset)
            except TransientFetchError as exc:
                LOGGER.warning(
                    "Region %s: failed at offset %d after retries, stopping with %d ids: %s",
                    region.label,
                    offset,
                    len(result.ids),
                    exc,
                )
                result.truncated = True
                result.error = str(exc)
                break

            result.ids.extend(page.ids)
            result.pages_fetched += 1
            offset += self.page_size

        return result
