"""HTTP transport for the QuintoAndar search and detail endpoints."""
from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Optional

import httpx

from ..antibot import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
    ProxyConfig,
    ProxyRotator,
    UserAgentPool,
)
from ..config import Settings
from ..discovery.grid import Region
from ..errors import ListingNotFound, TransientFetchError
from ..transport import RawRecord, SearchPage
from .mapper import build_detail_params, build_search_params, to_raw_record, to_search_page

LOGGER = logging.getLogger(__name__)

NOT_FOUND_STATUSES = {404, 410}


class QuintoAndarClient:
    """Synchronous portal client with a rotatable outbound identity.

    One instance serves one thread: rotation closes the current httpx client
    and opens a new one, so it must only be called between requests.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        user_agents: Optional[UserAgentPool] = None,
        proxies: Optional[ProxyRotator] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        """Initialize client.

        Parameters
        ----------
        settings : Settings
            Endpoints, business context and timeouts
        user_agents : UserAgentPool, optional
            Header source for each identity
        proxies : ProxyRotator, optional
            Shared proxy rotation; each identity takes the next proxy
        circuit_breaker : CircuitBreaker, optional
            Defaults to 5 failures / 60s cool-down
        transport : httpx.BaseTransport, optional
            Custom httpx transport (``httpx.MockTransport`` in tests)
        """
        self.settings = settings
        self.user_agents = user_agents or UserAgentPool()
        self.proxies = proxies
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            CircuitBreakerConfig(
                failure_threshold=5,
                success_threshold=2,
                timeout=60.0,
                expected_exceptions=(TransientFetchError,),
            )
        )
        self._transport = transport
        self._proxy: Optional[ProxyConfig] = None
        self.device_id = ""
        self._client = self._new_client()

    def _new_client(self) -> httpx.Client:
        self.device_id = f"scraper-{uuid.uuid4().hex[:10]}"
        self._proxy = self.proxies.get_next() if self.proxies else None
        kwargs: Dict[str, Any] = {
            "timeout": httpx.Timeout(self.settings.http_timeout),
            "headers": self.user_agents.build_headers(),
            "follow_redirects": True,
        }
        if self._transport is not None:
            kwargs["transport"] = self._transport
        elif self._proxy is not None:
            kwargs["proxy"] = self._proxy.to_httpx_url()
        return httpx.Client(**kwargs)

    def rotate(self) -> None:
        """Switch to a new user agent, device id and (if configured) proxy."""
        old = self._client
        self._client = self._new_client()
        old.close()
        LOGGER.debug(
            "Rotated identity: device=%s proxy=%s",
            self.device_id,
            self._proxy.server if self._proxy else None,
        )

    def close(self) -> None:
        self._client.close()

    def _send(self, url: str, params: Any) -> httpx.Response:
        try:
            response = self._client.get(url, params=params)
        except httpx.TimeoutException as exc:
            raise TransientFetchError(f"timeout requesting {url}: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TransientFetchError(f"{type(exc).__name__} requesting {url}: {exc}") from exc

        if response.status_code in NOT_FOUND_STATUSES:
            return response
        if response.status_code >= 400:
            raise TransientFetchError(
                f"HTTP {response.status_code} from {url}",
                status_code=response.status_code,
            )
        return response

    def _get(self, url: str, params: Any) -> httpx.Response:
        try:
            response = self.circuit_breaker.call(self._send, url, params)
        except CircuitOpenError as exc:
            raise TransientFetchError(str(exc)) from exc
        except TransientFetchError:
            if self._proxy is not None and self.proxies is not None:
                self.proxies.mark_failure(self._proxy)
            raise
        if self._proxy is not None and self.proxies is not None:
            self.proxies.mark_success(self._proxy)
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            raise TransientFetchError(f"invalid JSON from {response.url}") from exc
        if not isinstance(data, dict):
            raise TransientFetchError(f"unexpected payload type from {response.url}")
        return data

    def fetch_ids(self, region: Region, offset: int, page_size: int) -> SearchPage:
        """Fetch one page of listing ids for a region's viewport."""
        params = build_search_params(
            region,
            offset,
            page_size,
            business_context=self.settings.business_context,
            device_id=self.device_id,
        )
        url = f"{self.settings.api_base_url}{self.settings.coordinates_endpoint}"
        response = self._get(url, params)
        if response.status_code in NOT_FOUND_STATUSES:
            raise TransientFetchError(f"search endpoint returned HTTP {response.status_code}")
        page = to_search_page(self._json(response))
        LOGGER.debug(
            "Region %s offset=%d: %d ids (total %d)",
            region.label,
            offset,
            len(page.ids),
            page.total_reported,
        )
        return page

    def fetch_detail(self, listing_id: str) -> RawRecord:
        """Fetch the full record for one listing."""
        params = build_detail_params(listing_id, business_context=self.settings.business_context)
        response = self._get(self.settings.detail_url, params)
        if response.status_code in NOT_FOUND_STATUSES:
            raise ListingNotFound(listing_id)
        record = to_raw_record(
            self._json(response),
            url_template=self.settings.listing_url_template,
            source=self.settings.portal,
        )
        if record is None:
            raise ListingNotFound(listing_id)
        return record
