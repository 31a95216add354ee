"""Ingestion sinks for normalized property payloads."""
from __future__ import annotations

import logging
import sys
import threading
from pathlib import Path
from typing import IO, List, Optional, Protocol

import httpx
import orjson

from .errors import SinkError
from .models import IngestionPayload

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(10.0)


class ListingSink(Protocol):
    def ingest(self, payload: IngestionPayload) -> None:
        """Persist one record; raises SinkError on rejection."""
        ...

    def close(self) -> None:
        ...


class CoreServiceSink:
    """Sends payloads to the ingestion service ``/properties/ingest`` endpoint."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        *,
        timeout: httpx.Timeout = DEFAULT_TIMEOUT,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if not api_key:
            raise ValueError("CoreServiceSink requires an API key")
        self.endpoint = f"{api_url.rstrip('/')}/properties/ingest"
        self._client = client or httpx.Client(
            timeout=timeout,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
        )

    def ingest(self, payload: IngestionPayload) -> None:
        try:
            response = self._client.post(
                self.endpoint,
                content=orjson.dumps(payload.model_dump(mode="json")),
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise SinkError(
                f"ingest rejected {payload.portal_id}: HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise SinkError(f"ingest failed for {payload.portal_id}: {exc}") from exc
        LOGGER.debug("Ingested %s/%s", payload.portal, payload.portal_id)

    def close(self) -> None:
        self._client.close()


class JsonlSink:
    """Appends payloads as JSON lines to a file (or stdout)."""

    def __init__(self, path: Optional[str | Path] = None) -> None:
        self.path = Path(path) if path else None
        self._stream: IO[bytes] = open(self.path, "ab") if self.path else sys.stdout.buffer
        self._lock = threading.Lock()
        self.count = 0

    def ingest(self, payload: IngestionPayload) -> None:
        line = orjson.dumps(payload.model_dump(mode="json")) + b"\n"
        with self._lock:
            try:
                self._stream.write(line)
                self._stream.flush()
            except OSError as exc:
                raise SinkError(f"could not write {payload.portal_id}: {exc}") from exc
            self.count += 1

    def close(self) -> None:
        if self.path:
            self._stream.close()


class CompositeSink:
    """Fans a payload out to several sinks; the first failure aborts the record."""

    def __init__(self, sinks: List[ListingSink]) -> None:
        self.sinks = list(sinks)

    def ingest(self, payload: IngestionPayload) -> None:
        for sink in self.sinks:
            sink.ingest(payload)

    def close(self) -> None:
        for sink in self.sinks:
            sink.close()
