"""Runtime settings loaded from the environment (.env supported)."""
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parents[1]

BUSINESS_CONTEXTS = ("RENT", "SALE")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


def get_db_connection_string() -> str:
    """Get database connection string from environment."""
    if conn_str := os.getenv("DATABASE_URL"):
        return conn_str

    host = os.getenv("PG_HOST", "localhost")
    port = os.getenv("PG_PORT", "5432")
    user = os.getenv("PG_USER", "realuser")
    password = os.getenv("PG_PASS", "strongpass")
    database = os.getenv("PG_DB", "realdb")

    return f"postgresql://{user}:{password}@{host}:{port}/{database}"


@dataclass(frozen=True)
class Settings:
    """Pipeline configuration.

    Delays are stored in seconds even though ``REQUEST_DELAY_MS`` is read in
    milliseconds, matching how the portal's rate limits are usually quoted.
    """

    portal: str = "quintoandar"
    country: str = "brazil"
    api_base_url: str = "https://apigw.prod.quintoandar.com.br"
    coordinates_endpoint: str = "/cached/house-listing-search/v2/search/coordinates"
    detail_url: str = "https://www.quintoandar.com.br/api/yellow-pages/v2/search"
    listing_url_template: str = "https://www.quintoandar.com.br/imovel/{id}"
    business_context: str = "RENT"

    page_size: int = 100
    request_delay: float = 5.0
    max_retries: int = 3
    backoff_base: Optional[float] = None  # defaults to request_delay
    http_timeout: float = 30.0

    worker_count: int = 4
    rotate_every_pages: int = 3
    rotate_every_details: int = 10
    pop_timeout: float = 5.0
    visibility_timeout: float = 600.0

    ingest_api_url: str = "https://core.landomo.com/api/v1"
    ingest_api_key: Optional[str] = None

    def __post_init__(self) -> None:
        if self.business_context not in BUSINESS_CONTEXTS:
            raise ValueError(
                f"business_context must be one of {BUSINESS_CONTEXTS}, got {self.business_context!r}"
            )
        if self.page_size <= 0:
            raise ValueError("page_size must be positive")
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        if self.request_delay < 0:
            raise ValueError("request_delay must not be negative")

    @property
    def retry_base_delay(self) -> float:
        return self.request_delay if self.backoff_base is None else self.backoff_base

    def with_overrides(self, **overrides) -> Settings:
        """Return a copy with non-None overrides applied (used by CLI flags)."""
        values = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **values)

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> Settings:
        """Load settings from environment variables.

        Parameters
        ----------
        env_file : Path, optional
            Explicit .env file; defaults to ``.env`` at the repository root.
        """
        load_dotenv(env_file or BASE_DIR / ".env")

        return cls(
            portal=os.getenv("PORTAL", cls.portal),
            country=os.getenv("COUNTRY", cls.country),
            api_base_url=os.getenv("QUINTOANDAR_API_URL", cls.api_base_url),
            detail_url=os.getenv("QUINTOANDAR_DETAIL_URL", cls.detail_url),
            business_context=os.getenv("BUSINESS_CONTEXT", cls.business_context).upper(),
            page_size=_env_int("PAGE_SIZE", cls.page_size),
            request_delay=_env_int("REQUEST_DELAY_MS", int(cls.request_delay * 1000)) / 1000.0,
            max_retries=_env_int("MAX_RETRIES", cls.max_retries),
            http_timeout=_env_float("HTTP_TIMEOUT", cls.http_timeout),
            worker_count=_env_int("WORKER_COUNT", cls.worker_count),
            rotate_every_pages=_env_int("ROTATE_EVERY_PAGES", cls.rotate_every_pages),
            rotate_every_details=_env_int("ROTATE_EVERY_DETAILS", cls.rotate_every_details),
            pop_timeout=_env_float("POP_TIMEOUT", cls.pop_timeout),
            visibility_timeout=_env_float("VISIBILITY_TIMEOUT", cls.visibility_timeout),
            ingest_api_url=os.getenv("LANDOMO_API_URL", cls.ingest_api_url),
            ingest_api_key=os.getenv("LANDOMO_API_KEY") or None,
        )
