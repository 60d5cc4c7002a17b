"""
Achievement catalog read over HTTP

GET {base_url}/achievements returns the raw definitions (a JSON list, or an
object wrapping it under "achievements"). Definitions are validated through
the catalog loader on every refresh and cached in memory until the next one.
One caller refreshes at a time. When a refresh fails and a copy is cached,
that copy keeps being served and the refresh is retried after STALE_RETRY_SECONDS.
"""

import asyncio
import logging
import time
from datetime import date
from typing import Optional

import httpx

from barber_loyalty import config
from barber_loyalty.engine.catalog import InMemoryCatalogStore
from barber_loyalty.exceptions import ConfigurationError, DataUnavailable, wrap_external_exception
from barber_loyalty.models.achievement import AchievementDefinition
from barber_loyalty.observability import metrics
from barber_loyalty.resilience.retry import retry_with_backoff

logger = logging.getLogger(__name__)

API_TIMEOUT = 5.0  # seconds
CACHE_TTL_SECONDS = 300
STALE_RETRY_SECONDS = 30


class HttpCatalogStore:
    """CatalogStore backed by the platform's catalog service"""

    def __init__(
        self,
        base_url: str = config.CATALOG_BASE_URL,
        client: Optional[httpx.AsyncClient] = None,
        max_retries: int = config.LEDGER_MAX_RETRIES,
        strict: bool = False,
        cache_ttl: float = CACHE_TTL_SECONDS,
    ):
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.strict = strict
        self.cache_ttl = cache_ttl
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=API_TIMEOUT)
        self._catalog: Optional[InMemoryCatalogStore] = None
        self._loaded_at: float = 0.0
        self._stale_until: float = 0.0
        self._refresh_lock = asyncio.Lock()

    @property
    def load_errors(self) -> list[ConfigurationError]:
        return self._catalog.load_errors if self._catalog else []

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def refresh(self) -> None:
        """
        Fetch and validate the catalog

        Raises:
            DataUnavailable: Catalog service unreachable or returned garbage
            ConfigurationError: Invalid definition in strict mode
        """
        if not self.base_url:
            raise DataUnavailable(
                message="CATALOG_BASE_URL is not configured",
                source="catalog",
                operation="load_catalog",
            )

        async def fetch() -> httpx.Response:
            response = await self._client.get(f"{self.base_url}/achievements")
            response.raise_for_status()
            return response

        try:
            with metrics.upstream_read_duration_seconds.labels(source="catalog").time():
                response = await retry_with_backoff(fetch, max_retries=self.max_retries)
        except httpx.HTTPError as e:
            raise wrap_external_exception(e, operation="load_catalog", source="catalog")

        try:
            payload = response.json()
        except ValueError as e:
            raise DataUnavailable(
                message="Catalog returned invalid JSON",
                source="catalog",
                operation="load_catalog",
                cause=e,
            )
        if isinstance(payload, dict):
            payload = payload.get("achievements", [])
        if not isinstance(payload, list):
            raise DataUnavailable(
                message=f"Catalog returned {type(payload).__name__}, expected a list of definitions",
                source="catalog",
                operation="load_catalog",
            )

        raw = [item for item in payload if isinstance(item, dict)]
        self._catalog = InMemoryCatalogStore(raw, strict=self.strict)
        self._loaded_at = time.monotonic()
        logger.info(f"Catalog refreshed from {self.base_url}: {len(raw)} definitions received")

    async def list_active_definitions(self, as_of: date) -> list[AchievementDefinition]:
        catalog = await self._current()
        return await catalog.list_active_definitions(as_of)

    async def get_definition(self, achievement_id: str) -> Optional[AchievementDefinition]:
        catalog = await self._current()
        return await catalog.get_definition(achievement_id)

    def _needs_refresh(self) -> bool:
        if self._catalog is None:
            return True
        now = time.monotonic()
        return now - self._loaded_at > self.cache_ttl and now >= self._stale_until

    async def _current(self) -> InMemoryCatalogStore:
        if not self._needs_refresh():
            return self._catalog

        async with self._refresh_lock:
            # Callers queued behind a refresh reuse its result
            if not self._needs_refresh():
                return self._catalog
            try:
                await self.refresh()
            except DataUnavailable as e:
                if self._catalog is None:
                    raise
                self._stale_until = time.monotonic() + STALE_RETRY_SECONDS
                metrics.catalog_stale_serves_total.inc()
                logger.warning(
                    f"Catalog refresh failed, serving the copy loaded "
                    f"{time.monotonic() - self._loaded_at:.0f}s ago: {e.message}"
                )
        return self._catalog
