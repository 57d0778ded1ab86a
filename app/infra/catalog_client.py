# app/infra/catalog_client.py
"""
Service catalog collaborator.

Resolves a service_id to its catalog category (``tv``, ``camera``,
``thermostat`` ...) for default payouts.  The catalog endpoint returns
``{"ok": true, "catalog": {"services": [{"service_id", "category", ...}]}}``;
the service→category map is cached for ``catalog_cache_ttl_seconds``.

Failures are absorbed: when the catalog is unreachable the last good map
is served (stale), and with nothing cached ``category_for`` returns None so
the payout calculator falls back to keyword inference.
"""
from __future__ import annotations

import time
from typing import Callable, Optional

import aiohttp

from app.config import settings
from app.infra.http_client import get_collaborator_session
from app.infra.logging_config import get_logger
from app.infra.ttl_cache import TTLCache

logger = get_logger(__name__)

_CATALOG_KEY = "services"


def _build_category_map(payload) -> dict[str, str]:
    """service_id → lowercased category from a catalog response body."""
    if not isinstance(payload, dict):
        return {}
    catalog = payload.get("catalog") or {}
    services = catalog.get("services") if isinstance(catalog, dict) else None

    mapping: dict[str, str] = {}
    for service in services or []:
        if not isinstance(service, dict):
            continue
        service_id = service.get("service_id")
        category = service.get("category")
        if service_id and category:
            mapping[str(service_id)] = str(category).strip().lower()
    return mapping


class ServiceCatalogClient:
    """``CategoryResolver`` port backed by the catalog HTTP endpoint."""

    def __init__(
            self,
            url: Optional[str] = None,
            ttl_seconds: Optional[float] = None,
            clock: Callable[[], float] = time.monotonic,
    ):
        self.url = url if url is not None else settings.catalog_url
        ttl = settings.catalog_cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._cache: TTLCache[dict[str, str]] = TTLCache(ttl_seconds=ttl, clock=clock, max_entries=1)
        self._stale: dict[str, str] = {}

    async def category_for(self, service_id: str) -> Optional[str]:
        if not service_id or not self.url:
            return None

        mapping = self._cache.get(_CATALOG_KEY)
        if mapping is None:
            mapping = await self._load()

        return mapping.get(service_id)

    async def _load(self) -> dict[str, str]:
        try:
            session = get_collaborator_session()
            async with session.get(self.url) as resp:
                if resp.status != 200:
                    logger.warning(f"Catalog returned status {resp.status}, serving stale map")
                    return self._stale

                payload = await resp.json(content_type=None)

        except TimeoutError:
            logger.warning("Catalog timeout, serving stale map")
            return self._stale

        except aiohttp.ClientError as exc:
            logger.warning(f"Catalog network error: {exc}, serving stale map")
            return self._stale

        except ValueError as exc:
            logger.warning(f"Catalog returned malformed JSON: {exc}")
            return self._stale

        mapping = _build_category_map(payload)
        self._cache.set(_CATALOG_KEY, mapping)
        self._stale = mapping
        logger.info(f"Catalog loaded: {len(mapping)} services with categories")
        return mapping
