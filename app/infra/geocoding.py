# app/infra/geocoding.py
"""
Forward geocoding via Nominatim (OpenStreetMap).

Provides ``forward_geocode(address)`` which returns a ``GeoPoint`` for a
street address, or ``None`` on failure.  Uses the shared aiohttp session
from ``http_client`` with graceful degradation (timeout / error → None).

Geocoding is advisory for dispatch: a job that cannot be geocoded is
still matchable, just unranked.

Nominatim usage policy: max 1 req/sec, requires User-Agent.
Lookups only happen for jobs that were never geocoded, and the result
is persisted on the job, so each address is resolved at most once.
"""
from __future__ import annotations

from typing import Optional

import aiohttp

from app.config import settings
from app.core.dispatch.domain import GeoPoint
from app.infra.http_client import get_geocoder_session
from app.infra.logging_config import get_logger, mask_coordinates

logger = get_logger(__name__)

_USER_AGENT = "ProDispatch/1.0 (job geocoding)"


def _parse_point(data) -> GeoPoint | None:
    """Extract the first result's coordinates from a Nominatim search response.

    Nominatim returns a JSON list of places with ``lat``/``lon`` as strings.
    Zero coordinates are rejected: they are the "never geocoded" marker.
    """
    if not isinstance(data, list) or not data:
        return None

    first = data[0]
    if not isinstance(first, dict):
        return None

    try:
        point = GeoPoint(float(first["lat"]), float(first["lon"]))
    except (KeyError, TypeError, ValueError):
        return None

    return point if point.is_valid else None


async def forward_geocode(
    address: str,
    country_codes: str = "us",
) -> GeoPoint | None:
    """
    Geocode a street address to coordinates.

    Returns ``GeoPoint(lat, lng)`` for the best match or ``None`` if the
    lookup fails for any reason.  Failures never propagate: the caller
    falls back to unranked matching.
    """
    address = (address or "").strip()
    if not address:
        return None

    params = {
        "q": address,
        "format": "json",
        "limit": "1",
        "countrycodes": country_codes,
    }
    headers = {
        "User-Agent": _USER_AGENT,
    }

    try:
        session = get_geocoder_session()
        timeout = aiohttp.ClientTimeout(total=settings.geocoding_timeout_seconds)

        async with session.get(
            settings.geocoding_url,
            params=params,
            headers=headers,
            timeout=timeout,
        ) as resp:
            if resp.status != 200:
                logger.warning(
                    "Nominatim returned status %d for address lookup",
                    resp.status,
                )
                return None

            data = await resp.json(content_type=None)

            point = _parse_point(data)
            if point:
                logger.info("Geocoded address → (%s)", mask_coordinates(point.lat, point.lng))
            else:
                logger.info("Nominatim returned no usable match for address")
            return point

    except TimeoutError:
        logger.warning("Nominatim timeout for address lookup")
        return None

    except aiohttp.ClientError as exc:
        logger.warning("Nominatim network error for address lookup: %s", exc)
        return None

    except Exception as exc:
        logger.warning(
            "Nominatim unexpected error for address lookup: %s", exc,
            exc_info=True,
        )
        return None


class NominatimGeocoder:
    """``Geocoder`` port backed by Nominatim. Disabled → always None."""

    def __init__(self, enabled: Optional[bool] = None):
        self.enabled = settings.geocoding_enabled if enabled is None else enabled

    async def geocode(self, address: str) -> GeoPoint | None:
        if not self.enabled:
            return None
        return await forward_geocode(address)
