"""Resolve delivery addresses to coordinates.

Resolution order for an order address:

1. coordinates already stored on the consumer profile (``exact``)
2. Mapbox forward geocoding when a token is configured (``geocoded``)
3. the ZIP code centroid table (``zip_centroid``)

If none of these produce coordinates the address is returned as an
``UnresolvedAddress`` carrying the reason, and the order is skipped by the
clustering step.
"""

from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Sequence
from urllib.parse import quote

import httpx

from ...config import settings
from ...data.zip_centroids import lookup_zip_centroid, normalize_zip
from ...models.domain import (
    AddressPrecision,
    AddressResolution,
    GeocodedOrder,
    PendingOrder,
    ResolvedAddress,
    UnresolvedAddress,
)
from ..cache import TTLCache, geocode_cache

logger = logging.getLogger(__name__)

MAPBOX_GEOCODING_URL = "https://api.mapbox.com/geocoding/v5/mapbox.places"
_ZIP_PATTERN = re.compile(r"\b(\d{5})(?:-\d{4})?\b")


class Geocoder:
    def __init__(
        self,
        mapbox_token: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
        cache: TTLCache | None = None,
    ) -> None:
        self.mapbox_token = mapbox_token if mapbox_token is not None else settings.mapbox_token
        self.timeout = timeout if timeout is not None else settings.geocoder_timeout_seconds
        self._transport = transport
        # Shared across runs unless a cache is passed in.
        self._cache = cache if cache is not None else geocode_cache
        if not self.mapbox_token:
            logger.warning("Mapbox token not configured - using ZIP centroid fallback (accuracy ~1km)")

    def _forward_geocode(self, query: str) -> Optional[tuple[float, float]]:
        """Query Mapbox for ``query``; returns (lat, lon) or None on any failure."""
        url = f"{MAPBOX_GEOCODING_URL}/{quote(query, safe='')}.json"
        params = {"access_token": self.mapbox_token, "limit": 1, "country": "us"}
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.get(url, params=params)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            logger.warning(f"Mapbox geocoding failed with HTTP {e.response.status_code} - using ZIP fallback")
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Error geocoding '{query}': {e} - using ZIP fallback")
            return None

        features = data.get("features") or []
        if not features:
            logger.info(f"No Mapbox results for '{query}' - using ZIP fallback")
            return None
        lon, lat = features[0]["center"][:2]
        return float(lat), float(lon)

    def _cached_geocode(self, query: str, zip_code: str) -> Optional[tuple[float, float]]:
        key = ("geocode", query.strip().lower(), zip_code)
        cached = self._cache.get(key)
        if cached is not None:
            logger.debug(f"Geocode cache hit: {query}")
            return cached
        result = self._forward_geocode(query)
        # Misses and transient failures are retried on the next lookup.
        if result is not None:
            self._cache.set(key, result)
        return result

    def resolve(self, order: PendingOrder) -> AddressResolution:
        address = order.address
        if address.latitude is not None and address.longitude is not None:
            return ResolvedAddress(address.latitude, address.longitude, AddressPrecision.EXACT)

        zip_code = normalize_zip(address.zip_code) or ""
        if self.mapbox_token and address.street:
            coords = self._cached_geocode(address.formatted(), zip_code)
            if coords is not None:
                return ResolvedAddress(coords[0], coords[1], AddressPrecision.GEOCODED)

        centroid = lookup_zip_centroid(zip_code) if zip_code else None
        if centroid is not None:
            return ResolvedAddress(centroid[0], centroid[1], AddressPrecision.ZIP_CENTROID)

        if not address.street and not zip_code:
            return UnresolvedAddress("no delivery address on file")
        if not zip_code:
            return UnresolvedAddress("address could not be geocoded and has no valid ZIP code")
        return UnresolvedAddress(f"address could not be geocoded and ZIP {zip_code} has no known centroid")

    def locate(self, text: str) -> Optional[tuple[float, float]]:
        """Coordinates for a free-text address (used for collection points)."""
        match = _ZIP_PATTERN.search(text or "")
        zip_code = match.group(1) if match else ""
        if self.mapbox_token and text:
            coords = self._cached_geocode(text, zip_code)
            if coords is not None:
                return coords
        return lookup_zip_centroid(zip_code) if zip_code else None

    def geocode_orders(self, orders: Sequence[PendingOrder]) -> list[GeocodedOrder]:
        """Resolve all orders with bounded parallelism. Output order matches input."""
        if not orders:
            return []
        with ThreadPoolExecutor(max_workers=settings.max_parallel_requests) as executor:
            resolutions = list(executor.map(self.resolve, orders))
        geocoded = [GeocodedOrder(order=order, location=location) for order, location in zip(orders, resolutions)]
        unresolved = sum(1 for item in geocoded if isinstance(item.location, UnresolvedAddress))
        logger.info(f"Geocoded {len(geocoded)} orders ({unresolved} unresolved)")
        return geocoded

    def cache_size(self) -> int:
        return len(self._cache)

    def clear_cache(self) -> None:
        self._cache.clear()
