"""ZIP code centroid lookup used when an address cannot be geocoded precisely."""

from __future__ import annotations

import csv
import functools
import logging
from pathlib import Path
from typing import Optional

from ..config import settings

logger = logging.getLogger(__name__)

# Manhattan service area
BUILTIN_ZIP_CENTROIDS: dict[str, tuple[float, float]] = {
    "10001": (40.7506, -73.9971),
    "10002": (40.7157, -73.9860),
    "10003": (40.7320, -73.9875),
    "10004": (40.6990, -74.0177),
    "10005": (40.7056, -74.0087),
    "10006": (40.7093, -74.0120),
    "10007": (40.7135, -74.0078),
    "10009": (40.7264, -73.9779),
    "10010": (40.7392, -73.9817),
    "10011": (40.7406, -74.0008),
}


def normalize_zip(value: Optional[str]) -> Optional[str]:
    """Return the 5-digit ZIP for ``value`` (ZIP+4 and padding tolerated)."""
    if value is None:
        return None
    digits = str(value).strip().split("-", 1)[0].strip()
    if not digits.isdigit():
        return None
    return digits.zfill(5)[:5]


def _coerce_float(value: Optional[str]) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value.replace(",", ""))
    except ValueError as exc:
        raise ValueError(f"Unable to parse float from value '{value}'") from exc


def _load_centroids_file(path: Path) -> dict[str, tuple[float, float]]:
    centroids: dict[str, tuple[float, float]] = {}
    with path.open(mode="r", encoding="utf-8-sig", newline="") as handle:
        reader = csv.DictReader(handle)
        if not reader.fieldnames:
            raise ValueError(f"ZIP centroid file '{path}' is missing a header row.")
        for row in reader:
            zip_code = normalize_zip(row.get("zip_code") or row.get("zip") or row.get("ZIP"))
            lat = _coerce_float(row.get("latitude") or row.get("Latitude") or row.get("lat"))
            lon = _coerce_float(row.get("longitude") or row.get("Longitude") or row.get("lng"))
            if zip_code is None or lat is None or lon is None:
                continue  # ignore incomplete rows
            centroids[zip_code] = (lat, lon)
    return centroids


@functools.lru_cache(maxsize=1)
def load_zip_centroids(source: Optional[Path] = None) -> dict[str, tuple[float, float]]:
    """Built-in centroids merged with the configured CSV file, if it exists."""

    centroids = dict(BUILTIN_ZIP_CENTROIDS)
    csv_path = source or settings.zip_centroids_file
    if csv_path.exists():
        extra = _load_centroids_file(csv_path)
        logger.info(f"Loaded {len(extra)} ZIP centroids from {csv_path}")
        centroids.update(extra)
    return centroids


def lookup_zip_centroid(zip_code: Optional[str], source: Optional[Path] = None) -> Optional[tuple[float, float]]:
    normalized = normalize_zip(zip_code)
    if normalized is None:
        return None
    return load_zip_centroids(source).get(normalized)


def clear_zip_centroid_cache() -> None:
    load_zip_centroids.cache_clear()
