"""HTTP client for the OSRM table service."""

from __future__ import annotations

import logging
import time
from typing import Sequence

import httpx

from ...config import settings
from ...errors import OptimizationServiceFailure

logger = logging.getLogger(__name__)


class OSRMClient:
    def __init__(
        self,
        base_url: str | None = None,
        profile: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff_seconds: float | None = None,
        transport: httpx.BaseTransport | None = None,
        max_total_seconds: float | None = None,
    ) -> None:
        self.base_url = (base_url or settings.osrm_base_url or "").rstrip("/")
        if not self.base_url:
            raise ValueError("OSRM base URL is not configured.")
        self.profile = profile or settings.osrm_profile
        self.timeout = timeout if timeout is not None else settings.osrm_timeout_seconds
        self.max_retries = max_retries if max_retries is not None else settings.osrm_max_retries
        self.backoff_seconds = backoff_seconds if backoff_seconds is not None else settings.osrm_backoff_seconds
        self.max_total_seconds = (
            max_total_seconds if max_total_seconds is not None else settings.osrm_max_total_seconds
        )
        self._transport = transport

    def _get_client(self) -> httpx.Client:
        # One client per call; the planner runs clusters on several threads.
        return httpx.Client(
            timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 10.0)),
            transport=self._transport,
        )

    def _backoff(self, attempt: int) -> float:
        return self.backoff_seconds * (2 ** (attempt - 1))

    def table(self, coordinates: Sequence[tuple[float, float]]) -> dict:
        """Return the OSRM duration (s) and distance (m) matrix for ``coordinates``.

        Coordinates are (lat, lon). Raises OptimizationServiceFailure when the
        payload is malformed or retries run out. Retries stop early once the next
        attempt would start after ``max_total_seconds``.
        """
        if len(coordinates) < 2:
            raise ValueError("At least two coordinates are required for OSRM table.")

        coordinate_str = ";".join(f"{lon},{lat}" for lat, lon in coordinates)
        params = {"annotations": "duration,distance"}
        url = f"{self.base_url}/table/v1/{self.profile}/{coordinate_str}"
        deadline = time.monotonic() + self.max_total_seconds

        def retry_or_raise(attempt: int, failure: OptimizationServiceFailure, error: Exception) -> None:
            if attempt > self.max_retries:
                raise failure from error
            wait_time = self._backoff(attempt)
            if time.monotonic() + wait_time >= deadline:
                logger.warning(f"OSRM retry budget of {self.max_total_seconds:g}s exhausted after {attempt} attempt(s)")
                raise failure from error
            logger.debug(f"OSRM request failed, retrying in {wait_time:.2f}s (attempt {attempt}/{self.max_retries}): {error}")
            time.sleep(wait_time)

        client = self._get_client()
        try:
            attempt = 0
            while True:
                try:
                    response = client.get(url, params=params)
                    response.raise_for_status()
                    data = response.json()
                    _validate_table(data, len(coordinates))
                    return data
                except httpx.TimeoutException as e:
                    attempt += 1
                    retry_or_raise(
                        attempt, OptimizationServiceFailure(f"routing service timed out after {self.timeout:g}s"), e
                    )
                except httpx.HTTPStatusError as e:
                    attempt += 1
                    retry_or_raise(
                        attempt,
                        OptimizationServiceFailure(f"routing service returned HTTP {e.response.status_code}"),
                        e,
                    )
                except (httpx.TransportError, OSError) as e:
                    attempt += 1
                    retry_or_raise(
                        attempt,
                        OptimizationServiceFailure(f"routing service unreachable at {self.base_url}: {e}"),
                        e,
                    )
                except ValueError as e:
                    # Malformed payloads are not retried.
                    raise OptimizationServiceFailure(f"malformed routing service response: {e}") from e
        finally:
            client.close()


def _validate_table(data: dict, size: int) -> None:
    if not isinstance(data, dict):
        raise ValueError("response is not a JSON object")
    if data.get("code", "Ok") != "Ok":
        raise ValueError(data.get("message") or f"code {data.get('code')}")
    for key in ("durations", "distances"):
        matrix = data.get(key)
        if not isinstance(matrix, list) or len(matrix) != size:
            raise ValueError(f"missing or mis-sized '{key}' matrix")
        if any(not isinstance(row, list) or len(row) != size for row in matrix):
            raise ValueError(f"'{key}' matrix is not {size}x{size}")


def build_coordinate_list(
    origin_lat: float,
    origin_lon: float,
    stops: Sequence[tuple[float, float]],
) -> list[tuple[float, float]]:
    """Coordinate list for OSRM requests: [origin, *stops]."""
    return [(origin_lat, origin_lon), *stops]


def check_health(base_url: str | None = None, transport: httpx.BaseTransport | None = None) -> bool:
    """Check OSRM availability with a minimal two-point table request.

    Public OSRM endpoints have no /health route.
    """
    base = base_url or settings.osrm_base_url
    if not base:
        return False
    test_coords = "-73.9971,40.7506;-73.9860,40.7157"
    url = f"{base.rstrip('/')}/table/v1/{settings.osrm_profile}/{test_coords}"
    try:
        with httpx.Client(timeout=5.0, transport=transport) as client:
            response = client.get(url, params={"annotations": "duration"})
            response.raise_for_status()
            data = response.json()
    except (httpx.HTTPError, ValueError):
        return False
    return "durations" in data and isinstance(data.get("durations"), list)
