"""Choose between the routing service matrix and the haversine heuristic per cluster."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Protocol, Sequence

from ...config import settings
from ...errors import FatalConfigurationError, OptimizationServiceFailure
from ...models.domain import CollectionPoint, GeocodedOrder, OptimizationDecision, OptimizationMethod, ResolvedAddress
from ..cache import TTLCache, matrix_cache
from ..geospatial import haversine_table
from .osrm_client import OSRMClient, build_coordinate_list
from .sequencer import SequencedRoute, sequence_stops

logger = logging.getLogger(__name__)

UNREACHABLE_LEG_THRESHOLD = 0.5
MATRIX_CACHE_PRECISION = 4

REASON_FORCED = "forced"
REASON_NOT_CONFIGURED = "routing service not configured"


class RoutingState(str, Enum):
    ATTEMPT_SERVICE = "attempt_service"
    SERVICE_USED = "service_used"
    FALLBACK_USED = "fallback_used"


class DistanceMatrixProvider(Protocol):
    def table(self, coordinates: Sequence[tuple[float, float]]) -> dict: ...


@dataclass(slots=True)
class RoutePlanResult:
    route: SequencedRoute
    decision: OptimizationDecision


def _check_table_shape(table: dict, size: int) -> None:
    for key in ("durations", "distances"):
        matrix = table.get(key) if isinstance(table, dict) else None
        if not isinstance(matrix, list) or len(matrix) != size or any(len(row) != size for row in matrix):
            raise ValueError(f"malformed routing service response: '{key}' is not a {size}x{size} matrix")


def matrix_cache_key(coordinates: Sequence[tuple[float, float]]) -> tuple:
    """Coordinates rounded to ~10 m, in request order."""
    return (
        "matrix",
        tuple((round(lat, MATRIX_CACHE_PRECISION), round(lon, MATRIX_CACHE_PRECISION)) for lat, lon in coordinates),
    )


def reachable_share(table: dict) -> float:
    """Share of off-diagonal cells with both a duration and a distance."""
    durations = table.get("durations") or []
    distances = table.get("distances") or []
    n = len(durations)
    if n < 2:
        return 1.0
    reachable = sum(
        1
        for i in range(n)
        for j in range(n)
        if i != j and durations[i][j] is not None and distances[i][j] is not None
    )
    return reachable / (n * (n - 1))


def unreachable_origin_share(table: dict) -> float:
    """Share of collection point legs (row 0) with no route."""
    durations = table.get("durations") or []
    distances = table.get("distances") or []
    if not durations or len(durations[0]) < 2:
        return 0.0
    legs = len(durations[0]) - 1
    unreachable = sum(
        1 for j in range(1, legs + 1) if durations[0][j] is None or distances[0][j] is None
    )
    return unreachable / legs


class FallbackController:
    """Runs ATTEMPT_SERVICE then SERVICE_USED or FALLBACK_USED for each cluster."""

    def __init__(
        self,
        client: DistanceMatrixProvider | None,
        *,
        force_fallback: bool = False,
        require_routing_service: bool = False,
        average_speed_kmh: float | None = None,
        service_minutes: float | None = None,
        tie_epsilon_km: float | None = None,
        two_opt_enabled: bool | None = None,
        matrix_cache: TTLCache | None = None,
    ) -> None:
        self.client = client
        self.matrix_cache = matrix_cache
        self.force_fallback = force_fallback
        self.require_routing_service = require_routing_service
        self.average_speed_kmh = average_speed_kmh if average_speed_kmh is not None else settings.average_speed_kmh
        self.service_minutes = service_minutes if service_minutes is not None else settings.stop_service_minutes
        self.tie_epsilon_km = tie_epsilon_km if tie_epsilon_km is not None else settings.tie_epsilon_km
        self.two_opt_enabled = two_opt_enabled if two_opt_enabled is not None else settings.two_opt_enabled

    @classmethod
    def from_settings(cls, force_fallback: bool = False) -> "FallbackController":
        client: DistanceMatrixProvider | None = None
        if settings.osrm_base_url:
            client = OSRMClient()
        return cls(
            client,
            force_fallback=force_fallback or settings.force_fallback,
            require_routing_service=settings.require_routing_service,
            matrix_cache=matrix_cache,
        )

    def check_configuration(self) -> None:
        """Raise before any writes if a routing service is required but missing."""
        if self.require_routing_service and self.client is None and not self.force_fallback:
            raise FatalConfigurationError(
                "A routing service is required but BATCH_OSRM_BASE_URL is not set.",
                {"setting": "osrm_base_url"},
            )

    def distance_matrix(self, coordinates: Sequence[tuple[float, float]]) -> tuple[dict, OptimizationDecision]:
        transitions = [RoutingState.ATTEMPT_SERVICE.value]

        def fallback(reason: str) -> tuple[dict, OptimizationDecision]:
            transitions.append(RoutingState.FALLBACK_USED.value)
            return (
                haversine_table(coordinates, self.average_speed_kmh),
                OptimizationDecision(
                    method=OptimizationMethod.GEOGRAPHIC_FALLBACK,
                    fallback_reason=reason,
                    transitions=transitions,
                ),
            )

        if self.force_fallback:
            return fallback(REASON_FORCED)
        if self.client is None:
            self.check_configuration()
            return fallback(REASON_NOT_CONFIGURED)

        key = matrix_cache_key(coordinates)
        table = self.matrix_cache.get(key) if self.matrix_cache is not None else None
        if table is None:
            try:
                table = self.client.table(coordinates)
                _check_table_shape(table, len(coordinates))
            except OptimizationServiceFailure as e:
                logger.warning(f"Routing service failed, using geographic fallback: {e.message}")
                return fallback(e.message)
            except Exception as e:
                # Any provider error falls back for this cluster only.
                logger.warning(f"Routing service failed, using geographic fallback: {type(e).__name__}: {e}")
                return fallback(str(e) or type(e).__name__)
            if self.matrix_cache is not None:
                self.matrix_cache.set(key, table)
        else:
            logger.debug(f"Distance matrix cache hit for {len(coordinates)} coordinates")

        unreachable = unreachable_origin_share(table)
        if unreachable > UNREACHABLE_LEG_THRESHOLD:
            reason = f"{unreachable * 100:.0f}% of collection point legs unreachable"
            logger.warning(f"Too many unreachable routes from routing service ({reason}). Using haversine fallback.")
            return fallback(reason)

        transitions.append(RoutingState.SERVICE_USED.value)
        return table, OptimizationDecision(
            method=OptimizationMethod.ROUTING_SERVICE,
            confidence=round(reachable_share(table), 4),
            transitions=transitions,
        )

    def plan(
        self,
        origin: CollectionPoint,
        orders: Sequence[GeocodedOrder],
        *,
        start_time: datetime,
    ) -> RoutePlanResult:
        """Sequence one cluster, recording which distance source was used."""
        stops = [
            (item.location.latitude, item.location.longitude)
            for item in orders
            if isinstance(item.location, ResolvedAddress)
        ]
        if not stops:
            raise OptimizationServiceFailure("Cluster has no orders with usable coordinates.")
        coordinates = build_coordinate_list(origin.latitude, origin.longitude, stops)
        table, decision = self.distance_matrix(coordinates)
        route = sequence_stops(
            origin,
            orders,
            table,
            start_time=start_time,
            service_minutes=self.service_minutes,
            average_speed_kmh=self.average_speed_kmh,
            tie_epsilon_km=self.tie_epsilon_km,
            use_two_opt=self.two_opt_enabled and decision.method is OptimizationMethod.ROUTING_SERVICE,
        )
        return RoutePlanResult(route=route, decision=decision)
