"""Stop sequencing: nearest neighbour from the collection point, optional 2-opt.

Matrix conventions follow the OSRM table service: ``distances`` in meters,
``durations`` in seconds, index 0 is the collection point and index ``i`` is
stop ``i - 1``. Missing cells (``None``) are filled with straight-line
estimates before sequencing.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Sequence

from ...errors import OptimizationServiceFailure
from ...models.domain import CollectionPoint, GeocodedOrder, PlannedStop, ResolvedAddress
from ..geospatial import haversine_km

logger = logging.getLogger(__name__)

MAX_TWO_OPT_PASSES = 50


@dataclass(slots=True)
class SequencedRoute:
    stops: list[PlannedStop]
    total_distance_km: float
    total_drive_minutes: float
    estimated_duration_minutes: int


def _zip_sort_key(zip_code: str) -> int:
    digits = "".join(ch for ch in zip_code if ch.isdigit())[:5]
    return int(digits) if digits else 10**9


def prepare_matrices(
    table: dict,
    coordinates: Sequence[tuple[float, float]],
    average_speed_kmh: float,
) -> tuple[list[list[float]], list[list[float]]]:
    """Return (distance_km, duration_min) matrices with gaps filled by haversine estimates."""
    n = len(coordinates)
    raw_distances = table.get("distances") or []
    raw_durations = table.get("durations") or []
    if len(raw_distances) != n or len(raw_durations) != n:
        raise ValueError(f"Matrix size mismatch: expected {n}, got {len(raw_distances)}/{len(raw_durations)}")

    distance_km = [[0.0] * n for _ in range(n)]
    duration_min = [[0.0] * n for _ in range(n)]
    for i in range(n):
        for j in range(n):
            if i == j:
                continue
            meters = raw_distances[i][j]
            seconds = raw_durations[i][j]
            if meters is None or seconds is None:
                estimate = haversine_km(*coordinates[i], *coordinates[j])
                distance_km[i][j] = estimate
                duration_min[i][j] = estimate / average_speed_kmh * 60.0
            else:
                distance_km[i][j] = float(meters) / 1000.0
                duration_min[i][j] = float(seconds) / 60.0
    return distance_km, duration_min


def nearest_neighbour_order(
    distance_km: Sequence[Sequence[float]],
    tie_keys: Sequence[tuple[int, str]],
    tie_epsilon_km: float,
) -> list[int]:
    """Greedy tour over matrix indices 1..n starting at index 0.

    ``tie_keys[i - 1]`` orders candidates whose distance is within
    ``tie_epsilon_km`` of the nearest one.
    """
    remaining = set(range(1, len(distance_km)))
    path = [0]
    current = 0
    while remaining:
        best = min(distance_km[current][j] for j in remaining)
        candidates = [j for j in remaining if distance_km[current][j] - best <= tie_epsilon_km]
        chosen = min(candidates, key=lambda j: tie_keys[j - 1])
        path.append(chosen)
        remaining.remove(chosen)
        current = chosen
    return path


def path_cost(path: Sequence[int], matrix: Sequence[Sequence[float]]) -> float:
    return sum(matrix[path[k - 1]][path[k]] for k in range(1, len(path)))


def two_opt(path: list[int], distance_km: Sequence[Sequence[float]]) -> list[int]:
    """Improve an open path with a fixed start by segment reversal."""
    best = list(path)
    best_cost = path_cost(best, distance_km)
    n = len(best)
    for _ in range(MAX_TWO_OPT_PASSES):
        improved = False
        for i in range(1, n - 1):
            for j in range(i + 1, n):
                candidate = best[:i] + best[i : j + 1][::-1] + best[j + 1 :]
                cost = path_cost(candidate, distance_km)
                if cost < best_cost - 1e-9:
                    best, best_cost = candidate, cost
                    improved = True
        if not improved:
            break
    return best


def sequence_stops(
    origin: CollectionPoint,
    orders: Sequence[GeocodedOrder],
    table: dict,
    *,
    start_time: datetime,
    service_minutes: float,
    average_speed_kmh: float,
    tie_epsilon_km: float,
    use_two_opt: bool,
) -> SequencedRoute:
    """Order ``orders`` into a route from ``origin`` and estimate arrivals."""
    if not orders:
        raise OptimizationServiceFailure("Cannot sequence an empty cluster.")
    locations: list[ResolvedAddress] = []
    for item in orders:
        if not isinstance(item.location, ResolvedAddress):
            raise OptimizationServiceFailure(
                f"Order {item.order_id} has no usable coordinates",
                {"order_id": item.order_id},
            )
        locations.append(item.location)

    coordinates = [(origin.latitude, origin.longitude)] + [(loc.latitude, loc.longitude) for loc in locations]
    distance_km, duration_min = prepare_matrices(table, coordinates, average_speed_kmh)

    tie_keys = [(_zip_sort_key(item.zip_code), item.order_id) for item in orders]
    path = nearest_neighbour_order(distance_km, tie_keys, tie_epsilon_km)
    if use_two_opt and len(path) > 3:
        improved = two_opt(path, distance_km)
        if improved != path:
            logger.debug(
                f"2-opt shortened route from {path_cost(path, distance_km):.2f}km "
                f"to {path_cost(improved, distance_km):.2f}km"
            )
        path = improved

    stops: list[PlannedStop] = []
    drive_minutes = 0.0
    total_km = 0.0
    for sequence, (prev_idx, idx) in enumerate(zip(path, path[1:]), start=1):
        leg_km = distance_km[prev_idx][idx]
        drive_minutes += duration_min[prev_idx][idx]
        total_km += leg_km
        arrival = start_time + timedelta(minutes=drive_minutes + (sequence - 1) * service_minutes)
        item = orders[idx - 1]
        location = locations[idx - 1]
        stops.append(
            PlannedStop(
                order_id=item.order_id,
                address=item.order.address.formatted() or "Address not provided",
                zip_code=item.zip_code,
                latitude=location.latitude,
                longitude=location.longitude,
                sequence_number=sequence,
                estimated_arrival=arrival,
                distance_from_prev_km=round(leg_km, 3),
            )
        )

    duration = math.ceil(round(drive_minutes + len(stops) * service_minutes, 6))
    return SequencedRoute(
        stops=stops,
        total_distance_km=round(total_km, 2),
        total_drive_minutes=drive_minutes,
        estimated_duration_minutes=duration,
    )
