"""Partition geocoded orders into batches of at most ``max_stops`` orders.

Orders are grouped by collection point and 5-digit ZIP. Groups above the
limit are bisected with 2-means on projected coordinates until they fit,
then neighbouring small groups sharing a ZIP prefix are merged while the
merged size stays within the limit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np
from sklearn.cluster import KMeans

from ...config import settings
from ...data.zip_centroids import normalize_zip
from ...models.domain import GeocodedOrder, ResolvedAddress, UnresolvedAddress
from ..geospatial import project_to_plane_km

logger = logging.getLogger(__name__)


def _zip_number(zip_code: str) -> int:
    normalized = normalize_zip(zip_code)
    return int(normalized) if normalized else 10**9


def _order_key(item: GeocodedOrder) -> tuple[int, str]:
    return _zip_number(item.zip_code), item.order_id


def _location_key(item: GeocodedOrder) -> tuple[float, float, str]:
    return item.location.latitude, item.location.longitude, item.order_id


@dataclass(slots=True)
class OrderCluster:
    collection_point_id: Optional[str]
    orders: list[GeocodedOrder]

    @property
    def size(self) -> int:
        return len(self.orders)

    @property
    def zip_codes(self) -> list[str]:
        codes = {normalize_zip(item.zip_code) or item.zip_code for item in self.orders}
        return sorted(codes, key=_zip_number)

    @property
    def order_ids(self) -> list[str]:
        return [item.order_id for item in self.orders]


@dataclass(slots=True)
class ClusteringResult:
    clusters: list[OrderCluster]
    unresolved: list[GeocodedOrder]
    metadata: dict = field(default_factory=dict)


class ZipClustering:
    """Deterministic ZIP-first clustering with k-means bisection of overloaded groups."""

    def __init__(
        self,
        *,
        zip_prefix_length: int | None = None,
        random_state: int = 42,
        max_iter: int = 100,
    ) -> None:
        self.zip_prefix_length = zip_prefix_length if zip_prefix_length is not None else settings.zip_prefix_length
        self.random_state = random_state
        self.max_iter = max_iter

    def _group_by_zip(self, resolved: Sequence[GeocodedOrder]) -> list[OrderCluster]:
        groups: dict[tuple[Optional[str], str], list[GeocodedOrder]] = {}
        for item in resolved:
            zip_code = normalize_zip(item.zip_code) or item.zip_code
            groups.setdefault((item.order.collection_point_id, zip_code), []).append(item)

        def group_key(key: tuple[Optional[str], str]) -> tuple[bool, str, int, str]:
            cp_id, zip_code = key
            return cp_id is None, cp_id or "", _zip_number(zip_code), zip_code

        return [
            OrderCluster(collection_point_id=key[0], orders=sorted(groups[key], key=_order_key))
            for key in sorted(groups, key=group_key)
        ]

    def _bisect(self, cluster: OrderCluster, iteration: int) -> tuple[list[GeocodedOrder], list[GeocodedOrder], str]:
        """Split one group in two; returns (first, second, method)."""
        items = cluster.orders
        lat_ref = float(np.mean([_location_key(item)[0] for item in items]))
        lon_ref = float(np.mean([_location_key(item)[1] for item in items]))
        coordinates = np.array(
            [project_to_plane_km(*_location_key(item)[:2], lat_ref, lon_ref) for item in items]
        )

        if len(np.unique(coordinates, axis=0)) >= 2:
            kmeans = KMeans(
                n_clusters=2,
                random_state=self.random_state + iteration,
                n_init=10,
                max_iter=self.max_iter,
            )
            labels = kmeans.fit_predict(coordinates)
            first = [item for item, label in zip(items, labels) if label == 0]
            second = [item for item, label in zip(items, labels) if label == 1]
            if first and second:
                first.sort(key=_order_key)
                second.sort(key=_order_key)
                if _order_key(second[0]) < _order_key(first[0]):
                    first, second = second, first
                return first, second, "kmeans"

        ordered = sorted(items, key=_location_key)
        midpoint = len(ordered) // 2
        first = sorted(ordered[:midpoint], key=_order_key)
        second = sorted(ordered[midpoint:], key=_order_key)
        return first, second, "midpoint"

    def _enforce_max_stops(self, groups: list[OrderCluster], max_stops: int) -> tuple[list[OrderCluster], list[dict]]:
        splits_performed: list[dict] = []
        iteration = 0
        while True:
            overloaded = [idx for idx, group in enumerate(groups) if group.size > max_stops]
            if not overloaded:
                break
            # Largest first; earliest position breaks ties.
            target = max(overloaded, key=lambda idx: (groups[idx].size, -idx))
            group = groups[target]
            first, second, method = self._bisect(group, iteration)
            groups[target : target + 1] = [
                OrderCluster(group.collection_point_id, first),
                OrderCluster(group.collection_point_id, second),
            ]
            splits_performed.append(
                {
                    "iteration": iteration + 1,
                    "zip_codes": group.zip_codes,
                    "orders_before": group.size,
                    "sizes_after": [len(first), len(second)],
                    "method": method,
                }
            )
            iteration += 1
        return groups, splits_performed

    def _merge_small_groups(self, groups: list[OrderCluster], max_stops: int) -> tuple[list[OrderCluster], int]:
        merged: list[OrderCluster] = []
        merges = 0
        for group in groups:
            if merged:
                current = merged[-1]
                same_point = current.collection_point_id == group.collection_point_id
                same_prefix = self._prefix(current) == self._prefix(group)
                if same_point and same_prefix and current.size + group.size <= max_stops:
                    current.orders = sorted(current.orders + group.orders, key=_order_key)
                    merges += 1
                    continue
            merged.append(OrderCluster(group.collection_point_id, list(group.orders)))
        return merged, merges

    def _prefix(self, cluster: OrderCluster) -> Optional[str]:
        prefixes = {code[: self.zip_prefix_length] for code in cluster.zip_codes}
        return prefixes.pop() if len(prefixes) == 1 else None

    def cluster(self, orders: Sequence[GeocodedOrder], max_stops: int) -> ClusteringResult:
        if max_stops < 1:
            raise ValueError("max_stops must be >= 1")

        unresolved = [item for item in orders if isinstance(item.location, UnresolvedAddress)]
        resolved = [item for item in orders if isinstance(item.location, ResolvedAddress)]
        if unresolved:
            logger.warning(f"{len(unresolved)} order(s) excluded from clustering: address unresolved")
        if not resolved:
            return ClusteringResult([], unresolved, metadata={"zip_groups": 0})

        groups = self._group_by_zip(resolved)
        zip_group_count = len(groups)
        groups, splits_performed = self._enforce_max_stops(groups, max_stops)
        groups, merges = self._merge_small_groups(groups, max_stops)

        logger.info(
            f"Clustered {len(resolved)} orders from {zip_group_count} ZIP group(s) into {len(groups)} batch(es) "
            f"({len(splits_performed)} split(s), {merges} merge(s))"
        )
        return ClusteringResult(
            clusters=groups,
            unresolved=unresolved,
            metadata={
                "zip_groups": zip_group_count,
                "splits_performed": splits_performed,
                "merges": merges,
                "max_stops": max_stops,
            },
        )


def cluster_orders(
    orders: Sequence[GeocodedOrder],
    max_stops: int,
    *,
    zip_prefix_length: int | None = None,
) -> ClusteringResult:
    return ZipClustering(zip_prefix_length=zip_prefix_length).cluster(orders, max_stops)
