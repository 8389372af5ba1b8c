"""Batch generation orchestration service."""

from __future__ import annotations

import copy
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, time, timedelta
from typing import Sequence

from ...config import settings
from ...data.collection_points import get_collection_points
from ...db.supabase import require_supabase_client
from ...errors import (
    FatalConfigurationError,
    GeocodingFailure,
    NoPendingOrders,
    OptimizationServiceFailure,
    PersistenceFailure,
)
from ...models.domain import BatchPlan, CollectionPoint, SavedBatch
from ...persistence.batch_store import BatchStore, SupabaseBatchStore
from ...persistence.filesystem import FileStorage
from ...schemas.batching import (
    BatchFailureModel,
    BatchGenerationRequest,
    BatchGenerationResponse,
    SkippedOrderModel,
)
from ..geocoding.geocoder import Geocoder
from ..geospatial import centroid
from ..outputs.batch_formatter import batches_to_csv, saved_batch_to_summary
from ..routing.fallback import FallbackController
from .clustering import OrderCluster, cluster_orders
from .writer import BatchWriter

logger = logging.getLogger(__name__)

WEEKDAY_CODES = ("MON", "TUE", "WED", "THU", "FRI", "SAT", "SUN")


def next_delivery_day(today: date | None = None, delivery_days: Sequence[str] | None = None) -> date:
    """First configured delivery day strictly after ``today``."""
    today = today or date.today()
    days = set(delivery_days if delivery_days is not None else settings.delivery_days)
    if not days:
        return today + timedelta(days=1)
    for offset in range(1, 8):
        candidate = today + timedelta(days=offset)
        if WEEKDAY_CODES[candidate.weekday()] in days:
            return candidate
    return today + timedelta(days=1)


def default_store() -> BatchStore:
    return SupabaseBatchStore(require_supabase_client())


def _load_collection_points(geocoder: Geocoder) -> dict[str, CollectionPoint]:
    try:
        points = get_collection_points(geocoder.locate)
    except (FileNotFoundError, ValueError) as e:
        raise FatalConfigurationError(f"No collection points available: {e}") from e
    if not points:
        raise FatalConfigurationError("No collection points available.")
    return {point.collection_point_id: point for point in points}


def _resolve_collection_point(
    cluster: OrderCluster, points: dict[str, CollectionPoint]
) -> CollectionPoint:
    if cluster.collection_point_id and cluster.collection_point_id in points:
        return points[cluster.collection_point_id]
    default = next(iter(points.values()))
    logger.warning(
        f"Collection point '{cluster.collection_point_id}' unknown for orders {cluster.order_ids}; "
        f"routing from {default.collection_point_id}"
    )
    return default


def _skipped(failure: GeocodingFailure) -> SkippedOrderModel:
    logger.warning(failure.message)
    return SkippedOrderModel(order_id=failure.order_id, reason=failure.reason, code=failure.code)


def _rationale(cluster: OrderCluster, point: CollectionPoint, method: str, is_subsidized: bool) -> str:
    zip_codes = cluster.zip_codes
    zips = zip_codes[0] if len(zip_codes) == 1 else f"merged ZIPs {', '.join(zip_codes)}"
    parts = [f"{cluster.size} order(s) in {zips} from {point.name or point.address}", f"sequenced via {method}"]
    if is_subsidized:
        parts.append(f"below minimum viable size of {settings.min_viable_batch_size}")
    return "; ".join(parts)


def plan_cluster(
    cluster: OrderCluster,
    point: CollectionPoint,
    controller: FallbackController,
    delivery_date: date,
) -> BatchPlan:
    start_time = datetime.combine(delivery_date, time(hour=settings.batch_start_hour))
    result = controller.plan(point, cluster.orders, start_time=start_time)
    route = result.route
    is_subsidized = cluster.size < settings.min_viable_batch_size
    return BatchPlan(
        delivery_date=delivery_date,
        collection_point=point,
        stops=route.stops,
        zip_codes=cluster.zip_codes,
        decision=result.decision,
        total_distance_km=route.total_distance_km,
        estimated_duration_minutes=route.estimated_duration_minutes,
        estimated_center=centroid([(stop.latitude, stop.longitude) for stop in route.stops]),
        is_subsidized=is_subsidized,
        rationale=_rationale(cluster, point, result.decision.method.value, is_subsidized),
    )


def _write_report(delivery_date: date, response: BatchGenerationResponse, saved: list[SavedBatch]) -> str:
    storage = FileStorage()
    run_dir = storage.write_run_report(delivery_date, response.model_dump(mode="json"), batches_to_csv(saved))
    logger.info(f"Run report written to {run_dir}")
    return str(run_dir)


def generate_batches(
    payload: BatchGenerationRequest,
    *,
    store: BatchStore | None = None,
    geocoder: Geocoder | None = None,
    controller: FallbackController | None = None,
    collection_points: Sequence[CollectionPoint] | None = None,
    today: date | None = None,
) -> BatchGenerationResponse:
    """Create delivery batches for every unbatched pending order on the target date.

    Configuration problems raise FatalConfigurationError before anything is
    written. Per-order and per-batch problems are reported in the response.
    """
    delivery_date = payload.delivery_date or next_delivery_day(today)
    logger.info(f"Starting batch generation for delivery date {delivery_date.isoformat()}")

    if controller is None:
        controller = FallbackController.from_settings(force_fallback=payload.force_fallback)
    elif payload.force_fallback:
        controller = copy.copy(controller)
        controller.force_fallback = True
    controller.check_configuration()

    store = store or default_store()
    orders = store.pending_orders(delivery_date)
    if not orders:
        info = NoPendingOrders("No pending orders to process")
        logger.info(f"No pending orders found for {delivery_date.isoformat()}")
        return BatchGenerationResponse(
            success=True,
            delivery_date=delivery_date,
            batches_created=0,
            total_orders_processed=0,
            message=info.message,
            code=info.code,
        )

    geocoder = geocoder or Geocoder()
    geocoded = geocoder.geocode_orders(orders)
    clustering = cluster_orders(geocoded, settings.max_stops_per_batch)
    skipped = [_skipped(GeocodingFailure(item.order_id, item.location.reason)) for item in clustering.unresolved]

    failures: list[BatchFailureModel] = []
    saved: list[SavedBatch] = []

    if clustering.clusters:
        if collection_points is not None:
            if not collection_points:
                raise FatalConfigurationError("No collection points available.")
            points = {point.collection_point_id: point for point in collection_points}
        else:
            points = _load_collection_points(geocoder)

        assignments = [(cluster, _resolve_collection_point(cluster, points)) for cluster in clustering.clusters]
        with ThreadPoolExecutor(max_workers=settings.max_parallel_requests) as executor:
            futures = [
                executor.submit(plan_cluster, cluster, point, controller, delivery_date)
                for cluster, point in assignments
            ]

        writer = BatchWriter(store)
        # Writes follow cluster order so batch numbers do too.
        for (cluster, _), future in zip(assignments, futures):
            try:
                plan = future.result()
            except OptimizationServiceFailure as e:
                logger.error(f"Could not plan batch for orders {cluster.order_ids}: {e.message}")
                failures.append(
                    BatchFailureModel(code=e.code, error=e.message, order_ids=cluster.order_ids)
                )
                continue
            except Exception as e:
                logger.exception(f"Unexpected error planning batch for orders {cluster.order_ids}: {e}")
                failures.append(
                    BatchFailureModel(
                        code=OptimizationServiceFailure.code,
                        error=f"{type(e).__name__}: {e}",
                        order_ids=cluster.order_ids,
                    )
                )
                continue
            try:
                saved.append(writer.write(plan))
            except PersistenceFailure as e:
                failures.append(
                    BatchFailureModel(
                        code=e.code, error=e.message, order_ids=e.order_ids, batch_number=e.batch_number
                    )
                )

    message = f"Created {len(saved)} batch(es) from {len(orders)} pending order(s)"
    if skipped:
        message += f"; {len(skipped)} order(s) skipped"
    if failures:
        message += f"; {len(failures)} batch(es) failed"
    logger.info(message)

    response = BatchGenerationResponse(
        success=True,
        delivery_date=delivery_date,
        batches_created=len(saved),
        total_orders_processed=len(orders),
        optimization_methods={str(item.batch_number): item.plan.decision.method.value for item in saved},
        batches=[saved_batch_to_summary(item) for item in saved],
        skipped=skipped,
        failures=failures,
        message=message,
    )

    persist = payload.persist_report if payload.persist_report is not None else settings.persist_run_reports
    if persist:
        response.report_path = _write_report(delivery_date, response, saved)
    return response


def claim_batch(batch_id: str, driver_id: str, *, store: BatchStore | None = None) -> dict:
    """Assign a pending batch to a driver. Raises BatchNotFound / BatchUnavailable."""
    store = store or default_store()
    batch = store.claim_batch(batch_id, driver_id)
    logger.info(f"Batch {batch_id} claimed by driver {driver_id}")
    return batch
