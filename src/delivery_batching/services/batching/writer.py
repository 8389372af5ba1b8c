"""Write one planned batch (batch, stops, metadata, order links) as a single unit."""

from __future__ import annotations

import logging
from typing import Any

from ...errors import PersistenceFailure
from ...models.domain import BatchPlan, BatchStatus, SavedBatch
from ...persistence.batch_store import BatchStore

logger = logging.getLogger(__name__)


def box_code(batch_number: int, sequence_number: int) -> str:
    return f"B{batch_number}-{sequence_number}"


def _batch_row(plan: BatchPlan, batch_number: int) -> dict[str, Any]:
    return {
        "batch_number": batch_number,
        "delivery_date": plan.delivery_date.isoformat(),
        "status": BatchStatus.PENDING.value,
        "driver_id": None,
        "lead_farmer_id": plan.collection_point.collection_point_id,
        "zip_codes": plan.zip_codes,
        "estimated_duration_minutes": plan.estimated_duration_minutes,
        "total_distance_km": plan.total_distance_km,
    }


def _stop_rows(plan: BatchPlan, batch_id: str, box_codes: dict[str, str]) -> list[dict[str, Any]]:
    return [
        {
            "delivery_batch_id": batch_id,
            "order_id": stop.order_id,
            "address": stop.address,
            "latitude": stop.latitude,
            "longitude": stop.longitude,
            "sequence_number": stop.sequence_number,
            "estimated_arrival": stop.estimated_arrival.isoformat(),
            "status": stop.status.value,
            "box_code": box_codes[stop.order_id],
        }
        for stop in plan.stops
    ]


def _metadata_row(plan: BatchPlan, batch_id: str) -> dict[str, Any]:
    decision = plan.decision
    lat, lon = plan.estimated_center
    return {
        "delivery_batch_id": batch_id,
        "order_count": len(plan.stops),
        "collection_point_id": plan.collection_point.collection_point_id,
        "collection_point_address": plan.collection_point.address,
        "original_zip_codes": plan.zip_codes,
        "merged_zips": plan.zip_codes if len(plan.zip_codes) > 1 else None,
        "is_subsidized": plan.is_subsidized,
        "optimization_method": decision.method.value,
        "optimization_confidence": decision.confidence,
        "fallback_reason": decision.fallback_reason,
        "optimization_data": {
            "rationale": plan.rationale,
            "estimated_center": {"lat": lat, "lng": lon},
            "transitions": decision.transitions,
        },
    }


class BatchWriter:
    def __init__(self, store: BatchStore) -> None:
        self.store = store

    def write(self, plan: BatchPlan) -> SavedBatch:
        """Persist ``plan``. On failure everything written is removed and PersistenceFailure is raised."""
        order_ids = plan.order_ids
        try:
            batch_number = self.store.next_batch_number()
        except PersistenceFailure as e:
            raise PersistenceFailure(e.message, order_ids) from e
        except Exception as e:
            logger.error(f"Could not allocate a batch number: {e}")
            raise PersistenceFailure(f"Could not allocate a batch number: {e}", order_ids) from e

        box_codes = {stop.order_id: box_code(batch_number, stop.sequence_number) for stop in plan.stops}

        batch_id: str | None = None
        try:
            batch_id = self.store.insert_batch(_batch_row(plan, batch_number))
            self.store.insert_stops(_stop_rows(plan, batch_id, box_codes))
            self.store.insert_metadata(_metadata_row(plan, batch_id))
            self.store.link_orders(batch_id, box_codes)
        except Exception as e:
            logger.error(f"Failed to write batch {batch_number} ({len(order_ids)} orders): {e}")
            if batch_id is not None:
                self._rollback(batch_id, batch_number)
            message = e.message if isinstance(e, PersistenceFailure) else str(e)
            raise PersistenceFailure(
                f"Batch {batch_number} was not saved: {message}", order_ids, batch_number
            ) from e

        logger.info(f"Created batch {batch_number} ({batch_id}) with {len(order_ids)} stops")
        return SavedBatch(batch_id=batch_id, batch_number=batch_number, plan=plan, box_codes=box_codes)

    def _rollback(self, batch_id: str, batch_number: int) -> None:
        try:
            self.store.delete_batch(batch_id)
        except Exception as e:
            logger.error(f"Rollback of batch {batch_number} ({batch_id}) failed: {e}")
