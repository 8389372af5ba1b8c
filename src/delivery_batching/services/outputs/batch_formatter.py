"""Serializers for saved batches."""

from __future__ import annotations

import csv
import io
from typing import Sequence

from ...models.domain import SavedBatch
from ...schemas.batching import BatchStopModel, BatchSummaryModel


def saved_batch_to_summary(saved: SavedBatch) -> BatchSummaryModel:
    plan = saved.plan
    lat, lon = plan.estimated_center
    return BatchSummaryModel(
        batch_id=saved.batch_id,
        batch_number=saved.batch_number,
        order_count=len(plan.stops),
        collection_point_id=plan.collection_point.collection_point_id,
        collection_point_address=plan.collection_point.address,
        zip_codes=plan.zip_codes,
        optimization_method=plan.decision.method.value,
        optimization_confidence=plan.decision.confidence,
        fallback_reason=plan.decision.fallback_reason,
        rationale=plan.rationale,
        is_subsidized=plan.is_subsidized,
        total_distance_km=plan.total_distance_km,
        estimated_duration_minutes=plan.estimated_duration_minutes,
        estimated_center={"lat": lat, "lng": lon},
        stops=[
            BatchStopModel(
                sequence_number=stop.sequence_number,
                order_id=stop.order_id,
                address=stop.address,
                zip_code=stop.zip_code,
                latitude=stop.latitude,
                longitude=stop.longitude,
                estimated_arrival=stop.estimated_arrival,
                distance_from_prev_km=stop.distance_from_prev_km,
                box_code=saved.box_codes[stop.order_id],
                status=stop.status.value,
            )
            for stop in plan.stops
        ],
    )


def batches_to_csv(batches: Sequence[SavedBatch]) -> str:
    buffer = io.StringIO()
    fieldnames = [
        "batch_number",
        "batch_id",
        "sequence_number",
        "box_code",
        "order_id",
        "zip_code",
        "address",
        "latitude",
        "longitude",
        "estimated_arrival",
        "distance_from_prev_km",
        "optimization_method",
    ]
    writer = csv.DictWriter(buffer, fieldnames=fieldnames)
    writer.writeheader()
    for saved in batches:
        for stop in saved.plan.stops:
            writer.writerow(
                {
                    "batch_number": saved.batch_number,
                    "batch_id": saved.batch_id,
                    "sequence_number": stop.sequence_number,
                    "box_code": saved.box_codes[stop.order_id],
                    "order_id": stop.order_id,
                    "zip_code": stop.zip_code,
                    "address": stop.address,
                    "latitude": stop.latitude,
                    "longitude": stop.longitude,
                    "estimated_arrival": stop.estimated_arrival.isoformat(),
                    "distance_from_prev_km": stop.distance_from_prev_km,
                    "optimization_method": saved.plan.decision.method.value,
                }
            )
    return buffer.getvalue()
