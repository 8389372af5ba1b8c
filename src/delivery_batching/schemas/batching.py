"""Batch generation and route claiming request/response schemas."""

from __future__ import annotations

from datetime import date, datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from ..errors import GeocodingFailure


class BatchGenerationRequest(BaseModel):
    delivery_date: Optional[date] = Field(
        default=None,
        description="Target delivery date. Defaults to the next configured delivery day.",
    )
    force_fallback: bool = Field(
        default=False,
        description="Skip the routing service and sequence stops with the geographic heuristic.",
    )
    persist_report: Optional[bool] = Field(
        default=None,
        description="Write summary.json/stops.csv for this run. Defaults to BATCH_PERSIST_RUN_REPORTS.",
    )
    requested_by: Optional[str] = Field(default=None, description="Person or system requesting the run.")


class BatchStopModel(BaseModel):
    sequence_number: int
    order_id: str
    address: str
    zip_code: str
    latitude: float
    longitude: float
    estimated_arrival: datetime
    distance_from_prev_km: float
    box_code: str
    status: str


class BatchSummaryModel(BaseModel):
    batch_id: str
    batch_number: int
    order_count: int
    collection_point_id: str
    collection_point_address: str
    zip_codes: List[str]
    optimization_method: str
    optimization_confidence: Optional[float] = None
    fallback_reason: Optional[str] = None
    rationale: str
    is_subsidized: bool
    total_distance_km: float
    estimated_duration_minutes: int
    estimated_center: Dict[str, float]
    stops: List[BatchStopModel]


class SkippedOrderModel(BaseModel):
    order_id: str
    reason: str
    code: str = GeocodingFailure.code


class BatchFailureModel(BaseModel):
    code: str
    error: str
    order_ids: List[str]
    batch_number: Optional[int] = None


class BatchGenerationResponse(BaseModel):
    success: bool
    delivery_date: date
    batches_created: int
    total_orders_processed: int
    optimization_methods: Dict[str, str] = Field(
        default_factory=dict,
        description="Optimization method used, keyed by batch number.",
    )
    batches: List[BatchSummaryModel] = Field(default_factory=list)
    skipped: List[SkippedOrderModel] = Field(default_factory=list)
    failures: List[BatchFailureModel] = Field(default_factory=list)
    message: Optional[str] = None
    code: Optional[str] = None
    report_path: Optional[str] = None


class ClaimBatchRequest(BaseModel):
    driver_id: str = Field(..., min_length=1)


class ClaimBatchResponse(BaseModel):
    success: bool
    batch_id: str
    driver_id: str
    status: str
