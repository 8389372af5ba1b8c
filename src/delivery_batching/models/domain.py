"""Domain models for orders, collection points and planned batches."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Optional, Union


class AddressPrecision(str, Enum):
    EXACT = "exact"
    GEOCODED = "geocoded"
    ZIP_CENTROID = "zip_centroid"


class BatchStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class StopStatus(str, Enum):
    PENDING = "pending"
    LOADED = "loaded"
    DELIVERED = "delivered"


class OptimizationMethod(str, Enum):
    ROUTING_SERVICE = "routing_service"
    GEOGRAPHIC_FALLBACK = "geographic_fallback"


@dataclass(slots=True)
class DeliveryAddress:
    """Consumer delivery address as captured at checkout."""

    street: str
    city: str
    state: str
    zip_code: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    def formatted(self) -> str:
        locality = " ".join(part for part in (self.state, self.zip_code) if part)
        return ", ".join(part for part in (self.street, self.city, locality) if part)


@dataclass(frozen=True, slots=True)
class ResolvedAddress:
    latitude: float
    longitude: float
    precision: AddressPrecision


@dataclass(frozen=True, slots=True)
class UnresolvedAddress:
    reason: str


AddressResolution = Union[ResolvedAddress, UnresolvedAddress]


@dataclass(slots=True)
class PendingOrder:
    """An order awaiting batching."""

    order_id: str
    consumer_id: Optional[str]
    address: DeliveryAddress
    total_amount: float
    delivery_date: date
    collection_point_id: Optional[str] = None


@dataclass(slots=True)
class GeocodedOrder:
    order: PendingOrder
    location: AddressResolution

    @property
    def order_id(self) -> str:
        return self.order.order_id

    @property
    def zip_code(self) -> str:
        return self.order.address.zip_code


@dataclass(slots=True)
class CollectionPoint:
    """Pickup location (a lead farmer's address) where batches originate."""

    collection_point_id: str
    address: str
    latitude: float
    longitude: float
    name: Optional[str] = None


@dataclass(slots=True)
class PlannedStop:
    order_id: str
    address: str
    zip_code: str
    latitude: float
    longitude: float
    sequence_number: int
    estimated_arrival: datetime
    distance_from_prev_km: float
    status: StopStatus = StopStatus.PENDING


@dataclass(slots=True)
class OptimizationDecision:
    """Outcome of the fallback controller for one cluster."""

    method: OptimizationMethod
    confidence: Optional[float] = None
    fallback_reason: Optional[str] = None
    transitions: list[str] = field(default_factory=list)


@dataclass(slots=True)
class BatchPlan:
    """A sequenced cluster, ready to be written."""

    delivery_date: date
    collection_point: CollectionPoint
    stops: list[PlannedStop]
    zip_codes: list[str]
    decision: OptimizationDecision
    total_distance_km: float
    estimated_duration_minutes: int
    estimated_center: tuple[float, float]
    is_subsidized: bool
    rationale: str

    @property
    def order_ids(self) -> list[str]:
        return [stop.order_id for stop in self.stops]


@dataclass(slots=True)
class SavedBatch:
    batch_id: str
    batch_number: int
    plan: BatchPlan
    box_codes: dict[str, str]
