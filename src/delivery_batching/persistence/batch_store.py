"""Batch storage backends.

Both stores expose the same primitives. ``BatchWriter`` composes them into a
single unit per batch and undoes partial writes with ``delete_batch``.
"""

from __future__ import annotations

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from typing import Any, Iterable, Optional

from supabase import Client

from ..data.orders_repository import fetch_pending_orders
from ..errors import BatchNotFound, BatchUnavailable, PersistenceFailure
from ..models.domain import BatchStatus, PendingOrder

logger = logging.getLogger(__name__)

BATCHES_TABLE = "delivery_batches"
STOPS_TABLE = "batch_stops"
METADATA_TABLE = "batch_metadata"
ORDERS_TABLE = "orders"
LINKED_ORDER_STATUS = "confirmed"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class BatchStore(ABC):
    """Storage primitives used by the batch writer and the claim endpoint."""

    @abstractmethod
    def pending_orders(self, delivery_date: date) -> list[PendingOrder]:
        """Pending orders for ``delivery_date`` that are not linked to a batch."""

    @abstractmethod
    def next_batch_number(self) -> int:
        """Atomically allocate the next batch number. Numbers are never reused."""

    @abstractmethod
    def insert_batch(self, row: dict[str, Any]) -> str:
        """Insert a ``delivery_batches`` row and return its id."""

    @abstractmethod
    def insert_stops(self, rows: list[dict[str, Any]]) -> None: ...

    @abstractmethod
    def insert_metadata(self, row: dict[str, Any]) -> None: ...

    @abstractmethod
    def link_orders(self, batch_id: str, box_codes: dict[str, str]) -> None:
        """Attach orders to ``batch_id``; fails if any order is already linked."""

    @abstractmethod
    def delete_batch(self, batch_id: str) -> None:
        """Remove a batch with its stops and metadata and unlink its orders."""

    @abstractmethod
    def claim_batch(self, batch_id: str, driver_id: str) -> dict[str, Any]:
        """Assign ``driver_id`` if the batch is still pending and unclaimed."""

    def check_health(self) -> bool:
        return True


class InMemoryBatchStore(BatchStore):
    """Process-local store for development runs and tests."""

    def __init__(self, orders: Iterable[PendingOrder] = (), start_batch_number: int = 1) -> None:
        self._lock = threading.Lock()
        self._next_number = start_batch_number
        self.orders: dict[str, dict[str, Any]] = {}
        self.batches: dict[str, dict[str, Any]] = {}
        self.stops: dict[str, list[dict[str, Any]]] = {}
        self.metadata: dict[str, dict[str, Any]] = {}
        for order in orders:
            self.add_order(order)

    def add_order(self, order: PendingOrder, status: str = "pending") -> None:
        with self._lock:
            self.orders[order.order_id] = {
                "order": order,
                "status": status,
                "delivery_batch_id": None,
                "box_code": None,
            }

    def pending_orders(self, delivery_date: date) -> list[PendingOrder]:
        with self._lock:
            return [
                record["order"]
                for record in self.orders.values()
                if record["order"].delivery_date == delivery_date
                and record["status"] == "pending"
                and record["delivery_batch_id"] is None
            ]

    def next_batch_number(self) -> int:
        with self._lock:
            number = self._next_number
            self._next_number += 1
            return number

    def insert_batch(self, row: dict[str, Any]) -> str:
        batch_id = uuid.uuid4().hex
        with self._lock:
            self.batches[batch_id] = {**row, "id": batch_id, "created_at": _now_iso()}
        return batch_id

    def insert_stops(self, rows: list[dict[str, Any]]) -> None:
        with self._lock:
            for row in rows:
                self.stops.setdefault(row["delivery_batch_id"], []).append(dict(row))

    def insert_metadata(self, row: dict[str, Any]) -> None:
        with self._lock:
            self.metadata[row["delivery_batch_id"]] = dict(row)

    def link_orders(self, batch_id: str, box_codes: dict[str, str]) -> None:
        with self._lock:
            unavailable = [
                order_id
                for order_id in box_codes
                if order_id not in self.orders or self.orders[order_id]["delivery_batch_id"] is not None
            ]
            if unavailable:
                raise PersistenceFailure(
                    f"Orders already linked or missing: {', '.join(unavailable)}", unavailable
                )
            for order_id, box_code in box_codes.items():
                record = self.orders[order_id]
                record["delivery_batch_id"] = batch_id
                record["box_code"] = box_code
                record["status"] = LINKED_ORDER_STATUS

    def delete_batch(self, batch_id: str) -> None:
        with self._lock:
            self.batches.pop(batch_id, None)
            self.stops.pop(batch_id, None)
            self.metadata.pop(batch_id, None)
            for record in self.orders.values():
                if record["delivery_batch_id"] == batch_id:
                    record["delivery_batch_id"] = None
                    record["box_code"] = None
                    record["status"] = "pending"

    def claim_batch(self, batch_id: str, driver_id: str) -> dict[str, Any]:
        with self._lock:
            batch = self.batches.get(batch_id)
            if batch is None:
                raise BatchNotFound(f"Batch {batch_id} not found", {"batch_id": batch_id})
            if batch["status"] != BatchStatus.PENDING.value or batch.get("driver_id") is not None:
                raise BatchUnavailable(
                    f"Batch {batch_id} has already been claimed", {"batch_id": batch_id}
                )
            batch["driver_id"] = driver_id
            batch["status"] = BatchStatus.ASSIGNED.value
            return dict(batch)

    def box_code_for(self, order_id: str) -> Optional[str]:
        with self._lock:
            record = self.orders.get(order_id)
            return record["box_code"] if record else None


class SupabaseBatchStore(BatchStore):
    """Store backed by the marketplace Postgres database."""

    def __init__(self, client: Client) -> None:
        self.client = client

    def pending_orders(self, delivery_date: date) -> list[PendingOrder]:
        return fetch_pending_orders(self.client, delivery_date)

    def next_batch_number(self) -> int:
        # Backed by a database sequence; see supabase/migrations.
        response = self.client.rpc("next_batch_number", {}).execute()
        value = response.data
        if isinstance(value, list):
            value = value[0] if value else None
        if isinstance(value, dict):
            value = next(iter(value.values()), None)
        if value is None:
            raise PersistenceFailure("next_batch_number returned no value", [])
        return int(value)

    def insert_batch(self, row: dict[str, Any]) -> str:
        response = self.client.table(BATCHES_TABLE).insert(row).execute()
        if not response.data:
            raise PersistenceFailure(f"Insert into {BATCHES_TABLE} returned no row", [])
        return str(response.data[0]["id"])

    def insert_stops(self, rows: list[dict[str, Any]]) -> None:
        response = self.client.table(STOPS_TABLE).insert(rows).execute()
        if len(response.data or []) != len(rows):
            raise PersistenceFailure(f"Inserted {len(response.data or [])}/{len(rows)} stops", [])

    def insert_metadata(self, row: dict[str, Any]) -> None:
        self.client.table(METADATA_TABLE).insert(row).execute()

    def link_orders(self, batch_id: str, box_codes: dict[str, str]) -> None:
        for order_id, box_code in box_codes.items():
            response = (
                self.client.table(ORDERS_TABLE)
                .update({"delivery_batch_id": batch_id, "box_code": box_code, "status": LINKED_ORDER_STATUS})
                .eq("id", order_id)
                .is_("delivery_batch_id", "null")
                .execute()
            )
            if not response.data:
                raise PersistenceFailure(f"Order {order_id} is already linked to another batch", [order_id])

    def delete_batch(self, batch_id: str) -> None:
        self.client.table(ORDERS_TABLE).update(
            {"delivery_batch_id": None, "box_code": None, "status": "pending"}
        ).eq("delivery_batch_id", batch_id).execute()
        self.client.table(STOPS_TABLE).delete().eq("delivery_batch_id", batch_id).execute()
        self.client.table(METADATA_TABLE).delete().eq("delivery_batch_id", batch_id).execute()
        self.client.table(BATCHES_TABLE).delete().eq("id", batch_id).execute()

    def claim_batch(self, batch_id: str, driver_id: str) -> dict[str, Any]:
        response = (
            self.client.table(BATCHES_TABLE)
            .update({"driver_id": driver_id, "status": BatchStatus.ASSIGNED.value, "updated_at": _now_iso()})
            .eq("id", batch_id)
            .eq("status", BatchStatus.PENDING.value)
            .is_("driver_id", "null")
            .execute()
        )
        if response.data:
            return response.data[0]

        existing = self.client.table(BATCHES_TABLE).select("id").eq("id", batch_id).execute()
        if not existing.data:
            raise BatchNotFound(f"Batch {batch_id} not found", {"batch_id": batch_id})
        raise BatchUnavailable(f"Batch {batch_id} has already been claimed", {"batch_id": batch_id})

    def check_health(self) -> bool:
        try:
            self.client.table(BATCHES_TABLE).select("id").limit(1).execute()
        except Exception as e:
            logger.warning(f"Database health check failed: {e}")
            return False
        return True
