"""Pending-order query against the marketplace database."""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Optional

from supabase import Client

from ..models.domain import DeliveryAddress, PendingOrder

logger = logging.getLogger(__name__)

PENDING_ORDER_COLUMNS = (
    "id, consumer_id, total_amount, delivery_date, "
    "profiles (delivery_address, city, state, zip_code, latitude, longitude, collection_point_lead_farmer_id)"
)


def _coerce_optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def order_from_row(row: dict[str, Any]) -> PendingOrder:
    """Map an ``orders`` row (with its embedded consumer profile) to a PendingOrder."""
    profile = row.get("profiles") or {}
    if isinstance(profile, list):
        profile = profile[0] if profile else {}

    delivery_date = row.get("delivery_date")
    if isinstance(delivery_date, str):
        delivery_date = date.fromisoformat(delivery_date[:10])

    return PendingOrder(
        order_id=str(row["id"]),
        consumer_id=row.get("consumer_id"),
        address=DeliveryAddress(
            street=(profile.get("delivery_address") or "").strip(),
            city=(profile.get("city") or "").strip(),
            state=(profile.get("state") or "").strip(),
            zip_code=(profile.get("zip_code") or "").strip(),
            latitude=_coerce_optional_float(profile.get("latitude")),
            longitude=_coerce_optional_float(profile.get("longitude")),
        ),
        total_amount=float(row.get("total_amount") or 0.0),
        delivery_date=delivery_date,
        collection_point_id=profile.get("collection_point_lead_farmer_id"),
    )


def fetch_pending_orders(client: Client, delivery_date: date) -> list[PendingOrder]:
    """Orders for ``delivery_date`` that are pending and not yet linked to a batch."""
    response = (
        client.table("orders")
        .select(PENDING_ORDER_COLUMNS)
        .eq("delivery_date", delivery_date.isoformat())
        .eq("status", "pending")
        .is_("delivery_batch_id", "null")
        .execute()
    )
    rows = response.data or []
    orders: list[PendingOrder] = []
    for row in rows:
        try:
            orders.append(order_from_row(row))
        except (KeyError, ValueError) as e:
            logger.warning(f"Skipping malformed order row {row.get('id')}: {e}")
    logger.info(f"Fetched {len(orders)} pending orders for {delivery_date.isoformat()}")
    return orders
