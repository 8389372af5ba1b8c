"""Collection point loader with database-first approach, falling back to an Excel workbook."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Optional

from openpyxl import load_workbook

from ..config import settings
from ..db.supabase import get_supabase_client
from ..models.domain import CollectionPoint

logger = logging.getLogger(__name__)

Locator = Callable[[str], Optional[tuple[float, float]]]


def _load_collection_points_from_database(locate: Locator | None) -> tuple[CollectionPoint, ...] | None:
    """Load lead farmer collection points from Supabase. Returns None if unavailable or empty."""
    supabase = get_supabase_client()
    if not supabase:
        return None

    try:
        response = (
            supabase.table("profiles")
            .select("id, full_name, farm_name, collection_point_address")
            .not_.is_("collection_point_address", "null")
            .execute()
        )
    except Exception as e:
        logger.debug(f"Collection point query failed, falling back to file: {e}")
        return None

    if not response.data:
        return None

    points: list[CollectionPoint] = []
    for row in response.data:
        address = (row.get("collection_point_address") or "").strip()
        if not address:
            continue
        coords = locate(address) if locate else None
        if coords is None:
            logger.warning(f"Skipping collection point {row.get('id')}: address '{address}' could not be located")
            continue
        points.append(
            CollectionPoint(
                collection_point_id=str(row["id"]),
                address=address,
                latitude=coords[0],
                longitude=coords[1],
                name=row.get("farm_name") or row.get("full_name"),
            )
        )
    return tuple(points) if points else None


def _load_collection_points_from_file(source: Path | None = None) -> tuple[CollectionPoint, ...]:
    """Load collection points from the Excel workbook."""
    workbook_path = source or settings.collection_points_file
    if not workbook_path.exists():
        raise FileNotFoundError(f"Collection point workbook not found: {workbook_path}")

    wb = load_workbook(workbook_path, data_only=True, read_only=True)
    sheet = wb.active
    rows = sheet.iter_rows(min_row=1, values_only=True)
    header = next(rows, None)
    if header is None:
        raise ValueError(f"Collection point workbook '{workbook_path}' is empty.")

    header_map = {str(name).strip(): idx for idx, name in enumerate(header) if name is not None}
    missing_columns = {"ID", "Address", "Latitude", "Longitude"} - set(header_map)
    if missing_columns:
        raise ValueError(f"Collection point workbook missing columns: {', '.join(sorted(missing_columns))}")

    name_idx = header_map.get("Name")
    points: list[CollectionPoint] = []
    for row in rows:
        point_id = row[header_map["ID"]]
        if not point_id:
            continue
        points.append(
            CollectionPoint(
                collection_point_id=str(point_id).strip(),
                address=str(row[header_map["Address"]] or "").strip(),
                latitude=float(row[header_map["Latitude"]]),
                longitude=float(row[header_map["Longitude"]]),
                name=str(row[name_idx]).strip() if name_idx is not None and row[name_idx] else None,
            )
        )
    wb.close()
    return tuple(points)


def get_collection_points(locate: Locator | None = None, source: Path | None = None) -> tuple[CollectionPoint, ...]:
    """Get collection points from the database first, fall back to the workbook.

    ``locate`` turns a free-text database address into coordinates. Results are
    ordered by collection point id.
    """
    points = _load_collection_points_from_database(locate)
    if not points:
        points = _load_collection_points_from_file(source)
    return tuple(sorted(points, key=lambda point: point.collection_point_id))
