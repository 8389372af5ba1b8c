from datetime import date
from pathlib import Path

import pytest
from openpyxl import Workbook

from delivery_batching.data import collection_points as collection_points_module
from delivery_batching.data.collection_points import get_collection_points
from delivery_batching.data.orders_repository import order_from_row


def _write_workbook(path: Path, rows: list[list]) -> Path:
    wb = Workbook()
    sheet = wb.active
    for row in rows:
        sheet.append(row)
    wb.save(path)
    return path


@pytest.fixture(autouse=True)
def no_database(monkeypatch):
    monkeypatch.setattr(collection_points_module, "get_supabase_client", lambda: None)


def test_order_from_row_reads_embedded_profile():
    row = {
        "id": 42,
        "consumer_id": "C9",
        "total_amount": "27.50",
        "delivery_date": "2026-10-20T00:00:00",
        "profiles": [
            {
                "delivery_address": " 12 Orchard St ",
                "city": "New York",
                "state": "NY",
                "zip_code": "10002",
                "latitude": "40.7157",
                "longitude": None,
                "collection_point_lead_farmer_id": "CP2",
            }
        ],
    }

    order = order_from_row(row)

    assert order.order_id == "42"
    assert order.delivery_date == date(2026, 10, 20)
    assert order.total_amount == 27.5
    assert order.address.street == "12 Orchard St"
    assert order.address.latitude == 40.7157
    assert order.address.longitude is None
    assert order.collection_point_id == "CP2"


def test_order_from_row_without_profile():
    order = order_from_row({"id": "O1", "delivery_date": "2026-10-20"})

    assert order.address.zip_code == ""
    assert order.collection_point_id is None


def test_collection_points_load_from_workbook_sorted(tmp_path: Path):
    source = _write_workbook(
        tmp_path / "points.xlsx",
        [
            ["ID", "Name", "Address", "Latitude", "Longitude"],
            ["CP2", "River Farm", "9 River Rd", 40.71, -74.0],
            ["CP1", None, "1 Farm Rd", 40.75, -73.99],
            [None, None, None, None, None],
        ],
    )

    points = get_collection_points(source=source)

    assert [point.collection_point_id for point in points] == ["CP1", "CP2"]
    assert points[0].name is None
    assert points[1].name == "River Farm"
    assert (points[1].latitude, points[1].longitude) == (40.71, -74.0)


def test_collection_point_workbook_missing_columns(tmp_path: Path):
    source = _write_workbook(tmp_path / "points.xlsx", [["ID", "Address"], ["CP1", "1 Farm Rd"]])

    with pytest.raises(ValueError, match="Latitude"):
        get_collection_points(source=source)


def test_missing_collection_point_workbook(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        get_collection_points(source=tmp_path / "absent.xlsx")
