from datetime import date
from pathlib import Path

import httpx
import pytest

from delivery_batching.data import zip_centroids
from delivery_batching.models.domain import (
    AddressPrecision,
    DeliveryAddress,
    PendingOrder,
    ResolvedAddress,
    UnresolvedAddress,
)
from delivery_batching.services.cache import TTLCache, geocode_cache
from delivery_batching.services.geocoding.geocoder import Geocoder


@pytest.fixture(autouse=True)
def clear_caches():
    zip_centroids.clear_zip_centroid_cache()
    geocode_cache.clear()
    yield
    zip_centroids.clear_zip_centroid_cache()
    geocode_cache.clear()


def _order(street: str, zip_code: str, lat=None, lon=None, order_id: str = "O1") -> PendingOrder:
    return PendingOrder(
        order_id=order_id,
        consumer_id="C1",
        address=DeliveryAddress(street=street, city="New York", state="NY", zip_code=zip_code, latitude=lat, longitude=lon),
        total_amount=42.0,
        delivery_date=date(2026, 10, 20),
    )


def _mapbox(handler) -> Geocoder:
    return Geocoder(mapbox_token="pk.test", timeout=1.0, transport=httpx.MockTransport(handler))


def test_stored_coordinates_are_exact():
    resolution = Geocoder(mapbox_token="").resolve(_order("1 Main St", "10001", 40.7, -73.9))
    assert resolution == ResolvedAddress(40.7, -73.9, AddressPrecision.EXACT)


def test_mapbox_result_is_used():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["access_token"] == "pk.test"
        return httpx.Response(200, json={"features": [{"center": [-73.99, 40.74]}]})

    resolution = _mapbox(handler).resolve(_order("350 5th Ave", "10001"))

    assert resolution == ResolvedAddress(40.74, -73.99, AddressPrecision.GEOCODED)


def test_mapbox_failure_falls_back_to_zip_centroid():
    resolution = _mapbox(lambda request: httpx.Response(500)).resolve(_order("350 5th Ave", "10002"))

    assert resolution == ResolvedAddress(40.7157, -73.9860, AddressPrecision.ZIP_CENTROID)


def test_no_token_uses_zip_centroid():
    resolution = Geocoder(mapbox_token="").resolve(_order("350 5th Ave", "10011-1234"))

    assert resolution.precision is AddressPrecision.ZIP_CENTROID
    assert (resolution.latitude, resolution.longitude) == (40.7406, -74.0008)


def test_unknown_zip_without_match_is_unresolved():
    resolution = Geocoder(mapbox_token="").resolve(_order("", "99999"))

    assert isinstance(resolution, UnresolvedAddress)
    assert "99999" in resolution.reason


def test_missing_address_is_unresolved():
    resolution = Geocoder(mapbox_token="").resolve(_order("", ""))

    assert resolution == UnresolvedAddress("no delivery address on file")


def test_geocode_results_are_cached():
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(200, json={"features": [{"center": [-73.99, 40.74]}]})

    geocoder = _mapbox(handler)
    orders = [_order("350 5th Ave", "10001", order_id="A"), _order("350 5th Ave", "10001", order_id="B")]
    geocoder.resolve(orders[0])
    geocoder.resolve(orders[1])

    assert calls["count"] == 1
    assert geocoder.cache_size() == 1


def test_geocode_orders_keeps_input_order():
    orders = [_order("", "10003", order_id="A"), _order("", "99999", order_id="B"), _order("", "10001", order_id="C")]

    geocoded = Geocoder(mapbox_token="").geocode_orders(orders)

    assert [item.order_id for item in geocoded] == ["A", "B", "C"]
    assert isinstance(geocoded[1].location, UnresolvedAddress)


def test_locate_free_text_uses_embedded_zip():
    assert Geocoder(mapbox_token="").locate("12 Orchard St, New York, NY 10002") == (40.7157, -73.9860)
    assert Geocoder(mapbox_token="").locate("Somewhere without a zip") is None


def test_centroid_file_extends_builtin_table(tmp_path: Path):
    csv_path = tmp_path / "zips.csv"
    csv_path.write_text("zip_code,latitude,longitude\n11201,40.6940,-73.9900\n", encoding="utf-8")

    table = zip_centroids.load_zip_centroids(csv_path)

    assert table["11201"] == (40.6940, -73.9900)
    assert table["10001"] == (40.7506, -73.9971)


def test_transient_failure_is_not_cached():
    responses = iter(["timeout", "ok"])
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if next(responses) == "timeout":
            raise httpx.ConnectTimeout("slow", request=request)
        return httpx.Response(200, json={"features": [{"center": [-73.99, 40.74]}]})

    geocoder = _mapbox(handler)
    first = geocoder.resolve(_order("350 5th Ave", "10001"))
    second = geocoder.resolve(_order("350 5th Ave", "10001"))

    assert first.precision is AddressPrecision.ZIP_CENTROID
    assert second == ResolvedAddress(40.74, -73.99, AddressPrecision.GEOCODED)
    assert calls["count"] == 2


def test_cache_outlives_geocoder_instance():
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(200, json={"features": [{"center": [-73.99, 40.74]}]})

    _mapbox(handler).resolve(_order("350 5th Ave", "10001"))
    resolution = _mapbox(handler).resolve(_order("350 5th Ave", "10001"))

    assert resolution.precision is AddressPrecision.GEOCODED
    assert calls["count"] == 1


def test_cached_results_expire():
    now = {"t": 0.0}
    cache = TTLCache(ttl_seconds=3600, clock=lambda: now["t"])
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(200, json={"features": [{"center": [-73.99, 40.74]}]})

    geocoder = Geocoder(mapbox_token="pk.test", transport=httpx.MockTransport(handler), cache=cache)
    geocoder.resolve(_order("350 5th Ave", "10001"))
    now["t"] = 3599.0
    geocoder.resolve(_order("350 5th Ave", "10001"))
    now["t"] = 3600.0
    geocoder.resolve(_order("350 5th Ave", "10001"))

    assert calls["count"] == 2
