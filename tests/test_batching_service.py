import csv
import json
from datetime import date
from pathlib import Path

import httpx
import pytest

from delivery_batching.config import settings
from delivery_batching.errors import FatalConfigurationError
from delivery_batching.models.domain import CollectionPoint, DeliveryAddress, PendingOrder
from delivery_batching.persistence.batch_store import InMemoryBatchStore
from delivery_batching.schemas.batching import BatchGenerationRequest
from delivery_batching.services.batching import service as batching_service
from delivery_batching.services.geocoding.geocoder import Geocoder
from delivery_batching.services.routing.fallback import FallbackController
from delivery_batching.services.routing.osrm_client import OSRMClient

DELIVERY_DATE = date(2026, 10, 20)
POINTS = [
    CollectionPoint(collection_point_id="CP1", address="1 Farm Rd, New York, NY 10001", latitude=40.7484, longitude=-73.9857, name="Hillside Farm"),
]


def _order(order_id: str, zip_code: str, lat=None, lon=None, street: str = "", cp: str | None = "CP1") -> PendingOrder:
    return PendingOrder(
        order_id=order_id,
        consumer_id=f"consumer-{order_id}",
        address=DeliveryAddress(street=street, city="New York", state="NY", zip_code=zip_code, latitude=lat, longitude=lon),
        total_amount=35.0,
        delivery_date=DELIVERY_DATE,
        collection_point_id=cp,
    )


def _request(**kwargs) -> BatchGenerationRequest:
    return BatchGenerationRequest(delivery_date=DELIVERY_DATE, **kwargs)


def _run(store, controller=None, **kwargs):
    return batching_service.generate_batches(
        kwargs.pop("payload", _request()),
        store=store,
        geocoder=Geocoder(mapbox_token=""),
        controller=controller or FallbackController(None),
        collection_points=kwargs.pop("collection_points", POINTS),
        **kwargs,
    )


@pytest.fixture(autouse=True)
def default_limits(monkeypatch):
    monkeypatch.setattr(settings, "max_stops_per_batch", 37)
    monkeypatch.setattr(settings, "min_viable_batch_size", 30)
    monkeypatch.setattr(settings, "persist_run_reports", False)


class DummyOSRM:
    def table(self, coordinates):
        count = len(coordinates)
        durations = [[0 if i == j else 600 for j in range(count)] for i in range(count)]
        distances = [[0 if i == j else 1000 for j in range(count)] for i in range(count)]
        return {"durations": durations, "distances": distances}


def test_no_orders_is_successful_noop():
    response = _run(InMemoryBatchStore())

    assert response.success is True
    assert response.batches_created == 0
    assert response.code == "NO_ORDERS"
    assert response.message == "No pending orders to process"


def test_single_unresolvable_order_is_skipped():
    response = _run(InMemoryBatchStore([_order("BAD", "99999")]))

    assert response.success is True
    assert response.batches_created == 0
    assert response.total_orders_processed == 1
    assert [(item.order_id, bool(item.reason)) for item in response.skipped] == [("BAD", True)]


def test_two_zip_groups_with_small_limit_make_two_batches(monkeypatch):
    monkeypatch.setattr(settings, "max_stops_per_batch", 10)
    orders = [_order(f"A{i}", "10001", 40.7506 + i * 0.001, -73.9971) for i in range(6)]
    orders += [_order(f"B{i}", "10002", 40.7157 + i * 0.001, -73.9860) for i in range(6)]
    store = InMemoryBatchStore(orders)

    response = _run(store)

    assert response.batches_created == 2
    assert [batch.order_count for batch in response.batches] == [6, 6]
    assert [batch.zip_codes for batch in response.batches] == [["10001"], ["10002"]]
    numbers = [batch.batch_number for batch in response.batches]
    assert numbers == sorted(numbers) and len(set(numbers)) == 2
    for batch in response.batches:
        assert [stop.sequence_number for stop in batch.stops] == list(range(1, 7))
        codes = [stop.box_code for stop in batch.stops]
        assert codes == [f"B{batch.batch_number}-{stop.sequence_number}" for stop in batch.stops]
        assert len(set(codes)) == len(codes)
        assert batch.is_subsidized is True
    assert response.optimization_methods == {str(n): "geographic_fallback" for n in numbers}


def test_timeout_on_five_stop_cluster_records_fallback():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    client = OSRMClient(base_url="http://osrm.test", max_retries=0, backoff_seconds=0.0, transport=httpx.MockTransport(handler))
    orders = [_order(f"O{i}", "10001", 40.745 + i * 0.002, -73.99) for i in range(5)]
    store = InMemoryBatchStore(orders)

    response = _run(store, controller=FallbackController(client))

    assert response.batches_created == 1
    batch = response.batches[0]
    assert batch.optimization_method == "geographic_fallback"
    assert batch.fallback_reason
    metadata = store.metadata[batch.batch_id]
    assert metadata["optimization_method"] == "geographic_fallback"
    assert metadata["fallback_reason"]


def test_routing_service_path_records_confidence():
    orders = [_order(f"O{i}", "10001", 40.745 + i * 0.002, -73.99) for i in range(3)]

    response = _run(InMemoryBatchStore(orders), controller=FallbackController(DummyOSRM()))

    batch = response.batches[0]
    assert batch.optimization_method == "routing_service"
    assert batch.optimization_confidence == 1.0
    assert batch.fallback_reason is None


def test_rerun_creates_no_new_batches():
    store = InMemoryBatchStore([_order(f"O{i}", "10001", 40.745 + i * 0.002, -73.99) for i in range(4)])

    first = _run(store)
    second = _run(store)

    assert first.batches_created == 1
    assert second.batches_created == 0
    assert len(store.batches) == 1


def test_force_fallback_request_bypasses_service():
    class ExplodingOSRM:
        def table(self, coordinates):
            raise AssertionError("routing service must not be called")

    orders = [_order(f"O{i}", "10001", 40.745 + i * 0.002, -73.99) for i in range(3)]

    response = _run(
        InMemoryBatchStore(orders),
        controller=FallbackController(ExplodingOSRM()),
        payload=_request(force_fallback=True),
    )

    assert response.batches[0].fallback_reason == "forced"


def test_required_routing_service_aborts_before_writes():
    store = InMemoryBatchStore([_order("O1", "10001", 40.75, -73.99)])

    with pytest.raises(FatalConfigurationError):
        _run(store, controller=FallbackController(None, require_routing_service=True))

    assert store.batches == {}


def test_missing_collection_points_is_fatal():
    store = InMemoryBatchStore([_order("O1", "10001", 40.75, -73.99)])

    with pytest.raises(FatalConfigurationError):
        _run(store, collection_points=[])

    assert store.batches == {}


def test_unknown_collection_point_routes_from_default():
    store = InMemoryBatchStore([_order("O1", "10001", 40.75, -73.99, cp="ELSEWHERE")])

    response = _run(store)

    assert response.batches[0].collection_point_id == "CP1"


def test_write_failure_is_listed_and_other_batches_survive(monkeypatch):
    monkeypatch.setattr(settings, "max_stops_per_batch", 2)
    orders = [_order("A1", "10001", 40.75, -73.99), _order("B1", "11201", 40.69, -73.99)]
    store = InMemoryBatchStore(orders)
    original = store.insert_metadata

    def flaky(row):
        if row["original_zip_codes"] == ["11201"]:
            raise RuntimeError("metadata insert failed")
        original(row)

    monkeypatch.setattr(store, "insert_metadata", flaky)

    response = _run(store)

    assert response.success is True
    assert response.batches_created == 1
    assert [(f.code, f.order_ids) for f in response.failures] == [("DATABASE_ERROR", ["B1"])]
    assert [order.order_id for order in store.pending_orders(DELIVERY_DATE)] == ["B1"]


def test_run_report_is_written(monkeypatch, tmp_path: Path):
    original_storage = batching_service.FileStorage
    monkeypatch.setattr(batching_service, "FileStorage", lambda: original_storage(root=tmp_path))
    orders = [_order(f"O{i}", "10001", 40.745 + i * 0.002, -73.99) for i in range(3)]

    response = _run(InMemoryBatchStore(orders), payload=_request(persist_report=True))

    run_dir = Path(response.report_path)
    assert run_dir.parent == tmp_path / "outputs"
    summary = json.loads((run_dir / "summary.json").read_text(encoding="utf-8"))
    assert summary["batches_created"] == 1
    with (run_dir / "stops.csv").open(encoding="utf-8") as handle:
        rows = list(csv.DictReader(handle))
    assert [row["box_code"] for row in rows] == ["B1-1", "B1-2", "B1-3"]


@pytest.mark.parametrize(
    "today, expected",
    [
        (date(2026, 10, 16), date(2026, 10, 17)),
        (date(2026, 10, 17), date(2026, 10, 19)),
        (date(2026, 10, 18), date(2026, 10, 19)),
    ],
)
def test_next_delivery_day(today, expected):
    days = ("MON", "TUE", "WED", "THU", "FRI", "SAT")
    assert batching_service.next_delivery_day(today, days) == expected


def test_default_delivery_date_uses_next_delivery_day(monkeypatch):
    monkeypatch.setattr(settings, "delivery_days", ("MON", "TUE", "WED", "THU", "FRI", "SAT"))
    response = batching_service.generate_batches(
        BatchGenerationRequest(),
        store=InMemoryBatchStore(),
        geocoder=Geocoder(mapbox_token=""),
        controller=FallbackController(None),
        collection_points=POINTS,
        today=date(2026, 10, 17),
    )

    assert response.delivery_date == date(2026, 10, 19)


def test_provider_timeout_on_one_cluster_falls_back_and_run_completes(monkeypatch):
    class TimesOutForBrooklyn:
        def table(self, coordinates):
            if any(lat < 40.70 for lat, _ in coordinates):
                raise TimeoutError("provider timed out")
            return DummyOSRM().table(coordinates)

    monkeypatch.setattr(settings, "max_stops_per_batch", 2)
    store = InMemoryBatchStore([_order("A1", "10001", 40.75, -73.99), _order("B1", "11201", 40.69, -73.99)])

    response = _run(store, controller=FallbackController(TimesOutForBrooklyn()))

    assert response.batches_created == 2
    assert response.failures == []
    methods = {batch.zip_codes[0]: (batch.optimization_method, batch.fallback_reason) for batch in response.batches}
    assert methods == {
        "10001": ("routing_service", None),
        "11201": ("geographic_fallback", "provider timed out"),
    }


def test_unexpected_planning_error_is_reported_per_cluster(monkeypatch):
    monkeypatch.setattr(settings, "max_stops_per_batch", 2)
    store = InMemoryBatchStore([_order("A1", "10001", 40.75, -73.99), _order("B1", "11201", 40.69, -73.99)])
    original_plan = batching_service.plan_cluster

    def flaky_plan(cluster, point, controller, delivery_date):
        if cluster.order_ids == ["B1"]:
            raise RuntimeError("planner crashed")
        return original_plan(cluster, point, controller, delivery_date)

    monkeypatch.setattr(batching_service, "plan_cluster", flaky_plan)

    response = _run(store)

    assert response.success is True
    assert response.batches_created == 1
    assert [(f.code, f.order_ids) for f in response.failures] == [("OPTIMIZATION_FAILED", ["B1"])]
    assert "planner crashed" in response.failures[0].error
    assert [order.order_id for order in store.pending_orders(DELIVERY_DATE)] == ["B1"]


def test_skipped_orders_carry_geocoding_code():
    response = _run(InMemoryBatchStore([_order("BAD", "99999"), _order("O1", "10001", 40.75, -73.99)]))

    assert [(item.order_id, item.code) for item in response.skipped] == [("BAD", "GEOCODING_FAILED")]
    assert "99999" in response.skipped[0].reason


def test_force_fallback_request_leaves_controller_untouched():
    controller = FallbackController(DummyOSRM())
    orders = [_order(f"O{i}", "10001", 40.745 + i * 0.002, -73.99) for i in range(3)]

    response = _run(InMemoryBatchStore(orders), controller=controller, payload=_request(force_fallback=True))

    assert response.batches[0].fallback_reason == "forced"
    assert controller.force_fallback is False
