from datetime import datetime, timedelta

import pytest

from fuel_service import geospatial, tracking
from fuel_service.errors import BadRequest, Forbidden, NotFound
from fuel_service.schemas import LocationReport, OrderStatus, ProximityStatus


async def report(store, who, lat, lng, order_id=None):
    return await tracking.report_location(
        store, LocationReport(latitude=lat, longitude=lng, order_id=order_id), who
    )


async def test_report_without_order_only_stores_sample(store, driver):
    result = await report(store, driver, 1.0, 2.0)
    assert result["location"]["user_id"] == driver["id"]
    assert "distance" not in result
    assert len(store.locations) == 1


async def test_report_for_unknown_order_stores_nothing(store, driver):
    with pytest.raises(NotFound):
        await report(store, driver, 1.0, 2.0, order_id="missing")
    assert store.locations == []


async def test_report_on_active_delivery_includes_proximity(store, customer, driver, place_order):
    order = await place_order(customer, OrderStatus.IN_PROGRESS, driver=driver,
                              delivery_lat=0.0, delivery_lng=0.001)

    far = await report(store, driver, 0.0, 0.01, order_id=order["id"])
    assert far["proximity_status"] == ProximityStatus.FAR
    assert far["is_near_delivery"] is False

    near = await report(store, driver, 0.0, 0.0003, order_id=order["id"])
    assert near["distance"] == pytest.approx(0.08, abs=0.01)
    assert near["proximity_status"] == ProximityStatus.NEARBY
    assert near["is_near_delivery"] is True


async def test_report_on_assigned_order_skips_proximity(store, customer, driver, place_order):
    order = await place_order(customer, OrderStatus.ASSIGNED, driver=driver)
    result = await report(store, driver, 0.0, 0.0, order_id=order["id"])
    assert "proximity_status" not in result


async def test_geofence_failure_keeps_the_sample(store, customer, driver, place_order, monkeypatch):
    order = await place_order(customer, OrderStatus.IN_PROGRESS, driver=driver)

    def broken(*args, **kwargs):
        raise ValueError("bad coordinates")

    monkeypatch.setattr(tracking.geospatial, "proximity_status", broken)
    result = await report(store, driver, 0.0, 0.0, order_id=order["id"])

    assert result["geofence_error"] == "bad coordinates"
    assert len(store.locations) == 1


# ------------------------- GEOFENCE -------------------------
async def test_geofence_detects_arrival_without_delivering(store, customer, driver, place_order):
    order = await place_order(customer, OrderStatus.IN_PROGRESS, driver=driver,
                              delivery_lat=0.0, delivery_lng=0.001)
    await report(store, driver, 0.0, 0.0, order_id=order["id"])
    await report(store, driver, 0.0, 0.0007, order_id=order["id"])

    result = await tracking.check_geofence(store, order["id"], driver)

    assert result["has_arrived"] is True
    assert result["status_updated"] is False
    assert result["distance_to_destination"] == pytest.approx(0.033, abs=0.001)
    assert (await store.get_order(order["id"]))["status"] == OrderStatus.IN_PROGRESS.value


async def test_geofence_not_yet_arrived(store, customer, driver, place_order):
    order = await place_order(customer, OrderStatus.IN_PROGRESS, driver=driver,
                              delivery_lat=0.0, delivery_lng=0.001)
    await report(store, driver, 0.0, 0.0, order_id=order["id"])

    result = await tracking.check_geofence(store, order["id"], driver)
    assert result["has_arrived"] is False
    assert result["distance_to_destination"] == pytest.approx(0.111, abs=0.001)


async def test_geofence_without_samples_or_progress(store, customer, driver, place_order):
    order = await place_order(customer, OrderStatus.IN_PROGRESS, driver=driver)
    result = await tracking.check_geofence(store, order["id"], driver)
    assert result == {"message": "No location data available", "status_updated": False}

    assigned = await place_order(customer, OrderStatus.ASSIGNED, driver=driver)
    result = await tracking.check_geofence(store, assigned["id"], driver)
    assert result["message"] == "Order is not in progress"


async def test_geofence_is_for_the_assigned_driver(store, customer, driver, other_driver, place_order):
    order = await place_order(customer, OrderStatus.IN_PROGRESS, driver=driver)
    with pytest.raises(Forbidden):
        await tracking.check_geofence(store, order["id"], other_driver)
    with pytest.raises(Forbidden):
        await tracking.check_geofence(store, order["id"], customer)
    with pytest.raises(NotFound):
        await tracking.check_geofence(store, "missing", driver)


# ------------------------- SNAPSHOT -------------------------
async def test_snapshot_reports_route_and_eta(store, customer, driver, place_order):
    order = await place_order(customer, OrderStatus.IN_PROGRESS, driver=driver,
                              delivery_lat=0.0, delivery_lng=0.001)
    await report(store, driver, 0.0, -0.01, order_id=order["id"])
    await report(store, driver, 0.0, 0.0, order_id=order["id"])

    now = datetime(2024, 1, 1, 12, 0, 0)
    snapshot = await tracking.tracking_snapshot(store, order["id"], customer, now=now)

    assert snapshot["driver"]["id"] == driver["id"]
    assert snapshot["driver"]["license_plate"] == "FUEL-1"

    t = snapshot["tracking"]
    assert t["current_location"]["longitude"] == 0.0
    assert [p["longitude"] for p in t["route_history"]] == [-0.01, 0.0]
    assert t["distance_to_destination"] == pytest.approx(0.11, abs=0.01)
    assert t["total_distance_traveled"] == pytest.approx(1.11, abs=0.01)
    assert t["estimated_arrival"]["minutes"] == 1
    assert t["estimated_arrival"]["arrival_timestamp"] == now + timedelta(minutes=1)
    assert t["last_update"] == t["current_location"]["timestamp"]


async def test_snapshot_of_unassigned_order_is_empty(store, customer, place_order):
    order = await place_order(customer)
    snapshot = await tracking.tracking_snapshot(store, order["id"], customer)
    assert snapshot["driver"] is None
    assert snapshot["tracking"]["current_location"] is None
    assert snapshot["tracking"]["route_history"] == []
    assert snapshot["tracking"]["estimated_arrival"] is None
    assert snapshot["tracking"]["total_distance_traveled"] == 0


async def test_snapshot_access(store, customer, other_customer, driver, other_driver, admin, place_order):
    order = await place_order(customer, OrderStatus.ASSIGNED, driver=driver)
    await tracking.tracking_snapshot(store, order["id"], admin)
    await tracking.tracking_snapshot(store, order["id"], driver)
    with pytest.raises(Forbidden):
        await tracking.tracking_snapshot(store, order["id"], other_customer)
    with pytest.raises(Forbidden):
        await tracking.tracking_snapshot(store, order["id"], other_driver)


# ------------------------- HISTORY -------------------------
async def test_location_history_scoping(store, customer, driver, other_driver, admin, place_order):
    order = await place_order(customer, OrderStatus.ASSIGNED, driver=driver)
    await report(store, driver, 0.0, 0.0, order_id=order["id"])
    await report(store, driver, 0.0, 0.001, order_id=order["id"])
    await report(store, other_driver, 5.0, 5.0)

    by_order = await tracking.list_locations(store, customer, order_id=order["id"])
    assert [l["longitude"] for l in by_order] == [0.0, 0.001]

    own = await tracking.list_locations(store, driver)
    assert [l["longitude"] for l in own] == [0.001, 0.0]

    assert len(await tracking.list_locations(store, admin, user_id=other_driver["id"])) == 1
    with pytest.raises(Forbidden):
        await tracking.list_locations(store, driver, user_id=other_driver["id"])
    with pytest.raises(Forbidden):
        await tracking.list_locations(store, other_driver, order_id=order["id"])
    with pytest.raises(BadRequest):
        await tracking.list_locations(store, driver, limit=0)


async def test_only_the_assigned_driver_reports_against_an_order(store, customer, driver, other_driver,
                                                                 place_order):
    order = await place_order(customer, OrderStatus.IN_PROGRESS, driver=driver)

    with pytest.raises(Forbidden):
        await report(store, other_driver, 0.0, 0.0, order_id=order["id"])
    with pytest.raises(Forbidden):
        await report(store, customer, 0.0, 0.0, order_id=order["id"])
    assert store.locations == []

    pending = await place_order(customer)
    with pytest.raises(Forbidden):
        await report(store, driver, 0.0, 0.0, order_id=pending["id"])
    assert store.locations == []


# ------------------------- LIMITS -------------------------
async def add_samples(store, driver, order, count):
    start = datetime(2024, 1, 1, 12, 0, 0)
    for i in range(count):
        await store.add_location({
            "id": f"loc-{i}",
            "user_id": driver["id"],
            "order_id": order["id"],
            "latitude": 0.0,
            "longitude": i * 0.0001,
            "timestamp": start + timedelta(seconds=i),
        })


async def test_route_history_is_capped_to_the_first_samples(store, customer, driver, place_order):
    order = await place_order(customer, OrderStatus.IN_PROGRESS, driver=driver,
                              delivery_lat=0.0, delivery_lng=0.1)
    await add_samples(store, driver, order, tracking.ROUTE_HISTORY_LIMIT + 20)

    snapshot = await tracking.tracking_snapshot(store, order["id"], customer)
    t = snapshot["tracking"]

    history = t["route_history"]
    assert len(history) == tracking.ROUTE_HISTORY_LIMIT
    assert history[0]["id"] == "loc-0"
    assert history[-1]["id"] == f"loc-{tracking.ROUTE_HISTORY_LIMIT - 1}"
    assert [p["timestamp"] for p in history] == sorted(p["timestamp"] for p in history)

    # current location is the newest sample, even past the cap
    assert t["current_location"]["id"] == f"loc-{tracking.ROUTE_HISTORY_LIMIT + 19}"

    expected = geospatial.route_distance(history)
    assert t["total_distance_traveled"] == round(expected, 2)
    assert t["total_distance_traveled"] == pytest.approx(5.55, abs=0.01)


async def test_location_listing_limit_bounds(store, customer, driver, place_order):
    order = await place_order(customer, OrderStatus.IN_PROGRESS, driver=driver)
    await add_samples(store, driver, order, tracking.MAX_LOCATION_LIMIT + 1)

    full = await tracking.list_locations(store, driver, order_id=order["id"],
                                         limit=tracking.MAX_LOCATION_LIMIT)
    assert len(full) == tracking.MAX_LOCATION_LIMIT
    assert full[0]["id"] == "loc-0"

    assert len(await tracking.list_locations(store, driver, limit=1)) == 1

    with pytest.raises(BadRequest):
        await tracking.list_locations(store, driver, limit=tracking.MAX_LOCATION_LIMIT + 1)
    with pytest.raises(BadRequest):
        await tracking.list_locations(store, driver, order_id=order["id"], limit=0)
