import pytest

from fuel_service import ratings
from fuel_service.errors import BadRequest, Conflict, Forbidden, NotFound
from fuel_service.schemas import OrderStatus, RatingCreate


async def test_rating_updates_driver_aggregate(store, customer, driver, place_order):
    first = await place_order(customer, OrderStatus.DELIVERED, driver=driver)
    second = await place_order(customer, OrderStatus.DELIVERED, driver=driver)

    rating = await ratings.submit_rating(store, RatingCreate(order_id=first["id"], rating=5), customer)
    assert rating["driver_id"] == driver["id"]
    assert rating["customer_id"] == customer["id"]

    await ratings.submit_rating(
        store, RatingCreate(order_id=second["id"], rating=2, comment="late"), customer
    )

    profile = await store.get_driver_profile(driver["id"])
    assert profile["rating"] == pytest.approx(3.5)
    assert profile["total_deliveries"] == 2


async def test_order_can_only_be_rated_once(store, customer, driver, place_order):
    order = await place_order(customer, OrderStatus.DELIVERED, driver=driver)
    await ratings.submit_rating(store, RatingCreate(order_id=order["id"], rating=4), customer)

    with pytest.raises(Conflict):
        await ratings.submit_rating(store, RatingCreate(order_id=order["id"], rating=1), customer)

    profile = await store.get_driver_profile(driver["id"])
    assert profile["rating"] == pytest.approx(4.0)
    assert profile["total_deliveries"] == 1


async def test_only_delivered_orders_are_rated(store, customer, driver, place_order):
    order = await place_order(customer, OrderStatus.IN_PROGRESS, driver=driver)
    with pytest.raises(BadRequest):
        await ratings.submit_rating(store, RatingCreate(order_id=order["id"], rating=4), customer)


async def test_only_the_owner_rates(store, customer, other_customer, driver, place_order):
    order = await place_order(customer, OrderStatus.DELIVERED, driver=driver)
    with pytest.raises(Forbidden):
        await ratings.submit_rating(store, RatingCreate(order_id=order["id"], rating=4), other_customer)
    with pytest.raises(NotFound):
        await ratings.submit_rating(store, RatingCreate(order_id="missing", rating=4), customer)


async def test_failed_aggregate_refresh_keeps_rating_and_heals(store, customer, driver, place_order,
                                                                monkeypatch):
    first = await place_order(customer, OrderStatus.DELIVERED, driver=driver)
    second = await place_order(customer, OrderStatus.DELIVERED, driver=driver)

    async def broken(driver_id):
        raise RuntimeError("database unavailable")

    with monkeypatch.context() as m:
        m.setattr(store, "refresh_driver_rating", broken)
        rating = await ratings.submit_rating(store, RatingCreate(order_id=first["id"], rating=3), customer)

    assert rating["rating"] == 3
    assert await store.get_rating_for_order(first["id"]) is not None
    assert (await store.get_driver_profile(driver["id"]))["total_deliveries"] == 0

    await ratings.submit_rating(store, RatingCreate(order_id=second["id"], rating=5), customer)

    profile = await store.get_driver_profile(driver["id"])
    assert profile["rating"] == pytest.approx(4.0)
    assert profile["total_deliveries"] == 2


def test_rating_range_is_validated():
    with pytest.raises(ValueError):
        RatingCreate(order_id="x", rating=6)
    with pytest.raises(ValueError):
        RatingCreate(order_id="x", rating=0)
