# ratings.py
import logging
import uuid
from datetime import datetime
from typing import Dict

from fuel_service import metrics
from fuel_service.errors import BadRequest, Conflict, Forbidden, NotFound
from fuel_service.schemas import OrderStatus, RatingCreate
from fuel_service.store import Store

logger = logging.getLogger("fuel-service.ratings")


async def submit_rating(store: Store, body: RatingCreate, customer: Dict) -> Dict:
    """
    Store the customer's rating for a delivered order, then refresh the
    driver's aggregate.

    The aggregate is recomputed from every stored rating, so if the refresh
    fails here the next rating for that driver brings it back in line; the
    rating itself is never lost.
    """
    trace_id = customer.get("trace_id")
    if not 1 <= body.rating <= 5:
        raise BadRequest("Rating must be between 1 and 5")

    order = await store.get_order(body.order_id)
    if not order:
        raise NotFound("Order not found")
    if order["customer_id"] != customer["id"]:
        raise Forbidden("You can only rate your own orders")
    if order["status"] != OrderStatus.DELIVERED.value:
        raise BadRequest("You can only rate delivered orders")
    if await store.get_rating_for_order(order["id"]):
        raise Conflict("This order has already been rated")
    if not order["driver_id"]:
        raise BadRequest("This order has no driver assigned")

    rating = await store.add_rating({
        "id": str(uuid.uuid4()),
        "order_id": order["id"],
        "customer_id": customer["id"],
        "driver_id": order["driver_id"],
        "rating": body.rating,
        "comment": body.comment,
        "created_at": datetime.utcnow(),
    })
    if rating is None:
        raise Conflict("This order has already been rated")
    metrics.RATINGS_SUBMITTED.inc()

    try:
        profile = await store.refresh_driver_rating(order["driver_id"])
        if profile is None:
            logger.warning(f"[TRACE {trace_id}] No driver profile for {order['driver_id']}")
        else:
            logger.info(
                f"[TRACE {trace_id}] Driver {order['driver_id']} rating now "
                f"{profile['rating']:.2f} over {profile['total_deliveries']} deliveries"
            )
    except Exception:
        logger.exception(f"[TRACE {trace_id}] Failed to refresh rating for driver {order['driver_id']}")

    return rating
