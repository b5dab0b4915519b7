"""
Order placement and the order status state machine.

    PENDING -> ASSIGNED -> IN_PROGRESS -> DELIVERED
       |           |            |
       +-----------+------------+--> CANCELLED

Who may move an order where is decided in one place, ``authorize_transition``.
Claiming a PENDING order is not a status update; it goes through
``accept_order``, which is an atomic compare-and-set in the store.
"""

import logging
import random
import uuid
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List

from fuel_service import metrics
from fuel_service.config import FUEL_PRICES, SERVICE_FEE
from fuel_service.errors import BadRequest, Conflict, Forbidden, InternalError, NotFound
from fuel_service.schemas import OrderCreate, OrderStatus, Role
from fuel_service.store import Store

logger = logging.getLogger("fuel-service.orders")

TERMINAL_STATUSES = {OrderStatus.DELIVERED, OrderStatus.CANCELLED}

# Statuses in which an order must carry a driver
DRIVER_STATUSES = {OrderStatus.ASSIGNED, OrderStatus.IN_PROGRESS, OrderStatus.DELIVERED}

# role -> current status -> statuses that role may request
TRANSITIONS = {
    Role.customer: {
        OrderStatus.PENDING: {OrderStatus.CANCELLED},
    },
    Role.driver: {
        OrderStatus.ASSIGNED: {OrderStatus.IN_PROGRESS, OrderStatus.CANCELLED},
        OrderStatus.IN_PROGRESS: {OrderStatus.DELIVERED},
    },
}

# Lifecycle timestamp written (once) when an order enters a status
STATUS_STAMPS = {
    OrderStatus.ASSIGNED: "assigned_at",
    OrderStatus.IN_PROGRESS: "started_at",
    OrderStatus.DELIVERED: "completed_at",
    OrderStatus.CANCELLED: "cancelled_at",
}

CENT = Decimal("0.01")
ORDER_NUMBER_ATTEMPTS = 5


# ------------------------- PRICING -------------------------
def price_order(gas_type: str, quantity) -> Dict[str, Decimal]:
    price_per_unit = FUEL_PRICES[gas_type]
    total = price_per_unit * Decimal(str(quantity)) + SERVICE_FEE
    return {
        "price_per_unit": price_per_unit,
        "total_amount": total.quantize(CENT, rounding=ROUND_HALF_UP),
    }


def generate_order_number(created_at: datetime) -> str:
    """GR + creation time down to microseconds + two random digits; sorts by creation."""
    return f"GR{created_at:%Y%m%d%H%M%S%f}{random.randint(0, 99):02d}"


# ------------------------- PERMISSIONS -------------------------
def authorize_transition(actor: Dict, order: Dict, target: OrderStatus) -> None:
    """Raise unless actor may move order from its current status to target."""
    current = OrderStatus(order["status"])
    role = actor["role"]

    if role == Role.admin.value:
        if current in TERMINAL_STATUSES:
            raise BadRequest(f"Invalid transition: {current.value} is a final status")
        if target in DRIVER_STATUSES and not order["driver_id"]:
            raise BadRequest(f"Invalid transition: {target.value} requires an assigned driver")
        if target == OrderStatus.PENDING and order["driver_id"]:
            raise BadRequest("Invalid transition: an assigned order cannot return to PENDING")
        return

    if role == Role.customer.value:
        if order["customer_id"] != actor["id"]:
            raise Forbidden("You can only update your own orders")
        if target not in TRANSITIONS[Role.customer].get(current, set()):
            raise Forbidden("Customers can only cancel pending orders")
        return

    if role == Role.driver.value:
        if not order["driver_id"] or order["driver_id"] != actor["id"]:
            raise Forbidden("You can only update your assigned orders")
        if target not in TRANSITIONS[Role.driver].get(current, set()):
            raise BadRequest(f"Invalid transition: {current.value} -> {target.value}")
        return

    raise Forbidden("Unknown role")


def can_view(actor: Dict, order: Dict) -> bool:
    if actor["role"] == Role.admin.value:
        return True
    if actor["id"] in (order["customer_id"], order["driver_id"]):
        return True
    # Drivers browse open orders before claiming them
    return (actor["role"] == Role.driver.value
            and order["status"] == OrderStatus.PENDING.value
            and order["driver_id"] is None)


def can_track(actor: Dict, order: Dict) -> bool:
    return (actor["role"] == Role.admin.value
            or actor["id"] == order["customer_id"]
            or (order["driver_id"] is not None and actor["id"] == order["driver_id"]))


# ------------------------- OPERATIONS -------------------------
async def create_order(store: Store, body: OrderCreate, customer: Dict) -> Dict:
    trace_id = customer.get("trace_id")
    if customer["role"] != Role.customer.value:
        raise Forbidden("Only customers can create orders")

    prices = price_order(body.gas_type.value, body.quantity)

    for _ in range(ORDER_NUMBER_ATTEMPTS):
        created_at = datetime.utcnow()
        order = await store.add_order({
            "id": str(uuid.uuid4()),
            "order_number": generate_order_number(created_at),
            "customer_id": customer["id"],
            "driver_id": None,
            "status": OrderStatus.PENDING.value,
            "gas_type": body.gas_type.value,
            "quantity": Decimal(str(body.quantity)),
            "delivery_lat": body.delivery_lat,
            "delivery_lng": body.delivery_lng,
            "delivery_address": body.delivery_address,
            "price_per_unit": prices["price_per_unit"],
            "total_amount": prices["total_amount"],
            "notes": body.notes,
            "created_at": created_at,
        })
        if order is not None:
            logger.info(f"[TRACE {trace_id}] Order {order['order_number']} created by {customer['id']}")
            return order

    raise InternalError("Could not allocate a unique order number")


async def list_orders(store: Store, actor: Dict) -> List[Dict]:
    if actor["role"] == Role.customer.value:
        return await store.list_orders(customer_id=actor["id"])
    if actor["role"] == Role.driver.value:
        return await store.list_orders(driver_id=actor["id"])
    return await store.list_orders()


async def list_pending_orders(store: Store, actor: Dict) -> List[Dict]:
    if actor["role"] != Role.driver.value:
        raise Forbidden("Only drivers can view pending orders")
    return await store.list_orders(pending_only=True)


async def get_order(store: Store, order_id: str, actor: Dict) -> Dict:
    order = await store.get_order(order_id)
    if not order:
        raise NotFound("Order not found")
    if not can_view(actor, order):
        raise Forbidden("You do not have access to this order")
    return order


async def accept_order(store: Store, order_id: str, driver: Dict) -> Dict:
    trace_id = driver.get("trace_id")
    if driver["role"] != Role.driver.value:
        raise Forbidden("Only drivers can accept orders")

    if not await store.get_driver_profile(driver["id"]):
        raise NotFound("Driver profile not found")

    order = await store.get_order(order_id)
    if not order:
        raise NotFound("Order not found")

    claimed = None
    if order["status"] == OrderStatus.PENDING.value and order["driver_id"] is None:
        claimed = await store.claim_order(order_id, driver["id"], datetime.utcnow())

    if claimed is None:
        metrics.ORDER_ACCEPT_CONFLICTS.inc()
        logger.info(f"[TRACE {trace_id}] Driver {driver['id']} lost claim on order {order_id}")
        raise Conflict("Order is no longer available")

    metrics.ORDER_TRANSITIONS.labels(status=OrderStatus.ASSIGNED.value).inc()
    logger.info(f"[TRACE {trace_id}] Order {order_id} accepted by driver {driver['id']}")
    return claimed


async def update_status(store: Store, order_id: str, status: str, actor: Dict) -> Dict:
    trace_id = actor.get("trace_id")
    try:
        target = OrderStatus(status)
    except ValueError:
        raise BadRequest("Invalid status value")

    order = await store.get_order(order_id)
    if not order:
        raise NotFound("Order not found")

    authorize_transition(actor, order, target)

    stamps = {}
    if target in STATUS_STAMPS:
        stamps[STATUS_STAMPS[target]] = datetime.utcnow()

    updated = await store.transition_order(order_id, order["status"], target, stamps)
    if updated is None:
        raise Conflict("Order status changed concurrently, please retry")

    metrics.ORDER_TRANSITIONS.labels(status=target.value).inc()
    logger.info(
        f"[TRACE {trace_id}] Order {order_id} {order['status']} -> {target.value} "
        f"by {actor['role']} {actor['id']}"
    )
    return updated
