"""
Persistence for the fuel delivery service.

Every component talks to a ``Store``; the app wires exactly one in at startup.
``SQLStore`` is the production implementation on PostgreSQL through the
``databases`` driver. ``MemoryStore`` keeps everything in dicts behind one
asyncio lock and is what the tests and local demos run on.

All conditional writes (claiming an order, moving its status, finalising a
payment) are single compare-and-set operations: they return the updated row,
or None when the precondition no longer holds.
"""

import asyncio
import copy
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select, func, or_, and_
from sqlalchemy.dialects.postgresql import insert as pg_insert

from fuel_service.models import (
    users, driver_profiles, orders, locations, payments, processed_events, ratings,
)
from fuel_service.schemas import OrderStatus, PaymentStatus

Record = Dict


class Store(ABC):

    # -------------------------
    # Users / drivers
    # -------------------------
    @abstractmethod
    async def add_user(self, user: Record) -> Optional[Record]:
        """Insert a user; None if the email is already registered."""

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[Record]: ...

    @abstractmethod
    async def get_user_by_email(self, email: str) -> Optional[Record]: ...

    @abstractmethod
    async def add_driver_profile(self, profile: Record) -> Record: ...

    @abstractmethod
    async def get_driver_profile(self, user_id: str) -> Optional[Record]: ...

    @abstractmethod
    async def refresh_driver_rating(self, driver_id: str) -> Optional[Record]:
        """Recompute the driver's mean rating and total_deliveries from all their ratings."""

    # -------------------------
    # Orders
    # -------------------------
    @abstractmethod
    async def add_order(self, order: Record) -> Optional[Record]:
        """Insert an order; None if the order number is taken."""

    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[Record]: ...

    @abstractmethod
    async def list_orders(self, customer_id: str = None, driver_id: str = None,
                          pending_only: bool = False) -> List[Record]:
        """Orders newest first, optionally filtered."""

    @abstractmethod
    async def claim_order(self, order_id: str, driver_id: str,
                          assigned_at: datetime) -> Optional[Record]:
        """PENDING and unassigned -> ASSIGNED to driver_id, atomically."""

    @abstractmethod
    async def transition_order(self, order_id: str, from_status: OrderStatus,
                               to_status: OrderStatus,
                               stamps: Dict[str, datetime]) -> Optional[Record]:
        """
        Move the order to to_status only if it is still in from_status.
        Each timestamp column in stamps is written only if currently unset.
        """

    # -------------------------
    # Locations
    # -------------------------
    @abstractmethod
    async def add_location(self, location: Record) -> Record: ...

    @abstractmethod
    async def latest_location(self, user_id: str, order_id: str) -> Optional[Record]: ...

    @abstractmethod
    async def route_history(self, user_id: str, order_id: str, limit: int) -> List[Record]:
        """The first `limit` samples for the order, oldest first."""

    @abstractmethod
    async def list_locations(self, user_id: str = None, order_id: str = None,
                             limit: int = 100, newest_first: bool = True) -> List[Record]: ...

    # -------------------------
    # Payments
    # -------------------------
    @abstractmethod
    async def get_payment_for_order(self, order_id: str) -> Optional[Record]: ...

    @abstractmethod
    async def save_pending_payment(self, payment: Record) -> Optional[Record]:
        """
        Create the order's payment, or reset the existing one to PENDING with
        the new session id and no payment intent. None if the existing payment
        is COMPLETED.
        """

    @abstractmethod
    async def complete_payment(self, order_id: str, session_id: str,
                               values: Record) -> Optional[Record]:
        """Mark the (order, session) payment COMPLETED unless it already is."""

    @abstractmethod
    async def expire_payment_session(self, order_id: str, session_id: str) -> Optional[Record]:
        """PENDING -> FAILED for the (order, session) payment."""

    @abstractmethod
    async def fail_payment_intent(self, payment_intent_id: str,
                                  order_id: str = None) -> Optional[Record]:
        """
        Mark the payment for this intent FAILED unless COMPLETED. Falls back to
        the order's payment when the intent id was never recorded.
        """

    @abstractmethod
    async def is_event_processed(self, event_id: str) -> bool: ...

    @abstractmethod
    async def record_event(self, event_id: str, event_type: str) -> bool:
        """Remember a handled webhook event; False if it was already recorded."""

    # -------------------------
    # Ratings
    # -------------------------
    @abstractmethod
    async def add_rating(self, rating: Record) -> Optional[Record]:
        """Insert a rating; None if the order already has one."""

    @abstractmethod
    async def get_rating_for_order(self, order_id: str) -> Optional[Record]: ...


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------
class MemoryStore(Store):

    def __init__(self):
        self._lock = asyncio.Lock()
        self.users: Dict[str, Record] = {}
        self.driver_profiles: Dict[str, Record] = {}
        self.orders: Dict[str, Record] = {}
        self.locations: List[Record] = []
        self.payments: Dict[str, Record] = {}
        self.processed_events: Dict[str, Record] = {}
        self.ratings: Dict[str, Record] = {}

    @staticmethod
    def _copy(record: Optional[Record]) -> Optional[Record]:
        return copy.deepcopy(record) if record is not None else None

    # users / drivers
    async def add_user(self, user):
        async with self._lock:
            if any(u["email"] == user["email"] for u in self.users.values()):
                return None
            self.users[user["id"]] = dict(user)
            return self._copy(user)

    async def get_user(self, user_id):
        return self._copy(self.users.get(user_id))

    async def get_user_by_email(self, email):
        for user in self.users.values():
            if user["email"] == email:
                return self._copy(user)
        return None

    async def add_driver_profile(self, profile):
        async with self._lock:
            record = {
                "license_number": "",
                "is_available": True,
                "rating": 0.0,
                "total_deliveries": 0,
                **profile,
            }
            self.driver_profiles[record["user_id"]] = record
            return self._copy(record)

    async def get_driver_profile(self, user_id):
        return self._copy(self.driver_profiles.get(user_id))

    async def refresh_driver_rating(self, driver_id):
        async with self._lock:
            profile = self.driver_profiles.get(driver_id)
            if profile is None:
                return None
            values = [r["rating"] for r in self.ratings.values() if r["driver_id"] == driver_id]
            profile["rating"] = sum(values) / len(values) if values else 0.0
            profile["total_deliveries"] = len(values)
            return self._copy(profile)

    # orders
    async def add_order(self, order):
        async with self._lock:
            if any(o["order_number"] == order["order_number"] for o in self.orders.values()):
                return None
            record = {
                "driver_id": None,
                "notes": None,
                "assigned_at": None,
                "started_at": None,
                "completed_at": None,
                "cancelled_at": None,
                **order,
            }
            self.orders[record["id"]] = record
            return self._copy(record)

    async def get_order(self, order_id):
        return self._copy(self.orders.get(order_id))

    async def list_orders(self, customer_id=None, driver_id=None, pending_only=False):
        rows = list(self.orders.values())
        if customer_id is not None:
            rows = [o for o in rows if o["customer_id"] == customer_id]
        if driver_id is not None:
            rows = [o for o in rows if o["driver_id"] == driver_id]
        if pending_only:
            rows = [o for o in rows
                    if o["status"] == OrderStatus.PENDING.value and o["driver_id"] is None]
        rows.sort(key=lambda o: o["created_at"], reverse=True)
        return [self._copy(o) for o in rows]

    async def claim_order(self, order_id, driver_id, assigned_at):
        async with self._lock:
            order = self.orders.get(order_id)
            if (order is None or order["status"] != OrderStatus.PENDING.value
                    or order["driver_id"] is not None):
                return None
            order.update(
                driver_id=driver_id,
                status=OrderStatus.ASSIGNED.value,
                assigned_at=assigned_at,
            )
            return self._copy(order)

    async def transition_order(self, order_id, from_status, to_status, stamps):
        async with self._lock:
            order = self.orders.get(order_id)
            if order is None or order["status"] != OrderStatus(from_status).value:
                return None
            order["status"] = OrderStatus(to_status).value
            for column, value in stamps.items():
                if order.get(column) is None:
                    order[column] = value
            return self._copy(order)

    # locations
    async def add_location(self, location):
        async with self._lock:
            record = {"order_id": None, "accuracy": None, **location}
            self.locations.append(record)
            return self._copy(record)

    def _locations_for(self, user_id=None, order_id=None):
        # list order is insertion order, which breaks timestamp ties
        rows = self.locations
        if user_id is not None:
            rows = [l for l in rows if l["user_id"] == user_id]
        if order_id is not None:
            rows = [l for l in rows if l["order_id"] == order_id]
        return sorted(rows, key=lambda l: l["timestamp"])

    async def latest_location(self, user_id, order_id):
        rows = self._locations_for(user_id, order_id)
        return self._copy(rows[-1]) if rows else None

    async def route_history(self, user_id, order_id, limit):
        return [self._copy(l) for l in self._locations_for(user_id, order_id)[:limit]]

    async def list_locations(self, user_id=None, order_id=None, limit=100, newest_first=True):
        rows = self._locations_for(user_id, order_id)
        if newest_first:
            rows = list(reversed(rows))
        return [self._copy(l) for l in rows[:limit]]

    # payments
    def _payment_for_order(self, order_id):
        for payment in self.payments.values():
            if payment["order_id"] == order_id:
                return payment
        return None

    async def get_payment_for_order(self, order_id):
        return self._copy(self._payment_for_order(order_id))

    async def save_pending_payment(self, payment):
        async with self._lock:
            existing = self._payment_for_order(payment["order_id"])
            if existing is None:
                record = {
                    "stripe_payment_id": None,
                    "stripe_customer_id": None,
                    "payment_method": None,
                    "paid_at": None,
                    **payment,
                    "status": PaymentStatus.PENDING.value,
                }
                self.payments[record["id"]] = record
                return self._copy(record)
            if existing["status"] == PaymentStatus.COMPLETED.value:
                return None
            # a new session gets a new payment intent
            existing.update(
                stripe_session_id=payment["stripe_session_id"],
                stripe_payment_id=None,
                amount=payment["amount"],
                status=PaymentStatus.PENDING.value,
                updated_at=payment.get("updated_at"),
            )
            return self._copy(existing)

    async def complete_payment(self, order_id, session_id, values):
        async with self._lock:
            payment = self._payment_for_order(order_id)
            if (payment is None or payment["stripe_session_id"] != session_id
                    or payment["status"] == PaymentStatus.COMPLETED.value):
                return None
            payment.update(values, status=PaymentStatus.COMPLETED.value)
            return self._copy(payment)

    async def expire_payment_session(self, order_id, session_id):
        async with self._lock:
            payment = self._payment_for_order(order_id)
            if (payment is None or payment["stripe_session_id"] != session_id
                    or payment["status"] != PaymentStatus.PENDING.value):
                return None
            payment["status"] = PaymentStatus.FAILED.value
            return self._copy(payment)

    async def fail_payment_intent(self, payment_intent_id, order_id=None):
        async with self._lock:
            match = None
            for payment in self.payments.values():
                if payment["stripe_payment_id"] == payment_intent_id:
                    match = payment
                    break
            if match is None and order_id is not None:
                candidate = self._payment_for_order(order_id)
                if candidate is not None and candidate["stripe_payment_id"] is None:
                    match = candidate
            if match is None or match["status"] == PaymentStatus.COMPLETED.value:
                return None
            match.update(status=PaymentStatus.FAILED.value, stripe_payment_id=payment_intent_id)
            return self._copy(match)

    async def is_event_processed(self, event_id):
        return event_id in self.processed_events

    async def record_event(self, event_id, event_type):
        async with self._lock:
            if event_id in self.processed_events:
                return False
            self.processed_events[event_id] = {
                "event_id": event_id,
                "event_type": event_type,
                "processed_at": datetime.utcnow(),
            }
            return True

    # ratings
    async def add_rating(self, rating):
        async with self._lock:
            if any(r["order_id"] == rating["order_id"] for r in self.ratings.values()):
                return None
            record = {"comment": None, **rating}
            self.ratings[record["id"]] = record
            return self._copy(record)

    async def get_rating_for_order(self, order_id):
        for rating in self.ratings.values():
            if rating["order_id"] == order_id:
                return self._copy(rating)
        return None


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------
def _row(row) -> Optional[Record]:
    return dict(row._mapping) if row is not None else None


class SQLStore(Store):

    def __init__(self, database):
        self.database = database

    async def _one(self, query) -> Optional[Record]:
        return _row(await self.database.fetch_one(query))

    async def _all(self, query) -> List[Record]:
        return [_row(r) for r in await self.database.fetch_all(query)]

    # users / drivers
    async def add_user(self, user):
        query = (
            pg_insert(users).values(**user)
            .on_conflict_do_nothing(index_elements=[users.c.email])
            .returning(*users.c)
        )
        return await self._one(query)

    async def get_user(self, user_id):
        return await self._one(users.select().where(users.c.id == user_id))

    async def get_user_by_email(self, email):
        return await self._one(users.select().where(users.c.email == email))

    async def add_driver_profile(self, profile):
        return await self._one(driver_profiles.insert().values(**profile).returning(*driver_profiles.c))

    async def get_driver_profile(self, user_id):
        return await self._one(driver_profiles.select().where(driver_profiles.c.user_id == user_id))

    async def refresh_driver_rating(self, driver_id):
        mean = (
            select(func.coalesce(func.avg(ratings.c.rating), 0.0))
            .where(ratings.c.driver_id == driver_id)
            .scalar_subquery()
        )
        count = (
            select(func.count())
            .select_from(ratings)
            .where(ratings.c.driver_id == driver_id)
            .scalar_subquery()
        )
        query = (
            driver_profiles.update()
            .where(driver_profiles.c.user_id == driver_id)
            .values(rating=mean, total_deliveries=count)
            .returning(*driver_profiles.c)
        )
        return await self._one(query)

    # orders
    async def add_order(self, order):
        query = (
            pg_insert(orders).values(**order)
            .on_conflict_do_nothing(index_elements=[orders.c.order_number])
            .returning(*orders.c)
        )
        return await self._one(query)

    async def get_order(self, order_id):
        return await self._one(orders.select().where(orders.c.id == order_id))

    async def list_orders(self, customer_id=None, driver_id=None, pending_only=False):
        query = orders.select()
        if customer_id is not None:
            query = query.where(orders.c.customer_id == customer_id)
        if driver_id is not None:
            query = query.where(orders.c.driver_id == driver_id)
        if pending_only:
            query = query.where(
                (orders.c.status == OrderStatus.PENDING.value) & orders.c.driver_id.is_(None)
            )
        return await self._all(query.order_by(orders.c.created_at.desc()))

    async def claim_order(self, order_id, driver_id, assigned_at):
        query = (
            orders.update()
            .where(
                (orders.c.id == order_id)
                & (orders.c.status == OrderStatus.PENDING.value)
                & orders.c.driver_id.is_(None)
            )
            .values(driver_id=driver_id, status=OrderStatus.ASSIGNED.value, assigned_at=assigned_at)
            .returning(*orders.c)
        )
        return await self._one(query)

    async def transition_order(self, order_id, from_status, to_status, stamps):
        values = {"status": OrderStatus(to_status).value}
        for column, value in stamps.items():
            values[column] = func.coalesce(orders.c[column], value)
        query = (
            orders.update()
            .where((orders.c.id == order_id) & (orders.c.status == OrderStatus(from_status).value))
            .values(**values)
            .returning(*orders.c)
        )
        return await self._one(query)

    # locations
    async def add_location(self, location):
        return await self._one(locations.insert().values(**location).returning(*locations.c))

    def _location_query(self, user_id=None, order_id=None):
        query = locations.select()
        if user_id is not None:
            query = query.where(locations.c.user_id == user_id)
        if order_id is not None:
            query = query.where(locations.c.order_id == order_id)
        return query

    async def latest_location(self, user_id, order_id):
        query = self._location_query(user_id, order_id).order_by(locations.c.timestamp.desc()).limit(1)
        return await self._one(query)

    async def route_history(self, user_id, order_id, limit):
        query = self._location_query(user_id, order_id).order_by(locations.c.timestamp.asc()).limit(limit)
        return await self._all(query)

    async def list_locations(self, user_id=None, order_id=None, limit=100, newest_first=True):
        order = locations.c.timestamp.desc() if newest_first else locations.c.timestamp.asc()
        return await self._all(self._location_query(user_id, order_id).order_by(order).limit(limit))

    # payments
    async def get_payment_for_order(self, order_id):
        return await self._one(payments.select().where(payments.c.order_id == order_id))

    async def save_pending_payment(self, payment):
        record = {**payment, "status": PaymentStatus.PENDING.value}
        stmt = pg_insert(payments).values(**record)
        query = stmt.on_conflict_do_update(
            index_elements=[payments.c.order_id],
            set_={
                "stripe_session_id": stmt.excluded.stripe_session_id,
                "stripe_payment_id": None,
                "amount": stmt.excluded.amount,
                "status": PaymentStatus.PENDING.value,
                "updated_at": stmt.excluded.updated_at,
            },
            where=payments.c.status != PaymentStatus.COMPLETED.value,
        ).returning(*payments.c)
        return await self._one(query)

    async def complete_payment(self, order_id, session_id, values):
        query = (
            payments.update()
            .where(
                (payments.c.order_id == order_id)
                & (payments.c.stripe_session_id == session_id)
                & (payments.c.status != PaymentStatus.COMPLETED.value)
            )
            .values(**values, status=PaymentStatus.COMPLETED.value)
            .returning(*payments.c)
        )
        return await self._one(query)

    async def expire_payment_session(self, order_id, session_id):
        query = (
            payments.update()
            .where(
                (payments.c.order_id == order_id)
                & (payments.c.stripe_session_id == session_id)
                & (payments.c.status == PaymentStatus.PENDING.value)
            )
            .values(status=PaymentStatus.FAILED.value)
            .returning(*payments.c)
        )
        return await self._one(query)

    async def fail_payment_intent(self, payment_intent_id, order_id=None):
        match = payments.c.stripe_payment_id == payment_intent_id
        if order_id is not None:
            match = or_(match, and_(payments.c.order_id == order_id,
                                    payments.c.stripe_payment_id.is_(None)))
        query = (
            payments.update()
            .where(match & (payments.c.status != PaymentStatus.COMPLETED.value))
            .values(status=PaymentStatus.FAILED.value, stripe_payment_id=payment_intent_id)
            .returning(*payments.c)
        )
        return await self._one(query)

    async def is_event_processed(self, event_id):
        row = await self.database.fetch_one(
            processed_events.select().where(processed_events.c.event_id == event_id)
        )
        return row is not None

    async def record_event(self, event_id, event_type):
        query = (
            pg_insert(processed_events)
            .values(event_id=event_id, event_type=event_type, processed_at=datetime.utcnow())
            .on_conflict_do_nothing(index_elements=[processed_events.c.event_id])
            .returning(processed_events.c.event_id)
        )
        return await self.database.fetch_one(query) is not None

    # ratings
    async def add_rating(self, rating):
        query = (
            pg_insert(ratings).values(**rating)
            .on_conflict_do_nothing(index_elements=[ratings.c.order_id])
            .returning(*ratings.c)
        )
        return await self._one(query)

    async def get_rating_for_order(self, order_id):
        return await self._one(ratings.select().where(ratings.c.order_id == order_id))
