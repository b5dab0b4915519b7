# models.py
from datetime import datetime
from sqlalchemy import (
    Table, Column, String, Float, Integer, Boolean, Text, DateTime, Numeric,
    ForeignKey, UniqueConstraint, Index, CheckConstraint,
)
from fuel_service.database import metadata

# ------------------------
# Users
# ------------------------
users = Table(
    "users",
    metadata,
    Column("id", String, primary_key=True),
    Column("email", String, nullable=False, unique=True, index=True),
    Column("password_hash", String, nullable=False),
    Column("name", String, nullable=False),
    Column("phone", String, nullable=True),
    Column("role", String, nullable=False),
    Column("created_at", DateTime, default=datetime.utcnow),
)

driver_profiles = Table(
    "driver_profiles",
    metadata,
    Column("user_id", String, ForeignKey("users.id"), primary_key=True),
    Column("vehicle_type", String, nullable=False),
    Column("license_plate", String, nullable=False),
    Column("license_number", String, nullable=False, default=""),
    Column("is_available", Boolean, nullable=False, default=True),
    Column("rating", Float, nullable=False, default=0.0),
    Column("total_deliveries", Integer, nullable=False, default=0),
)

# ------------------------
# Orders
# ------------------------
orders = Table(
    "orders",
    metadata,
    Column("id", String, primary_key=True),
    Column("order_number", String, nullable=False, unique=True),
    Column("customer_id", String, ForeignKey("users.id"), nullable=False, index=True),
    Column("driver_id", String, ForeignKey("users.id"), nullable=True, index=True),
    Column("status", String, nullable=False, default="PENDING", index=True),
    Column("gas_type", String, nullable=False),
    Column("quantity", Numeric(10, 2), nullable=False),
    Column("delivery_lat", Float, nullable=False),
    Column("delivery_lng", Float, nullable=False),
    Column("delivery_address", String, nullable=False),
    Column("price_per_unit", Numeric(10, 2), nullable=False),
    Column("total_amount", Numeric(10, 2), nullable=False),
    Column("notes", Text, nullable=True),
    Column("created_at", DateTime, nullable=False, default=datetime.utcnow),
    Column("assigned_at", DateTime, nullable=True),
    Column("started_at", DateTime, nullable=True),
    Column("completed_at", DateTime, nullable=True),
    Column("cancelled_at", DateTime, nullable=True),
    CheckConstraint("quantity > 0", name="ck_orders_quantity_positive"),
)

# ------------------------
# Location samples (append-only)
# ------------------------
locations = Table(
    "locations",
    metadata,
    Column("id", String, primary_key=True),
    Column("user_id", String, ForeignKey("users.id"), nullable=False),
    Column("order_id", String, ForeignKey("orders.id"), nullable=True),
    Column("latitude", Float, nullable=False),
    Column("longitude", Float, nullable=False),
    Column("accuracy", Float, nullable=True),
    Column("timestamp", DateTime, nullable=False, default=datetime.utcnow),
    Index("ix_locations_order_user_ts", "order_id", "user_id", "timestamp"),
    Index("ix_locations_user_ts", "user_id", "timestamp"),
)

# ------------------------
# Payments (1:1 with orders)
# ------------------------
payments = Table(
    "payments",
    metadata,
    Column("id", String, primary_key=True),
    Column("order_id", String, ForeignKey("orders.id"), nullable=False),
    Column("user_id", String, nullable=False),
    Column("amount", Numeric(10, 2), nullable=False),
    Column("status", String, nullable=False),
    Column("stripe_session_id", String, nullable=True),
    Column("stripe_payment_id", String, nullable=True, index=True),
    Column("stripe_customer_id", String, nullable=True),
    Column("payment_method", String, nullable=True),
    Column("paid_at", DateTime, nullable=True),
    Column("created_at", DateTime, default=datetime.utcnow),
    Column("updated_at", DateTime, default=datetime.utcnow),
    UniqueConstraint("order_id", name="uix_payments_order_id"),
)

processed_events = Table(
    "processed_events",
    metadata,
    Column("event_id", String, primary_key=True),
    Column("event_type", String, nullable=False),
    Column("processed_at", DateTime, default=datetime.utcnow),
)

# ------------------------
# Ratings (1:1 with delivered orders)
# ------------------------
ratings = Table(
    "ratings",
    metadata,
    Column("id", String, primary_key=True),
    Column("order_id", String, ForeignKey("orders.id"), nullable=False),
    Column("customer_id", String, nullable=False),
    Column("driver_id", String, nullable=False, index=True),
    Column("rating", Integer, nullable=False),
    Column("comment", Text, nullable=True),
    Column("created_at", DateTime, default=datetime.utcnow),
    UniqueConstraint("order_id", name="uix_ratings_order_id"),
    CheckConstraint("rating BETWEEN 1 AND 5", name="ck_ratings_range"),
)
