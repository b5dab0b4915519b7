# schemas.py
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field


class Role(str, Enum):
    customer = "customer"
    driver = "driver"
    admin = "admin"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class GasType(str, Enum):
    regular = "regular"
    plus = "plus"
    premium = "premium"
    diesel = "diesel"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class ProximityStatus(str, Enum):
    ARRIVED = "arrived"
    NEARBY = "nearby"
    FAR = "far"


# -------------------------
# Accounts
# -------------------------
class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6)
    name: str = Field(min_length=1)
    phone: Optional[str] = None
    role: Role = Role.customer
    vehicle_type: Optional[str] = None
    license_plate: Optional[str] = None
    license_number: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class User(BaseModel):
    id: str
    email: str
    name: str
    phone: Optional[str] = None
    role: Role


class DriverProfile(BaseModel):
    user_id: str
    vehicle_type: str
    license_plate: str
    license_number: str = ""
    is_available: bool = True
    rating: float = 0.0
    total_deliveries: int = 0


class AuthResponse(BaseModel):
    user: User
    token: str


class MeResponse(BaseModel):
    user: User
    driver_profile: Optional[DriverProfile] = None


# -------------------------
# Orders
# -------------------------
class OrderCreate(BaseModel):
    gas_type: GasType
    quantity: float = Field(gt=0, le=1000)
    delivery_lat: float = Field(ge=-90, le=90)
    delivery_lng: float = Field(ge=-180, le=180)
    delivery_address: str = Field(min_length=1)
    notes: Optional[str] = None


class Order(BaseModel):
    id: str
    order_number: str
    customer_id: str
    driver_id: Optional[str] = None
    status: OrderStatus
    gas_type: GasType
    quantity: float
    delivery_lat: float
    delivery_lng: float
    delivery_address: str
    price_per_unit: float
    total_amount: float
    notes: Optional[str] = None
    created_at: datetime
    assigned_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class StatusUpdate(BaseModel):
    # Plain string so unknown values reach the state machine and get a 400
    status: str


# -------------------------
# Tracking
# -------------------------
class LocationReport(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy: Optional[float] = Field(default=None, ge=0)
    order_id: Optional[str] = None


class Location(BaseModel):
    id: str
    user_id: str
    order_id: Optional[str] = None
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    timestamp: datetime


class LocationReportResponse(BaseModel):
    location: Location
    distance: Optional[float] = None
    proximity_status: Optional[ProximityStatus] = None
    is_near_delivery: Optional[bool] = None
    geofence_error: Optional[str] = None


class GeofenceCheck(BaseModel):
    message: str
    status_updated: bool = False
    has_arrived: bool = False
    distance_to_destination: Optional[float] = None
    suggestion: Optional[str] = None


class ETA(BaseModel):
    minutes: int
    arrival_timestamp: datetime


class TrackingOrder(BaseModel):
    id: str
    order_number: str
    status: OrderStatus
    delivery_address: str
    delivery_lat: float
    delivery_lng: float


class TrackingDriver(BaseModel):
    id: str
    vehicle_type: Optional[str] = None
    license_plate: Optional[str] = None
    rating: Optional[float] = None


class Tracking(BaseModel):
    current_location: Optional[Location] = None
    route_history: List[Location] = []
    distance_to_destination: Optional[float] = None
    total_distance_traveled: float = 0.0
    estimated_arrival: Optional[ETA] = None
    last_update: Optional[datetime] = None


class TrackingSnapshot(BaseModel):
    order: TrackingOrder
    driver: Optional[TrackingDriver] = None
    tracking: Tracking


# -------------------------
# Payments
# -------------------------
class CheckoutRequest(BaseModel):
    order_id: str


class CheckoutSession(BaseModel):
    session_id: str
    url: Optional[str] = None


class Payment(BaseModel):
    id: str
    order_id: str
    user_id: str
    amount: float
    status: PaymentStatus
    stripe_session_id: Optional[str] = None
    stripe_payment_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    payment_method: Optional[str] = None
    paid_at: Optional[datetime] = None


# -------------------------
# Ratings
# -------------------------
class RatingCreate(BaseModel):
    order_id: str
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = None


class Rating(BaseModel):
    id: str
    order_id: str
    customer_id: str
    driver_id: str
    rating: int
    comment: Optional[str] = None
    created_at: datetime
