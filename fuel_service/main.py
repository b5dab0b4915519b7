# main.py
import logging
import uuid
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Depends, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from fuel_service import accounts, orders, payments, ratings, tracking
from fuel_service.auth import get_current_user
from fuel_service.config import CORS_ORIGINS, STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET
from fuel_service.database import database, init_db
from fuel_service.payments import StripeGateway
from fuel_service.schemas import (
    AuthResponse, CheckoutRequest, CheckoutSession, DriverProfile, GeofenceCheck,
    Location, LocationReport, LocationReportResponse, LoginRequest, MeResponse,
    Order, OrderCreate, Payment, Rating, RatingCreate, RegisterRequest,
    StatusUpdate, TrackingSnapshot,
)
from fuel_service.store import SQLStore, Store

# ───────────────────────────────────────────────────────────
# Logging
# ───────────────────────────────────────────────────────────
logger = logging.getLogger("fuel-service")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("[%(asctime)s] [%(levelname)s] %(message)s"))
    logger.addHandler(handler)


# ───────────────────────────────────────────────────────────
# Dependencies
# ───────────────────────────────────────────────────────────
def get_store(request: Request) -> Store:
    return request.app.state.store


def get_gateway(request: Request) -> StripeGateway:
    return request.app.state.gateway


def create_app(store: Optional[Store] = None, gateway: Optional[StripeGateway] = None) -> FastAPI:
    """
    Build the service. Without a store the app connects to DATABASE_URL on
    startup; tests pass a MemoryStore and a fake gateway instead.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_database = store is None
        if owns_database:
            logger.info("Connecting database...")
            await database.connect()
            init_db()
            app.state.store = SQLStore(database)
        else:
            app.state.store = store
        app.state.gateway = gateway or StripeGateway(STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET)
        logger.info("Startup complete.")
        yield
        if owns_database:
            logger.info("Disconnecting database...")
            await database.disconnect()

    app = FastAPI(title="Fuel Delivery Service", version="1.0.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        trace_id = request.headers.get("x-trace-id") or str(uuid.uuid4())
        request.state.trace_id = trace_id
        response = await call_next(request)
        response.headers["x-trace-id"] = trace_id
        logger.info(f"[TRACE {trace_id}] {request.method} {request.url.path} -> {response.status_code}")
        return response

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        trace_id = getattr(request.state, "trace_id", "N/A")
        logger.error(f"[TRACE {trace_id}] Unhandled error: {exc!r}", exc_info=exc)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    # ------------------------- HEALTH / METRICS -------------------------
    @app.get("/health")
    async def health():
        return {"status": "fuel-service healthy"}

    @app.get("/metrics")
    async def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # ------------------------- AUTH -------------------------
    @app.post("/auth/register", response_model=AuthResponse, status_code=201)
    async def register(req: RegisterRequest, store: Store = Depends(get_store)):
        return await accounts.register(store, req)

    @app.post("/auth/login", response_model=AuthResponse)
    async def login(req: LoginRequest, store: Store = Depends(get_store)):
        return await accounts.login(store, req.email, req.password)

    @app.get("/auth/me", response_model=MeResponse)
    async def me(user=Depends(get_current_user), store: Store = Depends(get_store)):
        return await accounts.me(store, user)

    @app.get("/drivers/me", response_model=DriverProfile)
    async def my_driver_profile(user=Depends(get_current_user), store: Store = Depends(get_store)):
        return await accounts.get_driver_profile(store, user)

    # ------------------------- ORDERS -------------------------
    @app.post("/orders", response_model=Order, status_code=201)
    async def create_order(body: OrderCreate, user=Depends(get_current_user),
                           store: Store = Depends(get_store)):
        return await orders.create_order(store, body, user)

    @app.get("/orders", response_model=List[Order])
    async def list_orders(user=Depends(get_current_user), store: Store = Depends(get_store)):
        return await orders.list_orders(store, user)

    @app.get("/orders/pending", response_model=List[Order])
    async def list_pending_orders(user=Depends(get_current_user), store: Store = Depends(get_store)):
        return await orders.list_pending_orders(store, user)

    @app.get("/orders/{order_id}", response_model=Order)
    async def get_order(order_id: str, user=Depends(get_current_user),
                        store: Store = Depends(get_store)):
        return await orders.get_order(store, order_id, user)

    @app.post("/orders/{order_id}/accept", response_model=Order)
    async def accept_order(order_id: str, user=Depends(get_current_user),
                           store: Store = Depends(get_store)):
        return await orders.accept_order(store, order_id, user)

    @app.patch("/orders/{order_id}/status", response_model=Order)
    async def update_order_status(order_id: str, body: StatusUpdate,
                                  user=Depends(get_current_user),
                                  store: Store = Depends(get_store)):
        return await orders.update_status(store, order_id, body.status, user)

    # ------------------------- TRACKING -------------------------
    @app.post("/tracking/location", response_model=LocationReportResponse)
    async def report_location(report: LocationReport, user=Depends(get_current_user),
                              store: Store = Depends(get_store)):
        return await tracking.report_location(store, report, user)

    @app.get("/tracking/location", response_model=List[Location])
    async def list_locations(order_id: Optional[str] = None, user_id: Optional[str] = None,
                             limit: int = Query(100), user=Depends(get_current_user),
                             store: Store = Depends(get_store)):
        return await tracking.list_locations(store, user, order_id=order_id,
                                             user_id=user_id, limit=limit)

    @app.patch("/tracking/geofence/{order_id}", response_model=GeofenceCheck)
    async def check_geofence(order_id: str, user=Depends(get_current_user),
                             store: Store = Depends(get_store)):
        return await tracking.check_geofence(store, order_id, user)

    @app.get("/tracking/orders/{order_id}", response_model=TrackingSnapshot)
    async def tracking_snapshot(order_id: str, user=Depends(get_current_user),
                                store: Store = Depends(get_store)):
        return await tracking.tracking_snapshot(store, order_id, user)

    # ------------------------- PAYMENTS -------------------------
    @app.post("/payments/checkout", response_model=CheckoutSession)
    async def checkout(body: CheckoutRequest, user=Depends(get_current_user),
                       store: Store = Depends(get_store),
                       gateway: StripeGateway = Depends(get_gateway)):
        return await payments.initiate_checkout(store, gateway, body.order_id, user)

    @app.get("/payments/orders/{order_id}", response_model=Payment)
    async def get_payment(order_id: str, user=Depends(get_current_user),
                          store: Store = Depends(get_store)):
        return await payments.get_payment(store, order_id, user)

    @app.post("/payments/webhook")
    async def payment_webhook(request: Request, store: Store = Depends(get_store),
                              gateway: StripeGateway = Depends(get_gateway)):
        payload = await request.body()
        return await payments.handle_webhook(
            store, gateway, payload, request.headers.get("stripe-signature")
        )

    # ------------------------- RATINGS -------------------------
    @app.post("/ratings", response_model=Rating, status_code=201)
    async def submit_rating(body: RatingCreate, user=Depends(get_current_user),
                            store: Store = Depends(get_store)):
        return await ratings.submit_rating(store, body, user)

    return app


app = create_app()


# ───────────────────────────────────────────────────────────
# Entrypoint
# ───────────────────────────────────────────────────────────
if __name__ == "__main__":
    import uvicorn
    uvicorn.run("fuel_service.main:app", host="0.0.0.0", port=8000, reload=True)
