"""
Stripe checkout and webhook reconciliation.

A payment only ever becomes COMPLETED through an authenticated webhook. The
client-side checkout flow just opens a session and records it as PENDING.
"""

import json
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

import stripe
from fastapi.concurrency import run_in_threadpool

from fuel_service import metrics
from fuel_service.config import APP_URL, PAYMENT_CURRENCY
from fuel_service.errors import BadRequest, Conflict, Forbidden, NotFound, UpstreamError
from fuel_service.schemas import OrderStatus, PaymentStatus, Role
from fuel_service.store import Store

logger = logging.getLogger("fuel-service.payments")

SIGNATURE_TOLERANCE_SECONDS = 300


# ───────────────────────────────────────────────────────────
# Gateway
# ───────────────────────────────────────────────────────────
class StripeGateway:
    """Creates hosted checkout sessions and authenticates webhook payloads."""

    def __init__(self, api_key: Optional[str], webhook_secret: str,
                 currency: str = PAYMENT_CURRENCY):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.currency = currency
        if not api_key:
            logger.warning("STRIPE_SECRET_KEY not set; checkout is disabled")

    def create_checkout_session(self, order: Dict, customer_email: Optional[str],
                                success_url: str, cancel_url: str) -> Dict:
        if not self.api_key:
            raise UpstreamError("Payment gateway is not configured")

        metadata = {"orderId": order["id"], "userId": order["customer_id"]}
        amount_cents = int((Decimal(str(order["total_amount"])) * 100).quantize(Decimal("1")))
        try:
            session = stripe.checkout.Session.create(
                api_key=self.api_key,
                payment_method_types=["card"],
                line_items=[{
                    "price_data": {
                        "currency": self.currency,
                        "product_data": {
                            "name": f"Fuel Delivery - Order #{order['order_number']}",
                            "description": f"{order['quantity']} gallons of {order['gas_type']} fuel",
                        },
                        "unit_amount": amount_cents,
                    },
                    "quantity": 1,
                }],
                mode="payment",
                success_url=success_url,
                cancel_url=cancel_url,
                customer_email=customer_email,
                metadata=metadata,
                payment_intent_data={"metadata": metadata},
            )
        except stripe.StripeError as e:
            logger.error(f"[STRIPE ERROR] {e}")
            raise UpstreamError("Failed to create checkout session")

        return {"id": session.id, "url": session.url}

    def verify_event(self, payload: bytes, signature: str) -> Dict:
        """Return the decoded event, or raise BadRequest if it is not authentic."""
        if not self.webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET not set; rejecting webhook")
            raise BadRequest("Invalid signature")

        try:
            text = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                text, signature, self.webhook_secret, SIGNATURE_TOLERANCE_SECONDS
            )
            return json.loads(text)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise BadRequest("Invalid signature")
        except ValueError:
            raise BadRequest("Invalid payload")


# ───────────────────────────────────────────────────────────
# Checkout
# ───────────────────────────────────────────────────────────
async def initiate_checkout(store: Store, gateway: StripeGateway, order_id: str,
                            requester: Dict) -> Dict:
    trace_id = requester.get("trace_id")

    order = await store.get_order(order_id)
    if not order:
        raise NotFound("Order not found")
    if order["customer_id"] != requester["id"]:
        raise Forbidden("You can only pay for your own orders")
    if order["status"] == OrderStatus.CANCELLED.value:
        raise BadRequest("Cancelled orders cannot be paid")

    existing = await store.get_payment_for_order(order_id)
    if existing and existing["status"] == PaymentStatus.COMPLETED.value:
        raise Conflict("This order has already been paid")

    customer = await store.get_user(order["customer_id"])
    # the Stripe client blocks on HTTP
    session = await run_in_threadpool(
        gateway.create_checkout_session,
        order,
        customer_email=customer["email"] if customer else None,
        success_url=f"{APP_URL}/orders/{order_id}?payment=success",
        cancel_url=f"{APP_URL}/orders/{order_id}?payment=cancelled",
    )

    now = datetime.utcnow()
    payment = await store.save_pending_payment({
        "id": str(uuid.uuid4()),
        "order_id": order_id,
        "user_id": requester["id"],
        "amount": order["total_amount"],
        "stripe_session_id": session["id"],
        "created_at": now,
        "updated_at": now,
    })
    if payment is None:
        raise Conflict("This order has already been paid")

    logger.info(f"[TRACE {trace_id}] Checkout session {session['id']} opened for order {order_id}")
    return {"session_id": session["id"], "url": session.get("url")}


async def get_payment(store: Store, order_id: str, requester: Dict) -> Dict:
    order = await store.get_order(order_id)
    if not order:
        raise NotFound("Order not found")
    if requester["role"] != Role.admin.value and order["customer_id"] != requester["id"]:
        raise Forbidden("You do not have access to this payment")

    payment = await store.get_payment_for_order(order_id)
    if not payment:
        raise NotFound("No payment for this order")
    return payment


# ───────────────────────────────────────────────────────────
# Webhook
# ───────────────────────────────────────────────────────────
async def _session_completed(store: Store, session: Dict) -> str:
    order_id = (session.get("metadata") or {}).get("orderId")
    if not order_id:
        logger.warning(f"[WEBHOOK] Session {session.get('id')} has no orderId metadata")
        return "unmatched"

    now = datetime.utcnow()
    payment = await store.complete_payment(order_id, session.get("id"), {
        "stripe_payment_id": session.get("payment_intent"),
        "stripe_customer_id": session.get("customer"),
        "payment_method": "card",
        "paid_at": now,
        "updated_at": now,
    })
    if payment:
        logger.info(f"[WEBHOOK] Payment completed for order {order_id}")
        return "completed"

    existing = await store.get_payment_for_order(order_id)
    if (existing and existing["stripe_session_id"] == session.get("id")
            and existing["status"] == PaymentStatus.COMPLETED.value):
        logger.info(f"[WEBHOOK] Payment for order {order_id} already completed, skipping")
        return "duplicate"

    logger.warning(f"[WEBHOOK] No payment for order {order_id} with session {session.get('id')}")
    return "unmatched"


async def _session_expired(store: Store, session: Dict) -> str:
    order_id = (session.get("metadata") or {}).get("orderId")
    if not order_id:
        logger.warning(f"[WEBHOOK] Session {session.get('id')} has no orderId metadata")
        return "unmatched"

    payment = await store.expire_payment_session(order_id, session.get("id"))
    if payment:
        logger.info(f"[WEBHOOK] Payment session expired for order {order_id}")
        return "failed"

    logger.warning(f"[WEBHOOK] No pending payment for order {order_id} with session {session.get('id')}")
    return "unmatched"


async def _payment_failed(store: Store, intent: Dict) -> str:
    order_id = (intent.get("metadata") or {}).get("orderId")
    payment = await store.fail_payment_intent(intent.get("id"), order_id=order_id)
    if payment:
        logger.info(f"[WEBHOOK] Payment failed for payment intent {intent.get('id')}")
        return "failed"

    logger.warning(f"[WEBHOOK] No open payment for payment intent {intent.get('id')}")
    return "unmatched"


EVENT_HANDLERS = {
    "checkout.session.completed": _session_completed,
    "checkout.session.expired": _session_expired,
    "payment_intent.payment_failed": _payment_failed,
}


async def handle_webhook(store: Store, gateway: StripeGateway, payload: bytes,
                         signature: Optional[str]) -> Dict:
    """
    Apply one signed gateway event. Once the event is authentic the result is
    always an acknowledgement, matched or not, so the gateway stops retrying.
    """
    if not signature:
        raise BadRequest("Missing signature")

    event = gateway.verify_event(payload, signature)
    event_id = event.get("id")
    event_type = event.get("type") or "unknown"

    if event_id and await store.is_event_processed(event_id):
        logger.info(f"[SKIP] Duplicate {event_type} ({event_id})")
        metrics.PAYMENT_WEBHOOK_EVENTS.labels(event_type=event_type, outcome="duplicate").inc()
        return {"received": True}

    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.info(f"[WEBHOOK] Unhandled event type {event_type}")
        outcome = "ignored"
    else:
        obj = (event.get("data") or {}).get("object") or {}
        outcome = await handler(store, obj)

    if event_id:
        await store.record_event(event_id, event_type)
    metrics.PAYMENT_WEBHOOK_EVENTS.labels(event_type=event_type, outcome=outcome).inc()
    return {"received": True}
