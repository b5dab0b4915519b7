# accounts.py
import logging
import uuid
from datetime import datetime
from typing import Dict

from fuel_service.auth import create_jwt, hash_password, verify_password
from fuel_service.errors import BadRequest, Conflict, Forbidden, NotFound, Unauthorized
from fuel_service.schemas import RegisterRequest, Role
from fuel_service.store import Store

logger = logging.getLogger("fuel-service.accounts")


def public_user(row: Dict) -> Dict:
    return {
        "id": row["id"],
        "email": row["email"],
        "name": row["name"],
        "phone": row.get("phone"),
        "role": row["role"],
    }


async def register(store: Store, req: RegisterRequest) -> Dict:
    if req.role == Role.admin:
        raise Forbidden("Admin accounts cannot be self-registered")

    # Validate driver fields before anything
    if req.role == Role.driver and (not req.vehicle_type or not req.license_plate):
        raise BadRequest("Driver must provide vehicle_type and license_plate")

    email = req.email.lower()
    if await store.get_user_by_email(email):
        raise Conflict("A user with this email already exists")

    user = await store.add_user({
        "id": str(uuid.uuid4()),
        "email": email,
        "password_hash": hash_password(req.password),
        "name": req.name,
        "phone": req.phone,
        "role": req.role.value,
        "created_at": datetime.utcnow(),
    })
    if user is None:
        raise Conflict("A user with this email already exists")

    if req.role == Role.driver:
        await store.add_driver_profile({
            "user_id": user["id"],
            "vehicle_type": req.vehicle_type,
            "license_plate": req.license_plate,
            "license_number": req.license_number or "",
            "is_available": True,
            "rating": 0.0,
            "total_deliveries": 0,
        })

    logger.info(f"[Auth] Created new {user['role']}: {email}")
    return {"user": public_user(user), "token": create_jwt(user["id"], user["role"])}


async def login(store: Store, email: str, password: str) -> Dict:
    user = await store.get_user_by_email(email.lower())
    if not user or not verify_password(password, user["password_hash"]):
        raise Unauthorized("Invalid credentials")

    logger.info(f"[Auth] User logged in: {user['email']} ({user['role']})")
    return {"user": public_user(user), "token": create_jwt(user["id"], user["role"])}


async def me(store: Store, requester: Dict) -> Dict:
    user = await store.get_user(requester["id"])
    if not user:
        raise NotFound("User not found")

    profile = None
    if user["role"] == Role.driver.value:
        profile = await store.get_driver_profile(user["id"])
    return {"user": public_user(user), "driver_profile": profile}


async def get_driver_profile(store: Store, requester: Dict) -> Dict:
    if requester["role"] != Role.driver.value:
        raise Forbidden("Drivers only")
    profile = await store.get_driver_profile(requester["id"])
    if not profile:
        raise NotFound("Driver profile not found")
    return profile
