# auth.py
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from fastapi import Request
from jose import jwt, JWTError
from passlib.context import CryptContext

from fuel_service.config import JWT_SECRET, JWT_ALGORITHM, JWT_EXP_MINUTES
from fuel_service.errors import BadRequest, Unauthorized
from fuel_service.schemas import Role

# ---------------------------------------------------------
# Password Hashing
# ---------------------------------------------------------
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
MAX_BCRYPT_BYTES = 72  # bcrypt limit


def hash_password(password: str) -> str:
    """Hash password safely & check 72-byte bcrypt rule."""
    if len(password.encode("utf-8")) > MAX_BCRYPT_BYTES:
        raise BadRequest(f"Password too long. Max {MAX_BCRYPT_BYTES} bytes allowed.")
    return pwd_context.hash(password)


def verify_password(raw: str, hashed: str) -> bool:
    if len(raw.encode("utf-8")) > MAX_BCRYPT_BYTES:
        return False
    return pwd_context.verify(raw, hashed)


# ---------------------------------------------------------
# JWT
# ---------------------------------------------------------
def create_jwt(user_id: str, role: str) -> str:
    payload = {
        "sub": user_id,
        "role": role,
        "exp": datetime.utcnow() + timedelta(minutes=JWT_EXP_MINUTES)
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_jwt_token(token: str) -> Optional[Dict[str, Any]]:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None


async def get_current_user(request: Request) -> Dict[str, str]:
    """
    Resolve the bearer token into {"id", "role", "trace_id"}.

    The token is trusted as issued; the user row is not re-read, so a
    deleted account keeps working until its token expires.
    """
    auth = request.headers.get("Authorization")
    trace_id = getattr(request.state, "trace_id", None) or str(uuid.uuid4())

    if not auth or not auth.lower().startswith("bearer "):
        raise Unauthorized("No token provided")

    payload = decode_jwt_token(auth.split(" ", 1)[1].strip())
    if not payload:
        raise Unauthorized("Invalid token")

    user_id = payload.get("sub")
    role = payload.get("role")
    if not user_id or role not in {r.value for r in Role}:
        raise Unauthorized("Invalid token payload")

    return {"id": user_id, "role": role, "trace_id": trace_id}
