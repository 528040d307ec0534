import uuid
from typing import Optional

from fastapi import Depends, HTTPException, Request
from jose import jwt, JWTError

from fulfillment_service.config import JWT_ALGORITHM, JWT_SECRET

CUSTOMER = "customer"
DRIVER = "driver"
STORE_ROLES = ("store_owner", "store_staff")
ADMIN_ROLES = ("admin", "super_admin")


def decode_token(token: Optional[str], trace_id: Optional[str] = None) -> dict:
    """Claims -> identity. Invalid or missing tokens give an anonymous identity."""
    trace_id = trace_id or str(uuid.uuid4())
    if not token:
        return {"id": None, "role": None, "store_ids": [], "trace_id": trace_id}

    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        return {
            "id": payload.get("sub"),
            "role": payload.get("role"),
            "store_ids": list(payload.get("store_ids") or []),
            "trace_id": trace_id
        }
    except JWTError:
        return {"id": None, "role": None, "store_ids": [], "trace_id": trace_id}


async def get_optional_user(request: Request):
    auth = request.headers.get("Authorization")
    trace_id = request.headers.get("x-trace-id") or str(uuid.uuid4())

    token = None
    if auth and auth.lower().startswith("bearer "):
        token = auth.split(" ", 1)[1].strip()

    return decode_token(token, trace_id)


async def get_current_user(user=Depends(get_optional_user)):
    if not user["id"] or not user["role"]:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return user


def require_roles(*roles):
    """Dependency that lets through only the given roles (admins always pass)."""
    allowed = set(roles) | set(ADMIN_ROLES)

    async def dependency(user=Depends(get_current_user)):
        if user["role"] not in allowed:
            raise HTTPException(status_code=403, detail="Forbidden")
        return user

    return dependency


def is_admin(user: dict) -> bool:
    return user.get("role") in ADMIN_ROLES


def is_store_member(user: dict, store_id: str) -> bool:
    return user.get("role") in STORE_ROLES and store_id in user.get("store_ids", [])


def issue_token(user_id: str, role: str, store_ids=None) -> str:
    """Local/testing helper; production tokens come from the auth service."""
    claims = {"sub": user_id, "role": role}
    if store_ids:
        claims["store_ids"] = list(store_ids)
    return jwt.encode(claims, JWT_SECRET, algorithm=JWT_ALGORITHM)
