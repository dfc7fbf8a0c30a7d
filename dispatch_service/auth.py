import uuid
from typing import Any, Dict, Optional

from fastapi import Depends, Request
from jose import jwt, JWTError

from dispatch_service import config
from dispatch_service.errors import NotAuthorized


def decode_jwt_token(token: str) -> Optional[Dict[str, Any]]:
    try:
        return jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except JWTError:
        return None


def user_from_token(token: Optional[str], trace_id: Optional[str] = None) -> Dict[str, Optional[str]]:
    trace_id = trace_id or str(uuid.uuid4())
    payload = decode_jwt_token(token) if token else None
    if not payload:
        return {"id": None, "role": None, "name": None, "trace_id": trace_id}
    return {
        "id": payload.get("sub"),
        "role": payload.get("role"),
        "name": payload.get("name"),
        "trace_id": trace_id,
    }


async def get_optional_user(request: Request) -> Dict[str, Optional[str]]:
    auth = request.headers.get("Authorization")
    trace_id = getattr(request.state, "trace_id", None)

    if not auth or not auth.lower().startswith("bearer "):
        return user_from_token(None, trace_id)

    return user_from_token(auth.split(" ", 1)[1].strip(), trace_id)


async def get_current_user(user=Depends(get_optional_user)):
    if not user["id"]:
        raise NotAuthorized("Missing or invalid bearer token")
    return user


def require_roles(*roles: str):
    async def dependency(user=Depends(get_current_user)):
        if user["role"] not in roles:
            raise NotAuthorized(f"Only {' or '.join(roles)} users may do this")
        return user
    return dependency


sender_required = require_roles("sender", "admin")
courier_required = require_roles("courier")
admin_required = require_roles("admin")
