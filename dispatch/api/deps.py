from fastapi import Request, HTTPException

from dispatch.auth_local import decode_access_token
from dispatch.application.actors import Actor, Role
from dispatch.application.coordinator import DispatchCoordinator
from shared.core import set_request_context

BEARER_PREFIX = "Bearer "

def get_actor(request: Request) -> Actor:
    """Caller identity from the bearer token issued by the account service."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith(BEARER_PREFIX):
        raise HTTPException(status_code=401, detail="Missing token")
    token = auth_header.split(" ", 1)[1]
    token_data = decode_access_token(token)
    if not token_data or not token_data.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token")
    try:
        role = Role(token_data.get("role"))
    except ValueError:
        raise HTTPException(status_code=401, detail="Unknown role")
    if role == Role.SYSTEM:
        # reserved for the coordinator itself
        raise HTTPException(status_code=401, detail="Unknown role")
    set_request_context(user_id=token_data["sub"])
    return Actor(
        user_id=token_data["sub"],
        role=role,
        is_suspended=bool(token_data.get("suspended", False)),
        pharmacy_id=token_data.get("pharmacy_id"),
    )

def require_admin(request: Request) -> Actor:
    actor = get_actor(request)
    if actor.role != Role.ADMIN or actor.is_suspended:
        raise HTTPException(status_code=403, detail="Admin only")
    return actor

def get_coordinator(request: Request) -> DispatchCoordinator:
    return request.app.state.coordinator
