"""
Request dependencies: caller identity from gateway headers and the services
hung on app.state by create_app().
"""
from fastapi import Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from rxdispatch.coordinator import AssignmentCoordinator
from rxdispatch.engine import TransitionEngine
from rxdispatch.errors import Forbidden
from rxdispatch.models import Actor
from rxdispatch.order_state import Role
from rxdispatch.ordering import OrderDesk
from rxdispatch.redis_client import check_idempotency, forget, recall, remember


async def get_actor(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
    x_pharmacy_id: str | None = Header(default=None),
) -> Actor:
    if not x_user_id or not x_user_role:
        raise HTTPException(status_code=401, detail="X-User-Id and X-User-Role headers are required")
    try:
        role = Role(x_user_role)
    except ValueError:
        raise HTTPException(status_code=401, detail=f"unknown role '{x_user_role}'") from None
    return Actor(id=x_user_id, role=role, pharmacy_id=x_pharmacy_id)


def get_engine(request: Request) -> TransitionEngine:
    return request.app.state.engine


def get_coordinator(request: Request) -> AssignmentCoordinator:
    return request.app.state.coordinator


def get_desk(request: Request) -> OrderDesk:
    return request.app.state.desk


def require_roles(*roles: Role):
    async def dependency(actor: Actor = Depends(get_actor)) -> Actor:
        if actor.role not in roles:
            raise Forbidden(
                f"{actor.role.value} may not use this endpoint",
                actor_role=actor.role.value,
                required_roles=[role.value for role in roles],
            )
        return actor

    return dependency


class Idempotency:
    """
    Optional Idempotency-Key handling for create endpoints. A repeated key
    replays the id created the first time instead of creating again.
    """

    def __init__(self, scope: str, actor: Actor, header: str | None):
        self.key = f"idempotency:{scope}:{actor.id}:{header}" if header else None

    async def replay(self) -> JSONResponse | None:
        if self.key is None:
            return None
        if not await check_idempotency(self.key):
            return None  # first time seen, caller proceeds
        created_id = await recall(self.key)
        if created_id is None:
            raise HTTPException(status_code=409, detail="a request with this Idempotency-Key is still in progress")
        return JSONResponse(status_code=200, content={"status": "already_processed", "id": created_id})

    async def created(self, record_id: str) -> None:
        if self.key is not None:
            await remember(self.key, record_id)

    async def failed(self) -> None:
        if self.key is not None:
            await forget(self.key)
