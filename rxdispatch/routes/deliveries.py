from fastapi import APIRouter, Depends, Query

from rxdispatch.deps import get_desk, get_engine, require_roles
from rxdispatch.engine import TransitionEngine
from rxdispatch.models import Actor, Delivery
from rxdispatch.order_state import EntityKind, Role
from rxdispatch.ordering import OrderDesk
from rxdispatch.schemas import StatusBody

router = APIRouter(prefix="/deliveries", tags=["deliveries"])

delivery_roles = require_roles(Role.DRIVER, Role.DISPATCHER, Role.ADMIN)


@router.get("")
async def list_deliveries(
    status: str | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    actor: Actor = Depends(delivery_roles),
    desk: OrderDesk = Depends(get_desk),
):
    return await desk.list_for_actor(EntityKind.DELIVERY, actor, status=status, page=page, limit=limit)


@router.get("/active")
async def active_deliveries(actor: Actor = Depends(delivery_roles), desk: OrderDesk = Depends(get_desk)) -> list[Delivery]:
    return await desk.active_deliveries(actor)


@router.get("/{delivery_id}")
async def get_delivery(delivery_id: str, actor: Actor = Depends(delivery_roles), desk: OrderDesk = Depends(get_desk)):
    return await desk.get(EntityKind.DELIVERY, delivery_id, actor)


@router.patch("/{delivery_id}/status")
async def update_delivery_status(
    delivery_id: str,
    body: StatusBody,
    actor: Actor = Depends(delivery_roles),
    engine: TransitionEngine = Depends(get_engine),
):
    return await engine.apply_transition(EntityKind.DELIVERY, delivery_id, body.status, actor, notes=body.notes)
