from fastapi import APIRouter, Depends, Query

from rxdispatch.coordinator import AssignmentCoordinator
from rxdispatch.deps import get_coordinator, get_desk, require_roles
from rxdispatch.models import Actor, Delivery, Driver
from rxdispatch.order_state import EntityKind, Role
from rxdispatch.ordering import OrderDesk
from rxdispatch.schemas import AssignBody

router = APIRouter(prefix="/dispatcher", tags=["dispatcher"])

dispatch_roles = require_roles(Role.DISPATCHER, Role.ADMIN)


@router.get("/pool")
async def pickup_pool(
    kind: EntityKind = Query(default=EntityKind.ORDER),
    actor: Actor = Depends(dispatch_roles),
    desk: OrderDesk = Depends(get_desk),
):
    """Ready, unassigned orders or delivery requests, oldest first."""
    return await desk.pickup_pool(kind)


@router.get("/drivers")
async def idle_drivers(actor: Actor = Depends(dispatch_roles), desk: OrderDesk = Depends(get_desk)) -> list[Driver]:
    return await desk.available_drivers()


@router.post("/assign", status_code=201)
async def assign(
    body: AssignBody,
    actor: Actor = Depends(dispatch_roles),
    coordinator: AssignmentCoordinator = Depends(get_coordinator),
) -> Delivery:
    return await coordinator.assign(
        body.kind,
        body.entity_id,
        actor,
        driver_id=body.driver_id,
        estimated_minutes=body.estimated_minutes,
        distance_km=body.distance_km,
        notes=body.notes,
    )
