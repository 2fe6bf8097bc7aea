from fastapi import APIRouter, Depends

from rxdispatch.coordinator import AssignmentCoordinator
from rxdispatch.deps import get_actor, get_coordinator
from rxdispatch.models import Actor, Driver
from rxdispatch.schemas import DutyBody, RegisterDriverBody

router = APIRouter(prefix="/drivers", tags=["drivers"])


@router.post("", status_code=201)
async def register_driver(
    body: RegisterDriverBody,
    actor: Actor = Depends(get_actor),
    coordinator: AssignmentCoordinator = Depends(get_coordinator),
) -> Driver:
    return await coordinator.register_driver(
        body.id,
        actor,
        name=body.name,
        vehicle_type=body.vehicle_type,
        license_plate=body.license_plate,
        on_duty=body.on_duty,
    )


@router.put("/{driver_id}/duty")
async def set_duty(
    driver_id: str,
    body: DutyBody,
    actor: Actor = Depends(get_actor),
    coordinator: AssignmentCoordinator = Depends(get_coordinator),
) -> Driver:
    """Driver going on duty joins the back of the idle queue."""
    return await coordinator.set_duty(driver_id, body.on_duty, actor)
