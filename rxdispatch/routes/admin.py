from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from rxdispatch.deps import get_desk, require_roles
from rxdispatch.models import Actor
from rxdispatch.order_state import Role
from rxdispatch.ordering import OrderDesk
from rxdispatch.schemas import ArchiveBody

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/archive")
async def archive(
    body: ArchiveBody,
    actor: Actor = Depends(require_roles(Role.ADMIN)),
    desk: OrderDesk = Depends(get_desk),
) -> JSONResponse:
    """
    Archive a delivered or cancelled record. Archived records drop out of
    listings, tracking and the pickup pool but stay in storage.
    """
    entity = await desk.archive(body.kind, body.entity_id, actor)
    return JSONResponse(
        status_code=200,
        content={"status": "archived", "entity_kind": body.kind.value, "id": entity.id},
    )
