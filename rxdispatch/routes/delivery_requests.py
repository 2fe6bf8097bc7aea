from fastapi import APIRouter, Depends, Header, Query

from rxdispatch.deps import Idempotency, get_actor, get_desk, get_engine
from rxdispatch.engine import TransitionEngine
from rxdispatch.models import Actor
from rxdispatch.order_state import EntityKind
from rxdispatch.ordering import OrderDesk
from rxdispatch.schemas import CreateDeliveryRequestBody, StatusBody

router = APIRouter(prefix="/delivery-requests", tags=["delivery-requests"])


@router.post("", status_code=201)
async def create_delivery_request(
    body: CreateDeliveryRequestBody,
    actor: Actor = Depends(get_actor),
    desk: OrderDesk = Depends(get_desk),
    idempotency_key: str | None = Header(default=None),
):
    idempotency = Idempotency("delivery-requests", actor, idempotency_key)
    replay = await idempotency.replay()
    if replay is not None:
        return replay
    try:
        request = await desk.create_delivery_request(
            actor,
            pharmacy_id=body.pharmacy_id,
            items=body.items,
            delivery_address=body.delivery_address,
            contact_phone=body.contact_phone,
            delivery_fee=body.delivery_fee,
            payment_method=body.payment_method,
            prescription_image=body.prescription_image,
            notes=body.notes,
        )
    except Exception:
        await idempotency.failed()
        raise
    await idempotency.created(request.id)
    return request


@router.get("")
async def list_delivery_requests(
    status: str | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    actor: Actor = Depends(get_actor),
    desk: OrderDesk = Depends(get_desk),
):
    return await desk.list_for_actor(EntityKind.DELIVERY_REQUEST, actor, status=status, page=page, limit=limit)


# Declared before /{request_id} so the literal segments win.
@router.get("/track/{tracking_code}")
async def track(tracking_code: str, desk: OrderDesk = Depends(get_desk)) -> dict:
    """Public: no identity headers needed."""
    return await desk.track(tracking_code)


@router.get("/stats/overview")
async def stats_overview(actor: Actor = Depends(get_actor), desk: OrderDesk = Depends(get_desk)) -> dict:
    return await desk.stats_overview(EntityKind.DELIVERY_REQUEST, actor)


@router.get("/{request_id}")
async def get_delivery_request(request_id: str, actor: Actor = Depends(get_actor), desk: OrderDesk = Depends(get_desk)):
    return await desk.get(EntityKind.DELIVERY_REQUEST, request_id, actor)


@router.patch("/{request_id}/status")
async def update_delivery_request_status(
    request_id: str,
    body: StatusBody,
    actor: Actor = Depends(get_actor),
    engine: TransitionEngine = Depends(get_engine),
):
    return await engine.apply_transition(EntityKind.DELIVERY_REQUEST, request_id, body.status, actor, notes=body.notes)
