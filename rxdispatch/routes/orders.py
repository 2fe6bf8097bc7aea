from fastapi import APIRouter, Depends, Header, Query

from rxdispatch.deps import Idempotency, get_actor, get_desk, get_engine
from rxdispatch.engine import TransitionEngine
from rxdispatch.models import Actor, Order
from rxdispatch.order_state import EntityKind
from rxdispatch.ordering import OrderDesk
from rxdispatch.schemas import CreateOrderBody, PaymentBody, StatusBody

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("", status_code=201)
async def create_order(
    body: CreateOrderBody,
    actor: Actor = Depends(get_actor),
    desk: OrderDesk = Depends(get_desk),
    idempotency_key: str | None = Header(default=None),
):
    """
    Place an order. Idempotent when an Idempotency-Key header is sent:
    the same key twice -> 200 with the id created the first time.
    """
    idempotency = Idempotency("orders", actor, idempotency_key)
    replay = await idempotency.replay()
    if replay is not None:
        return replay
    try:
        order = await desk.create_order(
            actor,
            pharmacy_id=body.pharmacy_id,
            items=body.items,
            delivery_address=body.delivery_address,
            payment_method=body.payment_method,
            notes=body.notes,
        )
    except Exception:
        await idempotency.failed()
        raise
    await idempotency.created(order.id)
    return order


@router.get("")
async def list_orders(
    status: str | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    actor: Actor = Depends(get_actor),
    desk: OrderDesk = Depends(get_desk),
):
    return await desk.list_for_actor(EntityKind.ORDER, actor, status=status, page=page, limit=limit)


@router.get("/{order_id}")
async def get_order(order_id: str, actor: Actor = Depends(get_actor), desk: OrderDesk = Depends(get_desk)):
    return await desk.get(EntityKind.ORDER, order_id, actor)


@router.patch("/{order_id}/status")
async def update_order_status(
    order_id: str,
    body: StatusBody,
    actor: Actor = Depends(get_actor),
    engine: TransitionEngine = Depends(get_engine),
):
    return await engine.apply_transition(EntityKind.ORDER, order_id, body.status, actor, notes=body.notes)


@router.post("/{order_id}/payment")
async def record_payment(
    order_id: str,
    body: PaymentBody,
    actor: Actor = Depends(get_actor),
    desk: OrderDesk = Depends(get_desk),
) -> Order:
    return await desk.record_payment(order_id, actor, body.payment_method, body.amount)
