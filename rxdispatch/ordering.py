"""
Order desk: everything around the status machine that patients, pharmacies
and dispatchers call directly. Creating orders and delivery requests, the
public tracking view, role-scoped listings, the pickup pool, stats, payment
recording and archiving of finished records.
"""
import logging
import math
from typing import Callable, Protocol

from rxdispatch import tracking
from rxdispatch.config import settings
from rxdispatch.engine import owns
from rxdispatch.errors import (
    Conflict,
    Forbidden,
    InvalidTransition,
    NotFound,
    OutOfStock,
    PrescriptionRequired,
)
from rxdispatch.metrics import tracking_code_collisions_total
from rxdispatch.models import (
    MODEL_FOR_KIND,
    Actor,
    Address,
    Delivery,
    DeliveryRequest,
    Driver,
    Entity,
    Lifecycle,
    LineItem,
    Order,
    PaymentMethod,
    PaymentStatus,
    utcnow,
)
from rxdispatch.notifications import EventKind, Notifier, emit, new_order_payload
from rxdispatch.order_state import PARENT_KINDS, EntityKind, Role, Stage, to_status
from rxdispatch.store import TRACKING_CODE_KEY, DuplicateKeyError, EntityStore

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class Catalog(Protocol):
    """Pharmacy registry and inventory, owned by another service."""

    async def pharmacy_approved(self, pharmacy_id: str) -> bool:
        ...

    async def out_of_stock(self, pharmacy_id: str, items: list[LineItem]) -> list[str]:
        """Names of the items the pharmacy cannot supply in the requested quantity."""
        ...


class OpenCatalog:
    """Accepts every pharmacy and item. Used when no inventory service is wired in."""

    async def pharmacy_approved(self, pharmacy_id: str) -> bool:
        return True

    async def out_of_stock(self, pharmacy_id: str, items: list[LineItem]) -> list[str]:
        return []


def _items_total(items: list[LineItem]) -> float:
    return round(sum(item.price * item.quantity for item in items), 2)


def _scope(kind: EntityKind, actor: Actor) -> dict:
    if actor.role == Role.ADMIN:
        return {}
    if actor.role == Role.PATIENT:
        return {"patient_id": actor.id}
    if actor.role == Role.PHARMACY:
        return {"pharmacy_id": actor.owned_pharmacy}
    if actor.role == Role.DISPATCHER:
        return {"dispatcher_id": actor.id}
    if kind == EntityKind.DELIVERY:
        return {"driver_id": actor.id}
    return {"assigned_driver_id": actor.id}


class OrderDesk:
    def __init__(
        self,
        store: EntityStore,
        notifier: Notifier,
        catalog: Catalog | None = None,
        generate_code: Callable[[], str] = tracking.generate,
    ):
        self._store = store
        self._notifier = notifier
        self._catalog = catalog or OpenCatalog()
        self._generate_code = generate_code

    async def _check_catalog(self, pharmacy_id: str, items: list[LineItem]) -> None:
        if not await self._catalog.pharmacy_approved(pharmacy_id):
            raise NotFound("pharmacy not found or not approved", pharmacy_id=pharmacy_id)
        missing = await self._catalog.out_of_stock(pharmacy_id, items)
        if missing:
            raise OutOfStock("some items are out of stock", pharmacy_id=pharmacy_id, items=missing)

    @staticmethod
    def _require_patient(actor: Actor) -> None:
        if actor.role != Role.PATIENT:
            raise Forbidden(
                "only patients place orders",
                actor_role=actor.role.value,
                required_roles=[Role.PATIENT.value],
            )

    async def _announce(self, entity: Entity) -> None:
        logger.info(
            "Created %s %s for patient=%s pharmacy=%s",
            entity.kind.value, entity.id, entity.patient_id, entity.pharmacy_id,
        )
        await emit(self._notifier, entity.pharmacy_id, EventKind.ORDER_STATUS, new_order_payload(entity))

    async def create_order(
        self,
        actor: Actor,
        pharmacy_id: str,
        items: list[LineItem],
        delivery_address: Address,
        payment_method: PaymentMethod = PaymentMethod.CASH,
        notes: str | None = None,
    ) -> Order:
        self._require_patient(actor)
        await self._check_catalog(pharmacy_id, items)
        order = Order(
            patient_id=actor.id,
            pharmacy_id=pharmacy_id,
            items=items,
            delivery_address=delivery_address,
            total_amount=_items_total(items),
            payment_method=payment_method,
            notes=notes,
        )
        order.move_to(Stage.PENDING, actor.id, "order placed", at=order.created_at)
        async with self._store.transaction() as tx:
            await tx.insert(order)
        await self._announce(order)
        return order

    async def create_delivery_request(
        self,
        actor: Actor,
        pharmacy_id: str,
        items: list[LineItem],
        delivery_address: Address,
        contact_phone: str,
        delivery_fee: float | None = None,
        payment_method: PaymentMethod = PaymentMethod.CASH,
        prescription_image: str | None = None,
        notes: str | None = None,
    ) -> DeliveryRequest:
        self._require_patient(actor)
        needs_prescription = [item.name for item in items if item.prescription_required]
        if needs_prescription and not prescription_image:
            raise PrescriptionRequired("a prescription image is required", items=needs_prescription)
        await self._check_catalog(pharmacy_id, items)

        fee = settings.delivery_fee if delivery_fee is None else delivery_fee
        # One regeneration on a tracking code collision; a second one is a Conflict.
        for attempt in range(2):
            request = DeliveryRequest(
                patient_id=actor.id,
                pharmacy_id=pharmacy_id,
                items=items,
                delivery_address=delivery_address,
                contact_phone=contact_phone,
                tracking_code=self._generate_code(),
                delivery_fee=fee,
                total_amount=round(_items_total(items) + fee, 2),
                payment_method=payment_method,
                prescription_image=prescription_image,
                notes=notes,
            )
            request.move_to(Stage.PENDING, actor.id, "delivery request placed", at=request.created_at)
            try:
                async with self._store.transaction() as tx:
                    await tx.insert(request)
                break
            except DuplicateKeyError as e:
                if e.constraint != TRACKING_CODE_KEY:
                    raise
                tracking_code_collisions_total.inc()
                if attempt:
                    raise Conflict(
                        "could not allocate a unique tracking code",
                        entity_kind=EntityKind.DELIVERY_REQUEST.value,
                        tracking_code=request.tracking_code,
                    ) from e
                logger.warning("Tracking code %s already taken, regenerating", request.tracking_code)
        await self._announce(request)
        return request

    async def get(self, kind: EntityKind, entity_id: str, actor: Actor) -> Entity:
        kind = EntityKind(kind)
        entity = await self._store.get(MODEL_FOR_KIND[kind], entity_id)
        if entity is None or not entity.is_live:
            raise NotFound(f"{kind.value} not found", entity_kind=kind.value, entity_id=entity_id)
        if not owns(actor, entity):
            raise Forbidden(
                f"{actor.role.value} {actor.id} may not read this {kind.value}",
                entity_kind=kind.value,
                entity_id=entity_id,
                actor_role=actor.role.value,
            )
        return entity

    async def track(self, code: str) -> dict:
        """Public view of a delivery request by tracking code. No identity needed."""
        request = await self._store.find_by_tracking_code(tracking.normalize(code))
        if request is None or not request.is_live:
            raise NotFound("tracking code not found", tracking_code=code)
        return {
            "tracking_code": request.tracking_code,
            "status": request.status,
            "status_history": [change.model_dump(mode="json") for change in request.status_history],
            "estimated_delivery_time": request.estimated_delivery_time,
            "actual_delivery_time": request.actual_delivery_time,
            "pharmacy_id": request.pharmacy_id,
            "items": [{"name": item.name, "quantity": item.quantity} for item in request.items],
        }

    async def list_for_actor(
        self,
        kind: EntityKind,
        actor: Actor,
        status: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> dict:
        kind = EntityKind(kind)
        model = MODEL_FOR_KIND[kind]
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        filters = {"lifecycle": Lifecycle.ACTIVE, **_scope(kind, actor)}
        if status:
            filters["status"] = status
        items = await self._store.list(model, filters, newest_first=True, limit=limit, offset=(page - 1) * limit)
        total = await self._store.count(model, filters)
        return {
            "items": items,
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit),
        }

    async def pickup_pool(self, kind: EntityKind) -> list[Entity]:
        """Live, ready, unassigned parents, oldest first."""
        kind = EntityKind(kind)
        if kind not in PARENT_KINDS:
            raise InvalidTransition(f"a {kind.value} is never in the pickup pool", entity_kind=kind.value)
        return await self._store.list(
            MODEL_FOR_KIND[kind],
            {"lifecycle": Lifecycle.ACTIVE, "status": to_status(kind, Stage.READY), "dispatcher_id": None},
        )

    async def available_drivers(self) -> list[Driver]:
        drivers = await self._store.list(Driver, {"lifecycle": Lifecycle.ACTIVE, "on_duty": True, "is_available": True})
        return sorted(drivers, key=lambda driver: driver.available_since)

    async def active_deliveries(self, actor: Actor) -> list[Delivery]:
        if actor.role not in (Role.ADMIN, Role.DISPATCHER, Role.DRIVER):
            raise Forbidden("no access to deliveries", actor_role=actor.role.value)
        deliveries = await self._store.list(Delivery, {"lifecycle": Lifecycle.ACTIVE, **_scope(EntityKind.DELIVERY, actor)})
        return [delivery for delivery in deliveries if delivery.is_active]

    async def stats_overview(self, kind: EntityKind, actor: Actor) -> dict:
        kind = EntityKind(kind)
        if actor.role not in (Role.PHARMACY, Role.DISPATCHER, Role.ADMIN):
            raise Forbidden(
                "no access to stats",
                actor_role=actor.role.value,
                required_roles=[Role.PHARMACY.value, Role.DISPATCHER.value, Role.ADMIN.value],
            )
        filters = {"pharmacy_id": actor.owned_pharmacy} if actor.role == Role.PHARMACY else {}
        records = await self._store.list(MODEL_FOR_KIND[kind], filters)
        by_status: dict[str, dict] = {}
        for record in records:
            bucket = by_status.setdefault(record.status, {"count": 0, "total_amount": 0.0})
            bucket["count"] += 1
            bucket["total_amount"] = round(bucket["total_amount"] + getattr(record, "total_amount", 0.0), 2)
        return {
            "entity_kind": kind.value,
            "total": len(records),
            "total_amount": round(sum(bucket["total_amount"] for bucket in by_status.values()), 2),
            "by_status": by_status,
        }

    async def record_payment(
        self,
        order_id: str,
        actor: Actor,
        method: PaymentMethod,
        amount: float | None = None,
    ) -> Order:
        """Payment pass-through: records what was collected, no gateway involved."""
        if actor.role not in (Role.DISPATCHER, Role.ADMIN):
            raise Forbidden(
                "only dispatchers and admins record payments",
                actor_role=actor.role.value,
                required_roles=[Role.DISPATCHER.value, Role.ADMIN.value],
            )
        async with self._store.transaction() as tx:
            order = await tx.get_for_update(Order, order_id)
            if order is None or not order.is_live:
                raise NotFound("order not found", entity_kind=EntityKind.ORDER.value, entity_id=order_id)
            if order.payment_status == PaymentStatus.PAID.value:
                raise Conflict("order is already paid", entity_id=order_id, paid_at=order.paid_at.isoformat())
            now = utcnow()
            order.payment_method = method
            order.payment_status = PaymentStatus.PAID
            order.paid_amount = order.total_amount if amount is None else amount
            order.paid_at = now
            order.updated_at = now
            await tx.update(order)
        logger.info("Recorded %s payment of %s on order %s", order.payment_method, order.paid_amount, order_id)
        return order

    async def archive(self, kind: EntityKind, entity_id: str, actor: Actor) -> Entity:
        kind = EntityKind(kind)
        if actor.role != Role.ADMIN:
            raise Forbidden("only admins archive records", actor_role=actor.role.value, required_roles=[Role.ADMIN.value])
        async with self._store.transaction() as tx:
            entity = await tx.get_for_update(MODEL_FOR_KIND[kind], entity_id)
            if entity is None or not entity.is_live:
                raise NotFound(f"{kind.value} not found", entity_kind=kind.value, entity_id=entity_id)
            if not entity.is_terminal:
                raise InvalidTransition(
                    "only delivered or cancelled records can be archived",
                    entity_kind=kind.value,
                    entity_id=entity_id,
                    current_status=entity.status,
                )
            entity.lifecycle = Lifecycle.ARCHIVED
            entity.updated_at = utcnow()
            await tx.update(entity)
        logger.info("Archived %s %s", kind.value, entity_id)
        return entity
