"""
Status transition engine: the single entry point for status changes on
orders, delivery requests and deliveries. Checks ownership and the transition
table, then writes the entity, its parent / active delivery counterpart and
the driver in one store transaction. The patient is notified after commit.
"""
import logging

from rxdispatch.coordinator import AssignmentCoordinator, release_driver
from rxdispatch.errors import DispatchError, Forbidden, InvalidTransition, NotFound
from rxdispatch.metrics import transitions_rejected_total, transitions_total
from rxdispatch.models import MODEL_FOR_KIND, Actor, Delivery, Entity, utcnow
from rxdispatch.notifications import Notifier, emit, event_kind_for, transition_payload
from rxdispatch.order_state import (
    IN_FLIGHT_STAGES,
    PARENT_KINDS,
    PRE_DISPATCH_STAGES,
    TERMINAL_STAGES,
    Denied,
    DenialReason,
    EntityKind,
    Role,
    Stage,
    roles_allowed,
    to_stage,
    validate,
)
from rxdispatch.store import EntityStore

logger = logging.getLogger(__name__)


def owns(actor: Actor, entity: Entity, parent: Entity | None = None) -> bool:
    """
    Ownership by role. `parent` is the order / delivery request behind a
    delivery. Parents without a dispatcher sit in the shared dispatch pool.
    """
    parent = parent or entity
    if actor.role == Role.ADMIN:
        return True
    if actor.role == Role.PATIENT:
        return parent.patient_id == actor.id
    if actor.role == Role.PHARMACY:
        return parent.pharmacy_id == actor.owned_pharmacy
    if actor.role == Role.DISPATCHER:
        return entity.dispatcher_id in (None, actor.id)
    if actor.role == Role.DRIVER:
        return isinstance(entity, Delivery) and entity.driver_id == actor.id
    return False


def denial_error(kind: EntityKind, entity: Entity, requested_status: str, actor: Actor, denied: Denied) -> DispatchError:
    context = {
        "entity_kind": kind.value,
        "entity_id": entity.id,
        "current_status": entity.status,
        "requested_status": requested_status,
    }
    if denied.reason == DenialReason.ROLE_NOT_PERMITTED:
        return Forbidden(
            denied.message,
            actor_role=actor.role.value,
            required_roles=[role.value for role in roles_allowed(kind, requested_status)],
            **context,
        )
    return InvalidTransition(denied.message, reason=denied.reason.value, **context)


def _not_owner(kind: EntityKind, entity: Entity, actor: Actor) -> Forbidden:
    return Forbidden(
        f"{actor.role.value} {actor.id} does not own this {kind.value}",
        entity_kind=kind.value,
        entity_id=entity.id,
        actor_role=actor.role.value,
    )


class TransitionEngine:
    def __init__(self, store: EntityStore, notifier: Notifier, coordinator: AssignmentCoordinator):
        self._store = store
        self._notifier = notifier
        self._coordinator = coordinator

    async def apply_transition(
        self,
        kind: EntityKind,
        entity_id: str,
        requested_status: str,
        actor: Actor,
        notes: str = "",
    ) -> Entity:
        kind = EntityKind(kind)
        try:
            if kind in PARENT_KINDS and to_stage(kind, requested_status) == Stage.ASSIGNED:
                return await self._assign(kind, entity_id, requested_status, actor, notes)
            primary, parent, stage = await self._commit(kind, entity_id, requested_status, actor, notes)
        except DispatchError as e:
            transitions_rejected_total.labels(kind=kind.value, reason=e.context.get("reason", e.code)).inc()
            raise

        transitions_total.labels(kind=kind.value, status=primary.status).inc()
        logger.info("%s %s -> %s by %s %s", kind.value, primary.id, primary.status, actor.role.value, actor.id)
        await emit(
            self._notifier,
            parent.patient_id,
            event_kind_for(stage),
            transition_payload(primary, stage, actor.id, notes),
        )
        return primary

    async def _assign(self, kind: EntityKind, entity_id: str, requested_status: str, actor: Actor, notes: str) -> Entity:
        # Checked here without locks for the status-endpoint error contract;
        # the coordinator re-checks everything under lock.
        model = MODEL_FOR_KIND[kind]
        entity = await self._store.get(model, entity_id)
        if entity is None or not entity.is_live:
            raise NotFound(f"{kind.value} not found", entity_kind=kind.value, entity_id=entity_id)
        decision = validate(kind, entity.status, requested_status, actor.role)
        if isinstance(decision, Denied) and decision.reason == DenialReason.ROLE_NOT_PERMITTED:
            raise denial_error(kind, entity, requested_status, actor, decision)
        if not owns(actor, entity):
            raise _not_owner(kind, entity, actor)
        if not decision:
            raise denial_error(kind, entity, requested_status, actor, decision)

        await self._coordinator.assign(kind, entity_id, actor, notes=notes)
        return await self._store.get(model, entity_id)

    async def _commit(self, kind: EntityKind, entity_id: str, requested_status: str, actor: Actor, notes: str):
        async with self._store.transaction() as tx:
            if kind == EntityKind.DELIVERY:
                # Parent first, to keep the parent -> delivery -> driver lock order.
                peek = await self._store.get(Delivery, entity_id)
                if peek is None or not peek.is_live:
                    raise NotFound("delivery not found", entity_kind=kind.value, entity_id=entity_id)
                parent_model = MODEL_FOR_KIND[EntityKind(peek.parent_kind)]
                parent = await tx.get_for_update(parent_model, peek.parent_id)
                delivery = await tx.get_for_update(Delivery, entity_id)
                primary = delivery
            else:
                parent = await tx.get_for_update(MODEL_FOR_KIND[kind], entity_id)
                if parent is None or not parent.is_live:
                    raise NotFound(f"{kind.value} not found", entity_kind=kind.value, entity_id=entity_id)
                delivery = await tx.active_delivery_for(parent.id)
                primary = parent

            decision = validate(kind, primary.status, requested_status, actor.role)
            if not decision and decision.reason != DenialReason.ILLEGAL_SOURCE_STATE:
                raise denial_error(kind, primary, requested_status, actor, decision)
            if not owns(actor, primary, parent):
                raise _not_owner(kind, primary, actor)
            if not decision:
                raise denial_error(kind, primary, requested_status, actor, decision)

            stage = decision.target
            now = utcnow()
            delivery_was_active = delivery is not None and delivery.is_active
            primary.move_to(stage, actor.id, notes, at=now)
            if primary is delivery:
                self._follow_delivery(parent, stage, actor, now)
            elif delivery is not None:
                self._follow_parent(parent, delivery, stage, actor, now)

            if stage == Stage.DELIVERED:
                parent.actual_delivery_time = now
                if delivery is not None:
                    delivery.delivered_at = now
            if stage == Stage.PICKED_UP and delivery is not None:
                delivery.picked_up_at = now

            await tx.update(parent)
            if delivery is not None:
                await tx.update(delivery)
                if delivery_was_active and delivery.is_terminal:
                    await release_driver(tx, delivery, now)
        return primary, parent, stage

    @staticmethod
    def _follow_delivery(parent: Entity, stage: Stage, actor: Actor, now) -> None:
        if parent.is_terminal:
            return
        if stage == Stage.CANCELLED:
            parent.move_to(Stage.READY, actor.id, "delivery cancelled", at=now)
            parent.dispatcher_id = None
            parent.assigned_driver_id = None
            parent.assigned_at = None
        elif parent.stage != stage:
            parent.move_to(stage, actor.id, "", at=now)

    @staticmethod
    def _follow_parent(parent: Entity, delivery: Delivery, stage: Stage, actor: Actor, now) -> None:
        if stage in PRE_DISPATCH_STAGES:
            delivery.move_to(Stage.CANCELLED, actor.id, f"{parent.kind.value} moved back to {parent.status}", at=now)
            parent.dispatcher_id = None
            parent.assigned_driver_id = None
            parent.assigned_at = None
        elif stage in IN_FLIGHT_STAGES | TERMINAL_STAGES and delivery.stage != stage:
            delivery.move_to(stage, actor.id, "", at=now)
