"""
Driver assignment: claims a ready order / delivery request, an idle driver and
a new Delivery in one store transaction. This module is the only writer of
`Driver.is_available`.
"""
import logging
from datetime import datetime, timedelta

from rxdispatch.errors import (
    AlreadyAssigned,
    Conflict,
    DispatchError,
    DriverUnavailable,
    Forbidden,
    InvalidTransition,
    NotFound,
    NotReady,
)
from rxdispatch.metrics import assignments_total, transitions_total
from rxdispatch.models import MODEL_FOR_KIND, Actor, Delivery, Driver, Entity, VehicleType, utcnow
from rxdispatch.notifications import EventKind, Notifier, driver_assignment_payload, emit, transition_payload
from rxdispatch.order_state import (
    IN_FLIGHT_STAGES,
    PARENT_KINDS,
    DenialReason,
    EntityKind,
    Role,
    Stage,
    roles_allowed,
    to_status,
    validate,
)
from rxdispatch.store import ACTIVE_DELIVERY_KEY, DuplicateKeyError, EntityStore, Transaction

logger = logging.getLogger(__name__)


async def release_driver(tx: Transaction, delivery: Delivery, at: datetime) -> Driver | None:
    """
    Called inside the transaction that ends `delivery`. Counts the delivery
    on the driver and puts them back at the tail of the idle queue when they
    hold no other active delivery.
    """
    driver = await tx.get_for_update(Driver, delivery.driver_id)
    if driver is None:
        logger.warning("Delivery %s ended but driver %s does not exist", delivery.id, delivery.driver_id)
        return None
    others = [d for d in await tx.active_deliveries_for_driver(driver.id) if d.id != delivery.id]
    driver.total_deliveries += 1
    if delivery.stage == Stage.DELIVERED:
        driver.successful_deliveries += 1
    if not others:
        driver.is_available = True
        driver.available_since = at
    driver.updated_at = at
    await tx.update(driver)
    return driver


class AssignmentCoordinator:
    def __init__(self, store: EntityStore, notifier: Notifier):
        self._store = store
        self._notifier = notifier

    async def assign(
        self,
        kind: EntityKind,
        entity_id: str,
        actor: Actor,
        driver_id: str | None = None,
        estimated_minutes: int | None = None,
        distance_km: float | None = None,
        notes: str = "",
    ) -> Delivery:
        """
        Assign a driver to a ready order or delivery request. With no
        `driver_id` the idle driver waiting longest is chosen.
        """
        kind = EntityKind(kind)
        try:
            delivery, parent = await self._claim(kind, entity_id, actor, driver_id, estimated_minutes, distance_km, notes)
        except DispatchError as e:
            assignments_total.labels(outcome=e.code).inc()
            logger.info("Assignment of %s %s rejected: %s", kind.value, entity_id, e.message)
            raise

        assignments_total.labels(outcome="assigned").inc()
        transitions_total.labels(kind=kind.value, status=parent.status).inc()
        logger.info(
            "Assigned %s %s to driver=%s (delivery=%s, dispatcher=%s)",
            kind.value, parent.id, delivery.driver_id, delivery.id, actor.id,
        )
        await emit(self._notifier, delivery.driver_id, EventKind.DELIVERY_UPDATE, driver_assignment_payload(delivery))
        await emit(
            self._notifier,
            parent.patient_id,
            EventKind.DELIVERY_UPDATE,
            transition_payload(parent, Stage.ASSIGNED, actor.id, notes),
        )
        return delivery

    async def _claim(self, kind, entity_id, actor, driver_id, estimated_minutes, distance_km, notes):
        if kind not in PARENT_KINDS:
            raise InvalidTransition(f"a {kind.value} cannot be assigned", entity_kind=kind.value, entity_id=entity_id)
        requested = to_status(kind, Stage.ASSIGNED)
        try:
            async with self._store.transaction() as tx:
                parent = await tx.get_for_update(MODEL_FOR_KIND[kind], entity_id)
                if parent is None or not parent.is_live:
                    raise NotFound(f"{kind.value} not found", entity_kind=kind.value, entity_id=entity_id)

                decision = validate(kind, parent.status, requested, actor.role)
                if not decision and decision.reason == DenialReason.ROLE_NOT_PERMITTED:
                    raise Forbidden(
                        decision.message,
                        entity_kind=kind.value,
                        entity_id=entity_id,
                        actor_role=actor.role.value,
                        required_roles=[role.value for role in roles_allowed(kind, requested)],
                    )

                active = await tx.active_delivery_for(parent.id)
                if active is not None or parent.stage in IN_FLIGHT_STAGES:
                    raise AlreadyAssigned(
                        f"{kind.value} already has an active delivery",
                        entity_kind=kind.value,
                        entity_id=entity_id,
                        current_status=parent.status,
                        delivery_id=active.id if active else None,
                    )
                if parent.stage != Stage.READY:
                    raise NotReady(
                        f"{kind.value} must be ready before assignment",
                        entity_kind=kind.value,
                        entity_id=entity_id,
                        current_status=parent.status,
                        requested_status=requested,
                    )

                driver = await self._claim_driver(tx, driver_id)
                delivery = self._open_delivery(kind, parent, driver, actor, estimated_minutes, distance_km, notes)
                await tx.insert(delivery)
                await tx.update(parent)
                await tx.update(driver)
        except DuplicateKeyError as e:
            if e.constraint != ACTIVE_DELIVERY_KEY:
                raise
            raise AlreadyAssigned(
                f"{kind.value} already has an active delivery",
                entity_kind=kind.value,
                entity_id=entity_id,
            ) from e
        return delivery, parent

    async def _claim_driver(self, tx: Transaction, driver_id: str | None) -> Driver:
        if driver_id is None:
            driver = await tx.claim_next_idle_driver()
            if driver is None:
                raise DriverUnavailable("no idle driver is on duty")
            return driver

        driver = await tx.get_for_update(Driver, driver_id)
        if driver is None:
            raise NotFound("driver not found", driver_id=driver_id)
        if not driver.is_idle:
            raise DriverUnavailable(
                "driver is not available",
                driver_id=driver_id,
                is_available=driver.is_available,
                on_duty=driver.on_duty,
            )
        return driver

    @staticmethod
    def _open_delivery(kind, parent: Entity, driver: Driver, actor: Actor, estimated_minutes, distance_km, notes):
        now = utcnow()
        delivery = Delivery(
            parent_kind=kind,
            parent_id=parent.id,
            driver_id=driver.id,
            dispatcher_id=actor.id,
            pharmacy_id=parent.pharmacy_id,
            patient_id=parent.patient_id,
            pickup_location=f"pharmacy:{parent.pharmacy_id}",
            delivery_location=parent.delivery_address.one_line(),
            estimated_minutes=estimated_minutes,
            distance_km=distance_km,
            assigned_at=now,
            notes=notes or None,
            created_at=now,
            updated_at=now,
        )
        delivery.move_to(Stage.ASSIGNED, actor.id, notes, at=now)

        parent.move_to(Stage.ASSIGNED, actor.id, notes, at=now)
        parent.dispatcher_id = actor.id
        parent.assigned_driver_id = driver.id
        parent.assigned_at = now
        if estimated_minutes is not None:
            parent.estimated_delivery_time = now + timedelta(minutes=estimated_minutes)

        driver.is_available = False
        driver.updated_at = now
        return delivery

    async def register_driver(
        self,
        driver_id: str,
        actor: Actor,
        name: str = "",
        vehicle_type: VehicleType = VehicleType.MOTORCYCLE,
        license_plate: str | None = None,
        on_duty: bool = True,
    ) -> Driver:
        if actor.role != Role.ADMIN:
            raise Forbidden("only admins register drivers", actor_role=actor.role.value, required_roles=[Role.ADMIN.value])
        driver = Driver(
            id=driver_id,
            name=name,
            vehicle_type=vehicle_type,
            license_plate=license_plate,
            on_duty=on_duty,
        )
        try:
            async with self._store.transaction() as tx:
                await tx.insert(driver)
        except DuplicateKeyError as e:
            raise Conflict("driver already registered", driver_id=driver_id) from e
        logger.info("Registered driver %s (%s)", driver.id, driver.vehicle_type)
        return driver

    async def set_duty(self, driver_id: str, on_duty: bool, actor: Actor) -> Driver:
        """Toggle on-duty. Coming back on duty re-enters the idle queue at its tail."""
        if actor.role != Role.ADMIN and not (actor.role == Role.DRIVER and actor.id == driver_id):
            raise Forbidden("cannot change another driver's duty", actor_role=actor.role.value, driver_id=driver_id)
        async with self._store.transaction() as tx:
            driver = await tx.get_for_update(Driver, driver_id)
            if driver is None or not driver.is_live:
                raise NotFound("driver not found", driver_id=driver_id)
            now = utcnow()
            if on_duty and not driver.on_duty:
                driver.available_since = now
            driver.on_duty = on_duty
            driver.updated_at = now
            await tx.update(driver)
        logger.info("Driver %s is now %s", driver_id, "on duty" if on_duty else "off duty")
        return driver
