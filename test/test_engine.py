import pytest

from _helper import (
    ADMIN,
    DISPATCHER,
    OTHER_DISPATCHER,
    OTHER_PATIENT,
    OTHER_PHARMACY,
    PATIENT,
    PHARMACY,
    RecordingNotifier,
    add_driver,
    driver_actor,
    place_order,
    place_request,
    ready_order,
    ready_request,
)
from rxdispatch.coordinator import AssignmentCoordinator
from rxdispatch.engine import TransitionEngine
from rxdispatch.errors import Forbidden, InvalidTransition, NotFound
from rxdispatch.models import Delivery, DeliveryRequest, Driver, Order
from rxdispatch.order_state import EntityKind


class TestPharmacyFlow:
    def test_history_grows_by_one_per_transition(self, run, desk, engine):
        order = run(place_order(desk))
        assert [change.status for change in order.status_history] == ["pending"]

        for step, status in enumerate(["confirmed", "preparing", "ready"], start=2):
            order = run(engine.apply_transition(EntityKind.ORDER, order.id, status, PHARMACY, notes=f"step {step}"))
            assert len(order.status_history) == step
            assert order.status_history[-1].status == order.status == status
            assert order.status_history[-1].updated_by == PHARMACY.id

        stored = run(desk._store.get(Order, order.id))
        assert stored.fulfillment_status == "ready"
        assert stored.delivery_status == "pending"
        timestamps = [change.timestamp for change in stored.status_history]
        assert timestamps == sorted(timestamps)

    def test_pharmacy_cannot_skip_steps(self, run, desk, engine):
        order = run(place_order(desk))
        with pytest.raises(InvalidTransition) as exc:
            run(engine.apply_transition(EntityKind.ORDER, order.id, "ready", PHARMACY))
        assert exc.value.context["reason"] == "illegal-source-state"
        assert exc.value.context["current_status"] == "pending"
        assert exc.value.context["requested_status"] == "ready"

    def test_other_pharmacy_is_forbidden(self, run, desk, engine):
        order = run(place_order(desk))
        with pytest.raises(Forbidden):
            run(engine.apply_transition(EntityKind.ORDER, order.id, "confirmed", OTHER_PHARMACY))

    def test_pharmacy_may_cancel_ready_order(self, run, desk, engine):
        order = run(ready_order(desk, engine))
        order = run(engine.apply_transition(EntityKind.ORDER, order.id, "cancelled", PHARMACY, notes="out of stock"))
        assert order.status == "cancelled"
        assert order.fulfillment_status == "cancelled"


class TestRejections:
    def test_cancelled_order_cannot_be_confirmed(self, run, desk, engine):
        order = run(place_order(desk))
        run(engine.apply_transition(EntityKind.ORDER, order.id, "cancelled", PATIENT))

        with pytest.raises(InvalidTransition) as exc:
            run(engine.apply_transition(EntityKind.ORDER, order.id, "confirmed", PHARMACY))
        assert exc.value.context["current_status"] == "cancelled"
        assert exc.value.context["reason"] == "illegal-source-state"

    def test_dispatcher_cannot_assign_pending_order(self, run, desk, engine, store):
        order = run(place_order(desk))
        run(add_driver(store, "driver-1"))
        with pytest.raises(InvalidTransition):
            run(engine.apply_transition(EntityKind.ORDER, order.id, "assigned", DISPATCHER))
        assert run(store.get(Order, order.id)).status == "pending"
        assert run(store.list(Delivery)) == []

    def test_wrong_role_lists_required_roles(self, run, desk, engine):
        order = run(place_order(desk))
        with pytest.raises(Forbidden) as exc:
            run(engine.apply_transition(EntityKind.ORDER, order.id, "confirmed", PATIENT))
        assert exc.value.context["actor_role"] == "patient"
        assert exc.value.context["required_roles"] == ["pharmacy", "admin"]

    def test_patient_cannot_cancel_someone_elses_order(self, run, desk, engine):
        order = run(place_order(desk))
        with pytest.raises(Forbidden):
            run(engine.apply_transition(EntityKind.ORDER, order.id, "cancelled", OTHER_PATIENT))

    def test_patient_cannot_cancel_after_confirmation(self, run, desk, engine):
        order = run(place_order(desk))
        run(engine.apply_transition(EntityKind.ORDER, order.id, "confirmed", PHARMACY))
        with pytest.raises(InvalidTransition):
            run(engine.apply_transition(EntityKind.ORDER, order.id, "cancelled", PATIENT))

    def test_unknown_status(self, run, desk, engine):
        order = run(place_order(desk))
        with pytest.raises(InvalidTransition) as exc:
            run(engine.apply_transition(EntityKind.ORDER, order.id, "shipped", ADMIN))
        assert exc.value.context["reason"] == "unknown-status"

    def test_missing_entity(self, run, engine):
        with pytest.raises(NotFound):
            run(engine.apply_transition(EntityKind.ORDER, "no-such-order", "confirmed", PHARMACY))

    def test_archived_entity_counts_as_missing(self, run, desk, engine):
        order = run(place_order(desk))
        run(engine.apply_transition(EntityKind.ORDER, order.id, "cancelled", PATIENT))
        run(desk.archive(EntityKind.ORDER, order.id, ADMIN))
        with pytest.raises(NotFound):
            run(engine.apply_transition(EntityKind.ORDER, order.id, "pending", ADMIN))

    def test_rejection_changes_nothing(self, run, desk, engine, notifier, store):
        order = run(place_order(desk))
        notifier.clear()
        with pytest.raises(InvalidTransition):
            run(engine.apply_transition(EntityKind.ORDER, order.id, "preparing", PHARMACY))
        stored = run(store.get(Order, order.id))
        assert len(stored.status_history) == 1
        assert notifier.sent == []


class TestDeliveryFlow:
    def _assigned_order(self, run, desk, engine, coordinator, store):
        run(add_driver(store, "driver-1"))
        order = run(ready_order(desk, engine))
        delivery = run(coordinator.assign(EntityKind.ORDER, order.id, DISPATCHER, driver_id="driver-1"))
        return order, delivery

    def test_delivered_updates_parent_and_frees_driver(self, run, desk, engine, coordinator, store):
        order, delivery = self._assigned_order(run, desk, engine, coordinator, store)
        driver = driver_actor("driver-1")

        run(engine.apply_transition(EntityKind.DELIVERY, delivery.id, "picked_up", driver))
        run(engine.apply_transition(EntityKind.DELIVERY, delivery.id, "in_transit", driver))
        delivered = run(engine.apply_transition(EntityKind.DELIVERY, delivery.id, "delivered", driver))

        assert delivered.status == "delivered"
        assert delivered.delivered_at is not None
        assert delivered.picked_up_at is not None

        stored_order = run(store.get(Order, order.id))
        assert stored_order.delivery_status == "delivered"
        assert stored_order.fulfillment_status == "delivered"
        assert stored_order.status == "delivered"
        assert stored_order.actual_delivery_time == delivered.delivered_at
        assert [c.status for c in stored_order.status_history][-4:] == ["assigned", "picked_up", "in_transit", "delivered"]

        stored_driver = run(store.get(Driver, "driver-1"))
        assert stored_driver.is_available is True
        assert stored_driver.total_deliveries == 1
        assert stored_driver.successful_deliveries == 1

    def test_driver_cannot_touch_someone_elses_delivery(self, run, desk, engine, coordinator, store):
        _, delivery = self._assigned_order(run, desk, engine, coordinator, store)
        with pytest.raises(Forbidden):
            run(engine.apply_transition(EntityKind.DELIVERY, delivery.id, "picked_up", driver_actor("driver-9")))

    def test_driver_cannot_skip_pickup(self, run, desk, engine, coordinator, store):
        _, delivery = self._assigned_order(run, desk, engine, coordinator, store)
        with pytest.raises(InvalidTransition):
            run(engine.apply_transition(EntityKind.DELIVERY, delivery.id, "delivered", driver_actor("driver-1")))

    def test_dispatcher_moves_parent_and_delivery_follows(self, run, desk, engine, coordinator, store):
        order, delivery = self._assigned_order(run, desk, engine, coordinator, store)
        run(engine.apply_transition(EntityKind.ORDER, order.id, "in_transit", DISPATCHER))
        assert run(store.get(Delivery, delivery.id)).status == "in_transit"

        run(engine.apply_transition(EntityKind.ORDER, order.id, "delivered", DISPATCHER))
        assert run(store.get(Delivery, delivery.id)).status == "delivered"
        assert run(store.get(Driver, "driver-1")).is_available is True

    def test_other_dispatcher_does_not_own_assigned_order(self, run, desk, engine, coordinator, store):
        order, _ = self._assigned_order(run, desk, engine, coordinator, store)
        with pytest.raises(Forbidden):
            run(engine.apply_transition(EntityKind.ORDER, order.id, "in_transit", OTHER_DISPATCHER))

    def test_cancelled_delivery_returns_order_to_pool(self, run, desk, engine, coordinator, store):
        order, delivery = self._assigned_order(run, desk, engine, coordinator, store)
        run(engine.apply_transition(EntityKind.DELIVERY, delivery.id, "cancelled", ADMIN, notes="vehicle breakdown"))

        stored_order = run(store.get(Order, order.id))
        assert stored_order.status == "ready"
        assert stored_order.dispatcher_id is None
        assert stored_order.assigned_driver_id is None
        assert [o.id for o in run(desk.pickup_pool(EntityKind.ORDER))] == [order.id]

        stored_driver = run(store.get(Driver, "driver-1"))
        assert stored_driver.is_available is True
        assert stored_driver.total_deliveries == 1
        assert stored_driver.successful_deliveries == 0

    def test_admin_rollback_cancels_active_delivery(self, run, desk, engine, coordinator, store):
        order, delivery = self._assigned_order(run, desk, engine, coordinator, store)
        rolled_back = run(engine.apply_transition(EntityKind.ORDER, order.id, "preparing", ADMIN))

        assert rolled_back.status == "preparing"
        assert rolled_back.delivery_status == "pending"
        assert run(store.get(Delivery, delivery.id)).status == "cancelled"
        assert run(store.get(Driver, "driver-1")).is_available is True

    def test_admin_cancel_of_assigned_order_ends_delivery(self, run, desk, engine, coordinator, store):
        order, delivery = self._assigned_order(run, desk, engine, coordinator, store)
        run(engine.apply_transition(EntityKind.ORDER, order.id, "cancelled", ADMIN))
        assert run(store.get(Delivery, delivery.id)).status == "cancelled"
        assert run(store.get(Driver, "driver-1")).is_available is True

    def test_pharmacy_cancel_of_assigned_order_ends_delivery(self, run, desk, engine, coordinator, store):
        order, delivery = self._assigned_order(run, desk, engine, coordinator, store)
        cancelled = run(engine.apply_transition(EntityKind.ORDER, order.id, "cancelled", PHARMACY, notes="recalled batch"))

        assert cancelled.status == "cancelled"
        assert run(store.get(Delivery, delivery.id)).status == "cancelled"
        stored_driver = run(store.get(Driver, "driver-1"))
        assert stored_driver.is_available is True
        assert stored_driver.successful_deliveries == 0

    def test_pharmacy_cancel_after_pickup(self, run, desk, engine, coordinator, store):
        order, delivery = self._assigned_order(run, desk, engine, coordinator, store)
        run(engine.apply_transition(EntityKind.DELIVERY, delivery.id, "picked_up", driver_actor("driver-1")))
        run(engine.apply_transition(EntityKind.ORDER, order.id, "cancelled", PHARMACY))
        assert run(store.get(Delivery, delivery.id)).status == "cancelled"
        assert run(store.get(Driver, "driver-1")).is_available is True

    def test_pharmacy_cannot_cancel_delivered_order(self, run, desk, engine, coordinator, store):
        order, _ = self._assigned_order(run, desk, engine, coordinator, store)
        run(engine.apply_transition(EntityKind.ORDER, order.id, "delivered", DISPATCHER))
        with pytest.raises(InvalidTransition):
            run(engine.apply_transition(EntityKind.ORDER, order.id, "cancelled", PHARMACY))

    def test_dispatcher_delivers_assigned_request(self, run, desk, engine, coordinator, store):
        run(add_driver(store, "driver-1"))
        request = run(ready_request(desk, engine))
        delivery = run(coordinator.assign(EntityKind.DELIVERY_REQUEST, request.id, DISPATCHER))

        delivered = run(engine.apply_transition(EntityKind.DELIVERY_REQUEST, request.id, "delivered", DISPATCHER))
        assert delivered.status == "delivered"
        assert delivered.actual_delivery_time is not None
        assert run(store.get(Delivery, delivery.id)).status == "delivered"
        assert run(store.get(Driver, "driver-1")).successful_deliveries == 1

    def test_dispatcher_cannot_deliver_unassigned_request(self, run, desk, engine):
        request = run(ready_request(desk, engine))
        with pytest.raises(InvalidTransition) as exc:
            run(engine.apply_transition(EntityKind.DELIVERY_REQUEST, request.id, "delivered", DISPATCHER))
        assert exc.value.context["reason"] == "illegal-source-state"

    def test_assigned_through_status_endpoint_goes_to_coordinator(self, run, desk, engine, store):
        run(add_driver(store, "driver-1"))
        order = run(ready_order(desk, engine))
        assigned = run(engine.apply_transition(EntityKind.ORDER, order.id, "assigned", DISPATCHER))

        assert assigned.status == "assigned"
        assert assigned.assigned_driver_id == "driver-1"
        deliveries = run(store.list(Delivery, {"parent_id": order.id}))
        assert len(deliveries) == 1
        assert run(store.get(Driver, "driver-1")).is_available is False


class TestDeliveryRequestProjection:
    def test_request_uses_on_the_way(self, run, desk, engine, coordinator, store):
        run(add_driver(store, "driver-1"))
        request = run(ready_request(desk, engine))
        delivery = run(coordinator.assign(EntityKind.DELIVERY_REQUEST, request.id, DISPATCHER))
        driver = driver_actor("driver-1")

        run(engine.apply_transition(EntityKind.DELIVERY, delivery.id, "picked_up", driver))
        stored = run(store.get(DeliveryRequest, request.id))
        assert stored.status == "assigned"
        assert stored.status_history[-1].status == "assigned"

        run(engine.apply_transition(EntityKind.DELIVERY, delivery.id, "in_transit", driver))
        assert run(store.get(DeliveryRequest, request.id)).status == "on-the-way"

        run(engine.apply_transition(EntityKind.DELIVERY, delivery.id, "delivered", driver))
        stored = run(store.get(DeliveryRequest, request.id))
        assert stored.status == "delivered"
        assert stored.actual_delivery_time is not None

    def test_dispatcher_sets_on_the_way(self, run, desk, engine, coordinator, store):
        run(add_driver(store, "driver-1"))
        request = run(ready_request(desk, engine))
        delivery = run(coordinator.assign(EntityKind.DELIVERY_REQUEST, request.id, DISPATCHER))
        updated = run(engine.apply_transition(EntityKind.DELIVERY_REQUEST, request.id, "on-the-way", DISPATCHER))
        assert updated.status == "on-the-way"
        assert run(store.get(Delivery, delivery.id)).status == "in_transit"


class TestNotifications:
    def test_one_patient_notification_per_transition(self, run, desk, engine, notifier):
        order = run(place_order(desk))
        notifier.clear()
        run(engine.apply_transition(EntityKind.ORDER, order.id, "confirmed", PHARMACY))

        assert len(notifier.sent) == 1
        recipient, event_kind, payload = notifier.sent[0]
        assert recipient == PATIENT.id
        assert event_kind == "order-status"
        assert payload["status"] == "confirmed"
        assert payload["entity_id"] == order.id

    def test_delivery_events_use_delivery_update(self, run, desk, engine, coordinator, store, notifier):
        run(add_driver(store, "driver-1"))
        order = run(ready_order(desk, engine))
        delivery = run(coordinator.assign(EntityKind.ORDER, order.id, DISPATCHER))
        notifier.clear()
        run(engine.apply_transition(EntityKind.DELIVERY, delivery.id, "picked_up", driver_actor("driver-1")))
        assert notifier.sent == [(PATIENT.id, "delivery-update", notifier.sent[0][2])]
        assert notifier.sent[0][2]["parent_id"] == order.id

    def test_failed_notification_keeps_the_change(self, run, store):
        notifier = RecordingNotifier(fail=True)
        coordinator = AssignmentCoordinator(store, notifier)
        engine = TransitionEngine(store, notifier, coordinator)
        from rxdispatch.ordering import OrderDesk

        desk = OrderDesk(store, notifier)
        order = run(place_order(desk))
        updated = run(engine.apply_transition(EntityKind.ORDER, order.id, "confirmed", PHARMACY))

        assert updated.status == "confirmed"
        assert run(store.get(Order, order.id)).status == "confirmed"


def test_requests_and_orders_have_separate_vocabularies(run, desk, engine):
    request = run(place_request(desk))
    with pytest.raises(InvalidTransition):
        run(engine.apply_transition(EntityKind.DELIVERY_REQUEST, request.id, "in_transit", ADMIN))
