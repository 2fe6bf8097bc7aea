from datetime import datetime

from _helper import PATIENT, RecordingNotifier, address, items
from rxdispatch.models import Delivery, DeliveryRequest
from rxdispatch.notifications import (
    EventKind,
    QueueNotifier,
    build_message,
    emit,
    event_kind_for,
    transition_payload,
)
from rxdispatch.order_state import Stage


def _request() -> DeliveryRequest:
    return DeliveryRequest(
        patient_id=PATIENT.id,
        pharmacy_id="pharmacy-1",
        items=items(),
        delivery_address=address(),
        contact_phone="+251911000000",
        tracking_code="TNMD-ABC-12345678",
        total_amount=325.5,
    )


class TestMessage:
    def test_order_status_expires_in_a_week(self):
        message = build_message("patient-1", EventKind.ORDER_STATUS, {"title": "Order Status Updated", "message": "x"})
        created = datetime.fromisoformat(message["created_at"])
        expires = datetime.fromisoformat(message["expires_at"])
        assert (expires - created).days == 7
        assert message["recipient_id"] == "patient-1"
        assert message["event_kind"] == "order-status"
        assert message["title"] == "Order Status Updated"

    def test_expiry_alert_lasts_a_month(self):
        message = build_message("pharmacy-1", EventKind.EXPIRY_ALERT, {})
        created = datetime.fromisoformat(message["created_at"])
        assert (datetime.fromisoformat(message["expires_at"]) - created).days == 30

    def test_delivery_update_never_expires(self):
        assert build_message("patient-1", EventKind.DELIVERY_UPDATE, {})["expires_at"] is None

    def test_event_kind_for_stage(self):
        assert event_kind_for(Stage.CONFIRMED) == EventKind.ORDER_STATUS
        assert event_kind_for(Stage.CANCELLED) == EventKind.ORDER_STATUS
        assert event_kind_for(Stage.IN_TRANSIT) == EventKind.DELIVERY_UPDATE
        assert event_kind_for(Stage.DELIVERED) == EventKind.DELIVERY_UPDATE

    def test_payload_carries_tracking_code(self):
        payload = transition_payload(_request(), Stage.PENDING, "patient-1")
        assert payload["tracking_code"] == "TNMD-ABC-12345678"
        assert payload["entity_kind"] == "delivery_request"

    def test_delivery_payload_points_at_parent(self):
        delivery = Delivery(
            parent_kind="order",
            parent_id="order-1",
            driver_id="driver-1",
            dispatcher_id="dispatcher-1",
            pharmacy_id="pharmacy-1",
            patient_id="patient-1",
        )
        payload = transition_payload(delivery, Stage.IN_TRANSIT, "driver-1")
        assert payload["title"] == "Order On The Way"
        assert payload["parent_id"] == "order-1"


class TestTransport:
    def test_queue_notifier_pushes_message(self, run):
        pushed = []

        async def push(body):
            pushed.append(body)

        run(QueueNotifier(push=push).notify("patient-1", EventKind.ORDER_STATUS, {"title": "Order Delivered"}))
        assert len(pushed) == 1
        assert pushed[0]["recipient_id"] == "patient-1"
        assert pushed[0]["payload"] == {"title": "Order Delivered"}

    def test_emit_reports_success(self, run):
        notifier = RecordingNotifier()
        assert run(emit(notifier, "patient-1", EventKind.ORDER_STATUS, {})) is True
        assert notifier.sent == [("patient-1", "order-status", {})]

    def test_emit_swallows_transport_failure(self, run, caplog):
        assert run(emit(RecordingNotifier(fail=True), "patient-1", EventKind.ORDER_STATUS, {})) is False
        assert "Failed to emit order-status notification" in caplog.text
