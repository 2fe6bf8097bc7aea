"""
Notification emitter: the notify(recipient, event_kind, payload) contract,
the queue-backed implementation, and the payloads built for each status
change. Emission is best-effort: failures are logged and counted, never
raised into the state change that triggered them.
"""
import logging
import uuid
from datetime import timedelta
from enum import Enum
from typing import Awaitable, Callable, Protocol

from rxdispatch.metrics import notifications_emitted_total, notifications_failed_total
from rxdispatch.models import Delivery, Entity, utcnow
from rxdispatch.order_state import IN_FLIGHT_STAGES, EntityKind, Stage
from rxdispatch.queue import push_to_queue

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    ORDER_STATUS = "order-status"
    DELIVERY_UPDATE = "delivery-update"
    APPROVAL_STATUS = "approval-status"
    LOW_STOCK = "low-stock"
    EXPIRY_ALERT = "expiry-alert"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


_EXPIRY: dict[EventKind, timedelta] = {
    EventKind.ORDER_STATUS: timedelta(days=7),
    EventKind.LOW_STOCK: timedelta(days=7),
    EventKind.EXPIRY_ALERT: timedelta(days=30),
}

# stage -> (title, message, priority) shown to the patient
_STATUS_COPY: dict[Stage, tuple[str, str, Priority]] = {
    Stage.PENDING: ("Order Received", "Your order has been placed", Priority.MEDIUM),
    Stage.CONFIRMED: ("Order Status Updated", "Your order is now confirmed", Priority.MEDIUM),
    Stage.PREPARING: ("Order Status Updated", "Your order is now preparing", Priority.MEDIUM),
    Stage.READY: ("Order Status Updated", "Your order is now ready", Priority.MEDIUM),
    Stage.ASSIGNED: ("Driver Assigned", "A driver has been assigned to your order", Priority.HIGH),
    Stage.PICKED_UP: ("Order Picked Up", "Your order has left the pharmacy", Priority.MEDIUM),
    Stage.IN_TRANSIT: ("Order On The Way", "Your order is on the way for delivery", Priority.HIGH),
    Stage.DELIVERED: ("Order Delivered", "Your order has been delivered successfully", Priority.MEDIUM),
    Stage.CANCELLED: ("Order Cancelled", "Your order has been cancelled", Priority.HIGH),
}


class Notifier(Protocol):
    async def notify(self, recipient_id: str, event_kind: EventKind, payload: dict) -> None:
        ...


def build_message(recipient_id: str, event_kind: EventKind, payload: dict) -> dict:
    now = utcnow()
    ttl = _EXPIRY.get(event_kind)
    return {
        "notification_id": uuid.uuid4().hex,
        "recipient_id": recipient_id,
        "event_kind": event_kind.value,
        "title": payload.get("title", ""),
        "message": payload.get("message", ""),
        "priority": payload.get("priority", Priority.MEDIUM.value),
        "payload": payload,
        "created_at": now.isoformat(),
        "expires_at": (now + ttl).isoformat() if ttl else None,
    }


class QueueNotifier:
    """Hands each notification to the outbound queue (Redis list or SQS)."""

    def __init__(self, push: Callable[[dict], Awaitable[None]] = push_to_queue):
        self._push = push

    async def notify(self, recipient_id: str, event_kind: EventKind, payload: dict) -> None:
        await self._push(build_message(recipient_id, event_kind, payload))


def event_kind_for(stage: Stage) -> EventKind:
    if stage in IN_FLIGHT_STAGES or stage == Stage.DELIVERED:
        return EventKind.DELIVERY_UPDATE
    return EventKind.ORDER_STATUS


def transition_payload(entity: Entity, stage: Stage, updated_by: str, notes: str = "") -> dict:
    title, message, priority = _STATUS_COPY[stage]
    payload = {
        "title": title,
        "message": message,
        "priority": priority.value,
        "entity_kind": entity.kind.value,
        "entity_id": entity.id,
        "status": entity.status,
        "updated_by": updated_by,
        "notes": notes,
    }
    if isinstance(entity, Delivery):
        payload["parent_kind"] = entity.parent_kind
        payload["parent_id"] = entity.parent_id
    tracking_code = getattr(entity, "tracking_code", None)
    if tracking_code:
        payload["tracking_code"] = tracking_code
    return payload


def new_order_payload(entity: Entity) -> dict:
    return {
        "title": "New Delivery Request" if entity.kind == EntityKind.DELIVERY_REQUEST else "New Order",
        "message": f"New order from patient {entity.patient_id} with {len(entity.items)} item(s)",
        "priority": Priority.HIGH.value,
        "entity_kind": entity.kind.value,
        "entity_id": entity.id,
        "action_required": True,
    }


def driver_assignment_payload(delivery: Delivery) -> dict:
    return {
        "title": "New Delivery Assigned",
        "message": f"Pick up at {delivery.pickup_location or 'the pharmacy'} for {delivery.delivery_location}",
        "priority": Priority.HIGH.value,
        "entity_kind": delivery.kind.value,
        "entity_id": delivery.id,
        "parent_kind": delivery.parent_kind,
        "parent_id": delivery.parent_id,
        "estimated_minutes": delivery.estimated_minutes,
        "action_required": True,
    }


async def emit(notifier: Notifier, recipient_id: str, event_kind: EventKind, payload: dict) -> bool:
    """Best-effort notify; returns False (after logging) when the transport fails."""
    try:
        await notifier.notify(recipient_id, event_kind, payload)
    except Exception:
        notifications_failed_total.inc()
        logger.exception("Failed to emit %s notification to recipient=%s", event_kind.value, recipient_id)
        return False
    notifications_emitted_total.labels(event_kind=event_kind.value).inc()
    return True
