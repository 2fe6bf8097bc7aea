"""
Records kept by the entity store: orders, delivery requests, deliveries and
drivers. Status fields are written only through `Entity.move_to`, which keeps
the append-only status history in step with the current status.
"""
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import ClassVar

from pydantic import BaseModel, ConfigDict, Field, computed_field

from rxdispatch.order_state import (
    IN_FLIGHT_STAGES,
    PRE_DISPATCH_STAGES,
    TERMINAL_STAGES,
    EntityKind,
    Role,
    Stage,
    to_stage,
    to_status,
)


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return uuid.uuid4().hex


class Lifecycle(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class FulfillmentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class OrderDeliveryStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"


class RequestStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    ASSIGNED = "assigned"
    ON_THE_WAY = "on-the-way"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class DeliveryStatus(str, Enum):
    ASSIGNED = "assigned"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    MOBILE_TRANSFER = "mobile_transfer"


class VehicleType(str, Enum):
    MOTORCYCLE = "motorcycle"
    CAR = "car"
    VAN = "van"
    BICYCLE = "bicycle"


@dataclass(frozen=True)
class Actor:
    """Caller identity as resolved upstream: user id plus one role."""

    id: str
    role: Role
    pharmacy_id: str | None = None

    @property
    def owned_pharmacy(self) -> str:
        return self.pharmacy_id or self.id


class LineItem(BaseModel):
    name: str = Field(min_length=1)
    quantity: int = Field(ge=1)
    price: float = Field(ge=0)
    instructions: str = ""
    drug_id: str | None = None
    prescription_required: bool = False


class Address(BaseModel):
    street: str
    city: str
    state: str = ""
    kebele: str = ""
    postal_code: str = ""
    landmark: str = ""
    latitude: float | None = None
    longitude: float | None = None

    def one_line(self) -> str:
        return ", ".join(part for part in (self.street, self.kebele, self.city, self.state) if part)


class StatusChange(BaseModel):
    status: str
    timestamp: datetime
    updated_by: str
    notes: str = Field(default="", max_length=200)


class Record(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_assignment=True)

    table_name: ClassVar[str]

    id: str = Field(default_factory=new_id)
    lifecycle: Lifecycle = Lifecycle.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_live(self) -> bool:
        return self.lifecycle == Lifecycle.ACTIVE.value


class Entity(Record):
    kind: ClassVar[EntityKind]

    status_history: list[StatusChange] = Field(default_factory=list)

    @property
    def stage(self) -> Stage:
        return to_stage(self.kind, self.status)

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    def move_to(self, stage: Stage, updated_by: str, notes: str = "", at: datetime | None = None) -> bool:
        """
        Set the status projection for `stage` and append one history entry.
        Returns False, changing nothing, when this kind has no status for the stage.
        """
        status = to_status(self.kind, stage)
        if status is None:
            return False
        at = at or utcnow()
        if self.status_history and self.status_history[-1].timestamp > at:
            at = self.status_history[-1].timestamp
        self._apply_stage(stage)
        self.status_history.append(StatusChange(status=status, timestamp=at, updated_by=updated_by, notes=notes))
        self.updated_at = at
        return True

    def _apply_stage(self, stage: Stage) -> None:
        self.status = to_status(self.kind, stage)


class Order(Entity):
    kind: ClassVar[EntityKind] = EntityKind.ORDER
    table_name: ClassVar[str] = "orders"

    patient_id: str
    pharmacy_id: str
    items: list[LineItem] = Field(min_length=1)
    delivery_address: Address
    total_amount: float = Field(ge=0)
    fulfillment_status: FulfillmentStatus = FulfillmentStatus.PENDING
    delivery_status: OrderDeliveryStatus = OrderDeliveryStatus.PENDING
    dispatcher_id: str | None = None
    assigned_driver_id: str | None = None
    assigned_at: datetime | None = None
    estimated_delivery_time: datetime | None = None
    actual_delivery_time: datetime | None = None
    payment_method: PaymentMethod | None = None
    payment_status: PaymentStatus = PaymentStatus.PENDING
    paid_amount: float | None = None
    paid_at: datetime | None = None
    notes: str | None = Field(default=None, max_length=500)

    @computed_field
    @property
    def status(self) -> str:
        if self.fulfillment_status == FulfillmentStatus.CANCELLED.value:
            return Stage.CANCELLED.value
        if self.delivery_status != OrderDeliveryStatus.PENDING.value:
            return self.delivery_status
        return self.fulfillment_status

    def _apply_stage(self, stage: Stage) -> None:
        if stage == Stage.CANCELLED:
            self.fulfillment_status = FulfillmentStatus.CANCELLED
        elif stage in PRE_DISPATCH_STAGES:
            self.fulfillment_status = FulfillmentStatus(stage.value)
            self.delivery_status = OrderDeliveryStatus.PENDING
        elif stage in IN_FLIGHT_STAGES:
            self.delivery_status = OrderDeliveryStatus(stage.value)
        else:
            self.fulfillment_status = FulfillmentStatus.DELIVERED
            self.delivery_status = OrderDeliveryStatus.DELIVERED


class DeliveryRequest(Entity):
    kind: ClassVar[EntityKind] = EntityKind.DELIVERY_REQUEST
    table_name: ClassVar[str] = "delivery_requests"

    patient_id: str
    pharmacy_id: str
    items: list[LineItem] = Field(min_length=1)
    delivery_address: Address
    contact_phone: str
    status: RequestStatus = RequestStatus.PENDING
    tracking_code: str
    dispatcher_id: str | None = None
    assigned_driver_id: str | None = None
    assigned_at: datetime | None = None
    delivery_fee: float = Field(default=0, ge=0)
    total_amount: float = Field(ge=0)
    payment_method: PaymentMethod = PaymentMethod.CASH
    payment_status: PaymentStatus = PaymentStatus.PENDING
    prescription_image: str | None = None
    estimated_delivery_time: datetime | None = None
    actual_delivery_time: datetime | None = None
    notes: str | None = Field(default=None, max_length=500)


class Delivery(Entity):
    kind: ClassVar[EntityKind] = EntityKind.DELIVERY
    table_name: ClassVar[str] = "deliveries"

    parent_kind: EntityKind
    parent_id: str
    driver_id: str
    dispatcher_id: str
    pharmacy_id: str
    patient_id: str
    status: DeliveryStatus = DeliveryStatus.ASSIGNED
    pickup_location: str = ""
    delivery_location: str = ""
    estimated_minutes: int | None = None
    distance_km: float | None = None
    assigned_at: datetime = Field(default_factory=utcnow)
    picked_up_at: datetime | None = None
    delivered_at: datetime | None = None
    notes: str | None = None

    @property
    def is_active(self) -> bool:
        return self.stage in IN_FLIGHT_STAGES


class Driver(Record):
    table_name: ClassVar[str] = "drivers"

    name: str = ""
    vehicle_type: VehicleType = VehicleType.MOTORCYCLE
    license_plate: str | None = None
    on_duty: bool = True
    is_available: bool = True
    available_since: datetime = Field(default_factory=utcnow)
    total_deliveries: int = 0
    successful_deliveries: int = 0

    @property
    def is_idle(self) -> bool:
        return self.is_live and self.on_duty and self.is_available


MODEL_FOR_KIND: dict[EntityKind, type[Entity]] = {
    EntityKind.ORDER: Order,
    EntityKind.DELIVERY_REQUEST: DeliveryRequest,
    EntityKind.DELIVERY: Delivery,
}
