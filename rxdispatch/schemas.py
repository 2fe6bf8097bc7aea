"""
Request bodies for the HTTP routes.
"""
from pydantic import BaseModel, Field

from rxdispatch.models import Address, LineItem, PaymentMethod, VehicleType
from rxdispatch.order_state import EntityKind


class CreateOrderBody(BaseModel):
    pharmacy_id: str = Field(..., description="Pharmacy that will fill the order")
    items: list[LineItem] = Field(..., min_length=1)
    delivery_address: Address
    payment_method: PaymentMethod = PaymentMethod.CASH
    notes: str | None = Field(default=None, max_length=500)


class CreateDeliveryRequestBody(CreateOrderBody):
    contact_phone: str = Field(..., min_length=1)
    delivery_fee: float | None = Field(default=None, ge=0, description="Defaults to the flat delivery fee")
    prescription_image: str | None = Field(default=None, description="URL of the uploaded prescription")


class StatusBody(BaseModel):
    status: str = Field(..., description="Requested status in the entity's own vocabulary")
    notes: str = Field(default="", max_length=200)


class PaymentBody(BaseModel):
    payment_method: PaymentMethod
    amount: float | None = Field(default=None, ge=0, description="Defaults to the order total")


class AssignBody(BaseModel):
    kind: EntityKind = EntityKind.ORDER
    entity_id: str
    driver_id: str | None = Field(default=None, description="Omit to take the driver idle longest")
    estimated_minutes: int | None = Field(default=None, ge=1)
    distance_km: float | None = Field(default=None, ge=0)
    notes: str = Field(default="", max_length=200)


class RegisterDriverBody(BaseModel):
    id: str = Field(..., description="User id of the driver")
    name: str = ""
    vehicle_type: VehicleType = VehicleType.MOTORCYCLE
    license_plate: str | None = None
    on_duty: bool = True


class DutyBody(BaseModel):
    on_duty: bool


class ArchiveBody(BaseModel):
    kind: EntityKind
    entity_id: str
