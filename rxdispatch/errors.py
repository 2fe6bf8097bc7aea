"""
Typed failures surfaced by the transition engine, the assignment coordinator
and the order desk. Each carries enough context (current vs requested status,
required roles) for a client to explain the failure without re-querying.
"""


class DispatchError(Exception):
    """Base class. `code` is the stable machine-readable name, `status_code` the HTTP mapping."""

    code = "dispatch-error"
    status_code = 400

    def __init__(self, message: str, **context):
        self.message = message
        self.context = context
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, **self.context}


class NotFound(DispatchError):
    """Entity, driver or tracking code absent (archived records count as absent)."""

    code = "not-found"
    status_code = 404


class Forbidden(DispatchError):
    """Actor lacks the role for the requested status, or does not own the entity."""

    code = "forbidden"
    status_code = 403


class InvalidTransition(DispatchError):
    """Requested status is unknown or not reachable from the current status."""

    code = "invalid-transition"
    status_code = 409


class AlreadyAssigned(DispatchError):
    """The order already has an active delivery (assignment race lost)."""

    code = "already-assigned"
    status_code = 409


class DriverUnavailable(DispatchError):
    """Chosen driver is busy or off duty, or no idle driver exists."""

    code = "driver-unavailable"
    status_code = 409


class NotReady(DispatchError):
    """Assignment attempted on a wrong source status, including after cancellation."""

    code = "not-ready"
    status_code = 409


class OutOfStock(DispatchError):
    code = "out-of-stock"
    status_code = 400


class Conflict(DispatchError):
    """Record with the same identity already exists."""

    code = "conflict"
    status_code = 409


class PrescriptionRequired(DispatchError):
    """An item needs a prescription and none was attached."""

    code = "prescription-required"
    status_code = 400
