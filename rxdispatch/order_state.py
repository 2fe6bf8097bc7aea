"""
Order lifecycle state machine. One internal stage sequence shared by orders,
delivery requests and deliveries; each entity kind exposes its own status
vocabulary as a projection of it. Valid transitions enforce business rules
per actor role.
"""
from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    PATIENT = "patient"
    PHARMACY = "pharmacy"
    DISPATCHER = "dispatcher"
    DRIVER = "driver"
    ADMIN = "admin"


class EntityKind(str, Enum):
    ORDER = "order"
    DELIVERY_REQUEST = "delivery_request"
    DELIVERY = "delivery"


class Stage(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    ASSIGNED = "assigned"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class DenialReason(str, Enum):
    ROLE_NOT_PERMITTED = "role-not-permitted"
    ILLEGAL_SOURCE_STATE = "illegal-source-state"
    UNKNOWN_STATUS = "unknown-status"


TERMINAL_STAGES = frozenset({Stage.DELIVERED, Stage.CANCELLED})
PRE_DISPATCH_STAGES = frozenset({Stage.PENDING, Stage.CONFIRMED, Stage.PREPARING, Stage.READY})
IN_FLIGHT_STAGES = frozenset({Stage.ASSIGNED, Stage.PICKED_UP, Stage.IN_TRANSIT})
NON_TERMINAL_STAGES = PRE_DISPATCH_STAGES | IN_FLIGHT_STAGES

# Entity kind -> external status string -> stage
VOCABULARY: dict[EntityKind, dict[str, Stage]] = {
    EntityKind.ORDER: {stage.value: stage for stage in Stage},
    EntityKind.DELIVERY_REQUEST: {
        "pending": Stage.PENDING,
        "confirmed": Stage.CONFIRMED,
        "preparing": Stage.PREPARING,
        "ready": Stage.READY,
        "assigned": Stage.ASSIGNED,
        "on-the-way": Stage.IN_TRANSIT,
        "delivered": Stage.DELIVERED,
        "cancelled": Stage.CANCELLED,
    },
    EntityKind.DELIVERY: {
        "assigned": Stage.ASSIGNED,
        "picked_up": Stage.PICKED_UP,
        "in_transit": Stage.IN_TRANSIT,
        "delivered": Stage.DELIVERED,
        "cancelled": Stage.CANCELLED,
    },
}

_STATUS_FOR_STAGE: dict[EntityKind, dict[Stage, str]] = {
    kind: {stage: status for status, stage in vocabulary.items()}
    for kind, vocabulary in VOCABULARY.items()
}

PARENT_KINDS = (EntityKind.ORDER, EntityKind.DELIVERY_REQUEST)


def to_stage(kind: EntityKind, status: str | None) -> Stage | None:
    """Stage for an external status string, or None if the kind has no such status."""
    if status is None:
        return None
    return VOCABULARY[kind].get(status)


def to_status(kind: EntityKind, stage: Stage) -> str | None:
    """External status string for a stage, or None if the kind cannot express it."""
    return _STATUS_FOR_STAGE[kind].get(stage)


def _table(*rows: tuple[Stage, set[Stage]]) -> dict[Stage, frozenset[Stage]]:
    return {target: frozenset(sources) for target, sources in rows}


def _admin_table(kind: EntityKind, targets: set[Stage]) -> dict[Stage, frozenset[Stage]]:
    expressible = set(VOCABULARY[kind].values())
    return {
        target: frozenset((NON_TERMINAL_STAGES & expressible) - {target})
        for target in targets
        if target in expressible
    }


_PHARMACY = _table(
    (Stage.CONFIRMED, {Stage.PENDING}),
    (Stage.PREPARING, {Stage.CONFIRMED}),
    (Stage.READY, {Stage.PREPARING}),
    (Stage.CANCELLED, set(NON_TERMINAL_STAGES)),
)

_DISPATCHER_PARENT = _table(
    (Stage.ASSIGNED, {Stage.READY}),
    (Stage.IN_TRANSIT, {Stage.ASSIGNED, Stage.PICKED_UP}),
    (Stage.DELIVERED, set(IN_FLIGHT_STAGES)),
)

_DISPATCHER_DELIVERY = _table(
    (Stage.IN_TRANSIT, {Stage.ASSIGNED, Stage.PICKED_UP}),
    (Stage.DELIVERED, {Stage.IN_TRANSIT}),
)

_DRIVER = _table(
    (Stage.PICKED_UP, {Stage.ASSIGNED}),
    (Stage.IN_TRANSIT, {Stage.PICKED_UP}),
    (Stage.DELIVERED, {Stage.IN_TRANSIT}),
)

_PATIENT = _table(
    (Stage.CANCELLED, {Stage.PENDING}),
)

_ADMIN_PARENT_TARGETS = set(PRE_DISPATCH_STAGES) | {Stage.ASSIGNED, Stage.DELIVERED, Stage.CANCELLED}
_ADMIN_DELIVERY_TARGETS = {Stage.PICKED_UP, Stage.IN_TRANSIT, Stage.DELIVERED, Stage.CANCELLED}

# Role -> entity kind -> target stage -> allowed source stages
TRANSITION_TABLE: dict[Role, dict[EntityKind, dict[Stage, frozenset[Stage]]]] = {
    Role.PHARMACY: {
        EntityKind.ORDER: _PHARMACY,
        EntityKind.DELIVERY_REQUEST: _PHARMACY,
    },
    Role.DISPATCHER: {
        EntityKind.ORDER: _DISPATCHER_PARENT,
        EntityKind.DELIVERY_REQUEST: _DISPATCHER_PARENT,
        EntityKind.DELIVERY: _DISPATCHER_DELIVERY,
    },
    Role.DRIVER: {
        EntityKind.DELIVERY: _DRIVER,
    },
    Role.PATIENT: {
        EntityKind.ORDER: _PATIENT,
        EntityKind.DELIVERY_REQUEST: _PATIENT,
    },
    Role.ADMIN: {
        EntityKind.ORDER: _admin_table(EntityKind.ORDER, _ADMIN_PARENT_TARGETS),
        EntityKind.DELIVERY_REQUEST: _admin_table(EntityKind.DELIVERY_REQUEST, _ADMIN_PARENT_TARGETS),
        EntityKind.DELIVERY: _admin_table(EntityKind.DELIVERY, _ADMIN_DELIVERY_TARGETS),
    },
}


@dataclass(frozen=True)
class Allowed:
    source: Stage
    target: Stage

    def __bool__(self) -> bool:
        return True


@dataclass(frozen=True)
class Denied:
    reason: DenialReason
    message: str

    def __bool__(self) -> bool:
        return False


def validate(
    kind: EntityKind,
    current_status: str | None,
    requested_status: str,
    role: Role,
) -> Allowed | Denied:
    """
    Decide whether `role` may move an entity of `kind` from `current_status`
    to `requested_status`. Pure: no storage, no ownership checks.
    """
    target = to_stage(kind, requested_status)
    if target is None:
        return Denied(DenialReason.UNKNOWN_STATUS, f"'{requested_status}' is not a {kind.value} status")
    source = to_stage(kind, current_status)
    if source is None:
        return Denied(DenialReason.UNKNOWN_STATUS, f"'{current_status}' is not a {kind.value} status")

    targets = TRANSITION_TABLE.get(role, {}).get(kind, {})
    if target not in targets:
        return Denied(
            DenialReason.ROLE_NOT_PERMITTED,
            f"{role.value} may not set a {kind.value} to '{requested_status}'",
        )
    if source not in targets[target]:
        return Denied(
            DenialReason.ILLEGAL_SOURCE_STATE,
            f"cannot move a {kind.value} from '{current_status}' to '{requested_status}'",
        )
    return Allowed(source=source, target=target)


def roles_allowed(kind: EntityKind, requested_status: str) -> list[Role]:
    """Roles that own `requested_status` for `kind`, whatever the source state."""
    target = to_stage(kind, requested_status)
    return [role for role, kinds in TRANSITION_TABLE.items() if target in kinds.get(kind, {})]
