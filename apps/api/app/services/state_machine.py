import enum
from collections.abc import Iterable

from app.errors import InvalidTransitionError, ValidationError
from app.models.custom_order import CustomOrderStatus
from app.models.order import OrderKind, StandardOrderStatus

STANDARD_TERMINAL_STATES = {
    StandardOrderStatus.DELIVERED,
    StandardOrderStatus.CANCELLED,
    StandardOrderStatus.REFUNDED,
}
CUSTOM_TERMINAL_STATES = {CustomOrderStatus.FULFILLED, CustomOrderStatus.CANCELLED}


def _free_reassignment(statuses: Iterable[enum.Enum], terminal: set) -> dict:
    # staff may reassign freely between open states; terminal states are locked
    members = list(statuses)
    return {
        status: set() if status in terminal else {other for other in members if other != status}
        for status in members
    }


STANDARD_ORDER_TRANSITIONS: dict[StandardOrderStatus, set[StandardOrderStatus]] = (
    _free_reassignment(StandardOrderStatus, STANDARD_TERMINAL_STATES)
)
CUSTOM_ORDER_TRANSITIONS: dict[CustomOrderStatus, set[CustomOrderStatus]] = _free_reassignment(
    CustomOrderStatus, CUSTOM_TERMINAL_STATES
)

_STATUS_LABELS = {
    StandardOrderStatus.RECEIVED: "Received",
    StandardOrderStatus.PROCESSING: "Processing",
    StandardOrderStatus.CONFIRMED: "Confirmed",
    StandardOrderStatus.DISPATCHED: "Dispatched",
    StandardOrderStatus.OUT_FOR_DELIVERY: "Out for Delivery",
    StandardOrderStatus.DELIVERED: "Delivered",
    StandardOrderStatus.CANCELLED: "Cancelled",
    StandardOrderStatus.REFUNDED: "Refunded",
    CustomOrderStatus.PENDING: "Pending Review",
    CustomOrderStatus.REVIEWING: "Under Review",
    CustomOrderStatus.READY: "Ready - Deposit Required",
    CustomOrderStatus.DEPOSIT_PAID: "Deposit Paid",
    CustomOrderStatus.FULFILLED: "Fulfilled",
    CustomOrderStatus.CANCELLED: "Cancelled",
}


def parse_status(kind: OrderKind, value: str) -> StandardOrderStatus | CustomOrderStatus:
    status_cls = StandardOrderStatus if kind == OrderKind.STANDARD else CustomOrderStatus
    try:
        return status_cls(value.strip().lower())
    except ValueError as err:
        allowed = ", ".join(member.value for member in status_cls)
        raise ValidationError(
            f"Unknown {kind.value} order status '{value}'. Expected one of: {allowed}",
            code="UNKNOWN_STATUS",
        ) from err


def is_terminal(status: StandardOrderStatus | CustomOrderStatus) -> bool:
    return status in STANDARD_TERMINAL_STATES or status in CUSTOM_TERMINAL_STATES


def status_label(status: StandardOrderStatus | CustomOrderStatus) -> str:
    return _STATUS_LABELS[status]


def ensure_valid_transition(
    current: StandardOrderStatus | CustomOrderStatus,
    next_status: StandardOrderStatus | CustomOrderStatus,
    *,
    override: bool = False,
) -> None:
    if next_status == current:
        return

    transitions = (
        STANDARD_ORDER_TRANSITIONS
        if isinstance(current, StandardOrderStatus)
        else CUSTOM_ORDER_TRANSITIONS
    )
    if next_status not in transitions:
        raise InvalidTransitionError(current.value, next_status.value)
    if override:
        return

    allowed = transitions.get(current, set())
    if next_status not in allowed:
        raise InvalidTransitionError(current.value, next_status.value)
