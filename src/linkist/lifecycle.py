"""Order status state machine.

pending -> confirmed -> production -> shipped -> delivered, with cancelled
reachable from every status except delivered. In strict mode orders only move
forward along the pipeline (skipping steps is allowed) and delivered and
cancelled are terminal. Permissive mode allows any status from any other.
"""

from .errors import IllegalTransitionError, InvalidStatusError
from .models import OrderStatus

PIPELINE: tuple[OrderStatus, ...] = (
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PRODUCTION,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
)

TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})


def _build_transitions() -> dict[OrderStatus, frozenset[OrderStatus]]:
    table: dict[OrderStatus, frozenset[OrderStatus]] = {}
    for i, status in enumerate(PIPELINE):
        allowed = set(PIPELINE[i + 1:])
        if status not in TERMINAL_STATUSES:
            allowed.add(OrderStatus.CANCELLED)
        table[status] = frozenset(allowed)
    table[OrderStatus.CANCELLED] = frozenset()
    return table


TRANSITIONS = _build_transitions()


def parse_status(value: str | OrderStatus) -> OrderStatus:
    """
    Parse an order status.

    Raises:
        InvalidStatusError: If the value is not a known status.
    """
    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus(str(value).strip().lower())
    except ValueError:
        raise InvalidStatusError(str(value)) from None


def can_transition(current: OrderStatus, new: OrderStatus, strict: bool = True) -> bool:
    if current == new or not strict:
        return True
    return new in TRANSITIONS[current]


def check_transition(current: OrderStatus, new: OrderStatus, strict: bool = True) -> None:
    """
    Raises:
        IllegalTransitionError: If strict and the move isn't in the table.
    """
    if not can_transition(current, new, strict=strict):
        raise IllegalTransitionError(current.value, new.value)


def allowed_next(current: OrderStatus, strict: bool = True) -> list[OrderStatus]:
    """Statuses an admin may pick next, in pipeline order."""
    if not strict:
        return [s for s in OrderStatus if s != current]
    return [s for s in OrderStatus if s in TRANSITIONS[current]]
