"""Order storage for linkist."""

import fcntl
import json
import logging
import os
import tempfile
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Iterator

from .errors import DuplicateOrderError, InvalidSchemaVersionError, OrderNotFoundError
from .lifecycle import check_transition, parse_status
from .models import EmailRecord, EmailType, Order, OrderStatus, PaymentStatus, StatusChange, _utc_now
from .utils import to_money

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
ORDERS_FILE = "orders.json"


class OrderStore:
    """Manages reading and writing orders and their payment records."""

    def __init__(self, data_dir: Path):
        """
        Initialize OrderStore.

        Args:
            data_dir: Directory holding orders.json.
        """
        self.data_dir = data_dir
        self.orders_path = self.data_dir / ORDERS_FILE

    def _ensure_dir(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def _lock(self) -> Iterator[None]:
        """Acquire exclusive lock on the orders file for read-modify-write operations."""
        self._ensure_dir()
        lock_path = self.data_dir / ".orders.lock"
        with open(lock_path, "w") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _load_data(self) -> dict[str, Any]:
        if not self.orders_path.exists():
            return {"schema_version": SCHEMA_VERSION, "orders": []}

        with open(self.orders_path, "r", encoding="utf-8") as f:
            data = json.load(f)

        version = data.get("schema_version", 0)
        if version != SCHEMA_VERSION:
            raise InvalidSchemaVersionError(version, SCHEMA_VERSION)
        return data

    def _save_data(self, data: dict[str, Any]) -> None:
        """Save orders to disk atomically."""
        self._ensure_dir()

        fd, temp_path = tempfile.mkstemp(dir=self.data_dir, prefix=".orders_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.write("\n")
            os.replace(temp_path, self.orders_path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

    def _mutate(self, order_id: str, change: Callable[[Order], None]) -> Order:
        """Load one order, apply `change` and save it, all under the lock."""
        with self._lock():
            data = self._load_data()
            orders = data.get("orders", [])
            idx = self._index_of(orders, order_id)
            order = Order.from_dict(orders[idx])
            change(order)
            order.updated_at = _utc_now()
            orders[idx] = order.to_dict()
            self._save_data(data)
        return order

    @staticmethod
    def _index_of(orders: list[dict[str, Any]], order_id: str) -> int:
        """Find an order by ID, order number, or unambiguous ID prefix."""
        for i, o in enumerate(orders):
            if o["id"] == order_id or o["order_number"] == order_id:
                return i
        matches = [i for i, o in enumerate(orders) if o["id"].startswith(order_id)]
        if len(matches) == 1 and order_id:
            return matches[0]
        if len(matches) > 1:
            raise OrderNotFoundError(f"{order_id} (ambiguous, matches {len(matches)} orders)")
        raise OrderNotFoundError(order_id)

    def list_orders(self, search: str | None = None, status: str | None = None) -> list[Order]:
        """
        List orders, newest first.

        Args:
            search: Case-insensitive substring of order number, customer name or email.
            status: Exact status. Both filters combine with AND.
        """
        wanted = parse_status(status) if status else None
        needle = (search or "").strip().lower()

        orders = [Order.from_dict(o) for o in self._load_data().get("orders", [])]
        if wanted is not None:
            orders = [o for o in orders if o.status == wanted]
        if needle:
            orders = [
                o for o in orders
                if needle in o.order_number.lower()
                or needle in o.customer_name.lower()
                or needle in o.email.lower()
            ]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return orders

    def get_order(self, order_id: str) -> Order:
        """
        Get an order by ID (or order number, or ID prefix).

        Raises:
            OrderNotFoundError: If the order doesn't exist.
        """
        orders = self._load_data().get("orders", [])
        return Order.from_dict(orders[self._index_of(orders, order_id)])

    def find_by_payment_ref(self, provider_ref: str) -> Order | None:
        for o in self._load_data().get("orders", []):
            payment = o.get("payment")
            if payment and payment.get("provider_ref") == provider_ref:
                return Order.from_dict(o)
        return None

    def create_order(self, order: Order) -> Order:
        """
        Persist a new order.

        Raises:
            DuplicateOrderError: If an order with the same idempotency key exists.
        """
        with self._lock():
            data = self._load_data()
            if order.idempotency_key:
                for o in data.get("orders", []):
                    if o.get("idempotency_key") == order.idempotency_key:
                        raise DuplicateOrderError(o["id"], "idempotency key already used")
            data.setdefault("orders", []).append(order.to_dict())
            self._save_data(data)

        logger.info(
            "Created order %s (%s) for %s, status=%s",
            order.order_number, order.id, order.email, order.status.value,
        )
        return order

    def set_status(
        self,
        order_id: str,
        status: str | OrderStatus,
        strict: bool = True,
        note: str | None = None,
    ) -> Order:
        """
        Change an order's status and record it in the status history.

        Raises:
            OrderNotFoundError: If the order doesn't exist.
            InvalidStatusError: If the status is unknown.
            IllegalTransitionError: If strict and the transition isn't allowed.
        """
        new_status = parse_status(status)

        def change(order: Order) -> None:
            previous = order.status
            check_transition(previous, new_status, strict=strict)
            if previous == new_status:
                return
            order.status = new_status
            order.status_history.append(
                StatusChange(
                    status=new_status,
                    previous=previous,
                    changed_at=_utc_now(),
                    note=note or f"Status changed from {previous.value} to {new_status.value}",
                )
            )
            logger.info("Order %s: %s -> %s", order.order_number, previous.value, new_status.value)

        return self._mutate(order_id, change)

    def update_tracking(
        self,
        order_id: str,
        tracking_number: str | None = None,
        tracking_url: str | None = None,
        estimated_delivery: str | None = None,
    ) -> Order:
        """Set fulfillment fields. Arguments left as None are unchanged."""

        def change(order: Order) -> None:
            if tracking_number is not None:
                order.tracking_number = tracking_number
            if tracking_url is not None:
                order.tracking_url = tracking_url
            if estimated_delivery is not None:
                order.estimated_delivery = estimated_delivery

        return self._mutate(order_id, change)

    def record_email(self, order_id: str, email_type: EmailType, message_id: str | None) -> Order:
        """Remember that an order email was sent."""

        def change(order: Order) -> None:
            order.emails_sent[email_type.value] = EmailRecord(sent_at=_utc_now(), message_id=message_id)

        return self._mutate(order_id, change)

    def update_payment_status(
        self,
        provider_ref: str,
        status: PaymentStatus,
        failure_reason: str | None = None,
    ) -> Order | None:
        """
        Apply a provider's settlement result to the linked order.

        A pending order becomes confirmed when its payment succeeds and
        cancelled when it fails. Returns None if no order has this payment.
        """
        order = self.find_by_payment_ref(provider_ref)
        if order is None:
            return None

        def change(o: Order) -> None:
            if o.payment is None:
                return
            o.payment.status = status
            o.payment.updated_at = _utc_now()
            if failure_reason:
                o.payment.failure_reason = failure_reason

            target = None
            if o.status == OrderStatus.PENDING and status == PaymentStatus.SUCCEEDED:
                target = OrderStatus.CONFIRMED
            elif o.status == OrderStatus.PENDING and status == PaymentStatus.FAILED:
                target = OrderStatus.CANCELLED
            if target is not None:
                o.status_history.append(
                    StatusChange(
                        status=target,
                        previous=o.status,
                        changed_at=_utc_now(),
                        note=f"Payment {status.value}",
                    )
                )
                o.status = target

        updated = self._mutate(order.id, change)
        logger.info(
            "Payment %s for order %s is now %s", provider_ref, updated.order_number, status.value
        )
        return updated


def order_totals(orders: list[Order]) -> dict[str, Any]:
    """Count, revenue and average order value for a list of orders."""
    revenue = sum((o.pricing.total for o in orders), Decimal("0"))
    average = to_money(revenue / len(orders)) if orders else to_money(0)
    return {
        "total_orders": len(orders),
        "total_revenue": to_money(revenue),
        "average_order_value": average,
    }
