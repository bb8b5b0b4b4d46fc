from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, Iterator, List, Optional, Sequence

from rx_lifecycle.clock import Clock, ScheduledCall
from rx_lifecycle.config import Settings
from rx_lifecycle.errors import InsufficientStock, InvalidStateTransition, RecordNotFound
from rx_lifecycle.events import EventBus, OrderStatusChanged
from rx_lifecycle.inventory import InventoryLedger
from rx_lifecycle.models import ORDER_SEQUENCE, CartLine, Order, OrderStatus, ShippingAddress
from rx_lifecycle.store import Store

logger = logging.getLogger(__name__)

CANCELLABLE = (OrderStatus.PROCESSING, OrderStatus.PAID)


class OrderLifecycle:
    """
    Drives orders through Processing -> Paid -> Shipped -> Delivered.

    The status of an order is a function of ``created_at`` and the current
    time over a fixed delay table (see :meth:`Settings.order_offsets`).
    Timers only decide *when* the stored record catches up and events go
    out; losing them (process restart) loses nothing, ``resume`` or any
    read through :meth:`get_order` brings the record up to date again.
    """

    def __init__(
        self,
        store: Store,
        ledger: InventoryLedger,
        bus: EventBus,
        clock: Clock,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.bus = bus
        self.clock = clock
        self.settings = settings or Settings()
        self._offsets = self.settings.order_offsets()
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._timers: Dict[str, ScheduledCall] = {}

    @contextmanager
    def _locked(self, order_id: str, must_exist: bool = True) -> Iterator[None]:
        # Only known orders get a lock, and it is dropped once the order is
        # Delivered or Cancelled.
        with self._locks_guard:
            lock = self._locks.get(order_id)
            if lock is None:
                if must_exist and order_id not in self.store.orders:
                    raise RecordNotFound("order", order_id)
                lock = self._locks[order_id] = threading.RLock()
        with lock:
            try:
                yield
            finally:
                order = self.store.orders.get(order_id)
                if order is not None and order.status.is_terminal:
                    with self._locks_guard:
                        self._locks.pop(order_id, None)

    def _load(self, order_id: str) -> Order:
        order = self.store.orders.get(order_id)
        if order is None:
            raise RecordNotFound("order", order_id)
        return order

    # ----- time-derived status -----

    def tracking_link(self, order_id: str) -> str:
        return f"{self.settings.tracking_url_base}?id={order_id}"

    def due_at(self, order: Order, status: OrderStatus) -> datetime:
        for candidate, offset in self._offsets:
            if candidate is status:
                return order.created_at + timedelta(seconds=offset)
        return order.created_at

    def derive_status(self, order: Order, now: datetime) -> OrderStatus:
        if order.status is OrderStatus.CANCELLED:
            return OrderStatus.CANCELLED
        elapsed = (now - order.created_at).total_seconds()
        status = OrderStatus.PROCESSING
        for candidate, offset in self._offsets:
            if elapsed >= offset:
                status = candidate
        # A stored status is never walked back, even if the clock is.
        if ORDER_SEQUENCE.index(order.status) > ORDER_SEQUENCE.index(status):
            return order.status
        return status

    def status_of(self, order_id: str) -> OrderStatus:
        return self.derive_status(self._load(order_id), self.clock.now())

    # ----- commands -----

    def place_order(
        self,
        lines: Sequence[CartLine],
        shipping_address: ShippingAddress,
        payment_method: str,
    ) -> Order:
        if not lines:
            raise ValueError("order must contain at least one line")
        if not payment_method or not payment_method.strip():
            raise ValueError("payment_method is required")

        order_id = f"order-{uuid.uuid4().hex[:12]}"
        self.store.log(f"[order={order_id}] PLACE lines={len(lines)} payment={payment_method}")
        try:
            priced = self.ledger.reserve_and_commit(lines, ref=f"order={order_id}")
        except InsufficientStock as e:
            self.store.log(f"[order={order_id}] PLACE FAILED: {e}")
            raise

        subtotal = sum(line.line_total for line in priced)
        shipping_cost = self.settings.shipping_cost
        order = Order(
            id=order_id,
            items=tuple(priced),
            subtotal=subtotal,
            shipping_cost=shipping_cost,
            total=subtotal + shipping_cost,
            shipping_address=shipping_address,
            payment_method=payment_method,
            created_at=self.clock.now(),
        )
        with self._locked(order_id, must_exist=False):
            self.store.orders.save(order)
            self.store.log(f"[order={order_id}] PLACED total={order.total}")
            self.bus.publish(OrderStatusChanged(order_id, None, OrderStatus.PROCESSING, order.created_at))
            self._schedule_next(order)
        return order

    def get_order(self, order_id: str) -> Order:
        """Return the order with every transition that is due applied."""
        with self._locked(order_id):
            order = self._sync(order_id)
            if order_id not in self._timers:
                self._schedule_next(order)
            return order

    def list_orders(self) -> List[Order]:
        orders = [self.get_order(order.id) for order in self.store.orders.all()]
        return sorted(orders, key=lambda o: o.created_at, reverse=True)

    def cancel_order(self, order_id: str) -> Order:
        with self._locked(order_id):
            order = self._sync(order_id)
            if order.status not in CANCELLABLE:
                self.store.log(f"[order={order_id}] CANCEL REFUSED status={order.status.value}")
                raise InvalidStateTransition(order_id, order.status, "cancel")
            timer = self._timers.pop(order_id, None)
            if timer is not None:
                timer.cancel()

            old = order.status
            order.status = OrderStatus.CANCELLED
            order.cancelled_at = self.clock.now()
            self.bus.publish(OrderStatusChanged(order_id, old, OrderStatus.CANCELLED, order.cancelled_at))
            self.store.orders.save(order)
            self.store.log(f"[order={order_id}] STATUS {old.value} -> {OrderStatus.CANCELLED.value}")
            self.ledger.restock(order.items, ref=f"order={order_id}")
            return order

    def resume(self) -> int:
        """Catch up and re-arm every order that has not reached a terminal status."""
        resumed = 0
        for order in self.store.orders.all():
            if order.status.is_terminal:
                continue
            with self._locked(order.id):
                order = self._sync(order.id)
                self._schedule_next(order)
            resumed += 1
        if resumed:
            logger.info("resumed %d open orders", resumed)
        return resumed

    def shutdown(self) -> None:
        for order_id in list(self._timers):
            timer = self._timers.pop(order_id, None)
            if timer is not None:
                timer.cancel()

    # ----- internals -----

    def _sync(self, order_id: str) -> Order:
        """Apply due transitions one step at a time. Caller holds the order lock."""
        order = self._load(order_id)
        if order.status.is_terminal:
            return order
        target = self.derive_status(order, self.clock.now())
        start = ORDER_SEQUENCE.index(order.status)
        for step in ORDER_SEQUENCE[start + 1 : ORDER_SEQUENCE.index(target) + 1]:
            old = order.status
            order.status = step
            if step is OrderStatus.SHIPPED:
                order.tracking_link = self.tracking_link(order_id)
            # Publish before saving: a crash in between repeats the event
            # after restart instead of dropping it.
            self.bus.publish(OrderStatusChanged(order_id, old, step, self.due_at(order, step), order.tracking_link))
            self.store.orders.save(order)
            self.store.log(f"[order={order_id}] STATUS {old.value} -> {step.value}")
        return order

    def _schedule_next(self, order: Order) -> None:
        previous = self._timers.pop(order.id, None)
        if previous is not None:
            previous.cancel()
        if order.status.is_terminal:
            return
        current = ORDER_SEQUENCE.index(order.status)
        next_status = ORDER_SEQUENCE[current + 1]
        delay = (self.due_at(order, next_status) - self.clock.now()).total_seconds()
        try:
            self._timers[order.id] = self.clock.call_later(delay, self._on_timer, order.id)
        except Exception:
            # The record stays as saved; resume() or the next read re-arms it.
            logger.exception("could not schedule %s for order %s", next_status.value, order.id, extra={"order_id": order.id})
            self.store.log(f"[order={order.id}] SCHEDULE FAILED next={next_status.value}")

    def _on_timer(self, order_id: str) -> None:
        with self._locked(order_id):
            self._timers.pop(order_id, None)
            order = self._sync(order_id)
            self._schedule_next(order)
