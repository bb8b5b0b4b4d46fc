from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Union

from rx_lifecycle.models import OrderStatus, PrescriptionStatus

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class OrderStatusChanged:
    order_id: str
    old_status: Optional[OrderStatus]
    new_status: OrderStatus
    timestamp: datetime
    tracking_link: Optional[str] = None

    @property
    def message(self) -> str:
        short_id = self.order_id[-6:]
        if self.old_status is None:
            return "Order placed successfully!"
        if self.new_status is OrderStatus.PAID:
            return f"Payment for order {short_id} confirmed!"
        if self.new_status is OrderStatus.SHIPPED:
            return f"Your order {short_id} has shipped!"
        if self.new_status is OrderStatus.DELIVERED:
            return f"Your order {short_id} has been delivered."
        return f"Your order {short_id} was cancelled."


@dataclass(slots=True, frozen=True)
class PrescriptionStatusChanged:
    prescription_id: str
    old_status: Optional[PrescriptionStatus]
    new_status: PrescriptionStatus
    timestamp: datetime
    artifact: Optional[str] = None
    reason: Optional[str] = None


Event = Union[OrderStatusChanged, PrescriptionStatusChanged]
Listener = Callable[[Event], None]


class EventBus:
    """
    Fan-out of status changes to every subscribed listener.

    Delivery is fire-and-forget: a listener that raises is logged and the
    remaining listeners still get the event. Listeners run on the thread
    that published, so a slow listener delays the machine that emitted it.
    """

    def __init__(self) -> None:
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def publish(self, event: Event) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("listener %r failed on %s", listener, type(event).__name__)


class EventRecorder:
    """Listener that keeps everything it receives; used by the CLI and tests."""

    def __init__(self) -> None:
        self.events: List[Event] = []

    def __call__(self, event: Event) -> None:
        self.events.append(event)

    def for_order(self, order_id: str) -> List[OrderStatusChanged]:
        return [e for e in self.events if isinstance(e, OrderStatusChanged) and e.order_id == order_id]

    def for_prescription(self, prescription_id: str) -> List[PrescriptionStatusChanged]:
        return [
            e for e in self.events if isinstance(e, PrescriptionStatusChanged) and e.prescription_id == prescription_id
        ]
