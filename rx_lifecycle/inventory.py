from __future__ import annotations

import threading
import uuid
from collections import defaultdict
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Sequence, Tuple

from rx_lifecycle.errors import InsufficientStock, InvalidStateTransition, RecordNotFound
from rx_lifecycle.models import CartLine, OrderLine, Product
from rx_lifecycle.store import Store


@dataclass(slots=True)
class Reservation:
    id: str
    ref: str
    lines: Tuple[CartLine, ...]
    state: str = "held"  # held -> committed | released


def _validate_lines(lines: Sequence[CartLine]) -> Tuple[CartLine, ...]:
    lines = tuple(lines)
    if not lines:
        raise ValueError("at least one line is required")
    for line in lines:
        if not isinstance(line.quantity, int) or line.quantity <= 0:
            raise ValueError(f"qty must be > 0 (got {line.quantity!r} for {line.product_id})")
    return lines


class InventoryLedger:
    """
    Current stock per product, shared by every checkout.

    All mutations go through one lock so a multi-line checkout is checked and
    applied as a unit: either every line is taken or nothing changes.
    ``available`` is stock minus quantities held by open reservations.
    """

    def __init__(self, store: Store):
        self.store = store
        self._lock = threading.RLock()
        self._held: Dict[str, int] = defaultdict(int)
        self._reservations: Dict[str, Reservation] = {}

    def _product(self, product_id: str) -> Product:
        product = self.store.products.get(product_id)
        if product is None:
            raise RecordNotFound("product", product_id)
        return product

    def available(self, product_id: str) -> int:
        with self._lock:
            product = self.store.products.get(product_id)
            if product is None:
                return 0
            return product.stock - self._held[product_id]

    def _check(self, lines: Iterable[CartLine]) -> None:
        # Lines for the same product add up before comparing.
        wanted: Dict[str, int] = defaultdict(int)
        for line in lines:
            wanted[line.product_id] += line.quantity
            available = self.available(line.product_id)
            if wanted[line.product_id] > available:
                raise InsufficientStock(line.product_id, wanted[line.product_id], max(available, 0))

    def reserve(self, lines: Sequence[CartLine], ref: str) -> Reservation:
        lines = _validate_lines(lines)
        with self._lock:
            self._check(lines)
            reservation = Reservation(id=f"res-{uuid.uuid4().hex[:12]}", ref=ref, lines=lines)
            for line in lines:
                self._held[line.product_id] += line.quantity
            self._reservations[reservation.id] = reservation
        self.store.log(f"[{ref}] stock reserved: " + ", ".join(f"{line.product_id} qty={line.quantity}" for line in lines))
        return reservation

    def commit(self, reservation: Reservation) -> List[OrderLine]:
        """Turn held quantities into real decrements and price the lines."""
        with self._lock:
            if reservation.state != "held":
                raise InvalidStateTransition(reservation.id, reservation.state, "commit reservation")
            priced: List[OrderLine] = []
            originals: Dict[str, Product] = {}
            updated: Dict[str, Product] = {}
            for line in reservation.lines:
                if line.product_id not in updated:
                    originals[line.product_id] = updated[line.product_id] = self._product(line.product_id)
                product = updated[line.product_id]
                updated[line.product_id] = replace(product, stock=product.stock - line.quantity)
                priced.append(OrderLine(product_id=line.product_id, quantity=line.quantity, unit_price=product.price))

            saved: List[str] = []
            try:
                for product in updated.values():
                    self.store.products.save(product)
                    saved.append(product.id)
            except Exception:
                # Put back what was already written; the reservation stays held.
                for product_id in saved:
                    self.store.products.save(originals[product_id])
                self.store.log(f"[{reservation.ref}] stock commit failed, {len(saved)} product(s) rolled back")
                raise

            for line in reservation.lines:
                self._held[line.product_id] -= line.quantity
            reservation.state = "committed"
            del self._reservations[reservation.id]
        for product in updated.values():
            self.store.log(f"[{reservation.ref}] stock committed: {product.id} (stock={product.stock})")
        return priced

    def release(self, reservation: Reservation) -> None:
        with self._lock:
            if reservation.state != "held":
                return
            for line in reservation.lines:
                self._held[line.product_id] -= line.quantity
            reservation.state = "released"
            del self._reservations[reservation.id]
        self.store.log(f"[{reservation.ref}] reservation released")

    def reserve_and_commit(self, lines: Sequence[CartLine], ref: str) -> List[OrderLine]:
        with self._lock:
            reservation = self.reserve(lines, ref)
            try:
                return self.commit(reservation)
            except Exception:
                self.release(reservation)
                raise

    def restock(self, lines: Iterable[OrderLine], ref: str) -> None:
        """Give committed stock back, e.g. when an order is cancelled."""
        with self._lock:
            for line in lines:
                product = self.store.products.get(line.product_id)
                if product is None:
                    self.store.log(f"[{ref}] stock not returned: {line.product_id} is no longer in the catalog")
                    continue
                product = replace(product, stock=product.stock + line.quantity)
                self.store.products.save(product)
                self.store.log(f"[{ref}] stock returned: {line.product_id} qty={line.quantity} (stock={product.stock})")

    def open_reservations(self) -> List[Reservation]:
        with self._lock:
            return list(self._reservations.values())
