"""Tests for the inventory ledger."""
import threading

import pytest

from rx_lifecycle.errors import InsufficientStock
from rx_lifecycle.inventory import InventoryLedger
from rx_lifecycle.models import CartLine, Product
from rx_lifecycle.store import InMemoryRecordStore, Store


def _stock(store, product_id: str) -> int:
    return store.products.get(product_id).stock


def test_commit_decrements_exactly_the_ordered_quantities(store, ledger):
    """Stock goes down by the ordered quantities and lines are priced."""
    before = {p.id: p.stock for p in store.products.all()}

    priced = ledger.reserve_and_commit([CartLine("A", 2), CartLine("C", 7)], ref="order=t1")

    after = {p.id: p.stock for p in store.products.all()}
    assert sum(before.values()) - sum(after.values()) == 9
    assert after == {"A": 3, "B": 0, "C": 13}
    assert [(line.product_id, line.quantity, line.unit_price) for line in priced] == [("A", 2, 1000), ("C", 7, 450)]


def test_insufficient_line_changes_nothing(store, ledger):
    """One short line fails the whole checkout and leaves every stock level alone."""
    with pytest.raises(InsufficientStock) as exc_info:
        ledger.reserve_and_commit([CartLine("A", 2), CartLine("B", 1)], ref="order=t2")

    # Assertions
    assert exc_info.value.product_id == "B"
    assert exc_info.value.available == 0
    assert _stock(store, "A") == 5
    assert _stock(store, "B") == 0
    assert ledger.open_reservations() == []


def test_first_failing_line_is_named(store, ledger):
    with pytest.raises(InsufficientStock) as exc_info:
        ledger.reserve_and_commit([CartLine("A", 6), CartLine("B", 1)], ref="order=t3")

    assert exc_info.value.product_id == "A"
    assert exc_info.value.available == 5
    assert "only 5 left" in str(exc_info.value)


def test_repeated_product_lines_are_added_up(store, ledger):
    """Two lines for the same product must fit together, not one at a time."""
    with pytest.raises(InsufficientStock) as exc_info:
        ledger.reserve_and_commit([CartLine("A", 3), CartLine("A", 3)], ref="order=t4")

    assert exc_info.value.requested == 6
    assert _stock(store, "A") == 5


def test_unknown_product_is_out_of_stock(store, ledger):
    with pytest.raises(InsufficientStock) as exc_info:
        ledger.reserve_and_commit([CartLine("NOPE", 1)], ref="order=t5")

    assert exc_info.value.product_id == "NOPE"
    assert "out of stock" in str(exc_info.value)


@pytest.mark.parametrize("qty", [0, -1])
def test_non_positive_quantity_rejected(ledger, qty):
    with pytest.raises(ValueError):
        ledger.reserve_and_commit([CartLine("A", qty)], ref="order=t6")


def test_reservation_holds_stock_until_released(store, ledger):
    """A held reservation lowers availability without touching stored stock."""
    reservation = ledger.reserve([CartLine("A", 4)], ref="order=t7")

    assert ledger.available("A") == 1
    assert _stock(store, "A") == 5
    with pytest.raises(InsufficientStock):
        ledger.reserve([CartLine("A", 2)], ref="order=t8")

    ledger.release(reservation)

    assert ledger.available("A") == 5
    assert _stock(store, "A") == 5
    assert any("[order=t7] reservation released" in line for line in store.logs)


def test_restock_returns_quantities(store, ledger):
    priced = ledger.reserve_and_commit([CartLine("C", 5)], ref="order=t9")

    ledger.restock(priced, ref="order=t9")

    assert _stock(store, "C") == 20


def test_concurrent_checkouts_never_oversell(store, ledger):
    """Twenty threads race for 20 units; each takes 3, so at most 6 succeed."""
    results = []
    lock = threading.Lock()

    def buy():
        try:
            ledger.reserve_and_commit([CartLine("C", 3)], ref="order=race")
            outcome = True
        except InsufficientStock:
            outcome = False
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=buy) for _ in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 6
    assert _stock(store, "C") == 2


class FailingProductStore(InMemoryRecordStore):
    """Product store whose ``fail_on``-th save (counted once armed) raises."""

    def __init__(self):
        super().__init__(Product)
        self.fail_on = None
        self.saves = 0

    def save(self, record):
        if self.fail_on is not None:
            self.saves += 1
            if self.saves == self.fail_on:
                raise OSError("disk full")
        super().save(record)


def test_failed_write_rolls_the_whole_commit_back():
    products = FailingProductStore()
    store = Store(products=products)
    store.add_product("A", price=1000, stock=5)
    store.add_product("C", price=450, stock=5)
    ledger = InventoryLedger(store)
    products.fail_on = 2

    with pytest.raises(OSError):
        ledger.reserve_and_commit([CartLine("A", 2), CartLine("C", 1)], ref="order=t10")

    assert _stock(store, "A") == 5
    assert _stock(store, "C") == 5
    assert ledger.open_reservations() == []
    assert ledger.available("A") == 5
    assert any("rolled back" in line for line in store.logs)

    # The ledger is usable again once the store recovers.
    ledger.reserve_and_commit([CartLine("A", 2)], ref="order=t11")
    assert _stock(store, "A") == 3
