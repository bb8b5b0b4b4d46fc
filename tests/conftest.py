"""Pytest fixtures for the order and prescription lifecycle engine."""

from typing import List, Optional

import pytest

from rx_lifecycle.clock import ManualClock
from rx_lifecycle.config import Settings
from rx_lifecycle.events import EventBus, EventRecorder
from rx_lifecycle.inventory import InventoryLedger
from rx_lifecycle.models import Prescription, ShippingAddress
from rx_lifecycle.orders import OrderLifecycle
from rx_lifecycle.prescriptions import PrescriptionPipeline
from rx_lifecycle.store import Store
from rx_lifecycle.verifier import Verdict, Verifier


class ScriptedVerifier(Verifier):
    """Returns queued verdicts in order; a queued exception is raised instead."""

    verifier_id = "test-pharmacist"

    def __init__(self) -> None:
        self.script: List[object] = []
        self.seen: List[Prescription] = []

    def push(self, item: object) -> None:
        self.script.append(item)

    def verify(self, prescription: Prescription) -> Optional[Verdict]:
        self.seen.append(prescription)
        if not self.script:
            return None
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def settings() -> Settings:
    return Settings(
        payment_delay=5,
        shipping_delay=10,
        delivery_delay=20,
        verification_delay_min=5,
        verification_delay_max=8,
        verifier_max_attempts=3,
        verifier_backoff_base=1,
        verifier_backoff_max=4,
    )


@pytest.fixture
def store() -> Store:
    store = Store()

    store.add_product("A", price=1000, stock=5, name="Vitamin C")
    store.add_product("B", price=2500, stock=0, name="Face Masks")  # Out of stock
    store.add_product("C", price=450, stock=20, name="Bandages")

    return store


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def bus(recorder) -> EventBus:
    bus = EventBus()
    bus.subscribe(recorder)
    return bus


@pytest.fixture
def ledger(store) -> InventoryLedger:
    return InventoryLedger(store)


@pytest.fixture
def orders(store, ledger, bus, clock, settings) -> OrderLifecycle:
    return OrderLifecycle(store, ledger, bus, clock, settings)


@pytest.fixture
def verifier() -> ScriptedVerifier:
    return ScriptedVerifier()


@pytest.fixture
def pipeline(store, bus, clock, verifier, settings) -> PrescriptionPipeline:
    return PrescriptionPipeline(store, bus, clock, verifier, settings)


@pytest.fixture
def address() -> ShippingAddress:
    return ShippingAddress(
        full_name="Ada Obi",
        address_line1="4 Marina Street",
        city="Lagos",
        state="Lagos",
        country="Nigeria",
        postal_code="101001",
    )
