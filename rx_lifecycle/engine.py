from __future__ import annotations

import logging
from typing import Optional

from rx_lifecycle.clock import Clock, SystemClock
from rx_lifecycle.config import Settings
from rx_lifecycle.events import EventBus
from rx_lifecycle.inventory import InventoryLedger
from rx_lifecycle.orders import OrderLifecycle
from rx_lifecycle.prescriptions import AutoRefillSweeper, PrescriptionPipeline
from rx_lifecycle.store import Store
from rx_lifecycle.verifier import SimulatedVerifier, Verifier

logger = logging.getLogger(__name__)


class PharmacyEngine:
    """
    Builds and owns every lifecycle component for one process.

    Construct once at start-up, call :meth:`start` to pick up work left by a
    previous run, and :meth:`shutdown` before exiting. Also usable as a
    context manager.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[Store] = None,
        clock: Optional[Clock] = None,
        verifier: Optional[Verifier] = None,
        bus: Optional[EventBus] = None,
    ):
        self.settings = settings or Settings()
        if store is None:
            store = Store.in_directory(self.settings.data_dir) if self.settings.data_dir else Store()
        self.store = store
        self.clock = clock or SystemClock()
        self.bus = bus or EventBus()
        self.verifier = verifier or SimulatedVerifier(
            self.clock,
            secret=self.settings.attestation_secret,
            verifier_id=self.settings.verifier_id,
        )
        self.ledger = InventoryLedger(self.store)
        self.orders = OrderLifecycle(self.store, self.ledger, self.bus, self.clock, self.settings)
        self.prescriptions = PrescriptionPipeline(self.store, self.bus, self.clock, self.verifier, self.settings)
        self.sweeper = AutoRefillSweeper(self.prescriptions, self.clock, self.settings.auto_refill_interval)
        self._started = False

    def start(self, auto_refill: bool = True) -> None:
        if self._started:
            return
        orders = self.orders.resume()
        prescriptions = self.prescriptions.resume()
        if auto_refill:
            self.sweeper.start()
        self._started = True
        logger.info("engine started (orders resumed=%d, prescriptions resumed=%d)", orders, prescriptions)

    def shutdown(self) -> None:
        self.sweeper.stop()
        self.orders.shutdown()
        self.prescriptions.shutdown()
        self.clock.shutdown()
        self._started = False
        logger.info("engine stopped")

    def __enter__(self) -> "PharmacyEngine":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()
