from __future__ import annotations

import argparse
import random
from dataclasses import replace

from rx_lifecycle.clock import ManualClock
from rx_lifecycle.config import Settings
from rx_lifecycle.engine import PharmacyEngine
from rx_lifecycle.errors import LifecycleError
from rx_lifecycle.events import EventRecorder, OrderStatusChanged
from rx_lifecycle.logging_config import configure_logging
from rx_lifecycle.models import CartLine, PrescriptionStatus, ShippingAddress
from rx_lifecycle.store import Store
from rx_lifecycle.verifier import SimulatedVerifier


def seed(store: Store) -> None:
    if store.products.all():
        return
    store.add_product("prod-vitc", price=1599, stock=100, name="Vitamin C 1000mg")
    store.add_product("prod-omega3", price=2450, stock=75, name="Omega-3 Fish Oil")
    store.add_product("prod-thermo", price=3999, stock=30, name="Digital Thermometer")
    store.add_product("prod-masks", price=999, stock=0, name="Face Masks (50 pack)")


def main() -> None:
    p = argparse.ArgumentParser(description="Run one order and one prescription through the lifecycle engine.")
    p.add_argument("--sku", type=str, default="prod-vitc")
    p.add_argument("--qty", type=int, default=2)
    p.add_argument("--payment", type=str, default="card")
    p.add_argument("--cancel", action="store_true", help="Cancel the order right after placing it")
    p.add_argument("--refill", action="store_true", help="Request a refill if the prescription gets approved")
    p.add_argument("--seed", type=int, default=None, help="Seed for the simulated verifier")
    p.add_argument("--data-dir", type=str, default=None, help="Keep records in JSON files under this directory")
    p.add_argument("--log-dir", type=str, default=None)
    p.add_argument("--text-logs", action="store_true", help="Plain text logs instead of JSON")
    args = p.parse_args()

    settings = Settings.from_env()
    if args.data_dir:
        settings = replace(settings, data_dir=args.data_dir)
    configure_logging(settings.log_level, log_dir=args.log_dir, json_format=not args.text_logs)

    clock = ManualClock()
    verifier = SimulatedVerifier(
        clock,
        secret=settings.attestation_secret,
        verifier_id=settings.verifier_id,
        rng=random.Random(args.seed),
    )
    recorder = EventRecorder()
    engine = PharmacyEngine(settings, clock=clock, verifier=verifier)
    engine.bus.subscribe(recorder)
    seed(engine.store)
    engine.start(auto_refill=False)

    address = ShippingAddress(
        full_name="Jane Doe",
        address_line1="12 Harbour Road",
        city="Lagos",
        state="Lagos",
        country="Nigeria",
    )
    try:
        order = engine.orders.place_order([CartLine(args.sku, args.qty)], address, args.payment)
        print(f"placed {order.id} total={order.total}")
        if args.cancel:
            engine.orders.cancel_order(order.id)
    except LifecycleError as e:
        print("order failed:", e)
        order = None

    rx = engine.prescriptions.submit("upload://prescription.jpg", file_name="prescription.jpg", content=b"demo")
    horizon = settings.payment_delay + settings.shipping_delay + settings.delivery_delay
    horizon = max(horizon, settings.verification_delay_max) + 1
    clock.advance(horizon)

    if args.refill and engine.prescriptions.get_prescription(rx.id).status is PrescriptionStatus.APPROVED:
        engine.prescriptions.request_refill(rx.id)
        clock.advance(settings.verification_delay_max + 1)

    print("\n=== EVENTS ===")
    for event in recorder.events:
        old = event.old_status.value if event.old_status else "-"
        line = f"{event.timestamp.isoformat()} {type(event).__name__}: {old} -> {event.new_status.value}"
        if isinstance(event, OrderStatusChanged):
            line += f" ({event.message})"
        print(line)

    print("\n=== RESULT ===")
    if order is not None:
        print("order:", engine.orders.get_order(order.id))
    print("prescription:", engine.prescriptions.get_prescription(rx.id))
    print("stock:", {product.id: engine.ledger.available(product.id) for product in engine.store.products.all()})
    engine.shutdown()


if __name__ == "__main__":
    main()
