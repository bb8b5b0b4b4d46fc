"""End-to-end runs through the composed engine, and its settings."""
import pytest

from rx_lifecycle.clock import ManualClock
from rx_lifecycle.config import Settings
from rx_lifecycle.engine import PharmacyEngine
from rx_lifecycle.events import EventBus, EventRecorder
from rx_lifecycle.models import CartLine, OrderStatus, PrescriptionStatus, ShippingAddress
from rx_lifecycle.verifier import ExternalVerifier

ADDRESS = ShippingAddress(
    full_name="Ada Obi",
    address_line1="4 Marina Street",
    city="Lagos",
    state="Lagos",
    country="Nigeria",
)


def _engine(tmp_path, clock, sent, **overrides) -> PharmacyEngine:
    settings = Settings(data_dir=str(tmp_path), **overrides)
    engine = PharmacyEngine(settings=settings, clock=clock, verifier=ExternalVerifier(sent.append, "pharmacist-queue"))
    if engine.store.products.get("prod-vitc") is None:
        engine.store.add_product("prod-vitc", price=1500, stock=10, name="Vitamin C 1000mg")
    return engine


def test_engine_picks_up_where_the_last_process_stopped(tmp_path):
    clock = ManualClock()
    sent = []

    with _engine(tmp_path, clock, sent) as first:
        order = first.orders.place_order([CartLine("prod-vitc", 3)], ADDRESS, "card")
        rx = first.prescriptions.submit("upload://scan.jpg", content=b"scan")
        clock.advance(8)

    assert first.store.orders.get(order.id).status is OrderStatus.PAID
    assert [request["prescription_id"] for request in sent] == [rx.id]
    assert clock.pending() == 0

    clock.advance(30)
    second = _engine(tmp_path, clock, sent)
    recorder = EventRecorder()
    second.bus.subscribe(recorder)
    second.start()

    assert second.store.orders.get(order.id).status is OrderStatus.DELIVERED
    assert [e.new_status for e in recorder.for_order(order.id)] == [OrderStatus.SHIPPED, OrderStatus.DELIVERED]
    assert second.store.products.get("prod-vitc").stock == 7

    # The review is still open, so the restarted pipeline asks again.
    clock.advance(8)
    assert len(sent) == 2
    approved = second.prescriptions.resolve(rx.id, PrescriptionStatus.APPROVED, "header.claims.signature")
    assert approved.resolved_by == "pharmacist-queue"
    second.shutdown()


def test_auto_refill_sweep_runs_on_the_interval(tmp_path):
    clock = ManualClock()
    sent = []
    engine = _engine(tmp_path, clock, sent, auto_refill_interval=60)
    engine.start()

    rx = engine.prescriptions.submit("upload://scan.jpg")
    engine.prescriptions.resolve(rx.id, PrescriptionStatus.APPROVED, "header.claims.signature")
    engine.prescriptions.set_auto_refill(rx.id, True)

    clock.advance(60)

    refilled = engine.prescriptions.get_prescription(rx.id)
    assert refilled.status is PrescriptionStatus.REFILL_REQUESTED
    assert refilled.cycle == 1
    assert refilled.approval_artifact == "header.claims.signature"

    clock.advance(8)
    assert sent[-1]["refill"] is True
    assert sent[-1]["cycle"] == 1
    engine.shutdown()


def test_engine_without_data_dir_keeps_records_in_memory():
    clock = ManualClock()
    bus = EventBus()
    engine = PharmacyEngine(clock=clock, bus=bus)
    engine.store.add_product("prod-vitc", price=1500, stock=1)

    order = engine.orders.place_order([CartLine("prod-vitc", 1)], ADDRESS, "card")

    assert engine.bus is bus
    assert engine.verifier.verifier_id == "pharm-007"
    assert engine.orders.get_order(order.id).total == 1500 + 2500
    engine.shutdown()


def test_settings_from_env():
    settings = Settings.from_env(
        {
            "RX_PAYMENT_DELAY": "1",
            "RX_SHIPPING_DELAY": "2.5",
            "RX_VERIFIER_MAX_ATTEMPTS": "5",
            "RX_TRACKING_URL_BASE": "https://courier.test/t",
            "RX_DATA_DIR": "",
        }
    )

    assert settings.payment_delay == 1.0
    assert settings.verifier_max_attempts == 5
    assert settings.tracking_url_base == "https://courier.test/t"
    assert settings.data_dir is None
    assert [offset for _, offset in settings.order_offsets()] == [1.0, 3.5, 13.5]


def test_default_order_offsets_match_the_storefront():
    settings = Settings()

    assert list(settings.order_offsets()) == [
        (OrderStatus.PAID, 5.0),
        (OrderStatus.SHIPPED, 10.0),
        (OrderStatus.DELIVERED, 20.0),
    ]
    assert Settings.from_env({"RX_VERIFY_TIMEOUT": "900"}).verification_timeout == 900.0


@pytest.mark.parametrize(
    "environ",
    [
        {"RX_VERIFIER_MAX_ATTEMPTS": "three"},
        {"RX_PAYMENT_DELAY": "-1"},
        {"RX_VERIFY_DELAY_MIN": "9"},
        {"RX_LOG_LEVEL": "chatty"},
        {"RX_VERIFY_TIMEOUT": "0"},
    ],
)
def test_settings_reject_bad_values(environ):
    with pytest.raises(ValueError):
        Settings.from_env(environ)
