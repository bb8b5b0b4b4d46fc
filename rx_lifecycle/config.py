from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from typing import Mapping, Optional, Tuple

from rx_lifecycle.models import OrderStatus

# Field name -> environment variable.
ENV_VARS = {
    "data_dir": "RX_DATA_DIR",
    "payment_delay": "RX_PAYMENT_DELAY",
    "shipping_delay": "RX_SHIPPING_DELAY",
    "delivery_delay": "RX_DELIVERY_DELAY",
    "verification_delay_min": "RX_VERIFY_DELAY_MIN",
    "verification_delay_max": "RX_VERIFY_DELAY_MAX",
    "verification_timeout": "RX_VERIFY_TIMEOUT",
    "verifier_max_attempts": "RX_VERIFIER_MAX_ATTEMPTS",
    "verifier_backoff_base": "RX_VERIFIER_BACKOFF_BASE",
    "verifier_backoff_max": "RX_VERIFIER_BACKOFF_MAX",
    "shipping_cost": "RX_SHIPPING_COST",
    "tracking_url_base": "RX_TRACKING_URL_BASE",
    "auto_refill_interval": "RX_AUTO_REFILL_INTERVAL",
    "verifier_id": "RX_VERIFIER_ID",
    "attestation_secret": "RX_ATTESTATION_SECRET",
    "log_level": "RX_LOG_LEVEL",
}


@dataclass(frozen=True)
class Settings:
    """Engine settings. Delays are in seconds, money in minor currency units."""

    data_dir: Optional[str] = None
    # Step durations of the order pipeline; each counts from the previous step.
    payment_delay: float = 5.0
    shipping_delay: float = 5.0
    delivery_delay: float = 10.0
    verification_delay_min: float = 5.0
    verification_delay_max: float = 8.0
    # How long an outside reviewer may take before the attempt counts as failed.
    verification_timeout: float = 86400.0
    verifier_max_attempts: int = 3
    verifier_backoff_base: float = 1.0
    verifier_backoff_max: float = 30.0
    shipping_cost: int = 2500
    tracking_url_base: str = "https://example-courier.com/track"
    auto_refill_interval: float = 3600.0
    verifier_id: str = "pharm-007"
    attestation_secret: str = "dev-only-attestation-secret"
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        for name in ("payment_delay", "shipping_delay", "delivery_delay", "verification_delay_min"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        if self.verification_delay_max < self.verification_delay_min:
            raise ValueError("verification_delay_max must be >= verification_delay_min")
        if self.verifier_max_attempts < 1:
            raise ValueError("verifier_max_attempts must be >= 1")
        if self.shipping_cost < 0:
            raise ValueError("shipping_cost must be >= 0")
        if self.verification_timeout <= 0:
            raise ValueError("verification_timeout must be > 0")
        if self.auto_refill_interval <= 0:
            raise ValueError("auto_refill_interval must be > 0")
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ValueError(f"unknown log level {self.log_level!r}")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        environ = os.environ if environ is None else environ
        values = {}
        for f in fields(cls):
            var = ENV_VARS[f.name]
            raw = environ.get(var)
            if raw is None or raw == "":
                continue
            try:
                if f.type in ("int", int):
                    values[f.name] = int(raw)
                elif f.type in ("float", float):
                    values[f.name] = float(raw)
                else:
                    values[f.name] = raw
            except ValueError:
                raise ValueError(f"{var}={raw!r} is not a valid {f.type}") from None
        return cls(**values)

    def order_offsets(self) -> Tuple[Tuple[OrderStatus, float], ...]:
        """Seconds after placement at which each automatic status becomes due."""
        paid = self.payment_delay
        shipped = paid + self.shipping_delay
        delivered = shipped + self.delivery_delay
        return (
            (OrderStatus.PAID, paid),
            (OrderStatus.SHIPPED, shipped),
            (OrderStatus.DELIVERED, delivered),
        )
