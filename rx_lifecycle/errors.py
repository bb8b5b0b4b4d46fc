from __future__ import annotations


class LifecycleError(Exception):
    """Base class for errors the engine hands back to the caller."""


class RecordNotFound(LifecycleError, KeyError):
    def __init__(self, kind: str, record_id: str):
        super().__init__(f"{kind} {record_id} not found")
        self.kind = kind
        self.record_id = record_id

    def __str__(self) -> str:
        return self.args[0]


class InsufficientStock(LifecycleError):
    def __init__(self, product_id: str, requested: int, available: int):
        if available <= 0:
            message = f"Sorry, {product_id} is out of stock."
        else:
            message = f"Sorry, only {available} left in stock for {product_id}."
        super().__init__(message)
        self.product_id = product_id
        self.requested = requested
        self.available = available


class InvalidStateTransition(LifecycleError):
    def __init__(self, record_id: str, current: object, attempted: str):
        current_label = getattr(current, "value", current)
        super().__init__(f"{record_id}: cannot {attempted} while status is {current_label}")
        self.record_id = record_id
        self.current = current
        self.attempted = attempted


class RefillNotAllowed(LifecycleError):
    def __init__(self, prescription_id: str, current: object):
        current_label = getattr(current, "value", current)
        super().__init__(f"Refill is only available for approved prescriptions ({prescription_id} is {current_label})")
        self.prescription_id = prescription_id
        self.current = current


class NotAllowed(LifecycleError):
    pass
