from __future__ import annotations

import logging
import random
import threading
import uuid
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Set, Union

from rx_lifecycle.attestation import sha256_hex
from rx_lifecycle.clock import Clock, ScheduledCall
from rx_lifecycle.config import Settings
from rx_lifecycle.errors import InvalidStateTransition, NotAllowed, RecordNotFound, RefillNotAllowed
from rx_lifecycle.events import EventBus, PrescriptionStatusChanged
from rx_lifecycle.models import RESOLUTION_OUTCOMES, Prescription, PrescriptionStatus
from rx_lifecycle.store import Store
from rx_lifecycle.verifier import Verifier

logger = logging.getLogger(__name__)

SYSTEM_VERIFIER_ID = "system"
SYSTEM_CLARIFICATION_REASON = (
    "Automatic verification is unavailable right now. "
    "A pharmacist will review this prescription and contact you."
)


class PrescriptionPipeline:
    """
    Review cycles for uploaded prescriptions.

    Pending (or Refill Requested) -> Approved | Rejected | Needs Clarification.
    The verifier is asked once the randomized review delay elapses; whoever
    resolves first wins and any later resolve for the same cycle is refused.
    """

    def __init__(
        self,
        store: Store,
        bus: EventBus,
        clock: Clock,
        verifier: Verifier,
        settings: Optional[Settings] = None,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.bus = bus
        self.clock = clock
        self.verifier = verifier
        self.settings = settings or Settings()
        self.rng = rng or random.Random()
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._timers: Dict[str, ScheduledCall] = {}
        self._in_flight: Set[str] = set()
        self._in_flight_guard = threading.Lock()

    @contextmanager
    def _locked(self, prescription_id: str, must_exist: bool = True) -> Iterator[None]:
        """
        Hold the record's lock for the duration of the block.

        Locks exist only for known records, and are dropped again once the
        record is settled (Rejected / Needs Clarification): nothing changes
        those any more, so the map tracks only live prescriptions.
        """
        with self._locks_guard:
            lock = self._locks.get(prescription_id)
            if lock is None:
                if must_exist and prescription_id not in self.store.prescriptions:
                    raise RecordNotFound("prescription", prescription_id)
                lock = self._locks[prescription_id] = threading.RLock()
        with lock:
            try:
                yield
            finally:
                rx = self.store.prescriptions.get(prescription_id)
                if rx is not None and rx.status.is_settled:
                    with self._locks_guard:
                        self._locks.pop(prescription_id, None)

    def _load(self, prescription_id: str) -> Prescription:
        rx = self.store.prescriptions.get(prescription_id)
        if rx is None:
            raise RecordNotFound("prescription", prescription_id)
        return rx

    def _publish(self, rx: Prescription, old: Optional[PrescriptionStatus]) -> None:
        self.bus.publish(
            PrescriptionStatusChanged(
                prescription_id=rx.id,
                old_status=old,
                new_status=rx.status,
                timestamp=self.clock.now(),
                artifact=rx.approval_artifact if rx.status is PrescriptionStatus.APPROVED else None,
                reason=rx.rejection_reason,
            )
        )

    # ----- queries -----

    def get_prescription(self, prescription_id: str) -> Prescription:
        return self._load(prescription_id)

    def list_prescriptions(self) -> List[Prescription]:
        return sorted(self.store.prescriptions.all(), key=lambda rx: rx.submitted_at, reverse=True)

    # ----- commands -----

    def submit(self, file_ref: str, file_name: Optional[str] = None, content: Optional[bytes] = None) -> Prescription:
        if not file_ref:
            raise ValueError("file_ref is required")
        rx = Prescription(
            id=f"px-{uuid.uuid4().hex[:12]}",
            file_ref=file_ref,
            file_name=file_name,
            content_sha256=sha256_hex(content) if content is not None else None,
            submitted_at=self.clock.now(),
        )
        with self._locked(rx.id, must_exist=False):
            self.store.prescriptions.save(rx)
            self.store.log(f"[rx={rx.id}] SUBMITTED file={file_name or file_ref}")
            self._publish(rx, None)
            self._schedule_review(rx, attempt=1, delay=self._review_delay())
        return rx

    def resolve(
        self,
        prescription_id: str,
        outcome: Union[PrescriptionStatus, str],
        payload: str,
        verifier_id: Optional[str] = None,
    ) -> Prescription:
        """
        Record the outcome of the current review cycle.

        ``payload`` is the approval artifact when ``outcome`` is Approved and
        the reason shown to the customer otherwise.
        """
        return self._resolve(prescription_id, outcome, payload, verifier_id, cycle=None)

    def request_refill(self, prescription_id: str) -> Prescription:
        with self._locked(prescription_id):
            rx = self._load(prescription_id)
            if rx.status is not PrescriptionStatus.APPROVED:
                self.store.log(f"[rx={prescription_id}] REFILL REFUSED status={rx.status.value}")
                raise RefillNotAllowed(prescription_id, rx.status)
            old = rx.status
            rx.status = PrescriptionStatus.REFILL_REQUESTED
            rx.cycle += 1
            self._publish(rx, old)
            self.store.prescriptions.save(rx)
            self.store.log(f"[rx={rx.id}] STATUS {old.value} -> {rx.status.value} cycle={rx.cycle}")
            self._schedule_review(rx, attempt=1, delay=self._review_delay())
            return rx

    def set_auto_refill(self, prescription_id: str, enabled: bool) -> Prescription:
        with self._locked(prescription_id):
            rx = self._load(prescription_id)
            if rx.status is not PrescriptionStatus.APPROVED:
                raise NotAllowed(
                    f"Auto-refill can only be changed on approved prescriptions ({prescription_id} is {rx.status.value})"
                )
            rx.auto_refill = bool(enabled)
            self.store.prescriptions.save(rx)
            self.store.log(f"[rx={rx.id}] AUTO-REFILL {'on' if rx.auto_refill else 'off'}")
            return rx

    def sweep_auto_refills(self) -> List[Prescription]:
        """Request a refill for every approved prescription that has auto-refill on."""
        refilled: List[Prescription] = []
        for rx in self.store.prescriptions.all():
            if rx.status is not PrescriptionStatus.APPROVED or not rx.auto_refill:
                continue
            with self._in_flight_guard:
                if rx.id in self._in_flight:
                    continue
                self._in_flight.add(rx.id)
            try:
                refilled.append(self.request_refill(rx.id))
            except RefillNotAllowed:
                # Another caller moved it on after we listed it.
                continue
            finally:
                with self._in_flight_guard:
                    self._in_flight.discard(rx.id)
        if refilled:
            logger.info("auto-refill sweep requested %d refills", len(refilled))
        return refilled

    def resume(self) -> int:
        """Re-arm the review of every record still waiting for an outcome."""
        resumed = 0
        for rx in self.store.prescriptions.all():
            if not rx.status.is_awaiting_review:
                continue
            with self._locked(rx.id):
                self._schedule_review(rx, attempt=1, delay=self._review_delay())
            resumed += 1
        if resumed:
            logger.info("resumed %d prescriptions awaiting review", resumed)
        return resumed

    def shutdown(self) -> None:
        for prescription_id in list(self._timers):
            timer = self._timers.pop(prescription_id, None)
            if timer is not None:
                timer.cancel()

    # ----- internals -----

    def _review_delay(self) -> float:
        return self.rng.uniform(self.settings.verification_delay_min, self.settings.verification_delay_max)

    def _backoff_delay(self, attempt: int) -> float:
        # attempt is 1-based; 1.0, 2.0, 4.0, ... up to the cap
        return min(self.settings.verifier_backoff_base * (2 ** (attempt - 1)), self.settings.verifier_backoff_max)

    def _schedule_review(self, rx: Prescription, attempt: int, delay: float) -> None:
        self._arm(rx, delay, self._on_review_due, attempt)

    def _arm(self, rx: Prescription, delay: float, callback: Callable[..., None], attempt: int) -> None:
        previous = self._timers.pop(rx.id, None)
        if previous is not None:
            previous.cancel()
        try:
            self._timers[rx.id] = self.clock.call_later(delay, callback, rx.id, rx.cycle, attempt)
        except Exception:
            # Still awaiting review on disk; resume() picks it up again.
            logger.exception("could not schedule review of %s", rx.id, extra={"prescription_id": rx.id})
            self.store.log(f"[rx={rx.id}] SCHEDULE FAILED")

    def _current(self, prescription_id: str, cycle: int) -> Optional[Prescription]:
        """The record, if it is still waiting on review cycle ``cycle``. Caller holds the lock."""
        rx = self.store.prescriptions.get(prescription_id)
        if rx is None or not rx.status.is_awaiting_review or rx.cycle != cycle:
            return None
        return rx

    def _on_review_due(self, prescription_id: str, cycle: int, attempt: int) -> None:
        with self._locked(prescription_id):
            self._timers.pop(prescription_id, None)
            rx = self._current(prescription_id, cycle)
            if rx is None:
                return
        self.store.log(f"[rx={prescription_id}] VERIFY attempt={attempt} verifier={self.verifier.verifier_id}")
        try:
            verdict = self.verifier.verify(rx)
            if verdict is None:
                self.store.log(f"[rx={prescription_id}] VERIFY handed off to {self.verifier.verifier_id}")
                self._await_answer(prescription_id, cycle, attempt)
                return
            self._resolve(prescription_id, verdict.outcome, verdict.payload, verdict.verifier_id, cycle=cycle)
        except InvalidStateTransition:
            # Resolved by someone else while the verifier was working.
            self.store.log(f"[rx={prescription_id}] VERIFY result dropped, cycle already resolved")
        except Exception as e:
            self._verification_failed(prescription_id, cycle, attempt, e)

    def _await_answer(self, prescription_id: str, cycle: int, attempt: int) -> None:
        """Give the outside reviewer ``verification_timeout`` seconds to call :meth:`resolve`."""
        with self._locked(prescription_id):
            rx = self._current(prescription_id, cycle)
            if rx is not None:
                self._arm(rx, self.settings.verification_timeout, self._on_answer_overdue, attempt)

    def _on_answer_overdue(self, prescription_id: str, cycle: int, attempt: int) -> None:
        with self._locked(prescription_id):
            self._timers.pop(prescription_id, None)
            if self._current(prescription_id, cycle) is None:
                return
        timeout = self.settings.verification_timeout
        self.store.log(f"[rx={prescription_id}] VERIFY TIMED OUT after {timeout:g}s")
        error = TimeoutError(f"no answer from {self.verifier.verifier_id} within {timeout:g}s")
        self._verification_failed(prescription_id, cycle, attempt, error)

    def _verification_failed(self, prescription_id: str, cycle: int, attempt: int, error: Exception) -> None:
        max_attempts = self.settings.verifier_max_attempts
        logger.warning(
            "verifier %s failed for %s (attempt %d/%d): %s",
            self.verifier.verifier_id,
            prescription_id,
            attempt,
            max_attempts,
            error,
            extra={"prescription_id": prescription_id},
        )
        self.store.log(f"[rx={prescription_id}] VERIFY FAILED attempt={attempt}/{max_attempts}: {error}")
        if attempt < max_attempts:
            with self._locked(prescription_id):
                rx = self._current(prescription_id, cycle)
                if rx is not None:
                    self._schedule_review(rx, attempt=attempt + 1, delay=self._backoff_delay(attempt))
            return
        try:
            self._resolve(
                prescription_id,
                PrescriptionStatus.NEEDS_CLARIFICATION,
                SYSTEM_CLARIFICATION_REASON,
                SYSTEM_VERIFIER_ID,
                cycle=cycle,
            )
        except InvalidStateTransition:
            self.store.log(f"[rx={prescription_id}] fallback skipped, cycle already resolved")

    def _resolve(
        self,
        prescription_id: str,
        outcome: Union[PrescriptionStatus, str],
        payload: str,
        verifier_id: Optional[str],
        cycle: Optional[int],
    ) -> Prescription:
        outcome = PrescriptionStatus(outcome)
        if outcome not in RESOLUTION_OUTCOMES:
            raise ValueError(f"{outcome.value} is not a review outcome")
        if not isinstance(payload, str) or not payload.strip():
            what = "an approval artifact" if outcome is PrescriptionStatus.APPROVED else "a reason"
            raise ValueError(f"{outcome.value} requires {what}")

        with self._locked(prescription_id):
            rx = self._load(prescription_id)
            if not rx.status.is_awaiting_review or (cycle is not None and rx.cycle != cycle):
                self.store.log(f"[rx={prescription_id}] RESOLVE REFUSED status={rx.status.value}")
                raise InvalidStateTransition(prescription_id, rx.status, f"resolve as {outcome.value}")

            old = rx.status
            rx.status = outcome
            if outcome is PrescriptionStatus.APPROVED:
                rx.approval_artifact = payload
                rx.rejection_reason = None
            else:
                rx.approval_artifact = None
                rx.rejection_reason = payload
            rx.resolved_at = self.clock.now()
            rx.resolved_by = verifier_id or self.verifier.verifier_id

            timer = self._timers.pop(prescription_id, None)
            if timer is not None:
                timer.cancel()
            self._publish(rx, old)
            self.store.prescriptions.save(rx)
            self.store.log(f"[rx={rx.id}] STATUS {old.value} -> {outcome.value} by={rx.resolved_by}")
            return rx


class AutoRefillSweeper:
    """Calls :meth:`PrescriptionPipeline.sweep_auto_refills` every ``interval`` seconds."""

    def __init__(self, pipeline: PrescriptionPipeline, clock: Clock, interval: float):
        self.pipeline = pipeline
        self.clock = clock
        self.interval = interval
        self._call: Optional[ScheduledCall] = None
        self._running = False
        self._lock = threading.Lock()

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            self._arm()

    def stop(self) -> None:
        with self._lock:
            self._running = False
            if self._call is not None:
                self._call.cancel()
                self._call = None

    def _arm(self) -> None:
        self._call = self.clock.call_later(self.interval, self._tick)

    def _tick(self) -> None:
        try:
            self.pipeline.sweep_auto_refills()
        finally:
            with self._lock:
                if self._running:
                    self._arm()
