from __future__ import annotations

import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from rx_lifecycle.attestation import issue_attestation
from rx_lifecycle.clock import Clock
from rx_lifecycle.models import RESOLUTION_OUTCOMES, Prescription, PrescriptionStatus, dump_datetime

logger = logging.getLogger(__name__)

UNCLEAR_IMAGE_REASON = "The provided image was not clear enough to verify. Please upload a new one."
CLARIFICATION_REASON = "The pharmacist needs more information about this prescription. Please check your messages."


@dataclass(slots=True, frozen=True)
class Verdict:
    outcome: PrescriptionStatus
    payload: str  # the approval artifact, or the reason for anything else
    verifier_id: str

    @classmethod
    def approve(cls, artifact: str, verifier_id: str) -> "Verdict":
        return cls(PrescriptionStatus.APPROVED, artifact, verifier_id)

    @classmethod
    def reject(cls, reason: str, verifier_id: str) -> "Verdict":
        return cls(PrescriptionStatus.REJECTED, reason, verifier_id)

    @classmethod
    def clarify(cls, reason: str, verifier_id: str) -> "Verdict":
        return cls(PrescriptionStatus.NEEDS_CLARIFICATION, reason, verifier_id)


class Verifier(ABC):
    """
    Decides the outcome of a review cycle.

    ``verify`` returns a :class:`Verdict` when it can decide on the spot, or
    ``None`` when the decision will arrive later through
    ``PrescriptionPipeline.resolve``. Raising means "try again later".
    """

    verifier_id: str

    @abstractmethod
    def verify(self, prescription: Prescription) -> Optional[Verdict]: ...


class SimulatedVerifier(Verifier):
    """Stand-in for OCR plus pharmacist review: picks an outcome uniformly at random."""

    def __init__(self, clock: Clock, secret: str, verifier_id: str = "pharm-007", rng: Optional[random.Random] = None):
        self.clock = clock
        self.secret = secret
        self.verifier_id = verifier_id
        self.rng = rng or random.Random()

    def verify(self, prescription: Prescription) -> Optional[Verdict]:
        outcome = self.rng.choice(RESOLUTION_OUTCOMES)
        logger.debug("simulated review of %s -> %s", prescription.id, outcome.value)
        if outcome is PrescriptionStatus.APPROVED:
            artifact = issue_attestation(
                prescription.id,
                self.verifier_id,
                self.clock.now(),
                prescription.content_sha256,
                self.secret,
            )
            return Verdict.approve(artifact, self.verifier_id)
        if outcome is PrescriptionStatus.REJECTED:
            return Verdict.reject(UNCLEAR_IMAGE_REASON, self.verifier_id)
        return Verdict.clarify(CLARIFICATION_REASON, self.verifier_id)


class ExternalVerifier(Verifier):
    """
    Hands the review to an outside party (pharmacist queue, OCR vendor, ...).

    ``transport`` receives a plain dict describing the request. The reviewer
    reports back by calling ``PrescriptionPipeline.resolve``.
    """

    def __init__(self, transport: Callable[[Dict[str, Any]], None], verifier_id: str = "external"):
        self.transport = transport
        self.verifier_id = verifier_id

    def verify(self, prescription: Prescription) -> Optional[Verdict]:
        request = {
            "prescription_id": prescription.id,
            "file_ref": prescription.file_ref,
            "file_name": prescription.file_name,
            "content_sha256": prescription.content_sha256,
            "cycle": prescription.cycle,
            "submitted_at": dump_datetime(prescription.submitted_at),
            "refill": prescription.status is PrescriptionStatus.REFILL_REQUESTED,
        }
        self.transport(request)
        logger.info("review request for %s sent to %s", prescription.id, self.verifier_id)
        return None
