"""Tests for the verifier collaborators and their attestations."""
import random

import pytest

from rx_lifecycle.attestation import AttestationError, read_attestation, sha256_hex
from rx_lifecycle.events import EventBus
from rx_lifecycle.models import RESOLUTION_OUTCOMES, PrescriptionStatus
from rx_lifecycle.prescriptions import PrescriptionPipeline
from rx_lifecycle.verifier import UNCLEAR_IMAGE_REASON, ExternalVerifier, SimulatedVerifier

SECRET = "test-secret"


def test_simulated_verifier_covers_every_outcome(store, clock, settings):
    verifier = SimulatedVerifier(clock, secret=SECRET, rng=random.Random(7))
    pipeline = PrescriptionPipeline(store, EventBus(), clock, verifier, settings)

    submitted = [pipeline.submit(f"upload://{i}.jpg", content=f"scan {i}".encode()) for i in range(40)]
    clock.advance(8)

    outcomes = {pipeline.get_prescription(rx.id).status for rx in submitted}
    assert outcomes == set(RESOLUTION_OUTCOMES)
    for rx in submitted:
        stored = pipeline.get_prescription(rx.id)
        assert (stored.approval_artifact is None) != (stored.rejection_reason is None)
        if stored.status is PrescriptionStatus.REJECTED:
            assert stored.rejection_reason == UNCLEAR_IMAGE_REASON


def test_approval_artifact_binds_the_upload(store, clock, settings):
    verifier = SimulatedVerifier(clock, secret=SECRET, verifier_id="pharm-007", rng=random.Random(0))
    pipeline = PrescriptionPipeline(store, EventBus(), clock, verifier, settings)
    submitted = [pipeline.submit(f"upload://{i}.jpg", content=f"scan {i}".encode()) for i in range(40)]
    clock.advance(8)

    approved = [
        pipeline.get_prescription(rx.id)
        for rx in submitted
        if pipeline.get_prescription(rx.id).status is PrescriptionStatus.APPROVED
    ]
    assert approved
    rx = approved[0]
    claims = read_attestation(rx.approval_artifact, SECRET)

    assert claims["sub"] == rx.id
    assert claims["verifier_id"] == "pharm-007"
    assert claims["file_sha256"] == rx.content_sha256
    assert claims["iat"] <= int(clock.now().timestamp())
    with pytest.raises(AttestationError):
        read_attestation(rx.approval_artifact, "other-secret")


def test_external_verifier_hands_off_and_waits(store, clock, settings):
    sent = []
    verifier = ExternalVerifier(sent.append, verifier_id="pharmacist-queue")
    pipeline = PrescriptionPipeline(store, EventBus(), clock, verifier, settings)

    rx = pipeline.submit("upload://scan.pdf", file_name="scan.pdf", content=b"pdf")
    clock.advance(8)

    assert pipeline.get_prescription(rx.id).status is PrescriptionStatus.PENDING
    assert sent == [
        {
            "prescription_id": rx.id,
            "file_ref": "upload://scan.pdf",
            "file_name": "scan.pdf",
            "content_sha256": sha256_hex(b"pdf"),
            "cycle": 0,
            "submitted_at": rx.submitted_at.isoformat(),
            "refill": False,
        }
    ]

    resolved = pipeline.resolve(rx.id, PrescriptionStatus.REJECTED, "Prescription has expired.")
    assert resolved.resolved_by == "pharmacist-queue"


def test_malformed_attestation():
    with pytest.raises(AttestationError):
        read_attestation("not-a-token", SECRET)
