"""Compact HS256 attestations for approved prescriptions.

The token has the familiar ``header.payload.signature`` shape (base64url,
no padding) and carries ``sub`` (prescription id), ``verifier_id``, ``iat``
and ``file_sha256``. Only verifiers create or read these; the pipeline
stores the string as-is.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from datetime import datetime
from typing import Any, Dict, Optional


class AttestationError(ValueError):
    pass


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


def _sign(signing_input: bytes, secret: str) -> str:
    return _b64encode(hmac.new(secret.encode("utf-8"), signing_input, hashlib.sha256).digest())


def issue_attestation(
    prescription_id: str,
    verifier_id: str,
    issued_at: datetime,
    file_sha256: Optional[str],
    secret: str,
) -> str:
    header = {"alg": "HS256", "typ": "JWT"}
    claims = {
        "sub": prescription_id,
        "verifier_id": verifier_id,
        "iat": int(issued_at.timestamp()),
        "file_sha256": file_sha256,
    }
    segments = [
        _b64encode(json.dumps(header, separators=(",", ":")).encode("utf-8")),
        _b64encode(json.dumps(claims, separators=(",", ":"), sort_keys=True).encode("utf-8")),
    ]
    signing_input = ".".join(segments).encode("ascii")
    return ".".join(segments + [_sign(signing_input, secret)])


def read_attestation(token: str, secret: str) -> Dict[str, Any]:
    """Check the signature and return the claims."""
    try:
        header_b64, claims_b64, signature = token.split(".")
    except ValueError:
        raise AttestationError("malformed attestation") from None
    expected = _sign(f"{header_b64}.{claims_b64}".encode("ascii"), secret)
    if not hmac.compare_digest(expected, signature):
        raise AttestationError("attestation signature mismatch")
    try:
        return json.loads(_b64decode(claims_b64))
    except ValueError:
        raise AttestationError("attestation claims are not valid JSON") from None


def sha256_hex(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()
