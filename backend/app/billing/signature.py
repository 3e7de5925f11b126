"""Verification of provider webhook signatures.

The provider signs ``"<timestamp>.<raw body>"`` with HMAC-SHA256 using the
endpoint's signing secret and sends the result in a header shaped like::

    t=1700000000,v1=5257a869e7ecebeda32affa62cdca3fa51cad7e77a0e56ff536d0ce8e108d8bd

Several ``v1`` entries may be present while a secret is being rolled.
Other schemes (``v0``) are ignored.
"""
from __future__ import annotations

import hashlib
import hmac
import time
from typing import List, Optional, Tuple, Union

from .exceptions import ExpiredSignatureError, MalformedSignatureError, SignatureMismatchError

SIGNATURE_SCHEME = "v1"
DEFAULT_TOLERANCE_SECONDS = 300


def _secret_bytes(secret: Union[bytes, str]) -> bytes:
    if isinstance(secret, str):
        secret = secret.encode("utf-8")
    if not secret:
        raise ValueError("webhook signing secret must be provided")
    return secret


def parse_signature_header(signature_header: str) -> Tuple[int, List[str]]:
    """Split a signature header into its timestamp and ``v1`` signatures."""

    timestamp: Optional[int] = None
    signatures: List[str] = []
    for item in (signature_header or "").split(","):
        key, sep, value = item.strip().partition("=")
        if not sep or not value:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError as exc:
                raise MalformedSignatureError("Signature timestamp is not an integer") from exc
        elif key == SIGNATURE_SCHEME:
            signatures.append(value)

    if timestamp is None:
        raise MalformedSignatureError("Signature header has no timestamp")
    if not signatures:
        raise MalformedSignatureError(f"Signature header has no {SIGNATURE_SCHEME} signature")
    return timestamp, signatures


def compute_signature(raw_body: bytes, secret: Union[bytes, str], timestamp: int) -> str:
    """Return the hex digest the provider would send for ``raw_body``."""

    signed_payload = str(timestamp).encode("ascii") + b"." + raw_body
    return hmac.new(_secret_bytes(secret), signed_payload, hashlib.sha256).hexdigest()


def generate_signature_header(
    raw_body: bytes,
    secret: Union[bytes, str],
    timestamp: Optional[int] = None,
) -> str:
    """Build a valid signature header, e.g. for replaying events locally."""

    signed_at = int(time.time()) if timestamp is None else int(timestamp)
    signature = compute_signature(raw_body, secret, signed_at)
    return f"t={signed_at},{SIGNATURE_SCHEME}={signature}"


def verify_signature(
    raw_body: bytes,
    signature_header: str,
    secret: Union[bytes, str],
    *,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> int:
    """Authenticate ``raw_body`` and return the signed timestamp.

    Raises :class:`MalformedSignatureError` when the header cannot be parsed,
    :class:`SignatureMismatchError` when no signature matches, and
    :class:`ExpiredSignatureError` when a matching signature is older than
    ``tolerance_seconds``.
    """

    timestamp, signatures = parse_signature_header(signature_header)
    expected = compute_signature(raw_body, secret, timestamp).encode("ascii")

    matched = False
    for candidate in signatures:
        # Check every candidate so timing does not reveal which one matched.
        if hmac.compare_digest(expected, candidate.strip().lower().encode("utf-8", "replace")):
            matched = True
    if not matched:
        raise SignatureMismatchError("No signature matches the payload")

    current = time.time() if now is None else now
    if tolerance_seconds > 0 and timestamp < current - tolerance_seconds:
        raise ExpiredSignatureError("Signature timestamp is outside the tolerance window")
    return timestamp


__all__ = [
    "DEFAULT_TOLERANCE_SECONDS",
    "SIGNATURE_SCHEME",
    "compute_signature",
    "generate_signature_header",
    "parse_signature_header",
    "verify_signature",
]
