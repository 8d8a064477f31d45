"""Webhook signature utilities.

Provides HMAC-SHA256 signing and verification for webhook payloads,
used to authenticate inbound calls and to sign outbound triggers.

Signer and verifier must hash the exact same bytes. Dict payloads are
serialized canonically (sorted keys, compact separators); callers that
transmit a body should sign the serialized bytes they actually send.
"""

import hashlib
import hmac
import json
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

# Default signature header name
SIGNATURE_HEADER = "X-Webhook-Signature"


def serialize_payload(payload: Any) -> bytes:
    """Serialize a payload to the bytes that get signed.

    Args:
        payload: Raw bytes, a JSON string, or a JSON-serializable object.

    Returns:
        Byte sequence to sign or verify.
    """
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str).encode("utf-8")


def sign(secret: str, payload: Any) -> str:
    """Compute the HMAC-SHA256 hex digest of a payload.

    Args:
        secret: Signing key.
        payload: Payload (see serialize_payload).

    Returns:
        Lowercase hex digest, deterministic for identical serialization.
    """
    body = serialize_payload(payload)
    signature = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()

    logger.debug("webhook_signature_generated", payload_length=len(body))

    return signature


def verify(
    secret: str,
    payload: Any,
    provided_signature: str | None,
    prefix: str | None = None,
) -> bool:
    """Verify a provided signature against the payload.

    The optional prefix (e.g. ``sha256=``) is stripped before comparison.
    Comparison is constant-time. Malformed input yields False, never an
    exception.

    Args:
        secret: Signing key.
        payload: Payload that was signed.
        provided_signature: Signature received with the payload.
        prefix: Optional scheme prefix on the provided signature.

    Returns:
        True if the signature matches.
    """
    if not provided_signature:
        return False

    candidate = provided_signature.strip()
    if prefix and candidate.startswith(prefix):
        candidate = candidate[len(prefix):]

    try:
        provided_bytes = bytes.fromhex(candidate)
    except ValueError:
        logger.warning("webhook_signature_malformed")
        return False

    expected_bytes = bytes.fromhex(sign(secret, payload))
    is_valid = hmac.compare_digest(expected_bytes, provided_bytes)

    if not is_valid:
        logger.warning("webhook_signature_invalid")

    return is_valid


def create_signature_headers(
    payload: Any,
    secret: str,
    *,
    header: str = SIGNATURE_HEADER,
    prefix: str | None = None,
) -> dict[str, str]:
    """Create HTTP headers carrying the payload signature.

    Args:
        payload: Payload being transmitted.
        secret: Signing key.
        header: Header name.
        prefix: Optional prefix placed before the hex digest.

    Returns:
        Dictionary of headers to include in the request.
    """
    return {header: f"{prefix or ''}{sign(secret, payload)}"}


def get_header(headers: dict[str, str], name: str) -> str | None:
    """Case-insensitive header lookup."""
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None
