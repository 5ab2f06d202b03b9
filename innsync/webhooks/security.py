"""Webhook security utilities.

Provides HMAC signature generation and verification for webhook payloads
to ensure authenticity and prevent tampering.
"""

import hashlib
import hmac
import time

import structlog

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-Signature"
TIMESTAMP_HEADER = "X-Timestamp"
SIGNATURE_PREFIX = "sha256="


def _to_text(body: str | bytes) -> str:
    return body.decode("utf-8") if isinstance(body, bytes) else body


def generate_signature(
    body: str | bytes,
    secret: str,
    timestamp: int,
) -> str:
    """Generate HMAC-SHA256 signature for a webhook body.

    The signature is computed as:
    HMAC-SHA256(secret, timestamp + "." + body)

    The body must be the exact serialized JSON that is transmitted.

    Args:
        body: Serialized request body.
        secret: Endpoint secret key.
        timestamp: Unix timestamp in seconds.

    Returns:
        Lowercase hex digest.
    """
    signed_payload = f"{timestamp}.{_to_text(body)}"

    return hmac.new(
        secret.encode("utf-8"),
        signed_payload.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def verify_signature(
    body: str | bytes,
    signature: str,
    secret: str,
    timestamp: int,
    *,
    max_age_seconds: int | None = None,
    now: int | None = None,
) -> bool:
    """Verify HMAC-SHA256 signature of a webhook body.

    An optional "sha256=" prefix on the received signature is ignored.
    Comparison is constant-time; signatures of the wrong length fail
    without comparison.

    Args:
        body: Serialized request body as received.
        signature: Claimed signature to verify.
        secret: Endpoint secret key.
        timestamp: Timestamp from the request.
        max_age_seconds: Reject timestamps older (or newer) than this window.
        now: Current Unix time, for tests.

    Returns:
        True if signature is valid, False otherwise.
    """
    if max_age_seconds is not None:
        current_time = int(time.time()) if now is None else now
        age = abs(current_time - timestamp)
        if age > max_age_seconds:
            logger.warning(
                "webhook_signature_expired",
                timestamp=timestamp,
                age_seconds=age,
                max_age=max_age_seconds,
            )
            return False

    received = signature.strip()
    if received.startswith(SIGNATURE_PREFIX):
        received = received[len(SIGNATURE_PREFIX):]

    expected = generate_signature(body, secret, timestamp)

    if len(received) != len(expected):
        logger.warning("webhook_signature_length_mismatch", timestamp=timestamp)
        return False

    is_valid = hmac.compare_digest(received.encode("utf-8"), expected.encode("utf-8"))

    if not is_valid:
        logger.warning("webhook_signature_invalid", timestamp=timestamp)

    return is_valid


def create_signature_headers(
    body: str | bytes,
    secret: str,
    *,
    timestamp: int | None = None,
) -> dict[str, str]:
    """Create HTTP headers carrying the signature for a webhook delivery.

    Args:
        body: Serialized request body.
        secret: Endpoint secret key.
        timestamp: Unix timestamp (defaults to current time).

    Returns:
        Dictionary of headers to include in request.
    """
    if timestamp is None:
        timestamp = int(time.time())

    signature = generate_signature(body, secret, timestamp)

    return {
        SIGNATURE_HEADER: f"{SIGNATURE_PREFIX}{signature}",
        TIMESTAMP_HEADER: str(timestamp),
    }


def verify_from_headers(
    body: str | bytes,
    headers: dict[str, str],
    secret: str,
    *,
    max_age_seconds: int | None = 300,
) -> bool:
    """Verify webhook signature from request headers.

    Args:
        body: Received request body.
        headers: Request headers.
        secret: Endpoint secret key.
        max_age_seconds: Replay window.

    Returns:
        True if signature is valid.

    Raises:
        ValueError: If required headers are missing.
    """
    signature = headers.get(SIGNATURE_HEADER)
    timestamp_str = headers.get(TIMESTAMP_HEADER)

    if not signature:
        raise ValueError(f"Missing {SIGNATURE_HEADER} header")

    if not timestamp_str:
        raise ValueError(f"Missing {TIMESTAMP_HEADER} header")

    try:
        timestamp = int(timestamp_str)
    except ValueError as e:
        raise ValueError(f"Invalid {TIMESTAMP_HEADER} header: must be integer") from e

    return verify_signature(
        body, signature, secret, timestamp, max_age_seconds=max_age_seconds
    )
