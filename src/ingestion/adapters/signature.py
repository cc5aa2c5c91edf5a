"""
Webhook signature verification.

The signature is an HMAC-SHA256 over the exact request bytes, sent as
``sha256=<hex>``. Verification must run on the raw body before it is parsed:
re-serialising the JSON would change the bytes and the digest.
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from shared.domain.errors import AuthError, MalformedPayload

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256"


@dataclass(frozen=True)
class VerifiedEvent:
    """A webhook body whose signature has been checked and whose JSON parsed."""
    raw_body: bytes
    payload: Dict[str, Any]
    signature: str
    verified_at: datetime


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Return the ``sha256=<hex>`` header value for a body and secret."""
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}={digest}"


class SignatureVerifier:
    """Validates inbound webhook authenticity, with support for secret rotation."""

    def __init__(
        self,
        primary_secret: str,
        secondary_secret: Optional[str] = None,
        tolerance_seconds: int = 300,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        if not primary_secret:
            raise ValueError("A primary webhook secret is required")
        self._secrets = [s.encode("utf-8") for s in (primary_secret, secondary_secret) if s]
        self.tolerance_seconds = tolerance_seconds
        self._clock = clock

    def verify(self, raw_body: bytes, signature_header: Optional[str], source: str = "unknown") -> VerifiedEvent:
        """
        Verify the signature and return the parsed payload.

        Raises:
            AuthError: missing, malformed or non-matching signature, or a
                payload timestamp outside the tolerance window
            MalformedPayload: authentic body that is not a JSON object
        """
        now = self._clock()
        expected = self._decode_header(signature_header, source, now)

        matched = False
        for secret in self._secrets:
            computed = hmac.new(secret, raw_body, hashlib.sha256).digest()
            # Check every secret so timing does not reveal which one matched
            matched |= hmac.compare_digest(computed, expected)

        if not matched:
            self._reject("signature mismatch", source, now)

        try:
            payload = json.loads(raw_body)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedPayload(f"Body is not valid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise MalformedPayload("Body must be a JSON object")

        self._check_freshness(payload, source, now)

        return VerifiedEvent(
            raw_body=raw_body,
            payload=payload,
            signature=signature_header,
            verified_at=now,
        )

    def _decode_header(self, signature_header: Optional[str], source: str, now: datetime) -> bytes:
        if not signature_header:
            self._reject("missing signature header", source, now)

        prefix, sep, hex_digest = signature_header.strip().partition("=")
        if not sep or prefix.lower() != SIGNATURE_PREFIX:
            self._reject("unsupported signature algorithm", source, now)

        try:
            return bytes.fromhex(hex_digest)
        except ValueError:
            self._reject("signature is not hex encoded", source, now)

    def _check_freshness(self, payload: Dict[str, Any], source: str, now: datetime):
        if "timestamp" not in payload:
            return

        sent_at = parse_payload_timestamp(payload["timestamp"])
        if sent_at is None:
            self._reject("unparseable payload timestamp", source, now)

        skew = abs((now - sent_at).total_seconds())
        if skew > self.tolerance_seconds:
            self._reject(f"payload timestamp outside tolerance ({skew:.0f}s)", source, now)

    def _reject(self, reason: str, source: str, now: datetime):
        # Never log the secret, the header value or the computed digest
        logger.warning(f"Webhook rejected: reason={reason} source={source} at={now.isoformat()}")
        raise AuthError(reason)


def parse_payload_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a payload timestamp given as epoch seconds, epoch milliseconds or ISO-8601.

    Returns None if the value cannot be interpreted.
    """
    if isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.isdigit():
            return parse_payload_timestamp(int(text))
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    return None
