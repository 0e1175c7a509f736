from __future__ import annotations

import base64
import binascii
import logging
import time
from dataclasses import dataclass
from typing import Callable

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding

from ..errors import KeyFetchError, KeyUnavailable, SignatureFormatError, SignatureInvalid, TimestampExpired
from ..keys.cache import KeyCache, KeyCacheSnapshot
from ..settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)

MAX_TIMESTAMP_DIGITS = 15  # epoch seconds need 10


@dataclass(frozen=True)
class SignatureEnvelope:
    algorithm_tag: str
    signature_bytes: bytes
    claimed_timestamp: int
    timestamp_text: str  # exactly as transmitted; part of the signed message


@dataclass(frozen=True)
class VerificationResult:
    key_id: str
    claimed_timestamp: int


def parse_envelope(signature_header: str | None, timestamp_header: str | None, prefix: str = "rsa-sha256=") -> SignatureEnvelope:
    """Parse ``AMP-Signature`` / ``AMP-Timestamp`` into a SignatureEnvelope.

    Raises SignatureFormatError before any key material is consulted.
    """
    if not signature_header:
        raise SignatureFormatError("missing signature header")
    sig_value = signature_header.strip()
    if not sig_value.startswith(prefix):
        raise SignatureFormatError(f"invalid signature format, expected {prefix} prefix")
    encoded = sig_value[len(prefix):].strip()
    if not encoded:
        raise SignatureFormatError("empty signature")
    try:
        # Signers are not consistent about padding or the url-safe alphabet.
        normalized = encoded.replace("-", "+").replace("_", "/")
        signature = base64.b64decode(normalized + "=" * (-len(normalized) % 4), validate=True)
    except (binascii.Error, ValueError) as err:
        raise SignatureFormatError(f"signature is not valid base64: {err}") from err
    if not signature:
        raise SignatureFormatError("empty signature")

    if timestamp_header is None or not timestamp_header.strip():
        raise SignatureFormatError("missing timestamp header")
    ts_text = timestamp_header.strip()
    if not (ts_text.isascii() and ts_text.isdigit()):
        raise SignatureFormatError(f"timestamp is not an integer: {ts_text!r}")
    if len(ts_text) > MAX_TIMESTAMP_DIGITS:
        raise SignatureFormatError(f"timestamp too long: {len(ts_text)} digits")
    return SignatureEnvelope(
        algorithm_tag=prefix.rstrip("="),
        signature_bytes=signature,
        claimed_timestamp=int(ts_text),
        timestamp_text=ts_text,
    )


def canonical_message(envelope: SignatureEnvelope, body: bytes) -> bytes:
    """Timestamp text followed by the raw body bytes, never a re-serialized body."""
    return envelope.timestamp_text.encode("utf-8") + body


def verify_with_snapshot(snapshot: KeyCacheSnapshot, signature: bytes, message: bytes) -> str | None:
    """Return the id of the first key that validates ``signature``, else None."""
    for key_id, handle in snapshot.keys.items():
        try:
            handle.public_key.verify(signature, message, padding.PKCS1v15(), hashes.SHA256())
        except InvalidSignature:
            continue
        except (ValueError, TypeError) as e:
            logger.debug("RSA verify failed for key %s: %s", key_id, e)
            continue
        return key_id
    return None


class SignatureVerifier:
    def __init__(self, key_cache: KeyCache, config: Settings | None = None, *, clock: Callable[[], float] = time.time):
        self.key_cache = key_cache
        self.config = config or default_settings
        self._clock = clock

    def check_freshness(self, envelope: SignatureEnvelope) -> None:
        skew = abs(self._clock() - envelope.claimed_timestamp)
        window = self.config.signature_max_skew_seconds
        if skew > window:
            raise TimestampExpired(f"timestamp outside window: skew {skew:.0f}s, max allowed {window}s")

    async def verify(self, body: bytes, signature_header: str | None, timestamp_header: str | None) -> VerificationResult:
        envelope = parse_envelope(signature_header, timestamp_header, self.config.signature_prefix)
        self.check_freshness(envelope)
        message = canonical_message(envelope, body)

        try:
            snapshot = await self.key_cache.snapshot_for_verification()
        except KeyFetchError as err:
            raise KeyUnavailable(f"no verification keys: {err}") from err
        if snapshot.is_empty():
            raise KeyUnavailable("no verification keys loaded")

        key_id = verify_with_snapshot(snapshot, envelope.signature_bytes, message)
        if key_id is None:
            raise SignatureInvalid(f"signature matched none of {len(snapshot.keys)} keys")
        logger.info("AMP signature validated with key %s", key_id)
        return VerificationResult(key_id=key_id, claimed_timestamp=envelope.claimed_timestamp)


__all__ = [
    "SignatureEnvelope",
    "VerificationResult",
    "SignatureVerifier",
    "parse_envelope",
    "canonical_message",
    "verify_with_snapshot",
]
