"""RSA public key reconstruction from JWK-style ``(n, e)`` pairs.

Builds the DER encoding of an X.509 SubjectPublicKeyInfo::

    SEQUENCE {
      SEQUENCE { OBJECT IDENTIFIER rsaEncryption, NULL }
      BIT STRING (0 unused bits) {
        SEQUENCE { INTEGER modulus, INTEGER exponent }
      }
    }

Rules that matter for correctness:
  * INTEGER values are unsigned big-endian. When the most significant byte has
    its high bit set a single ``0x00`` is prepended, otherwise DER reads the
    value as negative.
  * Lengths below 128 use one byte; larger lengths use the long form
    ``0x80 | n`` followed by ``n`` big-endian length bytes.

Only the subset needed for RSA verification keys is implemented.
"""
from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from typing import Any

from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicKey
from cryptography.hazmat.primitives.serialization import load_der_public_key

from ..errors import FormatError

# SEQUENCE { OID 1.2.840.113549.1.1.1 (rsaEncryption), NULL }
RSA_ALGORITHM_IDENTIFIER = bytes.fromhex("300d06092a864886f70d0101010500")

TAG_INTEGER = 0x02
TAG_BIT_STRING = 0x03
TAG_SEQUENCE = 0x30


@dataclass(frozen=True)
class KeyDescriptor:
    key_id: str
    modulus: bytes
    exponent: bytes


@dataclass(frozen=True)
class PublicKeyHandle:
    key_id: str
    der_encoded: bytes
    public_key: RSAPublicKey = field(compare=False, repr=False)


def b64url_decode(text: str) -> bytes:
    """Decode base64url, accepting omitted padding."""
    if not isinstance(text, str) or not text.strip():
        raise FormatError("empty base64url value")
    cleaned = text.strip()
    padding = "=" * (-len(cleaned) % 4)
    try:
        return base64.b64decode(cleaned + padding, altchars=b"-_", validate=True)
    except (binascii.Error, ValueError) as err:
        raise FormatError(f"invalid base64url value: {err}") from err


def encode_length(length: int) -> bytes:
    if length < 0:
        raise FormatError("negative length")
    if length < 0x80:
        return bytes([length])
    body = length.to_bytes((length.bit_length() + 7) // 8, "big")
    if len(body) > 0x7F:
        raise FormatError("length too large")
    return bytes([0x80 | len(body)]) + body


def _tlv(tag: int, value: bytes) -> bytes:
    return bytes([tag]) + encode_length(len(value)) + value


def encode_integer(value: bytes) -> bytes:
    """Encode an unsigned big-endian byte string as a DER INTEGER."""
    if not value:
        raise FormatError("empty integer")
    stripped = value.lstrip(b"\x00") or b"\x00"
    if stripped[0] & 0x80:
        stripped = b"\x00" + stripped
    return _tlv(TAG_INTEGER, stripped)


def encode_rsa_spki(modulus: bytes, exponent: bytes) -> bytes:
    if not isinstance(modulus, (bytes, bytearray)) or not isinstance(exponent, (bytes, bytearray)):
        raise FormatError("modulus and exponent must be bytes")
    if not modulus or not exponent:
        raise FormatError("modulus and exponent must be non-empty")
    rsa_public_key = _tlv(TAG_SEQUENCE, encode_integer(bytes(modulus)) + encode_integer(bytes(exponent)))
    bit_string = _tlv(TAG_BIT_STRING, b"\x00" + rsa_public_key)
    return _tlv(TAG_SEQUENCE, RSA_ALGORITHM_IDENTIFIER + bit_string)


def descriptor_from_jwk(entry: Any) -> KeyDescriptor:
    if not isinstance(entry, dict):
        raise FormatError("key entry is not an object")
    kid, n, e = entry.get("kid"), entry.get("n"), entry.get("e")
    if not kid or not isinstance(kid, str):
        raise FormatError("key entry missing kid")
    if not n or not e:
        raise FormatError(f"key {kid} missing n or e")
    return KeyDescriptor(key_id=kid, modulus=b64url_decode(n), exponent=b64url_decode(e))


def build_public_key_handle(descriptor: KeyDescriptor) -> PublicKeyHandle:
    der = encode_rsa_spki(descriptor.modulus, descriptor.exponent)
    try:
        key = load_der_public_key(der)
    except (ValueError, TypeError) as err:
        raise FormatError(f"key {descriptor.key_id} rejected by loader: {err}") from err
    if not isinstance(key, RSAPublicKey):
        raise FormatError(f"key {descriptor.key_id} is not an RSA key")
    return PublicKeyHandle(key_id=descriptor.key_id, der_encoded=der, public_key=key)


__all__ = [
    "KeyDescriptor",
    "PublicKeyHandle",
    "b64url_decode",
    "encode_length",
    "encode_integer",
    "encode_rsa_spki",
    "descriptor_from_jwk",
    "build_public_key_handle",
]
