import base64

import pytest
from cryptography.hazmat.primitives import serialization

from amphook.errors import FormatError, KeyCodecError
from amphook.keys.codec import (
    RSA_ALGORITHM_IDENTIFIER,
    b64url_decode,
    build_public_key_handle,
    descriptor_from_jwk,
    encode_integer,
    encode_length,
    encode_rsa_spki,
)
from helpers import jwk, signer


def test_integer_with_high_bit_gets_sign_padding():
    assert encode_integer(b"\x80") == b"\x02\x02\x00\x80"
    assert encode_integer(b"\x7f") == b"\x02\x01\x7f"


def test_integer_strips_redundant_leading_zeros():
    assert encode_integer(b"\x00\x00\x01\x00\x01") == b"\x02\x03\x01\x00\x01"
    assert encode_integer(b"\x00") == b"\x02\x01\x00"


def test_empty_integer_is_format_error():
    with pytest.raises(FormatError):
        encode_integer(b"")
    assert issubclass(FormatError, KeyCodecError)


def test_length_short_and_long_form():
    assert encode_length(0x7F) == b"\x7f"
    assert encode_length(0x80) == b"\x81\x80"
    assert encode_length(0x0101) == b"\x82\x01\x01"


def test_spki_matches_library_encoding_for_2048_bit_key():
    key = signer()
    nums = key.public_key().public_numbers()
    modulus = nums.n.to_bytes(256, "big")
    assert modulus[0] & 0x80  # 2048-bit RSA moduli always have the top bit set
    der = encode_rsa_spki(modulus, nums.e.to_bytes(3, "big"))
    expected = key.public_key().public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    assert der == expected
    assert RSA_ALGORITHM_IDENTIFIER in der


def test_spki_rejects_empty_components():
    with pytest.raises(FormatError):
        encode_rsa_spki(b"", b"\x01\x00\x01")
    with pytest.raises(FormatError):
        encode_rsa_spki(b"\xc0\xff\xee", b"")


def test_b64url_accepts_missing_padding():
    assert b64url_decode("AQAB") == b"\x01\x00\x01"
    assert b64url_decode(base64.urlsafe_b64encode(b"\xfb\xff").decode().rstrip("=")) == b"\xfb\xff"
    with pytest.raises(FormatError):
        b64url_decode("")
    with pytest.raises(FormatError):
        b64url_decode("not*base64")


def test_descriptor_from_jwk_requires_fields():
    with pytest.raises(FormatError):
        descriptor_from_jwk({"n": "AQAB", "e": "AQAB"})
    with pytest.raises(FormatError):
        descriptor_from_jwk({"kid": "k1", "e": "AQAB"})
    with pytest.raises(FormatError):
        descriptor_from_jwk(["not", "an", "object"])


def test_handle_from_jwk_loads_rsa_key():
    key = signer()
    handle = build_public_key_handle(descriptor_from_jwk(jwk("k1", key)))
    assert handle.key_id == "k1"
    assert handle.public_key.public_numbers() == key.public_key().public_numbers()

