"""Shared fixtures-by-function for the webhook tests: RSA signers and key documents."""
from __future__ import annotations

import base64
import json
import time
from functools import lru_cache

import httpx
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa


@lru_cache(maxsize=None)
def signer(name: str = "primary") -> rsa.RSAPrivateKey:
    # cached per name; 2048-bit generation is slow enough to matter
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def b64url(n: int) -> str:
    raw = n.to_bytes((n.bit_length() + 7) // 8, "big")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def jwk(kid: str, key: rsa.RSAPrivateKey) -> dict:
    nums = key.public_key().public_numbers()
    return {"kid": kid, "kty": "RSA", "n": b64url(nums.n), "e": b64url(nums.e)}


def key_document(*pairs: tuple[str, rsa.RSAPrivateKey]) -> dict:
    return {"keys": [jwk(kid, key) for kid, key in pairs]}


def sign(key: rsa.RSAPrivateKey, body: bytes, ts: int | None = None) -> tuple[str, str]:
    """Return (AMP-Signature, AMP-Timestamp) header values for ``body``."""
    ts_text = str(int(time.time()) if ts is None else ts)
    sig = key.sign(ts_text.encode() + body, padding.PKCS1v15(), hashes.SHA256())
    return "rsa-sha256=" + base64.b64encode(sig).decode(), ts_text


class KeyServer:
    """httpx MockTransport handler serving a key document and counting hits."""

    def __init__(self, document=None, status: int = 200, raw: bytes | None = None):
        self.document = document if document is not None else {"keys": []}
        self.status = status
        self.raw = raw
        self.hits = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.hits += 1
        if self.raw is not None:
            return httpx.Response(self.status, content=self.raw)
        return httpx.Response(self.status, content=json.dumps(self.document).encode())

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))
