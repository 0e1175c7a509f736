from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    KEY_FETCH = "key_fetch_error"
    KEY_CODEC = "key_codec_error"
    SIGNATURE_FORMAT = "signature_format_error"
    TIMESTAMP_EXPIRED = "timestamp_expired"
    SIGNATURE_INVALID = "signature_invalid"
    KEY_UNAVAILABLE = "key_unavailable"
    STORE_CAPACITY_EVICTION = "store_capacity_eviction"  # informational only
    PERSISTENCE_WRITE = "persistence_write_error"
    INVALID_FORM_DATA = "invalid_form_data"


class AmpHookError(Exception):
    kind: ErrorKind

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind.value)

    @property
    def detail(self) -> str:
        return str(self)


class KeyFetchError(AmpHookError):
    """Key source unreachable, timed out, non-2xx or malformed document."""

    kind = ErrorKind.KEY_FETCH


class KeyCodecError(AmpHookError):
    kind = ErrorKind.KEY_CODEC


class FormatError(KeyCodecError):
    """Raised by the key codec for empty or malformed key material."""


class SignatureFormatError(AmpHookError):
    kind = ErrorKind.SIGNATURE_FORMAT


class TimestampExpired(AmpHookError):
    kind = ErrorKind.TIMESTAMP_EXPIRED


class SignatureInvalid(AmpHookError):
    kind = ErrorKind.SIGNATURE_INVALID


class KeyUnavailable(AmpHookError):
    """No verification keys could be obtained, as opposed to a wrong signature."""

    kind = ErrorKind.KEY_UNAVAILABLE


class PersistenceWriteError(AmpHookError):
    kind = ErrorKind.PERSISTENCE_WRITE


class FormDataError(AmpHookError):
    kind = ErrorKind.INVALID_FORM_DATA


__all__ = [
    "ErrorKind",
    "AmpHookError",
    "KeyFetchError",
    "KeyCodecError",
    "FormatError",
    "SignatureFormatError",
    "TimestampExpired",
    "SignatureInvalid",
    "KeyUnavailable",
    "PersistenceWriteError",
    "FormDataError",
]
