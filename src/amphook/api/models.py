from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..errors import ErrorKind


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubmissionMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    sender_identity: str | None = None  # AMP-Email-Sender
    client_address: str | None = None
    user_agent: str | None = None
    referer: str | None = None
    received_at: datetime = Field(default_factory=utcnow)
    signature_valid: bool = False
    key_id: str | None = None  # signer key that validated the request

    @field_validator("received_at")
    @classmethod
    def _assume_utc(cls, v: datetime) -> datetime:
        return v if v.tzinfo is not None else v.replace(tzinfo=timezone.utc)


class Submission(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str | None = None  # minted by SubmissionStore.insert
    form_id: str
    fields: dict[str, Any]
    metadata: SubmissionMetadata

    @property
    def received_at(self) -> datetime:
        return self.metadata.received_at


class SubmissionFilter(BaseModel):
    form_id: str | None = None
    start: datetime | None = None  # inclusive
    end: datetime | None = None  # inclusive
    validated_only: bool = False
    sender: str | None = None  # case-insensitive substring of sender_identity

    @field_validator("start", "end")
    @classmethod
    def _assume_utc(cls, v: datetime | None) -> datetime | None:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    def matches(self, s: Submission) -> bool:
        if self.form_id is not None and s.form_id != self.form_id:
            return False
        if self.start is not None and s.received_at < self.start:
            return False
        if self.end is not None and s.received_at > self.end:
            return False
        if self.validated_only and not s.metadata.signature_valid:
            return False
        if self.sender:
            ident = (s.metadata.sender_identity or "").lower()
            if self.sender.lower() not in ident:
                return False
        return True


class SubmissionPage(BaseModel):
    items: list[Submission]
    total: int
    page: int
    page_size: int


class InboundSubmission(BaseModel):
    """What the transport layer hands to the pipeline; ``body`` is untouched."""

    model_config = ConfigDict(frozen=True)

    method: str = "POST"
    headers: Mapping[str, str] = Field(default_factory=dict)  # lower-cased names
    query: Mapping[str, str] = Field(default_factory=dict)
    body: bytes = b""
    client_address: str | None = None
    form_id: str | None = None

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())


class IngestDecision(BaseModel):
    accepted: bool
    reason: ErrorKind | None = None
    submission_id: str | None = None
    key_id: str | None = None
    detail: str | None = None
    tracked: bool = True


class ExportDocument(BaseModel):
    export_date: datetime = Field(default_factory=utcnow)
    total_submissions: int
    filters: SubmissionFilter
    submissions: list[Submission]
