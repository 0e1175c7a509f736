from __future__ import annotations

import json
import logging
import re
from typing import Any
from urllib.parse import parse_qsl

from .api.models import IngestDecision, InboundSubmission, Submission, SubmissionMetadata
from .errors import AmpHookError, FormDataError, KeyUnavailable
from .settings import Settings, settings as default_settings
from .store.submissions import SubmissionStore
from .verify.signature import SignatureVerifier

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "amp-signature"
TIMESTAMP_HEADER = "amp-timestamp"
SENDER_HEADER = "amp-email-sender"

DEFAULT_FORM_ID = "default"
_FORM_ID_KEYS = ("formId", "form_id")

_SUSPICIOUS = [
    re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"on\w+\s*=", re.IGNORECASE),
]
_EMAIL_RE = re.compile(r"\S+@\S+\.\S+")


def parse_form_body(body: bytes, content_type: str | None) -> dict[str, Any]:
    """Decode the raw body into a field mapping (JSON object or urlencoded)."""
    ctype = (content_type or "").lower()
    try:
        text = body.decode("utf-8")
    except UnicodeDecodeError as err:
        raise FormDataError(f"body is not UTF-8: {err}") from err
    if "application/x-www-form-urlencoded" in ctype:
        fields: dict[str, Any] = {}
        for k, v in parse_qsl(text, keep_blank_values=True):
            if k in fields:
                prev = fields[k]
                fields[k] = [*prev, v] if isinstance(prev, list) else [prev, v]
            else:
                fields[k] = v
        return fields
    try:
        data = json.loads(text) if text.strip() else None
    except json.JSONDecodeError as err:
        raise FormDataError(f"body is not valid JSON: {err}") from err
    if not isinstance(data, dict):
        raise FormDataError("form data must be an object")
    return data


def validate_form_data(fields: dict[str, Any], max_bytes: int) -> None:
    if not fields:
        raise FormDataError("form data cannot be empty")
    serialized = json.dumps(fields, separators=(",", ":"), default=str)
    if len(serialized) > max_bytes:
        raise FormDataError(f"form data too large ({len(serialized)} > {max_bytes} bytes)")
    for pattern in _SUSPICIOUS:
        if pattern.search(serialized):
            logger.warning("Potentially malicious content detected in form data")
            break


def analyze_form_content(fields: dict[str, Any]) -> dict[str, Any]:
    """Guess field kinds and an overall form type (poll/contact/feedback)."""
    field_types: dict[str, str] = {}
    for key, value in fields.items():
        k = key.lower()
        v = str(value).lower()
        if "email" in k or _EMAIL_RE.search(v):
            field_types[key] = "email"
        elif any(tok in k for tok in ("choice", "option", "select")):
            field_types[key] = "choice"
        elif isinstance(value, str) and len(value) > 10:
            field_types[key] = "text"
        else:
            field_types[key] = "simple"
    kinds = set(field_types.values())
    if "choice" in kinds and "text" not in kinds:
        estimated = "poll"
    elif "email" in kinds:
        estimated = "contact"
    elif "text" in kinds:
        estimated = "feedback"
    else:
        estimated = "unknown"
    return {"field_types": field_types, "estimated_type": estimated}


def _do_not_track(query: dict[str, str] | Any) -> bool:
    return str(query.get("doNotTrackThis", "")).lower() in ("1", "true")


class IngestionPipeline:
    """Accept/reject decision for one inbound AMP form submission."""

    def __init__(self, verifier: SignatureVerifier, store: SubmissionStore, config: Settings | None = None):
        self.verifier = verifier
        self.store = store
        self.config = config or default_settings

    async def ingest(self, inbound: InboundSubmission) -> IngestDecision:
        key_id: str | None = None
        signature_valid = False
        if self.config.verify_signatures:
            try:
                result = await self.verifier.verify(
                    inbound.body, inbound.header(SIGNATURE_HEADER), inbound.header(TIMESTAMP_HEADER)
                )
                key_id, signature_valid = result.key_id, True
            except KeyUnavailable as err:
                if self.config.no_keys_policy != "fail_open":
                    return self._reject(err, inbound)
                logger.warning("Accepting unverified submission, no keys available (fail_open): %s", err)
            except AmpHookError as err:
                return self._reject(err, inbound)
        else:
            logger.debug("AMP signature validation disabled")

        try:
            fields = parse_form_body(inbound.body, inbound.header("content-type"))
            validate_form_data(fields, self.config.max_form_bytes)
        except FormDataError as err:
            return self._reject(err, inbound, key_id=key_id)

        sender = inbound.header(SENDER_HEADER)
        if _do_not_track(inbound.query):
            logger.debug("Submission marked do-not-track; not stored")
            return IngestDecision(accepted=True, key_id=key_id, tracked=False)

        form_id = inbound.form_id or next(
            (str(fields[k]) for k in _FORM_ID_KEYS if fields.get(k)), DEFAULT_FORM_ID
        )
        submission = Submission(
            form_id=form_id,
            fields=fields,
            metadata=SubmissionMetadata(
                sender_identity=sender,
                client_address=inbound.client_address,
                user_agent=inbound.header("user-agent"),
                referer=inbound.header("referer"),
                signature_valid=signature_valid,
                key_id=key_id,
            ),
        )
        sid = await self.store.insert(submission)
        logger.info(
            "Submission %s accepted (form=%s, sender=%s, validated=%s, fields=%d)",
            sid, form_id, sender, signature_valid, len(fields),
        )
        insights = analyze_form_content(fields)
        logger.info("Form content analyzed for %s: %s", sid, insights["estimated_type"])
        return IngestDecision(accepted=True, submission_id=sid, key_id=key_id)

    def _reject(self, err: AmpHookError, inbound: InboundSubmission, key_id: str | None = None) -> IngestDecision:
        logger.warning(
            "Submission rejected (%s): %s [ip=%s ua=%s]",
            err.kind.value, err.detail, inbound.client_address, inbound.header("user-agent"),
        )
        return IngestDecision(accepted=False, reason=err.kind, detail=err.detail, key_id=key_id)


__all__ = [
    "IngestionPipeline",
    "parse_form_body",
    "validate_form_data",
    "analyze_form_content",
]
