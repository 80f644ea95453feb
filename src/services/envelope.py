"""Parsing of SNS envelopes and the SES feedback events they carry."""
from __future__ import annotations

import json
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator


class EnvelopeDecodeError(ValueError):
    """Raised when either JSON layer of a queued notification is malformed."""


class UnsupportedEventTypeError(ValueError):
    """Raised for SES event types this pipeline does not handle (Open, Click, ...)."""

    def __init__(self, event_type: str | None) -> None:
        super().__init__(f"Unsupported SES event type: {event_type}")
        self.event_type = event_type


class EnvelopeType(str, Enum):
    NOTIFICATION = "Notification"
    SUBSCRIPTION_CONFIRMATION = "SubscriptionConfirmation"
    UNSUBSCRIBE_CONFIRMATION = "UnsubscribeConfirmation"


class EventType(str, Enum):
    SEND = "SEND"
    DELIVERY = "DELIVERY"
    BOUNCE = "BOUNCE"
    COMPLAINT = "COMPLAINT"
    REJECT = "REJECT"


class NotificationEnvelope(BaseModel):
    """The signed SNS wrapper. Signed fields stay optional so the verifier can name what is missing."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    type: EnvelopeType = Field(alias="Type")
    message: str | None = Field(default=None, alias="Message")
    message_id: str | None = Field(default=None, alias="MessageId")
    signature: str | None = Field(default=None, alias="Signature")
    signature_version: str | None = Field(default=None, alias="SignatureVersion")
    signing_cert_url: str | None = Field(default=None, alias="SigningCertURL")
    timestamp: str | None = Field(default=None, alias="Timestamp")
    topic_arn: str | None = Field(default=None, validation_alias=AliasChoices("TopicArn", "TopicId"), serialization_alias="TopicArn")
    subject: str | None = Field(default=None, alias="Subject")
    token: str | None = Field(default=None, alias="Token")
    subscribe_url: str | None = Field(default=None, alias="SubscribeURL")

    @field_validator("signature_version", mode="before")
    @classmethod
    def coerce_version(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class _ProviderModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class MailInfo(_ProviderModel):
    timestamp: str | None = None
    message_id: str = Field(alias="messageId")
    source: str | None = None
    destination: list[str] = Field(default_factory=list)
    tags: dict[str, list[str]] = Field(default_factory=dict)

    @field_validator("tags", mode="before")
    @classmethod
    def normalise_tags(cls, value: Any) -> Any:
        # Tags are string arrays on the wire; tolerate scalars from hand-built payloads.
        if value is None:
            return {}
        if isinstance(value, dict):
            return {key: item if isinstance(item, list) else [item] for key, item in value.items()}
        return value


class DeliveryInfo(_ProviderModel):
    timestamp: str | None = None
    processing_time_millis: int | None = Field(default=None, alias="processingTimeMillis")
    recipients: list[str] = Field(default_factory=list)
    smtp_response: str | None = Field(default=None, alias="smtpResponse")


class BouncedRecipient(_ProviderModel):
    email_address: str = Field(alias="emailAddress")
    status: str | None = None
    diagnostic_code: str | None = Field(default=None, alias="diagnosticCode")


class BounceInfo(_ProviderModel):
    bounce_type: str | None = Field(default=None, alias="bounceType")
    bounce_sub_type: str | None = Field(default=None, alias="bounceSubType")
    bounced_recipients: list[BouncedRecipient] = Field(default_factory=list, alias="bouncedRecipients")
    timestamp: str | None = None


class ComplainedRecipient(_ProviderModel):
    email_address: str = Field(alias="emailAddress")


class ComplaintInfo(_ProviderModel):
    complained_recipients: list[ComplainedRecipient] = Field(default_factory=list, alias="complainedRecipients")
    timestamp: str | None = None
    complaint_feedback_type: str | None = Field(default=None, alias="complaintFeedbackType")


class RejectInfo(_ProviderModel):
    reason: str | None = None


class FeedbackEvent(_ProviderModel):
    """One SES notification, as published by a configuration set or identity topic."""

    event_type: EventType = Field(validation_alias=AliasChoices("eventType", "notificationType"), serialization_alias="eventType")
    mail: MailInfo
    delivery: DeliveryInfo | None = None
    bounce: BounceInfo | None = None
    complaint: ComplaintInfo | None = None
    reject: RejectInfo | None = None

    @field_validator("event_type", mode="before")
    @classmethod
    def normalise_event_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value


def decode_envelope(raw: str | bytes) -> NotificationEnvelope:
    """Parse the outer SNS envelope from a queue record body."""

    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise EnvelopeDecodeError("Invalid SNS envelope JSON") from exc
    if not isinstance(payload, dict):
        raise EnvelopeDecodeError("SNS envelope must be a JSON object")
    try:
        return NotificationEnvelope.model_validate(payload)
    except ValidationError as exc:
        raise EnvelopeDecodeError(f"Invalid SNS envelope: {exc.error_count()} error(s)") from exc


def decode_event(message: str | None) -> FeedbackEvent:
    """Parse the SES event carried in a Notification's Message field."""

    if not message:
        raise EnvelopeDecodeError("Missing SNS Message body")
    try:
        payload = json.loads(message)
    except json.JSONDecodeError as exc:
        raise EnvelopeDecodeError("Invalid SES event JSON") from exc
    if not isinstance(payload, dict):
        raise EnvelopeDecodeError("SES event must be a JSON object")

    raw_type = payload.get("eventType") or payload.get("notificationType")
    if not isinstance(raw_type, str) or raw_type.strip().upper() not in EventType.__members__:
        raise UnsupportedEventTypeError(raw_type if isinstance(raw_type, str) else None)

    try:
        return FeedbackEvent.model_validate(payload)
    except ValidationError as exc:
        raise EnvelopeDecodeError(f"Invalid SES event: {exc.error_count()} error(s)") from exc


def decode(raw: str | bytes) -> tuple[NotificationEnvelope, FeedbackEvent | None]:
    """Decode both layers. Confirmation envelopes carry no feedback event."""

    envelope = decode_envelope(raw)
    if envelope.type is not EnvelopeType.NOTIFICATION:
        return envelope, None
    return envelope, decode_event(envelope.message)
