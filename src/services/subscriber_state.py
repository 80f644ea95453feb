"""Subscriber lifecycle decisions for SES delivery, bounce and complaint feedback.

Everything in this module is pure: it takes the current subscriber and one
feedback event and returns either a :class:`Transition` (the next subscriber
plus the audit and engagement events to append) or a :class:`Rejection`.
Persistence, secrets and clocks are supplied by the caller.

State rules:

* DELIVERY recovers a BOUNCED subscriber to SUBSCRIBED and clears the bounce
  counters. It is the only way out of BOUNCED. Other states are unchanged.
* BOUNCE (HARD) counts the bounce and moves the subscriber to BOUNCED unless
  it is SUPPRESSED.
* BOUNCE (SOFT) counts the bounce and leaves the state alone. Repeated soft
  bounces never escalate.
* COMPLAINT moves any state to SUPPRESSED. There is no automatic recovery.
* Bounces need an attempt number and a bounce type that maps to HARD or SOFT;
  otherwise the event is rejected without any mutation.
"""
from __future__ import annotations

import dataclasses
import hashlib
import hmac
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Union, assert_never

from src.utils.datetime import ensure_utc


class SubscriberState(str, Enum):
    PENDING = "PENDING"
    SUBSCRIBED = "SUBSCRIBED"
    BOUNCED = "BOUNCED"
    UNSUBSCRIBED = "UNSUBSCRIBED"
    SUPPRESSED = "SUPPRESSED"


class BounceType(str, Enum):
    HARD = "HARD"
    SOFT = "SOFT"


BOUNCE_TYPE_MAP = {
    "Permanent": BounceType.HARD,
    "Transient": BounceType.SOFT,
    "Undetermined": BounceType.SOFT,
    "HARD": BounceType.HARD,
    "SOFT": BounceType.SOFT,
}


def map_bounce_type(raw: str | None) -> BounceType | None:
    if not raw:
        return None
    return BOUNCE_TYPE_MAP.get(raw.strip())


@dataclass(frozen=True)
class TokenRecord:
    hash: str
    issued_at: datetime | None = None
    expires_at: datetime | None = None
    used_at: datetime | None = None
    rotated_at: datetime | None = None


@dataclass(frozen=True)
class SubscriberTokens:
    subscriber: TokenRecord
    confirmation: TokenRecord | None = None


@dataclass(frozen=True)
class Subscriber:
    id: str
    state: SubscriberState
    email: str | None = None
    email_normalized: str | None = None
    hashed_email: str | None = None
    bounce_count: int = 0
    last_bounce_at: datetime | None = None
    tokens: SubscriberTokens = field(default_factory=lambda: SubscriberTokens(subscriber=TokenRecord(hash="")))
    created_at: datetime | None = None
    updated_at: datetime | None = None
    confirmed_at: datetime | None = None
    unsubscribed_at: datetime | None = None
    suppressed_at: datetime | None = None

    @classmethod
    def placeholder(cls, subscriber_id: str) -> "Subscriber":
        """Stand-in for events that only touch the delivery record."""
        return cls(id=subscriber_id, state=SubscriberState.SUBSCRIBED)


@dataclass(frozen=True)
class AuditEvent:
    id: str
    type: str
    entity_type: str
    entity_id: str
    actor_type: str
    occurred_at: datetime
    details: dict[str, str | int | bool | None] = field(default_factory=dict)


@dataclass(frozen=True)
class EngagementEvent:
    id: str
    type: str
    campaign_id: str
    delivery_id: str
    occurred_at: datetime


@dataclass(frozen=True)
class DeliveryFeedback:
    pass


@dataclass(frozen=True)
class BounceFeedback:
    bounce_type: str | None
    attempt_number: int | None = None


@dataclass(frozen=True)
class ComplaintFeedback:
    pass


Feedback = Union[DeliveryFeedback, BounceFeedback, ComplaintFeedback]


@dataclass(frozen=True)
class Transition:
    subscriber: Subscriber
    previous_state: SubscriberState
    audit_events: list[AuditEvent]
    engagement_events: list[EngagementEvent]

    @property
    def state_changed(self) -> bool:
        return self.subscriber.state is not self.previous_state


@dataclass(frozen=True)
class Rejection:
    code: str
    reason: str


def hash_email(email: str, secret: bytes) -> str:
    """HMAC-SHA256 of the normalised address, hex encoded."""
    normalized = email.strip().lower()
    return hmac.new(secret, normalized.encode("utf-8"), hashlib.sha256).hexdigest()


def _remove_email(subscriber: Subscriber, secret: bytes) -> Subscriber:
    address = subscriber.email_normalized or subscriber.email
    if not address:
        return subscriber
    return dataclasses.replace(
        subscriber,
        hashed_email=hash_email(address, secret),
        email=None,
        email_normalized=None,
    )


def _new_id() -> str:
    return str(uuid.uuid4())


class SubscriberStateMachine:
    """Decides the subscriber-side effects of one feedback event."""

    def __init__(self, email_hash_secret: bytes, id_factory: Callable[[], str] = _new_id) -> None:
        self.email_hash_secret = email_hash_secret
        self.id_factory = id_factory

    def apply(
        self,
        event: Feedback,
        subscriber: Subscriber,
        campaign_id: str,
        delivery_id: str,
        occurred_at: datetime,
    ) -> Transition | Rejection:
        occurred_at = ensure_utc(occurred_at)
        if isinstance(event, DeliveryFeedback):
            return self._apply_delivery(subscriber, campaign_id, delivery_id, occurred_at)
        if isinstance(event, BounceFeedback):
            return self._apply_bounce(event, subscriber, campaign_id, delivery_id, occurred_at)
        if isinstance(event, ComplaintFeedback):
            return self._apply_complaint(subscriber, campaign_id, delivery_id, occurred_at)
        assert_never(event)

    def _apply_delivery(
        self, subscriber: Subscriber, campaign_id: str, delivery_id: str, occurred_at: datetime
    ) -> Transition:
        recovered = subscriber.state is SubscriberState.BOUNCED
        updated = subscriber
        if recovered:
            updated = dataclasses.replace(
                subscriber,
                state=SubscriberState.SUBSCRIBED,
                bounce_count=0,
                last_bounce_at=None,
                updated_at=occurred_at,
            )
        details = self._details(subscriber, updated, campaign_id, delivery_id)
        details["recovered"] = recovered
        return self._transition(subscriber, updated, "EMAIL_DELIVERED", "DELIVERY", details, campaign_id, delivery_id, occurred_at)

    def _apply_bounce(
        self,
        event: BounceFeedback,
        subscriber: Subscriber,
        campaign_id: str,
        delivery_id: str,
        occurred_at: datetime,
    ) -> Transition | Rejection:
        bounce_type = map_bounce_type(event.bounce_type)
        if bounce_type is None:
            return Rejection("UNSUPPORTED_BOUNCE_TYPE", f"Unsupported bounce type: {event.bounce_type}")
        if event.attempt_number is None or event.attempt_number < 1:
            return Rejection("MISSING_ATTEMPT_NUMBER", "Bounce is missing a valid attempt number")

        updated = dataclasses.replace(
            subscriber,
            bounce_count=subscriber.bounce_count + 1,
            last_bounce_at=occurred_at,
            updated_at=occurred_at,
        )
        if bounce_type is BounceType.HARD and subscriber.state not in (SubscriberState.BOUNCED, SubscriberState.SUPPRESSED):
            updated = _remove_email(dataclasses.replace(updated, state=SubscriberState.BOUNCED), self.email_hash_secret)

        details = self._details(subscriber, updated, campaign_id, delivery_id)
        details["bounceType"] = bounce_type.value
        details["attemptNumber"] = event.attempt_number
        return self._transition(subscriber, updated, "EMAIL_BOUNCED", "BOUNCE", details, campaign_id, delivery_id, occurred_at)

    def _apply_complaint(
        self, subscriber: Subscriber, campaign_id: str, delivery_id: str, occurred_at: datetime
    ) -> Transition:
        updated = subscriber
        if subscriber.state is not SubscriberState.SUPPRESSED:
            updated = _remove_email(
                dataclasses.replace(
                    subscriber,
                    state=SubscriberState.SUPPRESSED,
                    suppressed_at=occurred_at,
                    updated_at=occurred_at,
                ),
                self.email_hash_secret,
            )
        details = self._details(subscriber, updated, campaign_id, delivery_id)
        return self._transition(subscriber, updated, "EMAIL_COMPLAINED", "COMPLAINT", details, campaign_id, delivery_id, occurred_at)

    @staticmethod
    def _details(
        before: Subscriber, after: Subscriber, campaign_id: str, delivery_id: str
    ) -> dict[str, str | int | bool | None]:
        return {
            "subscriberId": before.id,
            "campaignId": campaign_id,
            "deliveryId": delivery_id,
            "previousState": before.state.value,
            "newState": after.state.value,
        }

    def _transition(
        self,
        before: Subscriber,
        after: Subscriber,
        audit_type: str,
        engagement_type: str,
        details: dict[str, str | int | bool | None],
        campaign_id: str,
        delivery_id: str,
        occurred_at: datetime,
    ) -> Transition:
        audit = AuditEvent(
            id=self.id_factory(),
            type=audit_type,
            entity_type="SUBSCRIBER",
            entity_id=before.id,
            actor_type="SYSTEM",
            occurred_at=occurred_at,
            details=details,
        )
        engagement = EngagementEvent(
            id=self.id_factory(),
            type=engagement_type,
            campaign_id=campaign_id,
            delivery_id=delivery_id,
            occurred_at=occurred_at,
        )
        return Transition(
            subscriber=after,
            previous_state=before.state,
            audit_events=[audit],
            engagement_events=[engagement],
        )
