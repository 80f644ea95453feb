"""Tests for the subscriber lifecycle state machine."""
from __future__ import annotations

import itertools
from datetime import UTC, datetime

import pytest

from src.services.subscriber_state import (
    BounceFeedback,
    ComplaintFeedback,
    DeliveryFeedback,
    Rejection,
    Subscriber,
    SubscriberState,
    SubscriberStateMachine,
    Transition,
    hash_email,
)

SECRET = b"hash-secret"
NOW = datetime(2025, 12, 16, 12, 0, tzinfo=UTC)
EARLIER = datetime(2025, 12, 1, 8, 0, tzinfo=UTC)


def _machine() -> SubscriberStateMachine:
    counter = itertools.count(1)
    return SubscriberStateMachine(SECRET, id_factory=lambda: f"evt-{next(counter)}")


def _subscriber(state: SubscriberState = SubscriberState.SUBSCRIBED, **fields) -> Subscriber:
    fields.setdefault("email", "Reader@Example.com")
    fields.setdefault("email_normalized", "reader@example.com")
    return Subscriber(id="s-1", state=state, **fields)


def _apply(event, subscriber):
    return _machine().apply(event, subscriber, "c-1", "d-1", NOW)


def test_delivery_recovers_bounced_subscriber():
    subscriber = _subscriber(SubscriberState.BOUNCED, bounce_count=2, last_bounce_at=EARLIER)
    result = _apply(DeliveryFeedback(), subscriber)

    assert isinstance(result, Transition)
    assert result.subscriber.state is SubscriberState.SUBSCRIBED
    assert result.subscriber.bounce_count == 0
    assert result.subscriber.last_bounce_at is None
    assert result.state_changed
    assert [event.type for event in result.audit_events] == ["EMAIL_DELIVERED"]
    assert [event.type for event in result.engagement_events] == ["DELIVERY"]
    assert result.audit_events[0].details["recovered"] is True
    assert result.audit_events[0].details["previousState"] == "BOUNCED"


def test_delivery_leaves_subscribed_subscriber_unchanged():
    subscriber = _subscriber()
    result = _apply(DeliveryFeedback(), subscriber)

    assert result.subscriber == subscriber
    assert not result.state_changed
    assert len(result.audit_events) == 1
    assert len(result.engagement_events) == 1
    assert result.audit_events[0].details["recovered"] is False


def test_delivery_twice_is_stable():
    subscriber = _subscriber(SubscriberState.BOUNCED, bounce_count=1)
    first = _apply(DeliveryFeedback(), subscriber)
    second = _apply(DeliveryFeedback(), first.subscriber)
    assert second.subscriber == first.subscriber
    assert second.subscriber.state is SubscriberState.SUBSCRIBED


def test_delivery_does_not_lift_suppression():
    subscriber = _subscriber(SubscriberState.SUPPRESSED, suppressed_at=EARLIER)
    result = _apply(DeliveryFeedback(), subscriber)
    assert result.subscriber.state is SubscriberState.SUPPRESSED


def test_hard_bounce_moves_subscribed_to_bounced():
    subscriber = _subscriber(bounce_count=0)
    result = _apply(BounceFeedback("Permanent", attempt_number=2), subscriber)

    assert isinstance(result, Transition)
    assert result.subscriber.state is SubscriberState.BOUNCED
    assert result.subscriber.bounce_count == 1
    assert result.subscriber.last_bounce_at == NOW
    assert result.audit_events[0].type == "EMAIL_BOUNCED"
    assert result.audit_events[0].details["bounceType"] == "HARD"
    assert result.audit_events[0].details["attemptNumber"] == 2
    assert result.engagement_events[0].type == "BOUNCE"


def test_hard_bounce_replaces_email_with_hash():
    result = _apply(BounceFeedback("HARD", attempt_number=1), _subscriber())
    assert result.subscriber.email is None
    assert result.subscriber.email_normalized is None
    assert result.subscriber.hashed_email == hash_email("reader@example.com", SECRET)


def test_hard_bounce_keeps_suppressed_subscriber_suppressed():
    subscriber = _subscriber(SubscriberState.SUPPRESSED, email=None, email_normalized=None, hashed_email="abc")
    result = _apply(BounceFeedback("Permanent", attempt_number=1), subscriber)
    assert result.subscriber.state is SubscriberState.SUPPRESSED
    assert result.subscriber.bounce_count == 1


def test_hard_bounce_without_attempt_number_is_rejected():
    subscriber = _subscriber()
    result = _apply(BounceFeedback("Permanent", attempt_number=None), subscriber)
    assert isinstance(result, Rejection)
    assert result.code == "MISSING_ATTEMPT_NUMBER"
    assert subscriber.state is SubscriberState.SUBSCRIBED
    assert subscriber.bounce_count == 0


@pytest.mark.parametrize("bounce_type", ["Transient", "Undetermined", "SOFT"])
def test_soft_bounce_counts_without_state_change(bounce_type):
    subscriber = _subscriber(bounce_count=3)
    result = _apply(BounceFeedback(bounce_type, attempt_number=1), subscriber)

    assert result.subscriber.state is SubscriberState.SUBSCRIBED
    assert result.subscriber.bounce_count == 4
    assert result.subscriber.last_bounce_at == NOW
    assert result.subscriber.email == "Reader@Example.com"
    assert result.audit_events[0].details["bounceType"] == "SOFT"


def test_repeated_soft_bounces_never_escalate():
    subscriber = _subscriber()
    for _ in range(25):
        subscriber = _apply(BounceFeedback("Transient", attempt_number=1), subscriber).subscriber
    assert subscriber.state is SubscriberState.SUBSCRIBED
    assert subscriber.bounce_count == 25


@pytest.mark.parametrize("bounce_type", ["Bogus", "", None])
def test_unsupported_bounce_type_is_rejected(bounce_type):
    result = _apply(BounceFeedback(bounce_type, attempt_number=1), _subscriber())
    assert isinstance(result, Rejection)
    assert result.code == "UNSUPPORTED_BOUNCE_TYPE"


@pytest.mark.parametrize(
    "state",
    [SubscriberState.PENDING, SubscriberState.SUBSCRIBED, SubscriberState.BOUNCED, SubscriberState.UNSUBSCRIBED],
)
def test_complaint_suppresses_any_state(state):
    result = _apply(ComplaintFeedback(), _subscriber(state))
    assert result.subscriber.state is SubscriberState.SUPPRESSED
    assert result.subscriber.suppressed_at == NOW
    assert result.subscriber.email is None
    assert result.audit_events[0].type == "EMAIL_COMPLAINED"
    assert result.engagement_events[0].type == "COMPLAINT"


def test_complaint_on_suppressed_subscriber_is_idempotent():
    subscriber = _subscriber(SubscriberState.SUPPRESSED, suppressed_at=EARLIER, email=None, email_normalized=None)
    result = _apply(ComplaintFeedback(), subscriber)
    assert result.subscriber == subscriber
    assert result.subscriber.suppressed_at == EARLIER


def test_delivery_then_bounce_re_suppresses():
    subscriber = _subscriber(SubscriberState.BOUNCED)
    delivered = _apply(DeliveryFeedback(), subscriber).subscriber
    bounced = _apply(BounceFeedback("Permanent", attempt_number=2), delivered).subscriber
    assert bounced.state is SubscriberState.BOUNCED


def test_event_ids_come_from_factory():
    result = _apply(DeliveryFeedback(), _subscriber())
    assert result.audit_events[0].id == "evt-1"
    assert result.engagement_events[0].id == "evt-2"
    assert result.engagement_events[0].campaign_id == "c-1"
    assert result.engagement_events[0].delivery_id == "d-1"


def test_hash_email_normalises_address():
    assert hash_email(" Reader@Example.COM ", SECRET) == hash_email("reader@example.com", SECRET)
