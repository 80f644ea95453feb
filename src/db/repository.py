"""Persistence for deliveries, subscribers, audit and engagement events."""
from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy.orm import Session

from src.db import models
from src.services.subscriber_state import (
    AuditEvent,
    EngagementEvent,
    Subscriber,
    SubscriberState,
    SubscriberTokens,
    TokenRecord,
)
from src.utils.datetime import ensure_utc, parse_timestamp

SECONDS_PER_DAY = 24 * 60 * 60


def _isoformat(value: datetime | None) -> str | None:
    return ensure_utc(value).isoformat() if value else None


def _parse_token(raw: Any) -> TokenRecord | None:
    if not isinstance(raw, dict) or "hash" not in raw:
        return None
    return TokenRecord(
        hash=str(raw.get("hash") or ""),
        issued_at=parse_timestamp(raw.get("issuedAt")),
        expires_at=parse_timestamp(raw.get("expiresAt")),
        used_at=parse_timestamp(raw.get("usedAt")),
        rotated_at=parse_timestamp(raw.get("rotatedAt")),
    )


def _dump_token(token: TokenRecord) -> dict[str, Any]:
    return {
        "hash": token.hash,
        "issuedAt": _isoformat(token.issued_at),
        "expiresAt": _isoformat(token.expires_at),
        "usedAt": _isoformat(token.used_at),
        "rotatedAt": _isoformat(token.rotated_at),
    }


def parse_subscriber_row(row: models.Subscriber) -> Subscriber | None:
    """Build the domain subscriber from its row; None when the row is unusable."""

    if not row.subscriber_id or not row.state:
        return None
    try:
        state = SubscriberState(row.state)
    except ValueError:
        return None

    tokens = row.tokens if isinstance(row.tokens, dict) else {}
    subscriber_token = _parse_token(tokens.get("subscriber")) or TokenRecord(hash="")
    return Subscriber(
        id=row.subscriber_id,
        state=state,
        email=row.email,
        email_normalized=row.email_normalized,
        hashed_email=row.hashed_email,
        bounce_count=row.bounce_count or 0,
        last_bounce_at=parse_timestamp(row.last_bounce_at),
        tokens=SubscriberTokens(
            subscriber=subscriber_token,
            confirmation=_parse_token(tokens.get("confirmation")),
        ),
        created_at=parse_timestamp(row.created_at),
        updated_at=parse_timestamp(row.updated_at),
        confirmed_at=parse_timestamp(row.confirmed_at),
        unsubscribed_at=parse_timestamp(row.unsubscribed_at),
        suppressed_at=parse_timestamp(row.suppressed_at),
    )


def engagement_expiry(occurred_at: datetime, ttl_days: int) -> int:
    """Epoch second after which the storage layer may purge the row."""

    return math.floor(ensure_utc(occurred_at).timestamp()) + ttl_days * SECONDS_PER_DAY


class FeedbackRepository:
    """Reads and writes for one record; the caller owns the session and its commit."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def get_delivery(self, delivery_id: str) -> models.Delivery | None:
        return self.session.get(models.Delivery, delivery_id)

    def put_delivery(self, delivery_id: str, fields: dict[str, Any], created_at: datetime) -> models.Delivery:
        """Upsert: ``created_at`` only when absent, every non-None field overwritten."""

        delivery = self.get_delivery(delivery_id)
        if delivery is None:
            delivery = models.Delivery(delivery_id=delivery_id, status="PENDING")
            self.session.add(delivery)
        if delivery.created_at is None:
            delivery.created_at = created_at
        for key, value in fields.items():
            if value is None:
                continue
            if not hasattr(models.Delivery, key):
                raise ValueError(f"Unknown delivery field: {key}")
            setattr(delivery, key, value)
        self.session.flush()
        return delivery

    def get_subscriber(self, subscriber_id: str) -> models.Subscriber | None:
        return self.session.get(models.Subscriber, subscriber_id)

    def put_subscriber(self, subscriber: Subscriber) -> models.Subscriber:
        row = self.get_subscriber(subscriber.id)
        if row is None:
            row = models.Subscriber(subscriber_id=subscriber.id)
            self.session.add(row)

        row.state = subscriber.state.value
        row.email = subscriber.email
        row.email_normalized = subscriber.email_normalized
        row.hashed_email = subscriber.hashed_email
        row.bounce_count = subscriber.bounce_count
        row.last_bounce_at = subscriber.last_bounce_at
        row.created_at = subscriber.created_at
        row.updated_at = subscriber.updated_at
        row.confirmed_at = subscriber.confirmed_at
        row.unsubscribed_at = subscriber.unsubscribed_at
        row.suppressed_at = subscriber.suppressed_at

        # Keep stored tokens unless the subscriber carries a real one.
        if subscriber.tokens.subscriber.hash:
            confirmation = subscriber.tokens.confirmation
            row.tokens = {
                "confirmation": _dump_token(confirmation) if confirmation else None,
                "subscriber": _dump_token(subscriber.tokens.subscriber),
            }
        elif row.tokens is None:
            row.tokens = {"confirmation": None, "subscriber": {"hash": "", "rotatedAt": None}}

        self.session.flush()
        return row

    def put_audit_events(self, events: Iterable[AuditEvent], fallback_subscriber_id: str) -> None:
        for event in events:
            subscriber_id = event.details.get("subscriberId") or fallback_subscriber_id
            self.session.add(
                models.AuditEvent(
                    event_id=event.id,
                    subscriber_id=str(subscriber_id),
                    event_type=event.type,
                    entity_type=event.entity_type,
                    entity_id=event.entity_id,
                    actor_type=event.actor_type,
                    occurred_at=event.occurred_at,
                    details=dict(event.details),
                )
            )
        self.session.flush()

    def put_engagement_events(self, events: Iterable[EngagementEvent], subscriber_id: str, ttl_days: int) -> None:
        for event in events:
            self.session.add(
                models.EngagementEvent(
                    event_id=event.id,
                    subscriber_id=subscriber_id,
                    campaign_id=event.campaign_id,
                    delivery_id=event.delivery_id,
                    event_type=event.type,
                    occurred_at=event.occurred_at,
                    expires_at=engagement_expiry(event.occurred_at, ttl_days),
                )
            )
        self.session.flush()
