"""Database models for delivery feedback processing."""
from __future__ import annotations

from sqlalchemy import JSON, BigInteger, Column, DateTime, Integer, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class Delivery(Base):
    """One outbound message attempt. Rows are never deleted."""

    __tablename__ = "deliveries"

    delivery_id = Column(String(64), primary_key=True)
    campaign_id = Column(String(64), nullable=True, index=True)
    subscriber_id = Column(String(64), nullable=True, index=True)
    status = Column(String(32), nullable=False, default="PENDING")
    created_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    bounced_at = Column(DateTime(timezone=True), nullable=True)
    complained_at = Column(DateTime(timezone=True), nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    bounce_reason = Column(String(255), nullable=True)
    attempt_count = Column(Integer, nullable=True)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    ses_message_id = Column(String(255), nullable=True, index=True)


class Subscriber(Base):
    __tablename__ = "subscribers"

    subscriber_id = Column(String(64), primary_key=True)
    state = Column(String(32), nullable=True)
    email = Column(String(320), nullable=True)
    email_normalized = Column(String(320), nullable=True, index=True)
    hashed_email = Column(String(128), nullable=True)
    bounce_count = Column(Integer, nullable=True, default=0)
    last_bounce_at = Column(DateTime(timezone=True), nullable=True)
    tokens = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    unsubscribed_at = Column(DateTime(timezone=True), nullable=True)
    suppressed_at = Column(DateTime(timezone=True), nullable=True)


class AuditEvent(Base):
    """Append-only record of a subscriber state transition."""

    __tablename__ = "audit_events"

    event_id = Column(String(64), primary_key=True)
    subscriber_id = Column(String(64), nullable=False, index=True)
    event_type = Column(String(64), nullable=False)
    entity_type = Column(String(64), nullable=False)
    entity_id = Column(String(64), nullable=False)
    actor_type = Column(String(32), nullable=False)
    occurred_at = Column(DateTime(timezone=True), nullable=False)
    details = Column(JSON, nullable=False, default=dict)


class EngagementEvent(Base):
    """Telemetry row purged by the storage layer once ``expires_at`` (epoch seconds) passes."""

    __tablename__ = "engagement_events"

    event_id = Column(String(64), primary_key=True)
    subscriber_id = Column(String(64), nullable=False, index=True)
    campaign_id = Column(String(64), nullable=False, index=True)
    delivery_id = Column(String(64), nullable=False)
    event_type = Column(String(32), nullable=False)
    occurred_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(BigInteger, nullable=False)
