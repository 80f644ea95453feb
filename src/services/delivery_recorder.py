"""Applies the delivery status decided for an SES event to the delivery record."""
from __future__ import annotations

from enum import Enum
from typing import Any

from src.db.repository import FeedbackRepository
from src.services.delivery_context import DeliveryContext
from src.services.envelope import EventType, FeedbackEvent


class DeliveryStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    BOUNCED = "BOUNCED"
    COMPLAINED = "COMPLAINED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"


EVENT_STATUS = {
    EventType.SEND: (DeliveryStatus.SENT, "sent_at"),
    EventType.DELIVERY: (DeliveryStatus.DELIVERED, "delivered_at"),
    EventType.BOUNCE: (DeliveryStatus.BOUNCED, "bounced_at"),
    EventType.COMPLAINT: (DeliveryStatus.COMPLAINED, "complained_at"),
    EventType.REJECT: (DeliveryStatus.REJECTED, "rejected_at"),
}


def delivery_fields(event: FeedbackEvent, context: DeliveryContext) -> dict[str, Any]:
    """The field set one event type writes. Each type owns its own timestamp column."""

    status, timestamp_field = EVENT_STATUS[event.event_type]
    fields: dict[str, Any] = {
        "status": status.value,
        timestamp_field: context.event_timestamp,
        "updated_at": context.event_timestamp,
        "ses_message_id": event.mail.message_id,
        "campaign_id": context.campaign_id,
        "subscriber_id": context.subscriber_id,
    }
    if event.event_type is EventType.BOUNCE:
        bounce = event.bounce
        fields["bounce_reason"] = (bounce and (bounce.bounce_sub_type or bounce.bounce_type)) or "UNKNOWN"
        fields["attempt_count"] = context.attempt_number
        fields["last_attempt_at"] = context.event_timestamp
    elif event.event_type is EventType.REJECT:
        fields["bounce_reason"] = (event.reject and event.reject.reason) or "UNKNOWN"
    return fields


class DeliveryRecorder:
    def __init__(self, repository: FeedbackRepository) -> None:
        self.repository = repository

    def upsert(self, delivery_id: str, fields: dict[str, Any], created_at: Any) -> None:
        self.repository.put_delivery(delivery_id, fields, created_at)

    def record(self, event: FeedbackEvent, context: DeliveryContext) -> DeliveryStatus:
        fields = delivery_fields(event, context)
        self.upsert(context.delivery_id, fields, context.event_timestamp)
        return DeliveryStatus(fields["status"])
