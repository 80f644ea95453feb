"""Correlates an SES event with its delivery, campaign and subscriber."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from src.db.repository import FeedbackRepository, parse_subscriber_row
from src.services.envelope import FeedbackEvent
from src.services.subscriber_state import Subscriber
from src.utils.datetime import parse_timestamp, utcnow
from src.utils.logger import logger

# Tag spellings, tried in order; the first non-empty value wins.
DELIVERY_ID_TAGS = ("deliveryId", "delivery_id")
CAMPAIGN_ID_TAGS = ("campaignId", "campaign_id")
SUBSCRIBER_ID_TAGS = ("subscriberId", "subscriber_id")
ATTEMPT_TAGS = ("attempt", "attemptNumber", "attempt_number")

# Event time sources, highest priority first; processing time is the last resort.
TIMESTAMP_EXTRACTORS: tuple[Callable[[FeedbackEvent], str | None], ...] = (
    lambda event: event.delivery.timestamp if event.delivery else None,
    lambda event: event.bounce.timestamp if event.bounce else None,
    lambda event: event.complaint.timestamp if event.complaint else None,
    lambda event: event.mail.timestamp,
)


@dataclass(frozen=True)
class DeliveryContext:
    delivery_id: str
    campaign_id: str
    subscriber_id: str
    subscriber: Subscriber
    attempt_number: int | None
    event_timestamp: datetime
    subscriber_loaded: bool


def get_tag_value(tags: dict[str, list[str]], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        values = tags.get(key)
        if values and values[0]:
            return values[0]
    return None


def parse_attempt(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


class DeliveryContextResolver:
    """Joins an event to stored records. Returns None for events that cannot be correlated."""

    def __init__(self, repository: FeedbackRepository, clock: Callable[[], datetime] = utcnow) -> None:
        self.repository = repository
        self.clock = clock

    def resolve_event_timestamp(self, event: FeedbackEvent) -> datetime:
        for extractor in TIMESTAMP_EXTRACTORS:
            parsed = parse_timestamp(extractor(event))
            if parsed is not None:
                return parsed
        return self.clock()

    def resolve(self, event: FeedbackEvent, allow_subscriber_lookup: bool) -> DeliveryContext | None:
        tags = event.mail.tags
        delivery_id = get_tag_value(tags, DELIVERY_ID_TAGS)
        if not delivery_id:
            logger.warning(
                "Missing deliveryId tag on SES event event_type=%s ses_message_id=%s",
                event.event_type.value,
                event.mail.message_id,
            )
            return None

        campaign_id = get_tag_value(tags, CAMPAIGN_ID_TAGS)
        subscriber_id = get_tag_value(tags, SUBSCRIBER_ID_TAGS)
        attempt_number = parse_attempt(get_tag_value(tags, ATTEMPT_TAGS))

        delivery = self.repository.get_delivery(delivery_id)
        if delivery is not None:
            campaign_id = campaign_id or delivery.campaign_id
            subscriber_id = subscriber_id or delivery.subscriber_id
            if attempt_number is None:
                attempt_number = delivery.attempt_count

        if not campaign_id or not subscriber_id:
            logger.warning(
                "Missing campaignId or subscriberId for SES event delivery_id=%s has_delivery_record=%s",
                delivery_id,
                delivery is not None,
            )
            return None

        event_timestamp = self.resolve_event_timestamp(event)

        if not allow_subscriber_lookup:
            return DeliveryContext(
                delivery_id=delivery_id,
                campaign_id=campaign_id,
                subscriber_id=subscriber_id,
                subscriber=Subscriber.placeholder(subscriber_id),
                attempt_number=attempt_number,
                event_timestamp=event_timestamp,
                subscriber_loaded=False,
            )

        row = self.repository.get_subscriber(subscriber_id)
        if row is None:
            logger.warning(
                "Subscriber record not found for SES event subscriber_id=%s delivery_id=%s",
                subscriber_id,
                delivery_id,
            )
            return None

        subscriber = parse_subscriber_row(row)
        if subscriber is None:
            logger.warning(
                "Failed to parse subscriber record for SES event subscriber_id=%s delivery_id=%s",
                subscriber_id,
                delivery_id,
            )
            return None

        return DeliveryContext(
            delivery_id=delivery_id,
            campaign_id=campaign_id,
            subscriber_id=subscriber_id,
            subscriber=subscriber,
            attempt_number=attempt_number,
            event_timestamp=event_timestamp,
            subscriber_loaded=True,
        )
