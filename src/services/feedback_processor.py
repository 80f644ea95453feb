"""Batch consumer for queued SES feedback notifications.

Each record runs decode -> verify -> resolve -> decide -> persist -> metric on
its own. Integrity and persistence errors put the record id in the returned
failure list so the queue redelivers it; records that can never succeed
(no correlation tags, domain rejections, unsupported event types) are
consumed with a warning.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable

from sqlalchemy.orm import Session, sessionmaker

from src.core.config import settings
from src.db.repository import FeedbackRepository
from src.db.session import session_scope
from src.services.delivery_context import DeliveryContext, DeliveryContextResolver
from src.services.delivery_recorder import DeliveryRecorder
from src.services.envelope import (
    EnvelopeType,
    EventType,
    FeedbackEvent,
    NotificationEnvelope,
    UnsupportedEventTypeError,
    decode_envelope,
    decode_event,
)
from src.services.metrics import MetricEmitter
from src.services.secrets import SecretsProvider
from src.services.subscriber_state import (
    BounceFeedback,
    ComplaintFeedback,
    DeliveryFeedback,
    Feedback,
    Rejection,
    SubscriberStateMachine,
    Transition,
)
from src.utils.datetime import utcnow
from src.utils.logger import logger
from src.utils.redaction import redact
from src.utils.sns import SignatureVerifier, confirm_subscription

SUBSCRIBER_EVENTS = frozenset({EventType.DELIVERY, EventType.BOUNCE, EventType.COMPLAINT})


class RecordOutcome(str, Enum):
    PROCESSED = "processed"
    DROPPED = "dropped"
    CONFIRMED = "confirmed"


@dataclass(frozen=True)
class QueueRecord:
    message_id: str
    body: str

    @classmethod
    def from_sqs(cls, record: dict[str, Any]) -> "QueueRecord":
        """Accept both the event-source shape (messageId/body) and receive_message (MessageId/Body)."""
        message_id = record.get("messageId") or record.get("MessageId")
        body = record.get("body") if "body" in record else record.get("Body")
        if not message_id:
            raise ValueError("SQS record is missing its message id")
        return cls(message_id=message_id, body=body or "")


def feedback_for(event: FeedbackEvent, context: DeliveryContext) -> Feedback:
    if event.event_type is EventType.DELIVERY:
        return DeliveryFeedback()
    if event.event_type is EventType.BOUNCE:
        return BounceFeedback(
            bounce_type=event.bounce.bounce_type if event.bounce else None,
            attempt_number=context.attempt_number,
        )
    if event.event_type is EventType.COMPLAINT:
        return ComplaintFeedback()
    raise ValueError(f"{event.event_type.value} events do not change subscriber state")


class FeedbackProcessor:
    """Processes one batch of queue records; returns the ids that must be redelivered."""

    def __init__(
        self,
        session_factory: sessionmaker | None = None,
        verifier: SignatureVerifier | None = None,
        secrets: SecretsProvider | None = None,
        metrics: MetricEmitter | None = None,
        environment: str | None = None,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] | None = None,
        confirm_subscriptions: bool | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.verifier = verifier or SignatureVerifier()
        self.secrets = secrets or SecretsProvider()
        self.environment = environment or settings.environment
        self.metrics = metrics or MetricEmitter(environment=self.environment)
        self.clock = clock
        self.id_factory = id_factory
        if confirm_subscriptions is None:
            confirm_subscriptions = settings.sns_confirm_subscriptions
        self.confirm_subscriptions = confirm_subscriptions

    def process(self, records: Iterable[QueueRecord | dict[str, Any]]) -> list[str]:
        failed: list[str] = []
        total = 0
        for raw in records:
            total += 1
            try:
                record = raw if isinstance(raw, QueueRecord) else QueueRecord.from_sqs(raw)
            except ValueError:
                # Without an id the record cannot be reported for redelivery.
                logger.error("Skipping SQS record without a message id keys=%s", sorted(raw))
                continue
            try:
                outcome = self.process_record(record)
            except Exception:
                logger.exception("Failed to process SES event message_id=%s", record.message_id)
                failed.append(record.message_id)
            else:
                logger.debug("SES record message_id=%s outcome=%s", record.message_id, outcome.value)

        self.metrics.flush(settings.metric_flush_timeout_seconds)
        if failed:
            logger.warning("Partial batch failure failed_count=%s total_count=%s", len(failed), total)
        return failed

    def process_record(self, record: QueueRecord) -> RecordOutcome:
        envelope = decode_envelope(record.body)
        self.verifier.verify(envelope)

        if envelope.type is not EnvelopeType.NOTIFICATION:
            return self._handle_confirmation(envelope)

        try:
            event = decode_event(envelope.message)
        except UnsupportedEventTypeError as exc:
            logger.warning("Unsupported SES event type event_type=%s sns_message_id=%s", exc.event_type, envelope.message_id)
            return RecordOutcome.DROPPED

        logger.debug("Processing SES event %s sns_message_id=%s", redact(event), envelope.message_id)

        with session_scope(self.session_factory) as session:
            outcome = self._apply(event, session)

        self.metrics.emit(event.event_type.value)
        return outcome

    def _handle_confirmation(self, envelope: NotificationEnvelope) -> RecordOutcome:
        if envelope.type is EnvelopeType.SUBSCRIPTION_CONFIRMATION and self.confirm_subscriptions:
            confirm_subscription(envelope.subscribe_url, self.verifier.timeout_seconds)
            logger.info("Confirmed SNS subscription topic_arn=%s", envelope.topic_arn)
            return RecordOutcome.CONFIRMED
        logger.info("Ignoring SNS %s topic_arn=%s", envelope.type.value, envelope.topic_arn)
        return RecordOutcome.DROPPED

    def _apply(self, event: FeedbackEvent, session: Session) -> RecordOutcome:
        repository = FeedbackRepository(session)
        mutates_subscriber = event.event_type in SUBSCRIBER_EVENTS
        context = DeliveryContextResolver(repository, self.clock).resolve(event, allow_subscriber_lookup=mutates_subscriber)
        if context is None:
            return RecordOutcome.DROPPED

        transition: Transition | None = None
        if mutates_subscriber:
            result = self._state_machine().apply(
                feedback_for(event, context),
                context.subscriber,
                context.campaign_id,
                context.delivery_id,
                context.event_timestamp,
            )
            if isinstance(result, Rejection):
                logger.warning(
                    "SES event rejected code=%s reason=%s delivery_id=%s",
                    result.code,
                    result.reason,
                    context.delivery_id,
                )
                return RecordOutcome.DROPPED
            transition = result

        status = DeliveryRecorder(repository).record(event, context)

        if transition is not None:
            self._persist_transition(repository, context, transition)
            logger.info(
                "Applied SES event event_type=%s delivery_id=%s delivery_status=%s subscriber_state=%s->%s",
                event.event_type.value,
                context.delivery_id,
                status.value,
                transition.previous_state.value,
                transition.subscriber.state.value,
            )
        else:
            logger.info(
                "Applied SES event event_type=%s delivery_id=%s delivery_status=%s",
                event.event_type.value,
                context.delivery_id,
                status.value,
            )
        return RecordOutcome.PROCESSED

    def _state_machine(self) -> SubscriberStateMachine:
        secret = self.secrets.get_email_hash_secret(self.environment)
        if self.id_factory is None:
            return SubscriberStateMachine(secret)
        return SubscriberStateMachine(secret, id_factory=self.id_factory)

    def _persist_transition(self, repository: FeedbackRepository, context: DeliveryContext, transition: Transition) -> None:
        repository.put_subscriber(transition.subscriber)
        if transition.audit_events:
            repository.put_audit_events(transition.audit_events, context.subscriber_id)
        if transition.engagement_events:
            ttl_days = self.secrets.get_engagement_ttl_days(self.environment)
            repository.put_engagement_events(transition.engagement_events, context.subscriber_id, ttl_days)
