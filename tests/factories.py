"""Builders shared by the test modules."""
from __future__ import annotations

import base64
import json
from datetime import UTC, datetime, timedelta
from typing import Any

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import NameOID
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from src.db import models
from src.services.envelope import NotificationEnvelope
from src.utils.sns import build_string_to_sign

CERT_URL = "https://sns.ap-southeast-2.amazonaws.com/SimpleNotificationService-test.pem"
TOPIC_ARN = "arn:aws:sns:ap-southeast-2:123456789012:ses-events"


def make_session_factory() -> sessionmaker:
    engine = create_engine(
        "sqlite:///:memory:",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    models.Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autoflush=False)


def make_signing_material() -> tuple[rsa.RSAPrivateKey, bytes]:
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "sns.amazonaws.com")])
    now = datetime.now(UTC)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .sign(private_key, hashes.SHA256())
    )
    return private_key, certificate.public_bytes(serialization.Encoding.PEM)


def sign_payload(payload: dict[str, Any], private_key: rsa.RSAPrivateKey, version: str = "1") -> dict[str, Any]:
    """Return a copy of ``payload`` carrying a valid signature for ``version``."""
    signed = dict(payload, SignatureVersion=version, SigningCertURL=payload.get("SigningCertURL", CERT_URL))
    string_to_sign = build_string_to_sign(NotificationEnvelope.model_validate(signed)).encode("utf-8")
    algorithm = hashes.SHA1() if version == "1" else hashes.SHA256()
    signature = private_key.sign(string_to_sign, padding.PKCS1v15(), algorithm)
    signed["Signature"] = base64.b64encode(signature).decode("ascii")
    return signed


def ses_event(
    event_type: str = "Delivery",
    tags: dict[str, list[str]] | None = None,
    **sections: Any,
) -> dict[str, Any]:
    event: dict[str, Any] = {
        "eventType": event_type,
        "mail": {
            "timestamp": "2025-12-16T00:00:00.000Z",
            "messageId": "ses-message-id",
            "source": "news@courierx.example",
            "destination": ["reader@example.com"],
            "tags": tags if tags is not None else {},
        },
    }
    event.update(sections)
    return event


def delivery_tags(delivery_id: str = "d-1", campaign_id: str = "c-1", subscriber_id: str = "s-1", attempt: str | None = "1") -> dict[str, list[str]]:
    tags = {"deliveryId": [delivery_id], "campaignId": [campaign_id], "subscriberId": [subscriber_id]}
    if attempt is not None:
        tags["attempt"] = [attempt]
    return tags


def notification(message: dict[str, Any], **overrides: Any) -> dict[str, Any]:
    payload = {
        "Type": "Notification",
        "MessageId": "sns-message-id",
        "TopicArn": TOPIC_ARN,
        "Message": json.dumps(message),
        "Timestamp": "2025-12-16T00:00:01.000Z",
        "SignatureVersion": "1",
        "Signature": "dGVzdA==",
        "SigningCertURL": CERT_URL,
    }
    payload.update(overrides)
    return payload


def sqs_record(message_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {"messageId": message_id, "body": json.dumps(payload)}


class AcceptingVerifier:
    """Signature verifier stand-in for tests that are not about signatures."""

    timeout_seconds = 5.0

    def __init__(self) -> None:
        self.verified: list[NotificationEnvelope] = []

    def verify(self, envelope: NotificationEnvelope) -> None:
        self.verified.append(envelope)


class FakeSecrets:
    def __init__(self, secret: bytes = b"hash-secret", ttl_days: int = 30) -> None:
        self.secret = secret
        self.ttl_days = ttl_days

    def get_email_hash_secret(self, environment: str) -> bytes:  # noqa: ARG002
        return self.secret

    def get_engagement_ttl_days(self, environment: str) -> int:  # noqa: ARG002
        return self.ttl_days


class FakeMetrics:
    def __init__(self) -> None:
        self.emitted: list[str] = []
        self.flushed = 0

    def emit(self, event_type: str) -> None:
        self.emitted.append(event_type)

    def flush(self, timeout: float | None = None) -> None:  # noqa: ARG002
        self.flushed += 1


def add_subscriber(session_factory: sessionmaker, subscriber_id: str = "s-1", state: str = "SUBSCRIBED", **fields: Any) -> None:
    session = session_factory()
    session.add(
        models.Subscriber(
            subscriber_id=subscriber_id,
            state=state,
            email=fields.pop("email", "Reader@Example.com"),
            email_normalized=fields.pop("email_normalized", "reader@example.com"),
            bounce_count=fields.pop("bounce_count", 0),
            **fields,
        )
    )
    session.commit()
    session.close()


def add_delivery(session_factory: sessionmaker, delivery_id: str = "d-1", **fields: Any) -> None:
    session = session_factory()
    session.add(models.Delivery(delivery_id=delivery_id, status=fields.pop("status", "PENDING"), **fields))
    session.commit()
    session.close()
