"""Strip personal data from payloads before they reach the logs."""
from __future__ import annotations

from typing import Any

REDACTED = "[REDACTED]"

PII_KEYS = frozenset(
    {
        "email",
        "emailAddress",
        "emailNormalized",
        "email_normalized",
        "hashedEmail",
        "hashed_email",
        "destination",
        "source",
        "firstName",
        "first_name",
        "lastName",
        "last_name",
        "commonHeaders",
        "headers",
        "token",
        "Token",
        "tokens",
        "confirmToken",
        "unsubscribeToken",
        "secret",
        "password",
        "authorization",
        "Authorization",
        "cookie",
        "Cookie",
        "SubscribeURL",
        "UnsubscribeURL",
    }
)


def redact(record: Any) -> Any:
    """Return a copy of ``record`` with every PII key replaced by a marker.

    Nested mappings and lists are walked recursively; pydantic models are
    dumped by alias first so provider field names are matched.
    """
    if hasattr(record, "model_dump"):
        record = record.model_dump(by_alias=True, mode="json")
    if isinstance(record, dict):
        return {key: REDACTED if key in PII_KEYS else redact(value) for key, value in record.items()}
    if isinstance(record, (list, tuple)):
        return [redact(item) for item in record]
    return record
