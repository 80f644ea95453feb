"""SNS helper utilities for signature verification and subscriptions."""
from __future__ import annotations

import base64
import binascii
import re
import time
from typing import Callable
from urllib.parse import urlparse

import requests
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from src.core.cache import ProcessCache
from src.core.config import settings
from src.services.envelope import EnvelopeType, NotificationEnvelope
from src.utils.logger import logger

SNS_HOST_PATTERN = re.compile(r"^sns(\.[a-z0-9-]+)?\.amazonaws\.com(\.cn)?$")

SIGNATURE_HASHES: dict[str, Callable[[], hashes.HashAlgorithm]] = {
    "1": hashes.SHA1,
    "2": hashes.SHA256,
}

NOTIFICATION_FIELDS = ("Message", "MessageId", "Subject", "Timestamp", "TopicArn", "Type")
CONFIRMATION_FIELDS = ("Message", "MessageId", "SubscribeURL", "Timestamp", "Token", "TopicArn", "Type")
OPTIONAL_FIELDS = frozenset({"Subject"})
CERT_CHUNK_SIZE = 8192


class SignatureError(Exception):
    """The envelope could not be proven to come from SNS."""


def is_allowed_cert_url(cert_url: str | None) -> tuple[bool, str]:
    """Validate SNS SigningCertURL scheme, credentials, port, host and path."""
    if not cert_url:
        return False, "SigningCertURL is missing"
    parsed = urlparse(cert_url)
    if parsed.scheme != "https":
        return False, "SigningCertURL must use https"
    if parsed.username or parsed.password:
        return False, "SigningCertURL must not include credentials"
    try:
        port = parsed.port
    except ValueError:
        return False, "SigningCertURL has an invalid port"
    if port is not None and port != 443:
        return False, "SigningCertURL must use port 443"
    host = (parsed.hostname or "").lower()
    if not SNS_HOST_PATTERN.match(host):
        return False, "SigningCertURL hostname is not allowed"
    if not parsed.path.endswith(".pem"):
        return False, "SigningCertURL must reference a PEM certificate"
    return True, "ok"


def _envelope_values(envelope: NotificationEnvelope) -> dict[str, str | None]:
    return {
        "Message": envelope.message,
        "MessageId": envelope.message_id,
        "Subject": envelope.subject,
        "SubscribeURL": envelope.subscribe_url,
        "Timestamp": envelope.timestamp,
        "Token": envelope.token,
        "TopicArn": envelope.topic_arn,
        "Type": envelope.type.value,
    }


def build_string_to_sign(envelope: NotificationEnvelope) -> str:
    """Rebuild the exact bytes SNS signed: ``Name\\nvalue\\n`` per field, in canonical order."""
    if envelope.type is EnvelopeType.NOTIFICATION:
        fields = NOTIFICATION_FIELDS
    else:
        fields = CONFIRMATION_FIELDS

    values = _envelope_values(envelope)
    parts: list[str] = []
    for field in fields:
        value = values[field]
        if not value:
            if field in OPTIONAL_FIELDS:
                continue
            raise SignatureError(f"Missing SNS field: {field}")
        parts.append(f"{field}\n{value}\n")
    return "".join(parts)


def _fetch_url(url: str, timeout_seconds: float) -> bytes:
    # requests applies the timeout per socket operation; the deadline bounds the whole download.
    deadline = time.monotonic() + timeout_seconds
    with requests.get(url, timeout=timeout_seconds, stream=True) as response:
        if response.status_code != 200:
            raise SignatureError(f"SNS certificate fetch failed with status {response.status_code}")
        chunks = []
        for chunk in response.iter_content(chunk_size=CERT_CHUNK_SIZE):
            if time.monotonic() > deadline:
                raise requests.Timeout(f"SNS certificate download exceeded {timeout_seconds}s")
            chunks.append(chunk)
    return b"".join(chunks)


class SignatureVerifier:
    """Checks SNS envelopes against the X.509 certificate they point at."""

    def __init__(
        self,
        cert_cache: ProcessCache[bytes] | None = None,
        timeout_seconds: float | None = None,
        fetch: Callable[[str, float], bytes] | None = None,
    ) -> None:
        self.cert_cache = cert_cache if cert_cache is not None else ProcessCache("sns-signing-certificates")
        self.timeout_seconds = timeout_seconds or settings.sns_cert_fetch_timeout_seconds
        self._fetch = fetch or _fetch_url

    def fetch_certificate(self, cert_url: str) -> bytes:
        def fetch() -> bytes:
            try:
                pem = self._fetch(cert_url, self.timeout_seconds)
            except requests.Timeout as exc:
                raise SignatureError("SNS certificate fetch timed out") from exc
            except requests.RequestException as exc:
                raise SignatureError("Failed to fetch SigningCertURL") from exc
            logger.info("Fetched SNS signing certificate host=%s", urlparse(cert_url).hostname)
            return pem

        return self.cert_cache.get_or_fetch(cert_url, fetch)

    def verify(self, envelope: NotificationEnvelope) -> None:
        """Raise SignatureError unless the envelope is authentic."""

        allowed, reason = is_allowed_cert_url(envelope.signing_cert_url)
        if not allowed:
            raise SignatureError(reason)

        hash_factory = SIGNATURE_HASHES.get(envelope.signature_version or "")
        if hash_factory is None:
            raise SignatureError(f"Unsupported SignatureVersion: {envelope.signature_version}")

        if not envelope.signature:
            raise SignatureError("Missing Signature")
        try:
            signature = base64.b64decode(envelope.signature, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise SignatureError("Invalid Signature encoding") from exc

        data_to_sign = build_string_to_sign(envelope).encode("utf-8")
        cert_pem = self.fetch_certificate(envelope.signing_cert_url)

        try:
            certificate = x509.load_pem_x509_certificate(cert_pem)
        except ValueError as exc:
            raise SignatureError("SigningCertURL did not return a valid certificate") from exc
        public_key = certificate.public_key()
        if not isinstance(public_key, rsa.RSAPublicKey):
            raise SignatureError("SNS signing certificate does not carry an RSA key")

        try:
            public_key.verify(signature, data_to_sign, padding.PKCS1v15(), hash_factory())
        except InvalidSignature as exc:
            raise SignatureError("SNS signature verification failed") from exc


def confirm_subscription(subscribe_url: str, timeout_seconds: float) -> None:
    """Visit the SubscribeURL of a verified SubscriptionConfirmation."""
    parsed = urlparse(subscribe_url)
    if parsed.scheme != "https" or not SNS_HOST_PATTERN.match((parsed.hostname or "").lower()):
        raise SignatureError("SubscribeURL is not an Amazon SNS endpoint")
    response = requests.get(subscribe_url, timeout=timeout_seconds)
    response.raise_for_status()
