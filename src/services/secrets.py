"""Secrets Manager and SSM lookups, cached for the life of the process."""
from __future__ import annotations

import base64
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from src.core.cache import ProcessCache
from src.core.config import settings
from src.utils.logger import logger


class ConfigurationError(RuntimeError):
    """A secret or parameter exists but its value cannot be used."""


class SecretsProvider:
    """Encapsulates the boto3 Secrets Manager and SSM clients."""

    def __init__(
        self,
        cache: ProcessCache[Any] | None = None,
        secrets_client: Any | None = None,
        ssm_client: Any | None = None,
        region_name: str | None = None,
    ) -> None:
        self.cache = cache if cache is not None else ProcessCache("secrets-and-parameters")
        self.region_name = region_name or settings.aws_region_name
        self._secrets_client = secrets_client
        self._ssm_client = ssm_client

    def _client_kwargs(self) -> dict[str, str]:
        client_kwargs = {"region_name": self.region_name}
        if settings.aws_access_key_id and settings.aws_secret_access_key:
            client_kwargs["aws_access_key_id"] = settings.aws_access_key_id
            client_kwargs["aws_secret_access_key"] = settings.aws_secret_access_key
        return client_kwargs

    def _secrets(self):
        if self._secrets_client is None:
            self._secrets_client = boto3.client("secretsmanager", **self._client_kwargs())
        return self._secrets_client

    def _ssm(self):
        if self._ssm_client is None:
            self._ssm_client = boto3.client("ssm", **self._client_kwargs())
        return self._ssm_client

    def get_email_hash_secret(self, environment: str) -> bytes:
        secret_id = settings.email_hash_secret_id_template.format(environment=environment)

        def fetch() -> bytes:
            try:
                response = self._secrets().get_secret_value(SecretId=secret_id)
            except (BotoCoreError, ClientError):
                logger.exception("Failed to read email hash secret secret_id=%s", secret_id)
                raise
            if response.get("SecretString"):
                secret = response["SecretString"].encode("utf-8")
            elif response.get("SecretBinary"):
                binary = response["SecretBinary"]
                secret = binary if isinstance(binary, bytes) else base64.b64decode(binary)
            else:
                secret = b""
            if not secret:
                raise ConfigurationError(f"Missing email hash secret value for {secret_id}")
            return secret

        return self.cache.get_or_fetch(("secret", secret_id), fetch)

    def get_engagement_ttl_days(self, environment: str) -> int:
        parameter_name = settings.engagement_ttl_parameter_template.format(environment=environment)

        def fetch() -> int:
            try:
                response = self._ssm().get_parameter(Name=parameter_name)
            except (BotoCoreError, ClientError):
                logger.exception("Failed to read engagement TTL parameter name=%s", parameter_name)
                raise
            raw = (response.get("Parameter") or {}).get("Value")
            try:
                value = int(str(raw).strip())
            except ValueError as exc:
                raise ConfigurationError(f"Invalid engagement TTL days from {parameter_name}") from exc
            if value <= 0:
                raise ConfigurationError(f"Invalid engagement TTL days from {parameter_name}")
            return value

        return self.cache.get_or_fetch(("parameter", parameter_name), fetch)
