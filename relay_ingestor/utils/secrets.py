"""Credential resolution for adapters.

Adapters receive a ``get_secret(name)`` callable and must not cache what it
returns beyond a single call or connection. Resolvers raise
:class:`SecretNotFoundError` instead of handing back an empty credential.
"""

from __future__ import annotations

import json
import os
import re
from collections.abc import Callable
from typing import Any

from boto3.session import Session
from botocore.exceptions import BotoCoreError, ClientError

from ..exceptions import ConfigurationError, SecretNotFoundError
from .config import GlobalSettings, SecretsSettings

SecretGetter = Callable[[str], str]

_NON_ALNUM = re.compile(r"[^A-Za-z0-9]+")


def secret_env_name(name: str, prefix: str = "RELAY_SECRET_") -> str:
    """Map a secret name such as ``slack-bot`` to ``RELAY_SECRET_SLACK_BOT``."""

    normalized = _NON_ALNUM.sub("_", name).strip("_").upper()
    return f"{prefix}{normalized}"


class EnvironmentSecretResolver:
    """Resolve secrets from prefixed environment variables."""

    def __init__(self, prefix: str = "RELAY_SECRET_", environ: dict[str, str] | None = None):
        self._prefix = prefix
        self._environ = environ

    def __call__(self, name: str) -> str:
        if not name:
            raise SecretNotFoundError(name, "no secret name configured")
        environ = self._environ if self._environ is not None else os.environ
        variable = secret_env_name(name, self._prefix)
        value = environ.get(variable, "").strip()
        if not value:
            raise SecretNotFoundError(name, f"environment variable {variable} is not set")
        return value


class SecretsManagerResolver:
    """Resolve secrets from a JSON mapping stored in AWS Secrets Manager.

    The secret is fetched on every call so rotated credentials take effect
    without a restart.
    """

    def __init__(self, settings: SecretsSettings, session: Session | None = None):
        if not settings.secret_name:
            raise ConfigurationError(
                "Secrets Manager backend enabled but no secrets.secret_name configured"
            )
        self._settings = settings
        self._session = session

    def _client(self) -> Any:
        session = self._session
        if session is None:
            session_kwargs: dict[str, Any] = {}
            if self._settings.region:
                session_kwargs["region_name"] = self._settings.region
            if self._settings.profile:
                session_kwargs["profile_name"] = self._settings.profile
            session = Session(**session_kwargs)
        return session.client("secretsmanager", endpoint_url=self._settings.endpoint_url)

    def __call__(self, name: str) -> str:
        secret_id = self._settings.secret_name
        try:
            response = self._client().get_secret_value(SecretId=secret_id)
        except (BotoCoreError, ClientError) as exc:
            raise SecretNotFoundError(name, f"Secrets Manager lookup failed: {exc}") from exc

        secret_string = response.get("SecretString")
        if not secret_string:
            raise SecretNotFoundError(name, f"secret '{secret_id}' has no string payload")
        try:
            payload = json.loads(secret_string)
        except json.JSONDecodeError as exc:
            raise SecretNotFoundError(name, f"secret '{secret_id}' is not a JSON object") from exc
        if not isinstance(payload, dict):
            raise SecretNotFoundError(name, f"secret '{secret_id}' is not a JSON object")

        value = payload.get(name)
        if value is None or not str(value).strip():
            raise SecretNotFoundError(name, f"key not present in secret '{secret_id}'")
        return str(value).strip()


def build_secret_resolver(settings: GlobalSettings) -> SecretGetter:
    """Return the resolver selected by ``settings.secrets.backend``."""

    secrets_cfg = settings.secrets
    if secrets_cfg.backend == "aws":
        return SecretsManagerResolver(secrets_cfg)
    return EnvironmentSecretResolver(prefix=secrets_cfg.env_prefix)
