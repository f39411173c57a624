"""Tests for credential resolution."""

from __future__ import annotations

import json
from typing import Any

import pytest
from botocore.exceptions import ClientError

from relay_ingestor.exceptions import ConfigurationError, SecretNotFoundError
from relay_ingestor.utils.config import GlobalSettings, SecretsSettings
from relay_ingestor.utils.secrets import (
    EnvironmentSecretResolver,
    SecretsManagerResolver,
    build_secret_resolver,
    secret_env_name,
)


class _FakeSecretsClient:
    def __init__(self, response: dict[str, Any] | Exception) -> None:
        self._response = response
        self.requested: list[str] = []

    def get_secret_value(self, SecretId: str) -> dict[str, Any]:
        self.requested.append(SecretId)
        if isinstance(self._response, Exception):
            raise self._response
        return self._response


class _FakeSession:
    def __init__(self, client: _FakeSecretsClient) -> None:
        self._client = client
        self.endpoints: list[str | None] = []

    def client(self, service_name: str, endpoint_url: str | None = None) -> _FakeSecretsClient:
        assert service_name == "secretsmanager"
        self.endpoints.append(endpoint_url)
        return self._client


def test_secret_env_name() -> None:
    assert secret_env_name("slack-bot") == "RELAY_SECRET_SLACK_BOT"
    assert secret_env_name("matrix.token/2", prefix="X_") == "X_MATRIX_TOKEN_2"


def test_environment_resolver_reads_and_strips() -> None:
    resolver = EnvironmentSecretResolver(environ={"RELAY_SECRET_SLACK_BOT": "  xoxb-1  "})

    assert resolver("slack-bot") == "xoxb-1"
    with pytest.raises(SecretNotFoundError, match="RELAY_SECRET_MATRIX_BOT is not set"):
        resolver("matrix-bot")
    with pytest.raises(SecretNotFoundError):
        resolver("")


def test_environment_resolver_rereads_on_every_call(monkeypatch: pytest.MonkeyPatch) -> None:
    resolver = EnvironmentSecretResolver()
    monkeypatch.setenv("RELAY_SECRET_FEED", "first")
    assert resolver("feed") == "first"

    monkeypatch.setenv("RELAY_SECRET_FEED", "rotated")
    assert resolver("feed") == "rotated"


def test_secrets_manager_resolver() -> None:
    client = _FakeSecretsClient({"SecretString": json.dumps({"slack-bot": "xoxb-2", "blank": " "})})
    session = _FakeSession(client)
    settings = SecretsSettings(backend="aws", secret_name="relay/prod", endpoint_url="http://localhost:4566")
    resolver = SecretsManagerResolver(settings, session=session)

    assert resolver("slack-bot") == "xoxb-2"
    assert client.requested == ["relay/prod"]
    assert session.endpoints == ["http://localhost:4566"]
    with pytest.raises(SecretNotFoundError, match="key not present"):
        resolver("blank")


@pytest.mark.parametrize(
    "response",
    [
        {"SecretString": "not json"},
        {"SecretString": "[1, 2]"},
        {"SecretBinary": b"x"},
        ClientError({"Error": {"Code": "ResourceNotFoundException", "Message": "gone"}}, "GetSecretValue"),
    ],
)
def test_secrets_manager_failures_are_not_found(response) -> None:
    resolver = SecretsManagerResolver(
        SecretsSettings(backend="aws", secret_name="relay/prod"), session=_FakeSession(_FakeSecretsClient(response))
    )

    with pytest.raises(SecretNotFoundError):
        resolver("slack-bot")


def test_secrets_manager_requires_secret_name() -> None:
    with pytest.raises(ConfigurationError):
        SecretsManagerResolver(SecretsSettings(backend="aws"))


def test_build_secret_resolver_selects_backend() -> None:
    env = build_secret_resolver(GlobalSettings(secrets={"env_prefix": "APP_"}))
    aws = build_secret_resolver(GlobalSettings(secrets={"backend": "aws", "secret_name": "relay/prod"}))

    assert isinstance(env, EnvironmentSecretResolver)
    assert isinstance(aws, SecretsManagerResolver)
