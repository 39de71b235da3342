"""Tests for per-concern settings and their validators."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from stationthis.config.settings import (
    DatabaseSettings,
    GatewaySettings,
    NotificationSettings,
    OpenAISettings,
)


class TestDatabaseSettings:
    def test_default_schema(self) -> None:
        assert DatabaseSettings().schema_ == "stationthis"

    def test_other_schema_rejected(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DATABASE_SCHEMA", "public")
        with pytest.raises(ValidationError, match="DATABASE_SCHEMA must be 'stationthis'"):
            DatabaseSettings()


class TestGatewaySettings:
    def test_webhook_url_from_public_base(self) -> None:
        s = GatewaySettings(public_base_url="https://coord.example/")
        assert s.webhook_url == "https://coord.example/webhooks/comfydeploy"

    def test_retry_defaults(self) -> None:
        s = GatewaySettings()
        assert s.invoke_max_attempts == 3
        assert s.invoke_base_delay_s == 1.0
        assert s.aggregation_max_attempts == 5

    def test_zero_attempts_rejected(self) -> None:
        with pytest.raises(ValidationError):
            GatewaySettings(invoke_max_attempts=0)

    def test_env_prefix(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("GATEWAY_AGGREGATION_MAX_ATTEMPTS", "7")
        assert GatewaySettings().aggregation_max_attempts == 7


class TestNotificationSettings:
    def test_defaults(self) -> None:
        s = NotificationSettings()
        assert s.max_delivery_attempts == 3
        assert s.webhook_secret == ""

    def test_zero_attempts_rejected(self) -> None:
        with pytest.raises(ValidationError, match="max_delivery_attempts must be >= 1"):
            NotificationSettings(max_delivery_attempts=0)

    def test_non_positive_timeout_rejected(self) -> None:
        with pytest.raises(ValidationError, match="webhook_timeout_s must be > 0"):
            NotificationSettings(webhook_timeout_s=0)


def test_openai_disabled_by_default(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    assert OpenAISettings().api_key == ""
