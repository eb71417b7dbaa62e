"""Tests for settings."""

from pathlib import Path

import pytest

from admission.config import Settings


class TestSettings:
    """Tests for Settings."""

    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("POLICIES_PATH", raising=False)
        monkeypatch.delenv("JWT_SECRET", raising=False)
        settings = Settings(_env_file=None)

        assert settings.api_port == 8000
        assert settings.jwt_secret is None
        assert settings.trust_forwarded_for is False
        assert settings.lock_stripes == 64
        assert settings.idle_eviction_windows == 10
        assert settings.policies_file is None

    def test_environment_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("JWT_SECRET", "from-env")
        monkeypatch.setenv("TRUST_FORWARDED_FOR", "true")
        monkeypatch.setenv("SWEEP_INTERVAL_SECONDS", "5")
        settings = Settings(_env_file=None)

        assert settings.jwt_secret == "from-env"
        assert settings.trust_forwarded_for is True
        assert settings.sweep_interval_seconds == 5.0

    def test_policies_file(self) -> None:
        settings = Settings(_env_file=None, policies_path="config/policies.json")
        assert settings.policies_file == Path("config/policies.json")
