from __future__ import annotations

import pytest
from pydantic import ValidationError

from edgerelay.common.settings import RelaySettings


def test_defaults_target_public_release_host(monkeypatch):
    for name in ("EDGERELAY_REPOSITORY", "EDGERELAY_LATEST_TTL", "EDGERELAY_DOWNLOAD_TTL"):
        monkeypatch.delenv(name, raising=False)
    settings = RelaySettings()

    assert settings.script_url == "https://raw.githubusercontent.com/Zyling-ai/zyhive/main/scripts/install.sh"
    assert settings.latest_release_url == "https://api.github.com/repos/Zyling-ai/zyhive/releases/latest"
    assert settings.download_url("v1.0.0", "aipanel-linux-amd64") == (
        "https://github.com/Zyling-ai/zyhive/releases/download/v1.0.0/aipanel-linux-amd64"
    )
    assert settings.latest_cache_ttl_seconds == 300
    assert settings.download_cache_ttl_seconds == 86400
    assert settings.homepage_url == "https://zyling.ai"
    assert settings.user_agent == "ZyHive-Install-Worker/1.0"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("EDGERELAY_REPOSITORY", "/acme/tool/")
    monkeypatch.setenv("EDGERELAY_DOWNLOAD_BASE_URL", "https://mirror.example.test/")
    monkeypatch.setenv("EDGERELAY_LATEST_TTL", "60")
    monkeypatch.setenv("EDGERELAY_METRICS_TOKEN", "s3cret")

    settings = RelaySettings()

    assert settings.repository == "acme/tool"
    assert settings.download_base_url == "https://mirror.example.test"
    assert settings.latest_cache_ttl_seconds == 60
    assert settings.metrics_token.get_secret_value() == "s3cret"
    assert settings.latest_cache_key == "relay://latest/acme/tool"


def test_redis_backend_requires_url(monkeypatch):
    monkeypatch.delenv("EDGERELAY_REDIS_URL", raising=False)
    with pytest.raises(ValidationError):
        RelaySettings(cache_backend="redis")


def test_ttls_must_be_positive():
    with pytest.raises(ValidationError):
        RelaySettings(download_cache_ttl_seconds=0)


def test_settings_are_frozen(relay_settings):
    with pytest.raises(ValidationError):
        relay_settings.repository = "other/repo"
