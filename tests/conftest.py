from __future__ import annotations

import pytest

from edgerelay.common.settings import RelaySettings
from tests.utils.relay import FakeUpstream


@pytest.fixture
def relay_settings() -> RelaySettings:
    return RelaySettings(
        repository="Zyling-ai/zyhive",
        raw_base_url="https://raw.example.test",
        api_base_url="https://api.example.test",
        download_base_url="https://downloads.example.test",
        homepage_url="https://home.example.test",
        served_by="install.example.test",
        cache_backend="memory",
        redis_url=None,
        metrics_token=None,
    )


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()
