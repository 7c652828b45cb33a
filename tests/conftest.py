from __future__ import annotations

from pathlib import Path

import pytest

from cra_proxy.common.settings import ProxySettings
from tests.utils.origin import ORIGIN_URL, FakeOrigin


@pytest.fixture
def origin() -> FakeOrigin:
    return FakeOrigin()


@pytest.fixture
def cache_dir(tmp_path: Path) -> Path:
    return tmp_path / "cache"


@pytest.fixture
def settings(cache_dir: Path) -> ProxySettings:
    return ProxySettings(source=ORIGIN_URL, cache_dir=cache_dir, default_version="v1")


@pytest.fixture
def anyio_backend():
    return "asyncio"
