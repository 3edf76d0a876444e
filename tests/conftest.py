"""
Pytest configuration and fixtures for segmentation tests.

Provides shared fixtures for:
- Mock Redis client (fakeredis)
- A scriptable fake model client that records prompts
- Settings isolated from the environment
"""

import pytest

from libs.common.settings import SegmentationSettings, get_settings
from tests.fakes import FakeModelClient


@pytest.fixture(autouse=True)
def clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings():
    """Settings with defaults, independent of SEGMENTATION_* variables."""
    return SegmentationSettings(_env_file=None)


@pytest.fixture
def fake_client():
    return FakeModelClient()


@pytest.fixture
async def redis_client():
    """
    Provide fakeredis client for testing.

    This avoids requiring actual Redis server during tests.
    """
    from fakeredis import aioredis as fakeredis

    client = fakeredis.FakeRedis(decode_responses=True)

    yield client

    await client.flushdb()
    await client.aclose()
