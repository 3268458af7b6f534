"""
Shared pytest fixtures for timecapsule tests.

This module provides:
- An in-memory fake Redis client (no live server needed)
- Store fixtures parametrized over both adapters
- Settings cache and environment isolation
"""

from __future__ import annotations

import os
from collections.abc import Iterator

import pytest

from tests._support import SORTED_SET_KEY
from tests._support.fakes import FakeRedis
from timecapsule.settings import clear_settings_cache
from timecapsule.stores import RedisCommandStore, RedisStore, SortedSetStore


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Drop TIMECAPSULE_* env vars and the settings cache around every test."""
    for name in list(os.environ):
        if name.startswith("TIMECAPSULE_"):
            monkeypatch.delenv(name, raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture(params=[RedisStore, RedisCommandStore], ids=["redis", "redis_command"])
def store(request: pytest.FixtureRequest, fake_redis: FakeRedis) -> SortedSetStore:
    """A store on the fake client, once per adapter."""
    return request.param(SORTED_SET_KEY, fake_redis, retry_limit=5, retry_interval=0.001)
