"""
Pytest configuration and shared test fixtures.

Provides the FastAPI test client and an in-memory stand-in for the Redis
client wrapper that behaves like Redis for the handful of commands the
settings cache and inventory coordinator use.
"""

import json
from typing import Any, Generator, Optional, Union

import pytest
from fastapi.testclient import TestClient

from src.cache.redis_client import CacheKeyManager
from src.main import app


class InMemoryRedis:
    """
    Dictionary backed replacement for ``RedisClient``.

    TTLs are recorded but never expire. ``fail_with`` makes every command
    raise the given exception, to exercise error paths.
    """

    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, Optional[int]] = {}
        self.fail_with: Optional[Exception] = None

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    async def health_check(self) -> bool:
        return self.fail_with is None

    async def get(self, key: str) -> Optional[str]:
        self._check()
        return self.store.get(key)

    async def set(
        self,
        key: str,
        value: Union[str, bytes, int, float],
        ex: Optional[int] = None,
        nx: bool = False,
    ) -> bool:
        self._check()
        if nx and key in self.store:
            return False
        self.store[key] = str(value)
        self.ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> int:
        self._check()
        count = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                count += 1
            self.ttls.pop(key, None)
        return count

    async def incr(self, key: str, amount: int = 1) -> int:
        self._check()
        value = int(self.store.get(key, "0")) + amount
        self.store[key] = str(value)
        return value

    async def decr(self, key: str, amount: int = 1) -> int:
        return await self.incr(key, -amount)

    async def get_json(self, key: str) -> Optional[dict[str, Any]]:
        value = await self.get(key)
        return json.loads(value) if value is not None else None

    async def set_json(
        self,
        key: str,
        value: dict[str, Any],
        ex: Optional[int] = None,
    ) -> bool:
        return await self.set(key, json.dumps(value), ex=ex)


@pytest.fixture
def fake_redis() -> InMemoryRedis:
    return InMemoryRedis()


@pytest.fixture
def key_manager() -> CacheKeyManager:
    return CacheKeyManager("test")


@pytest.fixture(scope="function")
def test_client() -> Generator[TestClient, None, None]:
    """
    Synchronous test client for the FastAPI application.

    The lifespan is not entered, so no Redis or database connection is
    opened; tests override the dependencies they exercise.

    Yields:
        TestClient: Synchronous test client for FastAPI app
    """
    client = TestClient(app)
    try:
        yield client
    finally:
        app.dependency_overrides.clear()
