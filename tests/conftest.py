"""Pytest configuration and test helpers."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Callable

import pytest


# Ensure the application package is importable when running tests without an
# editable install. This mirrors the expected runtime layout where ``app`` sits
# at the project root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import fakeredis  # noqa: E402

from app.config import Settings  # noqa: E402
from app.models import AnimeRecord  # noqa: E402
from app.store import CatalogKeys, CatalogStore  # noqa: E402


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


@pytest.fixture
def test_settings() -> Settings:
    """Settings with fast retries so failing origins do not slow the suite."""

    return Settings(  # type: ignore[call-arg]
        _env_file=None,
        RETRY_LIMIT=1,
        RETRY_BACKOFF=0,
        ENRICHMENT_TIMEOUT=1,
    )


@pytest.fixture
def fake_redis() -> fakeredis.FakeAsyncRedis:
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def store(fake_redis: fakeredis.FakeAsyncRedis) -> CatalogStore:
    return CatalogStore(fake_redis, CatalogKeys("anime"))


@pytest.fixture
def make_record() -> Callable[..., AnimeRecord]:
    """Return a factory producing catalog records with sensible defaults."""

    def factory(anime_id: int, title: str | None = None, **fields: Any) -> AnimeRecord:
        payload: dict[str, Any] = {"id": anime_id, "title": title or f"Anime {anime_id}"}
        payload.update(fields)
        return AnimeRecord.model_validate(payload)

    return factory
