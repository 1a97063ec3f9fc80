from __future__ import annotations

import asyncio
import csv
import io
from typing import Any, Iterable
from unittest.mock import AsyncMock

import fakeredis
import httpx
import pytest

from app.config import Settings
from app.errors import OriginUnavailable, StoreUnavailable
from app.models import AnimeRecord, FilterOptions
from app.services.catalog import CatalogService
from app.services.enrichment import EnrichmentPipeline
from app.services.indexer import IndexBuilder
from app.services.origin import OriginLoader
from app.services.resolver import EntityResolver
from app.services.search import FuzzySearchIndex
from app.store import CatalogKeys, CatalogStore

CSV_COLUMNS = [
    "id", "title", "titleEn", "titleJa", "image", "mean", "rank", "num_list_users",
    "num_scoring_users", "num_episodes", "start_date", "end_date", "media_type",
    "status", "rating", "genres", "studios",
]


class StubOrigin:
    """Origin loader stub that counts loads and can block or fail on demand."""

    def __init__(self, records: Iterable[AnimeRecord] = ()) -> None:
        self.records = list(records)
        self.calls = 0
        self.gate: asyncio.Event | None = None
        self.error: Exception | None = None
        self.ids: set[int] = set()

    async def fetch_catalog(self, source_uri: str | None = None) -> list[AnimeRecord]:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return list(self.records)

    async def fetch_id_list(self, uri: str) -> set[int]:
        if self.error is not None:
            raise self.error
        return set(self.ids)


class NoDetails:
    async def fetch_anime(self, anime_id: int) -> AnimeRecord | None:
        return None


class CountingIndex(FuzzySearchIndex):
    def __init__(self) -> None:
        super().__init__()
        self.builds = 0

    def build(self, records: Iterable[AnimeRecord]) -> int:
        self.builds += 1
        return super().build(records)


def build_service(
    settings: Settings,
    store: CatalogStore,
    origin: Any,
    search_index: FuzzySearchIndex | None = None,
) -> CatalogService:
    pipeline = EnrichmentPipeline([], store, ttl_seconds=600, step_timeout_seconds=1)
    resolver = EntityResolver(store, NoDetails(), pipeline, record_ttl_seconds=600)  # type: ignore[arg-type]
    return CatalogService(
        settings, store, origin, resolver, IndexBuilder(settings, store), search_index
    )


def build_csv(rows: list[dict[str, Any]]) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=CSV_COLUMNS)
    writer.writeheader()
    writer.writerows(rows)
    return buffer.getvalue()


class InvalidatingStore(CatalogStore):
    """Store that fires one invalidation on the next catalog read."""

    service: CatalogService | None = None

    async def get_catalog(self) -> list[AnimeRecord] | None:
        if self.service is not None:
            service, self.service = self.service, None
            service.handle_invalidation("catalog replaced")
        return await super().get_catalog()


def fresh_store(server: fakeredis.FakeServer | None = None) -> CatalogStore:
    redis = fakeredis.FakeAsyncRedis(server=server or fakeredis.FakeServer(), decode_responses=True)
    return CatalogStore(redis, CatalogKeys("anime"))


def test_concurrent_refreshes_share_one_load(test_settings: Settings, make_record) -> None:
    async def runner() -> None:
        origin = StubOrigin([make_record(1, score=7.0), make_record(2, score=8.0)])
        origin.gate = asyncio.Event()
        service = build_service(test_settings, fresh_store(), origin)

        pending = [asyncio.create_task(service.refresh()) for _ in range(5)]
        await asyncio.sleep(0)
        assert service.is_refreshing()
        origin.gate.set()
        results = await asyncio.gather(*pending)

        assert origin.calls == 1
        assert all(result.success and result.count == 2 for result in results)
        assert len({result.fetched_at for result in results}) == 1
        assert not service.is_refreshing()

        await service.refresh()
        assert origin.calls == 2

    asyncio.run(runner())


def test_concurrent_cold_reads_trigger_exactly_one_load(
    test_settings: Settings, make_record
) -> None:
    async def runner() -> None:
        origin = StubOrigin([make_record(1, "Alpha", score=5.0), make_record(2, "Beta")])
        index = CountingIndex()
        service = build_service(test_settings, fresh_store(), origin, index)

        ensured = await asyncio.gather(*(service.ensure_catalog() for _ in range(5)))
        assert ensured == [True] * 5
        assert origin.calls == 1

        built = await asyncio.gather(*(service.ensure_search_index() for _ in range(5)))
        assert built == [True] * 5
        assert index.builds == 1
        assert service.search_index is index
        assert origin.calls == 1

    asyncio.run(runner())


@pytest.mark.anyio("asyncio")
async def test_scenario_rating_fuzzy_search_and_season(
    test_settings: Settings, store: CatalogStore
) -> None:
    content = build_csv(
        [
            {"id": 1, "title": "Kidou Senshi Gundam", "titleEn": "Mobile Suit Gundam",
             "mean": "7.8", "num_list_users": 500, "start_date": "2024-01-07", "media_type": "tv"},
            {"id": 2, "title": "Sousou no Frieren", "mean": "not-a-score",
             "num_list_users": 900, "start_date": "2024-03-31", "media_type": "tv"},
            {"id": 3, "title": "Dungeon Meshi", "mean": "8.5", "num_list_users": 700,
             "start_date": "2024-04-04", "media_type": "tv"},
        ]
    )

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=content)

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as http_client:
        service = build_service(test_settings, store, OriginLoader(test_settings, http_client))
        result = await service.refresh()

        assert result.success and result.count == 3
        browsed = await service.browse(sort="rating")
        assert [record.id for record in browsed.records()] == [3, 1, 2]
        assert browsed.total == 3

        matches = await service.search("gundma")
        assert [record.id for record in matches] == [1]

        winter = await service.get_by_season_year(2024, "winter")
        assert [record.id for record in winter.records()] == [2, 1]
        spring = await service.get_by_season_year(2024, "spring")
        assert [record.id for record in spring.records()] == [3]
        assert (await service.get_by_season_year(2023, "fall")).records() == []


@pytest.mark.anyio("asyncio")
async def test_browse_paginates_and_filters(
    test_settings: Settings, store: CatalogStore, make_record
) -> None:
    origin = StubOrigin(
        [
            make_record(1, score=9.0, start_date="2020-01-01", media_type="tv"),
            make_record(2, score=8.0, start_date="2022-01-01", media_type="special"),
            make_record(3, score=7.0, start_date="2021-01-01", media_type="tv",
                        genres=[{"name": "Horror"}]),
        ]
    )
    service = build_service(test_settings, store, origin)

    page = await service.browse(limit=1, offset=1, sort="rating")
    assert [record.id for record in page.records()] == [2]
    assert page.total == 3 and page.filtered == 3
    assert origin.calls == 1

    newest = await service.browse(sort="newest", filters=FilterOptions(hide_specials=True))
    assert [record.id for record in newest.records()] == [3, 1]
    assert newest.filtered == 2

    horror = await service.browse(filters=FilterOptions(genres=["horror"]))
    assert [record.id for record in horror.records()] == [3]

    by_name = await service.browse(sort="name", filters=FilterOptions(sort_direction="asc"))
    assert [record.id for record in by_name.records()] == [1, 2, 3]


@pytest.mark.anyio("asyncio")
async def test_missing_index_is_rebuilt_from_canonical_set(
    test_settings: Settings, store: CatalogStore, make_record
) -> None:
    origin = StubOrigin([make_record(1, score=6.0), make_record(2, score=9.0)])
    service = build_service(test_settings, store, origin)
    await service.refresh()
    await store.redis.delete(store.keys.rating_index, store.keys.genre_index)

    browsed = await service.browse(sort="rating")

    assert [record.id for record in browsed.records()] == [2, 1]
    assert origin.calls == 1


@pytest.mark.anyio("asyncio")
async def test_failed_refresh_keeps_previous_data(
    test_settings: Settings, store: CatalogStore, make_record
) -> None:
    origin = StubOrigin([make_record(1, "Kept", score=7.0)])
    service = build_service(test_settings, store, origin)
    first = await service.refresh()

    origin.error = OriginUnavailable("catalog origin", "HTTP 503")
    failed = await service.refresh()
    origin.error = None
    origin.records = []
    empty = await service.refresh()

    assert first.success
    assert not failed.success and not empty.success
    assert failed.fetched_at == first.fetched_at
    assert [record.title for record in (await service.browse()).records()] == ["Kept"]
    assert await service.last_refresh_timestamp() == first.fetched_at
    assert await service.record_count() == 1


@pytest.mark.anyio("asyncio")
async def test_invalidation_is_idempotent_and_forces_rebuild(
    test_settings: Settings, store: CatalogStore, make_record
) -> None:
    origin = StubOrigin([make_record(1, "Haikyuu")])
    index = CountingIndex()
    service = build_service(test_settings, store, origin, index)
    await service.refresh()
    assert await service.search("haikyu")

    service.handle_invalidation("first")
    service.handle_invalidation("duplicate")

    assert not index.has_index()
    assert [record.id for record in await service.search("haikyu")] == [1]
    assert index.builds == 2


@pytest.mark.anyio("asyncio")
async def test_refresh_in_one_process_invalidates_another(
    test_settings: Settings, make_record
) -> None:
    server = fakeredis.FakeServer()
    origin = StubOrigin([make_record(1, "Mushishi")])
    writer = build_service(test_settings, fresh_store(server), origin)
    reader = build_service(test_settings, fresh_store(server), origin)
    try:
        await writer.refresh()
        assert await reader.init_subscriber() is True
        assert await reader.init_subscriber() is False
        await reader.ensure_search_index()
        assert reader.search_index.has_index()

        await writer.refresh()
        for _ in range(100):
            if not reader.search_index.has_index():
                break
            await asyncio.sleep(0.01)

        assert not reader.search_index.has_index()
    finally:
        await reader.stop()
        await writer.stop()


@pytest.mark.anyio("asyncio")
async def test_genres_titles_and_id_lists(
    test_settings: Settings, store: CatalogStore, make_record
) -> None:
    origin = StubOrigin(
        [
            make_record(1, "Cowboy Bebop", alternative_titles={"en": "Cowboy Bebop"},
                        genres=[{"name": "Sci-Fi"}, {"name": "Action"}]),
            make_record(2, "Trigun", genres=[{"name": "Action"}]),
        ]
    )
    origin.ids = {1, 5}
    service = build_service(test_settings, store, origin)

    assert await service.get_all_genres() == ["Action", "Sci-Fi"]
    assert (await service.find_by_title("cowboy bebop!")).id == 1  # type: ignore[union-attr]
    assert (await service.find_by_title("Trigan")).id == 2  # type: ignore[union-attr]
    assert await service.find_by_title("  ") is None

    assert await service.load_id_list("people", "https://data.example.com/people") == 2
    assert await service.has_id("people", 5)
    assert not await service.has_id("people", 2)
    assert not await service.has_id("manga", 1)


@pytest.mark.anyio("asyncio")
async def test_reads_degrade_when_store_is_down(test_settings: Settings, make_record) -> None:
    store = AsyncMock(spec=CatalogStore)
    store.keys = CatalogKeys("anime")
    for name in ("exists", "get_catalog", "set_catalog", "hash_get", "list_records",
                 "list_range", "set_contains", "get_record", "get_records"):
        getattr(store, name).side_effect = StoreUnavailable("redis down")
    origin = StubOrigin([make_record(1, "Anything")])
    service = build_service(test_settings, store, origin)

    assert (await service.browse()).records() == []
    assert await service.get_all_genres() == []
    assert await service.search("anything") == []
    assert await service.get_by_id(1) is None
    assert not await service.has_id("people", 1)
    assert await service.last_refresh_timestamp() is None
    assert not (await service.refresh()).success


@pytest.mark.anyio("asyncio")
async def test_browse_honours_ascending_direction_without_filters(
    test_settings: Settings, store: CatalogStore, make_record
) -> None:
    origin = StubOrigin(
        [
            make_record(1, score=9.0, genres=[{"name": "Drama"}]),
            make_record(2, score=6.0, genres=[{"name": "Drama"}]),
            make_record(3, score=7.5, genres=[{"name": "Drama"}]),
        ]
    )
    service = build_service(test_settings, store, origin)

    plain = await service.browse(sort="rating", filters=FilterOptions(sort_direction="asc"))
    narrowed = await service.browse(
        sort="rating", filters=FilterOptions(sort_direction="asc", genres=["drama"])
    )
    descending = await service.browse(sort="rating")

    assert [record.id for record in plain.records()] == [2, 3, 1]
    assert [record.id for record in narrowed.records()] == [2, 3, 1]
    assert [record.id for record in descending.records()] == [1, 3, 2]
    assert plain.total == 3


@pytest.mark.anyio("asyncio")
async def test_search_survives_invalidation_during_index_build(
    test_settings: Settings, fake_redis, make_record
) -> None:
    store = InvalidatingStore(fake_redis, CatalogKeys("anime"))
    origin = StubOrigin([make_record(1, "Haikyuu"), make_record(2, "Ping Pong")])
    index = CountingIndex()
    service = build_service(test_settings, store, origin, index)
    await service.refresh()

    store.service = service
    matches = await service.search("haikyuu")

    assert [record.id for record in matches] == [1]
    assert index.has_index()
    assert index.builds == 2
