"""Catalog facade owning the refresh lifecycle and per-process search index."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from datetime import datetime
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from redis.asyncio.client import PubSub

from ..config import Settings
from ..errors import OriginUnavailable, StoreUnavailable
from ..models import (
    AnimeRecord,
    FilterOptions,
    FilterResult,
    RefreshResult,
    Season,
    SortType,
)
from ..store import CatalogStore
from ..utils import normalize_title
from .filtering import filter_and_page, to_filterable
from .indexer import (
    LAST_FETCH_FIELD,
    RECORD_COUNT_FIELD,
    IndexBuilder,
    sort_by_rating,
)
from .origin import OriginLoader
from .resolver import EntityResolver
from .search import FuzzySearchIndex

logger = logging.getLogger(__name__)

T = TypeVar("T")

INDEXED_SORTS: frozenset[str] = frozenset({"rating", "newest"})


class CatalogService:
    """Coordinates ingestion, derived indices, invalidation and reads.

    Each process owns exactly one instance. State that used to be ambient
    (the active search index, the in-flight load, the subscriber flag) lives
    here so it is created and torn down with the service.
    """

    def __init__(
        self,
        settings: Settings,
        store: CatalogStore,
        origin: OriginLoader,
        resolver: EntityResolver,
        index_builder: IndexBuilder,
        search_index: FuzzySearchIndex | None = None,
    ):
        self._settings = settings
        self._store = store
        self._keys = store.keys
        self._origin = origin
        self._resolver = resolver
        self._builder = index_builder
        self._search = search_index if search_index is not None else FuzzySearchIndex(
            threshold=settings.search_threshold,
            min_query_length=settings.search_min_query_length,
        )
        self._inflight: dict[str, asyncio.Task[Any]] = {}
        self._index_generation = 0
        self._last_refresh: datetime | None = None
        self._subscriber_initialized = False
        self._pubsub: PubSub | None = None
        self._listener_task: asyncio.Task[None] | None = None
        self._refresh_task: asyncio.Task[None] | None = None

    @property
    def search_index(self) -> FuzzySearchIndex:
        return self._search

    # Lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Subscribe to invalidations, load a cold store and start the scheduler."""

        await self.init_subscriber()
        await self.ensure_catalog()
        if self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._refresh_loop())

    async def stop(self) -> None:
        for task in (self._refresh_task, self._listener_task):
            if task is None:
                continue
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        self._refresh_task = None
        self._listener_task = None
        if self._pubsub is not None:
            with suppress(Exception):
                await self._pubsub.aclose()
            self._pubsub = None
        self._subscriber_initialized = False

    async def init_subscriber(self) -> bool:
        """Subscribe to the invalidation channel once per process lifetime."""

        if self._subscriber_initialized:
            return False
        self._subscriber_initialized = True
        try:
            self._pubsub = await self._store.subscribe(self._settings.refresh_channel)
        except StoreUnavailable as exc:
            self._subscriber_initialized = False
            logger.warning("Could not subscribe to invalidations: %s", exc)
            return False
        self._listener_task = asyncio.create_task(self._listen(self._pubsub))
        logger.info("Subscribed to %s", self._settings.refresh_channel)
        return True

    async def _listen(self, pubsub: PubSub) -> None:
        while True:
            try:
                async for message in pubsub.listen():
                    if message.get("type") == "message":
                        self.handle_invalidation(message.get("data"))
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Invalidation listener failed: %s", exc)
            await asyncio.sleep(max(self._settings.retry_backoff_seconds, 0.1))

    def handle_invalidation(self, payload: Any = None) -> None:
        """Drop the local search index; safe to call any number of times."""

        self._index_generation += 1
        had_index = self._search.has_index()
        self._search.clear()
        logger.info(
            "Catalog invalidated (%s); search index %s",
            payload if payload else "no payload",
            "cleared" if had_index else "already empty",
        )

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.refresh_interval_seconds)
            try:
                await self.refresh()
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Scheduled refresh failed: %s", exc)

    # Single flight -------------------------------------------------------

    def _single_flight(
        self, key: str, factory: Callable[[], Awaitable[T]]
    ) -> asyncio.Task[T]:
        task = self._inflight.get(key)
        if task is None or task.done():
            task = asyncio.ensure_future(factory())
            self._inflight[key] = task
            task.add_done_callback(lambda finished, key=key: self._forget(key, finished))
        return task

    def _forget(self, key: str, task: asyncio.Task[Any]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    def is_refreshing(self) -> bool:
        task = self._inflight.get("refresh")
        return bool(task and not task.done())

    # Refresh -------------------------------------------------------------

    async def refresh(self) -> RefreshResult:
        """Reload the catalog; concurrent callers share one in-flight load."""

        return await asyncio.shield(self._single_flight("refresh", self._load))

    async def _load(self) -> RefreshResult:
        try:
            records = await self._origin.fetch_catalog()
        except OriginUnavailable as exc:
            logger.warning("Catalog refresh failed, keeping previous data: %s", exc)
            return RefreshResult(success=False, fetched_at=self._last_refresh)
        if not records:
            logger.warning("Catalog origin returned no records, keeping previous data")
            return RefreshResult(success=False, fetched_at=self._last_refresh)

        try:
            fetched_at = await self._builder.save_catalog(records)
        except StoreUnavailable as exc:
            logger.error("Could not persist refreshed catalog: %s", exc)
            return RefreshResult(success=False, fetched_at=self._last_refresh)

        self._last_refresh = fetched_at
        message = json.dumps({"fetched_at": fetched_at.isoformat(), "count": len(records)})
        self.handle_invalidation(message)
        try:
            receivers = await self._store.publish(self._settings.refresh_channel, message)
            logger.info("Published catalog invalidation to %d subscribers", receivers)
        except StoreUnavailable as exc:
            logger.warning("Could not publish catalog invalidation: %s", exc)
        return RefreshResult(success=True, count=len(records), fetched_at=fetched_at)

    async def ensure_catalog(self) -> bool:
        """Load from origin only when the store holds no canonical set."""

        return await asyncio.shield(self._single_flight("ensure_catalog", self._ensure_catalog))

    async def _ensure_catalog(self) -> bool:
        try:
            if await self._store.exists(self._keys.catalog):
                return True
        except StoreUnavailable as exc:
            logger.warning("Could not check for cached catalog: %s", exc)
        result = await self.refresh()
        return result.success

    async def ensure_search_index(self) -> bool:
        """Build the local fuzzy index if it is missing; callers share one build."""

        if self._search.has_index():
            return True
        return await asyncio.shield(
            self._single_flight("search_index", self._build_search_index)
        )

    async def _build_search_index(self) -> bool:
        while True:
            generation = self._index_generation
            records = await self._load_catalog_records()
            if not records:
                return False
            self._search.build(records)
            if generation == self._index_generation:
                return True
            # Invalidated mid-build; index the newer catalog instead.
            logger.info("Catalog changed while indexing, rebuilding search index")

    async def _load_catalog_records(self) -> list[AnimeRecord]:
        records = await self._read_catalog()
        if records is None and await self.ensure_catalog():
            records = await self._read_catalog()
        return records or []

    async def _read_catalog(self) -> list[AnimeRecord] | None:
        try:
            return await self._store.get_catalog()
        except StoreUnavailable as exc:
            logger.warning("Could not read cached catalog: %s", exc)
            return None

    async def last_refresh_timestamp(self) -> datetime | None:
        try:
            raw = await self._store.hash_get(self._keys.meta, LAST_FETCH_FIELD)
        except StoreUnavailable as exc:
            logger.warning("Could not read refresh timestamp: %s", exc)
            return self._last_refresh
        if not raw:
            return self._last_refresh
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            return self._last_refresh

    async def record_count(self) -> int | None:
        try:
            raw = await self._store.hash_get(self._keys.meta, RECORD_COUNT_FIELD)
        except StoreUnavailable as exc:
            logger.warning("Could not read record count: %s", exc)
            return None
        return int(raw) if raw and raw.isdigit() else None

    # Reads ---------------------------------------------------------------

    async def get_by_id(
        self,
        anime_id: int,
        include_details: bool = False,
        skip_origin_fallback: bool = False,
    ) -> AnimeRecord | None:
        return await self._resolver.get_by_id(
            anime_id,
            include_details=include_details,
            skip_origin_fallback=skip_origin_fallback,
        )

    async def get_many(self, anime_ids: Sequence[int]) -> list[AnimeRecord]:
        return await self._resolver.get_many(anime_ids)

    async def search(
        self,
        query: str,
        limit: int = 20,
        filters: FilterOptions | None = None,
    ) -> list[AnimeRecord]:
        """Fuzzy (or plain substring) search, best rated first among the top hits."""

        filters = filters or FilterOptions()
        if not query.strip():
            return []

        if filters.search_strategy == "simple":
            records = await self._load_catalog_records()
            options = filters.model_copy(
                update={"query": query, "limit": limit, "offset": 0}
            )
            return filter_and_page(to_filterable(records), options).records()

        await self.ensure_search_index()
        matches = [match.record for match in self._search.search(query)]
        options = filters.model_copy(
            update={"query": None, "sort": "added", "limit": limit * 3, "offset": 0}
        )
        candidates = filter_and_page(to_filterable(matches), options).records()
        return sort_by_rating(candidates)[:limit]

    async def browse(
        self,
        limit: int = 20,
        offset: int = 0,
        sort: SortType = "rating",
        filters: FilterOptions | None = None,
    ) -> FilterResult:
        options = (filters or FilterOptions()).model_copy(
            update={"limit": limit, "offset": offset, "sort": sort}
        )
        if sort not in INDEXED_SORTS:
            records = await self._load_catalog_records()
            return filter_and_page(to_filterable(records), options, self._search)

        key = self._keys.rating_index if sort == "rating" else self._keys.newest_index
        try:
            if not await self._ensure_sorted_index(sort):
                return FilterResult()
            if not _needs_pipeline(options):
                total = await self._store.list_length(key)
                stop = offset + limit - 1
                page = await self._store.list_records(key, offset, stop) if limit else []
                return FilterResult(items=to_filterable(page), total=total, filtered=total)
            records = await self._store.list_records(key)
        except StoreUnavailable as exc:
            logger.warning("Browse index read failed: %s", exc)
            return FilterResult()
        if options.query:
            await self.ensure_search_index()
        return filter_and_page(to_filterable(records), options, self._search)

    async def get_by_season_year(
        self,
        year: int,
        season: Season,
        filters: FilterOptions | None = None,
    ) -> FilterResult:
        """Records that started airing in the given season, most popular first."""

        options = filters or FilterOptions()
        if "sort" not in options.model_fields_set:
            options = options.model_copy(update={"sort": "added"})
        key = self._builder.bucket_key(year, season)
        try:
            if not await self._store.exists(self._keys.season_registry):
                await self._ensure_loaded_then(self._builder.ensure_seasonal_index)
            records = await self._store.list_records(key)
        except StoreUnavailable as exc:
            logger.warning("Seasonal index read failed for %s %s: %s", season, year, exc)
            return FilterResult()
        if options.query:
            await self.ensure_search_index()
        return filter_and_page(to_filterable(records), options, self._search)

    async def get_all_genres(self) -> list[str]:
        key = self._keys.genre_index
        try:
            if not await self._store.exists(key):
                await self._ensure_loaded_then(self._builder.ensure_genre_index)
            return await self._store.list_range(key)
        except StoreUnavailable as exc:
            logger.warning("Genre index read failed: %s", exc)
            return []

    async def find_by_title(self, title: str) -> AnimeRecord | None:
        """Exact normalized-title lookup, then the closest fuzzy match."""

        normalized = normalize_title(title)
        if not normalized:
            return None
        try:
            if not await self._store.exists(self._keys.title_index):
                await self._ensure_loaded_then(self._builder.ensure_title_index)
            raw_id = await self._store.hash_get(self._keys.title_index, normalized)
        except StoreUnavailable as exc:
            logger.warning("Title index read failed: %s", exc)
            raw_id = None
        if raw_id and raw_id.isdigit():
            record = await self.get_by_id(int(raw_id), skip_origin_fallback=True)
            if record is not None:
                return record

        await self.ensure_search_index()
        return self._search.search_one(title)

    # Auxiliary id lists --------------------------------------------------

    async def load_id_list(self, kind: str, uri: str) -> int:
        """Replace the membership set for ``kind``; returns the id count stored."""

        try:
            ids = await self._origin.fetch_id_list(uri)
        except OriginUnavailable as exc:
            logger.warning("Keeping previous %s id list: %s", kind, exc)
            return 0
        try:
            await self._store.replace_set(
                self._keys.id_set(kind),
                (str(anime_id) for anime_id in sorted(ids)),
                self._settings.catalog_ttl_seconds,
            )
        except StoreUnavailable as exc:
            logger.warning("Could not store %s id list: %s", kind, exc)
            return 0
        return len(ids)

    async def has_id(self, kind: str, anime_id: int) -> bool:
        try:
            return await self._store.set_contains(self._keys.id_set(kind), str(anime_id))
        except StoreUnavailable as exc:
            logger.warning("Could not check %s membership: %s", kind, exc)
            return False

    # Helpers -------------------------------------------------------------

    async def _ensure_sorted_index(self, sort: str) -> bool:
        ensure = (
            self._builder.ensure_rating_index
            if sort == "rating"
            else self._builder.ensure_newest_index
        )
        key = self._keys.rating_index if sort == "rating" else self._keys.newest_index
        if await self._store.exists(key):
            return True
        await self._ensure_loaded_then(ensure)
        return await self._store.exists(key)

    async def _ensure_loaded_then(self, ensure: Callable[[], Awaitable[bool]]) -> None:
        """Rebuild one missing index, loading the catalog first on a cold store."""

        if not await self._store.exists(self._keys.catalog):
            await self.ensure_catalog()
        await ensure()


def _needs_pipeline(options: FilterOptions) -> bool:
    return bool(
        options.hide_specials
        or options.genres
        or (options.status and options.status != "all")
        or (options.query and options.query.strip())
        or options.sort_direction != "desc"
    )
