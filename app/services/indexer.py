"""Derive and persist the secondary indices over the canonical record set."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable, Literal, Sequence

from ..config import Settings
from ..models import AnimeRecord, Season
from ..seasons import SeasonYear, parse_season
from ..store import CatalogStore
from ..utils import fold_text, normalize_title

logger = logging.getLogger(__name__)

LAST_FETCH_FIELD = "last_fetch_time"
RECORD_COUNT_FIELD = "record_count"


def sort_by_rating(records: Iterable[AnimeRecord]) -> list[AnimeRecord]:
    """Score descending; records without a score go last."""

    return sorted(
        records,
        key=lambda record: (record.score is None, -(record.score or 0.0)),
    )


def sort_by_newest(records: Iterable[AnimeRecord]) -> list[AnimeRecord]:
    """ISO start date descending; records without a start date go last."""

    records = list(records)
    dated = [record for record in records if record.start_date]
    undated = [record for record in records if not record.start_date]
    dated.sort(key=lambda record: record.start_date or "", reverse=True)
    return dated + undated


def sort_by_popularity(records: Iterable[AnimeRecord]) -> list[AnimeRecord]:
    """Most-listed first; records without a popularity figure go last."""

    return sorted(
        records,
        key=lambda record: (record.popularity is None, -(record.popularity or 0)),
    )


def seasonal_buckets(
    records: Iterable[AnimeRecord],
) -> dict[SeasonYear, list[AnimeRecord]]:
    buckets: dict[SeasonYear, list[AnimeRecord]] = {}
    for record in records:
        season = parse_season(record.start_date)
        if season is None:
            continue
        buckets.setdefault(season, []).append(record)
    return {key: sort_by_popularity(members) for key, members in buckets.items()}


def title_index(
    records: Iterable[AnimeRecord],
    *,
    policy: Literal["last", "first"] = "last",
) -> dict[str, int]:
    index: dict[str, int] = {}
    for record in records:
        for variant in record.title_variants():
            key = normalize_title(variant)
            if not key:
                continue
            if policy == "first" and key in index:
                continue
            index[key] = record.id
    return index


def genre_set(records: Iterable[AnimeRecord]) -> list[str]:
    names = {name for record in records for name in record.genre_names()}
    return sorted(names, key=lambda name: (fold_text(name), name))


class IndexBuilder:
    """Write the canonical set and rebuild every derived index atomically."""

    def __init__(self, settings: Settings, store: CatalogStore):
        self._settings = settings
        self._store = store
        self._keys = store.keys

    async def save_catalog(
        self, records: Sequence[AnimeRecord], *, fetched_at: datetime | None = None
    ) -> datetime:
        """Replace the canonical set, then every derived index, then the meta hash."""

        fetched_at = fetched_at or datetime.now(timezone.utc)
        ttl = self._settings.catalog_ttl_seconds
        await self._store.set_catalog(records, ttl)
        await self._store.write_records(records, self._settings.record_ttl_seconds)

        stale_buckets = await self._store.set_members(self._keys.season_registry)
        buckets = seasonal_buckets(records)
        async with self._store.atomic() as pipe:
            self._queue_list(pipe, self._keys.rating_index, sort_by_rating(records))
            self._queue_list(pipe, self._keys.newest_index, sort_by_newest(records))
            self._queue_seasonal(pipe, buckets, stale_buckets)
            self._queue_titles(pipe, records)
            self._queue_genres(pipe, records)
            pipe.hset(
                self._keys.meta,
                mapping={
                    LAST_FETCH_FIELD: fetched_at.isoformat(),
                    RECORD_COUNT_FIELD: str(len(records)),
                },
            )
        logger.info(
            "Saved %d records and rebuilt indices (%d seasonal buckets)",
            len(records),
            len(buckets),
        )
        return fetched_at

    async def ensure_rating_index(self) -> bool:
        return await self._ensure(
            self._keys.rating_index,
            lambda pipe, records: self._queue_list(
                pipe, self._keys.rating_index, sort_by_rating(records)
            ),
        )

    async def ensure_newest_index(self) -> bool:
        return await self._ensure(
            self._keys.newest_index,
            lambda pipe, records: self._queue_list(
                pipe, self._keys.newest_index, sort_by_newest(records)
            ),
        )

    async def ensure_title_index(self) -> bool:
        return await self._ensure(self._keys.title_index, self._queue_titles)

    async def ensure_genre_index(self) -> bool:
        return await self._ensure(self._keys.genre_index, self._queue_genres)

    async def ensure_seasonal_index(self) -> bool:
        if await self._store.exists(self._keys.season_registry):
            return False
        records = await self._store.get_catalog()
        if not records:
            return False
        async with self._store.atomic() as pipe:
            self._queue_seasonal(pipe, seasonal_buckets(records), ())
        logger.info("Rebuilt missing seasonal index")
        return True

    async def _ensure(self, key: str, queue) -> bool:
        """Rebuild one index when it is missing but canonical data exists."""

        if await self._store.exists(key):
            return False
        records = await self._store.get_catalog()
        if not records:
            return False
        async with self._store.atomic() as pipe:
            queue(pipe, records)
        logger.info("Rebuilt missing index %s", key)
        return True

    def _queue_list(self, pipe, key: str, records: Sequence[AnimeRecord]) -> None:
        pipe.delete(key)
        if records:
            pipe.rpush(key, *(record.to_json() for record in records))
            pipe.expire(key, self._settings.catalog_ttl_seconds)

    def _queue_seasonal(
        self,
        pipe,
        buckets: dict[SeasonYear, list[AnimeRecord]],
        stale_keys: Iterable[str],
    ) -> None:
        registry = self._keys.season_registry
        for key in stale_keys:
            pipe.delete(key)
        pipe.delete(registry)
        bucket_keys: list[str] = []
        for season, members in buckets.items():
            key = self.bucket_key(season.year, season.season)
            bucket_keys.append(key)
            self._queue_list(pipe, key, members)
        if bucket_keys:
            pipe.sadd(registry, *bucket_keys)
            pipe.expire(registry, self._settings.catalog_ttl_seconds)

    def _queue_titles(self, pipe, records: Sequence[AnimeRecord]) -> None:
        key = self._keys.title_index
        index = title_index(records, policy=self._settings.title_collision_policy)
        pipe.delete(key)
        if index:
            pipe.hset(key, mapping={title: str(anime_id) for title, anime_id in index.items()})
            pipe.expire(key, self._settings.catalog_ttl_seconds)

    def _queue_genres(self, pipe, records: Sequence[AnimeRecord]) -> None:
        key = self._keys.genre_index
        names = genre_set(records)
        pipe.delete(key)
        if names:
            pipe.rpush(key, *names)
            pipe.expire(key, self._settings.catalog_ttl_seconds)

    def bucket_key(self, year: int, season: Season) -> str:
        return self._keys.season(year, season)
