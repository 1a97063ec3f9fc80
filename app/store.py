"""Redis-backed distributed store shared by every catalog process."""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Iterable, Mapping, Sequence

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.asyncio.client import Pipeline, PubSub
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError, RedisError, TimeoutError

from .errors import StoreUnavailable
from .models import AnimeRecord, Season

logger = logging.getLogger(__name__)

HEALTH_CHECK_INTERVAL = 30
MAX_CONNECTIONS = 50
SOCKET_CONNECT_TIMEOUT = 5.0
SOCKET_TIMEOUT = 5.0
MAX_RETRIES = 3
WRITE_CHUNK_SIZE = 1_000


def build_redis(url: str) -> Redis:
    """Build a Redis client that reconnects on transient failures."""

    return Redis.from_url(
        url,
        encoding="utf-8",
        decode_responses=True,
        health_check_interval=HEALTH_CHECK_INTERVAL,
        socket_keepalive=True,
        socket_connect_timeout=SOCKET_CONNECT_TIMEOUT,
        socket_timeout=SOCKET_TIMEOUT,
        max_connections=MAX_CONNECTIONS,
        retry=Retry(ExponentialBackoff(), retries=MAX_RETRIES),
        retry_on_error=[ConnectionError, TimeoutError],
    )


@dataclass(frozen=True, slots=True)
class CatalogKeys:
    """Key layout for every entry the subsystem writes."""

    prefix: str = "anime"

    @property
    def catalog(self) -> str:
        return f"{self.prefix}:list"

    def record(self, anime_id: int) -> str:
        return f"{self.prefix}:id:{anime_id}"

    @property
    def rating_index(self) -> str:
        return f"{self.prefix}:index:rating"

    @property
    def newest_index(self) -> str:
        return f"{self.prefix}:index:newest"

    def season(self, year: int, season: Season) -> str:
        return f"{self.prefix}:season:{year}:{season}"

    @property
    def season_registry(self) -> str:
        return f"{self.prefix}:season:buckets"

    @property
    def title_index(self) -> str:
        return f"{self.prefix}:index:titles"

    @property
    def genre_index(self) -> str:
        return f"{self.prefix}:index:genres"

    @property
    def meta(self) -> str:
        return f"{self.prefix}:meta"

    def id_set(self, kind: str) -> str:
        return f"{self.prefix}:ids:{kind}"


class CatalogStore:
    """Thin wrapper translating Redis failures into :class:`StoreUnavailable`."""

    def __init__(self, redis: Redis, keys: CatalogKeys | None = None):
        self._redis = redis
        self.keys = keys or CatalogKeys()

    @property
    def redis(self) -> Redis:
        return self._redis

    async def close(self) -> None:
        try:
            await self._redis.aclose()
        except RedisError as exc:  # pragma: no cover - teardown path
            logger.warning("Failed to close Redis connection: %s", exc)

    # Scalars -------------------------------------------------------------

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self._redis.exists(key))
        except RedisError as exc:
            raise StoreUnavailable(f"EXISTS {key} failed: {exc}") from exc

    async def get_json(self, key: str) -> Any | None:
        try:
            raw = await self._redis.get(key)
        except RedisError as exc:
            raise StoreUnavailable(f"GET {key} failed: {exc}") from exc
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding undecodable value at %s", key)
            return None

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        try:
            await self._redis.set(key, json.dumps(value), ex=ttl_seconds)
        except RedisError as exc:
            raise StoreUnavailable(f"SET {key} failed: {exc}") from exc

    # Records -------------------------------------------------------------

    async def get_record(self, anime_id: int) -> AnimeRecord | None:
        key = self.keys.record(anime_id)
        try:
            raw = await self._redis.get(key)
        except RedisError as exc:
            raise StoreUnavailable(f"GET {key} failed: {exc}") from exc
        return _decode_record(raw, key)

    async def set_record(self, record: AnimeRecord, ttl_seconds: int) -> None:
        key = self.keys.record(record.id)
        try:
            await self._redis.set(key, record.to_json(), ex=ttl_seconds)
        except RedisError as exc:
            raise StoreUnavailable(f"SET {key} failed: {exc}") from exc

    async def get_records(self, anime_ids: Sequence[int]) -> dict[int, AnimeRecord]:
        """Batched multi-get of per-entity entries; misses are omitted."""

        if not anime_ids:
            return {}
        keys = [self.keys.record(anime_id) for anime_id in anime_ids]
        try:
            values = await self._redis.mget(keys)
        except RedisError as exc:
            raise StoreUnavailable(f"MGET of {len(keys)} records failed: {exc}") from exc
        found: dict[int, AnimeRecord] = {}
        for anime_id, key, raw in zip(anime_ids, keys, values):
            record = _decode_record(raw, key)
            if record is not None:
                found[anime_id] = record
        return found

    async def write_records(
        self, records: Iterable[AnimeRecord], ttl_seconds: int
    ) -> int:
        """Write per-entity entries in chunked, non-transactional pipelines."""

        written = 0
        try:
            pipe = self._redis.pipeline(transaction=False)
            pending = 0
            for record in records:
                pipe.set(self.keys.record(record.id), record.to_json(), ex=ttl_seconds)
                pending += 1
                if pending >= WRITE_CHUNK_SIZE:
                    await pipe.execute()
                    written += pending
                    pending = 0
            if pending:
                await pipe.execute()
                written += pending
        except RedisError as exc:
            raise StoreUnavailable(f"Record write failed after {written}: {exc}") from exc
        return written

    async def get_catalog(self) -> list[AnimeRecord] | None:
        """Return the full canonical set, ``None`` when it is absent."""

        key = self.keys.catalog
        try:
            raw = await self._redis.get(key)
        except RedisError as exc:
            raise StoreUnavailable(f"GET {key} failed: {exc}") from exc
        if raw is None:
            return None
        try:
            payload = json.loads(raw)
            return [AnimeRecord.model_validate(item) for item in payload]
        except (ValueError, ValidationError):
            logger.warning("Discarding undecodable catalog entry at %s", key)
            return None

    async def set_catalog(self, records: Sequence[AnimeRecord], ttl_seconds: int) -> None:
        key = self.keys.catalog
        payload = "[" + ",".join(record.to_json() for record in records) + "]"
        try:
            await self._redis.set(key, payload, ex=ttl_seconds)
        except RedisError as exc:
            raise StoreUnavailable(f"SET {key} failed: {exc}") from exc

    # Lists ---------------------------------------------------------------

    async def list_range(self, key: str, start: int = 0, stop: int = -1) -> list[str]:
        try:
            return list(await self._redis.lrange(key, start, stop))
        except RedisError as exc:
            raise StoreUnavailable(f"LRANGE {key} failed: {exc}") from exc

    async def list_length(self, key: str) -> int:
        try:
            return int(await self._redis.llen(key))
        except RedisError as exc:
            raise StoreUnavailable(f"LLEN {key} failed: {exc}") from exc

    async def list_records(
        self, key: str, start: int = 0, stop: int = -1
    ) -> list[AnimeRecord]:
        records: list[AnimeRecord] = []
        for raw in await self.list_range(key, start, stop):
            record = _decode_record(raw, key)
            if record is not None:
                records.append(record)
        return records

    # Hashes & sets -------------------------------------------------------

    async def hash_get(self, key: str, field: str) -> str | None:
        try:
            return await self._redis.hget(key, field)
        except RedisError as exc:
            raise StoreUnavailable(f"HGET {key} failed: {exc}") from exc

    async def hash_set(self, key: str, mapping: Mapping[str, str]) -> None:
        if not mapping:
            return
        try:
            await self._redis.hset(key, mapping=dict(mapping))
        except RedisError as exc:
            raise StoreUnavailable(f"HSET {key} failed: {exc}") from exc

    async def set_members(self, key: str) -> set[str]:
        try:
            return set(await self._redis.smembers(key))
        except RedisError as exc:
            raise StoreUnavailable(f"SMEMBERS {key} failed: {exc}") from exc

    async def set_contains(self, key: str, member: str) -> bool:
        try:
            return bool(await self._redis.sismember(key, member))
        except RedisError as exc:
            raise StoreUnavailable(f"SISMEMBER {key} failed: {exc}") from exc

    async def replace_set(
        self, key: str, members: Iterable[str], ttl_seconds: int
    ) -> None:
        values = list(members)
        async with self.atomic() as pipe:
            pipe.delete(key)
            if values:
                pipe.sadd(key, *values)
                pipe.expire(key, ttl_seconds)

    # Pipelines & pub/sub -------------------------------------------------

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[Pipeline]:
        """Queue commands on a MULTI/EXEC pipeline executed on exit."""

        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                yield pipe
                await pipe.execute()
        except RedisError as exc:
            raise StoreUnavailable(f"Atomic pipeline failed: {exc}") from exc

    async def publish(self, channel: str, message: str) -> int:
        try:
            return int(await self._redis.publish(channel, message))
        except RedisError as exc:
            raise StoreUnavailable(f"PUBLISH {channel} failed: {exc}") from exc

    async def subscribe(self, channel: str) -> PubSub:
        pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
        try:
            await pubsub.subscribe(channel)
        except RedisError as exc:
            await pubsub.aclose()
            raise StoreUnavailable(f"SUBSCRIBE {channel} failed: {exc}") from exc
        return pubsub


def _decode_record(raw: str | None, key: str) -> AnimeRecord | None:
    if raw is None:
        return None
    try:
        return AnimeRecord.from_json(raw)
    except ValidationError:
        logger.warning("Discarding undecodable record at %s", key)
        return None
