"""Layered single-entity lookup: cache, then origin, then cache-fill."""

from __future__ import annotations

import asyncio
import logging
from typing import Sequence

from ..errors import OriginUnavailable, StoreUnavailable
from ..models import AnimeRecord
from ..store import CatalogStore
from .detail import DetailClient
from .enrichment import EnrichmentPipeline

logger = logging.getLogger(__name__)


class EntityResolver:
    def __init__(
        self,
        store: CatalogStore,
        detail_client: DetailClient,
        pipeline: EnrichmentPipeline,
        *,
        record_ttl_seconds: int,
        batch_size: int = 50,
    ) -> None:
        self._store = store
        self._detail = detail_client
        self._pipeline = pipeline
        self._record_ttl = record_ttl_seconds
        self._batch_size = batch_size

    async def get_by_id(
        self,
        anime_id: int,
        include_details: bool = False,
        skip_origin_fallback: bool = False,
    ) -> AnimeRecord | None:
        """Return the record or ``None``; never raises for origin or store failures."""

        record = await self._read_cache(anime_id)
        if record is None:
            if skip_origin_fallback:
                return None
            record = await self._fetch_and_fill(anime_id)
            if record is None:
                return None

        if include_details and self._pipeline.needs_enrichment(record):
            record = await self._pipeline.enrich_all(record)
        return record

    async def get_many(self, anime_ids: Sequence[int]) -> list[AnimeRecord]:
        """Batched lookup preserving input order; unresolvable ids are dropped."""

        unique_ids = list(dict.fromkeys(anime_ids))[: self._batch_size]
        try:
            found = await self._store.get_records(unique_ids)
        except StoreUnavailable as exc:
            logger.warning("Batched record read failed, resolving individually: %s", exc)
            found = {}

        missing = [anime_id for anime_id in unique_ids if anime_id not in found]
        if missing:
            resolved = await asyncio.gather(
                *(self.get_by_id(anime_id, skip_origin_fallback=False) for anime_id in missing)
            )
            for anime_id, record in zip(missing, resolved):
                if record is not None:
                    found[anime_id] = record
        return [found[anime_id] for anime_id in unique_ids if anime_id in found]

    async def _read_cache(self, anime_id: int) -> AnimeRecord | None:
        try:
            return await self._store.get_record(anime_id)
        except StoreUnavailable as exc:
            logger.warning("Cache read for anime %s failed, treating as miss: %s", anime_id, exc)
            return None

    async def _fetch_and_fill(self, anime_id: int) -> AnimeRecord | None:
        logger.info("Anime %s not cached, fetching from detail origin", anime_id)
        try:
            record = await self._detail.fetch_anime(anime_id)
        except OriginUnavailable as exc:
            logger.warning("Detail origin failed for anime %s: %s", anime_id, exc)
            return None
        if record is None:
            return None
        try:
            await self._store.set_record(record, self._record_ttl)
        except StoreUnavailable as exc:
            logger.warning("Serving anime %s uncached: %s", anime_id, exc)
        return record
