"""Ordered, best-effort steps that fill enrichment-only record fields."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence

from ..errors import EnrichmentStepFailure, RateLimitExceeded, StoreUnavailable
from ..models import AnimeRecord
from ..store import CatalogStore
from .detail import DetailClient
from .scraper import StreamingScraper

logger = logging.getLogger(__name__)

EnrichAction = Callable[[AnimeRecord], Awaitable[AnimeRecord]]

DETAIL_FIELDS: tuple[str, ...] = ("synopsis", "source", "background", "relations")


@dataclass(frozen=True, slots=True)
class EnrichmentStep:
    """A named step and the record fields it is responsible for filling.

    ``provides`` is the single source of truth for both the predicate and
    the post-condition checked after the step runs.
    """

    name: str
    provides: tuple[str, ...]
    enrich: EnrichAction

    def needs_enrichment(self, record: AnimeRecord) -> bool:
        return any(getattr(record, field) is None for field in self.provides)

    def missing_fields(self, record: AnimeRecord) -> list[str]:
        return [field for field in self.provides if getattr(record, field) is None]


class EnrichmentPipeline:
    """Run steps in registration order and persist the merged result."""

    def __init__(
        self,
        steps: Sequence[EnrichmentStep],
        store: CatalogStore | None,
        *,
        ttl_seconds: int,
        step_timeout_seconds: float,
    ) -> None:
        self._steps = tuple(steps)
        self._store = store
        self._ttl_seconds = ttl_seconds
        self._step_timeout = step_timeout_seconds

    @property
    def steps(self) -> tuple[EnrichmentStep, ...]:
        return self._steps

    def needs_enrichment(self, record: AnimeRecord) -> bool:
        return any(step.needs_enrichment(record) for step in self._steps)

    async def enrich_all(self, record: AnimeRecord) -> AnimeRecord:
        enriched = record
        fired: list[str] = []
        for step in self._steps:
            if not step.needs_enrichment(enriched):
                continue
            try:
                enriched = await self._run_step(step, enriched)
            except EnrichmentStepFailure as exc:
                logger.warning("Skipping enrichment for anime %s: %s", record.id, exc)
                continue
            fired.append(step.name)

        if fired:
            await self._persist(enriched, fired)
        return enriched

    async def _run_step(self, step: EnrichmentStep, record: AnimeRecord) -> AnimeRecord:
        try:
            result = await asyncio.wait_for(step.enrich(record), timeout=self._step_timeout)
        except asyncio.TimeoutError as exc:
            raise EnrichmentStepFailure(step.name, "timed out") from exc
        except EnrichmentStepFailure:
            raise
        except RateLimitExceeded as exc:
            raise EnrichmentStepFailure(step.name, f"rate limited ({exc})") from exc
        except Exception as exc:  # each step is isolated from the rest
            raise EnrichmentStepFailure(step.name, f"{exc.__class__.__name__}: {exc}") from exc

        if result.id != record.id:
            raise EnrichmentStepFailure(
                step.name, f"returned anime {result.id} for anime {record.id}"
            )
        missing = step.missing_fields(result)
        if missing:
            logger.warning(
                "Enrichment step %s left %s unset for anime %s",
                step.name,
                ", ".join(missing),
                record.id,
            )
        return result

    async def _persist(self, record: AnimeRecord, fired: list[str]) -> None:
        if self._store is None:
            return
        try:
            await self._store.set_record(record, self._ttl_seconds)
        except StoreUnavailable as exc:
            logger.warning(
                "Could not cache anime %s enriched by %s: %s",
                record.id,
                ", ".join(fired),
                exc,
            )


def merge_details(record: AnimeRecord, detailed: AnimeRecord) -> AnimeRecord:
    """Fill unset fields from a detail record without overwriting origin data."""

    update: dict[str, object] = {}
    for field in AnimeRecord.model_fields:
        if field == "id":
            continue
        current = getattr(record, field)
        incoming = getattr(detailed, field)
        if current is None and incoming is not None:
            update[field] = incoming
    for field in DETAIL_FIELDS:
        if getattr(record, field) is None and field not in update:
            update[field] = [] if field == "relations" else ""
    if not update:
        return record
    return record.model_copy(update=update)


def details_step(client: DetailClient) -> EnrichmentStep:
    async def enrich(record: AnimeRecord) -> AnimeRecord:
        detailed = await client.fetch_anime(record.id)
        if detailed is None:
            raise EnrichmentStepFailure("details", f"no detail record for anime {record.id}")
        return merge_details(record, detailed)

    return EnrichmentStep(name="details", provides=DETAIL_FIELDS, enrich=enrich)


def streaming_step(scraper: StreamingScraper) -> EnrichmentStep:
    async def enrich(record: AnimeRecord) -> AnimeRecord:
        links = await scraper.fetch_links(record.id)
        return record.model_copy(update={"streaming": links})

    return EnrichmentStep(name="streaming", provides=("streaming",), enrich=enrich)


def default_steps(client: DetailClient, scraper: StreamingScraper) -> list[EnrichmentStep]:
    return [details_step(client), streaming_step(scraper)]
