"""Client for the per-entity detail endpoint (Jikan-compatible API)."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import ValidationError

from ..config import Settings
from ..errors import OriginUnavailable
from ..models import AnimeRecord
from .http import get_with_retries

logger = logging.getLogger(__name__)

RELATION_PRIORITY: dict[str, int] = {
    "Sequel": 1,
    "Prequel": 2,
    "Alternative version": 3,
    "Parent story": 4,
    "Side story": 5,
    "Summary": 6,
    "Spin-off": 7,
    "Other": 8,
    "Character": 9,
    "Adaptation": 10,
}


class DetailClient:
    """Fetch full single-record payloads by id."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client

    async def fetch_anime(self, anime_id: int) -> AnimeRecord | None:
        """Return the full record, ``None`` when origin does not know the id.

        Network failures and non-success answers other than 404 raise
        :class:`OriginUnavailable`.
        """

        try:
            response = await get_with_retries(
                self._client,
                f"/anime/{anime_id}/full",
                source="detail origin",
                retry_limit=self._settings.retry_limit,
                backoff_seconds=self._settings.retry_backoff_seconds,
            )
        except OriginUnavailable as exc:
            if exc.reason == "HTTP 404":
                logger.debug("Detail origin has no anime %s", anime_id)
                return None
            raise

        try:
            payload = response.json()
        except ValueError as exc:
            raise OriginUnavailable("detail origin", "non-JSON response") from exc

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            logger.warning("Unexpected detail payload structure for anime %s", anime_id)
            return None

        try:
            record = AnimeRecord.from_detail_payload(data)
        except ValidationError as exc:
            logger.warning("Detail payload for anime %s failed validation: %s", anime_id, exc)
            return None
        if record.relations:
            record.relations = sort_relations(record.relations)
        return record


def sort_relations(relations: list[Any]) -> list[Any]:
    return sorted(
        relations, key=lambda relation: RELATION_PRIORITY.get(relation.relation, 99)
    )
