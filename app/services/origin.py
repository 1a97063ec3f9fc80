"""Loader for the bulk catalog dataset and auxiliary id lists."""

from __future__ import annotations

import csv
import io
import json
import logging
from typing import Iterable, Mapping

import httpx
from pydantic import ValidationError

from ..config import Settings
from ..errors import ParseError
from ..models import AnimeRecord
from ..utils import parse_float, parse_int, split_multi
from .http import get_with_retries

logger = logging.getLogger(__name__)


class OriginLoader:
    """Fetch and parse the bulk CSV catalog and membership-only id lists."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client

    async def fetch_catalog(self, source_uri: str | None = None) -> list[AnimeRecord]:
        """Download the bulk dataset and return records in file order."""

        url = source_uri or str(self._settings.catalog_csv_url)
        logger.info("Fetching catalog dataset from %s", url)
        response = await get_with_retries(
            self._client,
            url,
            source="catalog origin",
            retry_limit=self._settings.retry_limit,
            backoff_seconds=self._settings.retry_backoff_seconds,
        )
        records = parse_catalog_csv(response.text)
        logger.info("Parsed %d catalog records", len(records))
        return records

    async def fetch_id_list(self, uri: str) -> set[int]:
        """Download an auxiliary dataset of ids (JSON or one id per line)."""

        response = await get_with_retries(
            self._client,
            uri,
            source="id list origin",
            retry_limit=self._settings.retry_limit,
            backoff_seconds=self._settings.retry_backoff_seconds,
        )
        return parse_id_list(response.text)


def parse_catalog_csv(content: str) -> list[AnimeRecord]:
    """Parse the bulk CSV, skipping rows that cannot become records."""

    reader = csv.DictReader(io.StringIO(content.lstrip("\ufeff")))
    records: list[AnimeRecord] = []
    skipped = 0
    for line_number, row in enumerate(reader, start=2):
        if not any((value or "").strip() for value in row.values() if isinstance(value, str)):
            continue
        try:
            records.append(parse_catalog_row(row))
        except ParseError as exc:
            skipped += 1
            logger.debug("Skipping catalog row %d: %s", line_number, exc)
    if skipped:
        logger.warning("Skipped %d malformed catalog rows", skipped)
    return records


def parse_catalog_row(row: Mapping[str, str | None]) -> AnimeRecord:
    def cell(name: str) -> str | None:
        value = row.get(name)
        if not isinstance(value, str):
            return None
        value = value.strip()
        return value or None

    raw_id = cell("id")
    if raw_id is None or not raw_id.isdigit():
        raise ParseError(f"non-numeric id {raw_id!r}")

    image = cell("image")
    try:
        return AnimeRecord.model_validate(
            {
                "id": int(raw_id),
                "title": cell("title") or cell("titleEn") or "Unknown",
                "alternative_titles": {
                    "en": cell("titleEn"),
                    "ja": cell("titleJa"),
                },
                "main_picture": {"medium": image, "large": image} if image else None,
                "score": parse_float(cell("mean")),
                "rank": parse_int(cell("rank")),
                "popularity": parse_int(cell("num_list_users")),
                "num_scoring_users": parse_int(cell("num_scoring_users")),
                "num_episodes": parse_int(cell("num_episodes")),
                "start_date": cell("start_date"),
                "end_date": cell("end_date"),
                "media_type": cell("media_type"),
                "status": cell("status"),
                "rating": cell("rating"),
                "genres": _named_entities(split_multi(cell("genres"))),
                "studios": _named_entities(split_multi(cell("studios"))),
            }
        )
    except ValidationError as exc:
        raise ParseError(str(exc)) from exc


def parse_id_list(content: str) -> set[int]:
    text = content.strip()
    if not text:
        return set()
    values: Iterable[object]
    if text[0] in "[{":
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ParseError("Invalid id list payload") from exc
        if isinstance(payload, dict):
            payload = payload.get("ids") or []
        values = payload if isinstance(payload, list) else []
    else:
        values = text.splitlines()

    ids: set[int] = set()
    for value in values:
        parsed = parse_int(value)
        if parsed is not None and parsed > 0:
            ids.add(parsed)
    return ids


def _named_entities(names: list[str]) -> list[dict[str, object]]:
    return [{"id": index, "name": name} for index, name in enumerate(names)]
