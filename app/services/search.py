"""Per-process approximate text index over titles and genres."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

from rapidfuzz import fuzz
from rapidfuzz.utils import default_process

from ..models import AnimeRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SearchField:
    name: str
    weight: float
    extract: Callable[[AnimeRecord], Sequence[str]]


DEFAULT_FIELDS: tuple[SearchField, ...] = (
    SearchField("title", 0.4, lambda record: [record.title]),
    SearchField(
        "title_en",
        0.3,
        lambda record: [record.alternative_titles.en] if record.alternative_titles.en else [],
    ),
    SearchField(
        "title_ja",
        0.2,
        lambda record: [record.alternative_titles.ja] if record.alternative_titles.ja else [],
    ),
    SearchField("genres", 0.1, lambda record: record.genre_names()),
)


@dataclass(frozen=True, slots=True)
class SearchDocument:
    record: AnimeRecord
    fields: tuple[tuple[str, ...], ...]


@dataclass(frozen=True, slots=True)
class SearchMatch:
    record: AnimeRecord
    score: float
    field: str


@dataclass(frozen=True, slots=True)
class _Snapshot:
    documents: tuple[SearchDocument, ...]


class FuzzySearchIndex:
    """Weighted fuzzy matcher whose document set is swapped as a whole.

    A document matches when its best field similarity reaches ``threshold``
    (0-100). Matches rank by that similarity, then by the field weighted sum,
    so a title hit outranks an equally close genre hit.
    """

    def __init__(
        self,
        fields: Sequence[SearchField] = DEFAULT_FIELDS,
        *,
        threshold: float = 70.0,
        min_query_length: int = 2,
    ) -> None:
        self._fields = tuple(fields)
        self._threshold = threshold
        self._min_query_length = min_query_length
        self._snapshot: _Snapshot | None = None

    def build(self, records: Iterable[AnimeRecord]) -> int:
        documents = tuple(
            SearchDocument(
                record=record,
                fields=tuple(
                    tuple(
                        processed
                        for processed in (default_process(value) for value in field.extract(record))
                        if processed
                    )
                    for field in self._fields
                ),
            )
            for record in records
        )
        self._snapshot = _Snapshot(documents)
        logger.info("Built fuzzy search index with %d entries", len(documents))
        return len(documents)

    def blank_copy(self) -> FuzzySearchIndex:
        """Return an unbuilt index with the same fields and match settings."""

        return FuzzySearchIndex(
            self._fields,
            threshold=self._threshold,
            min_query_length=self._min_query_length,
        )

    def has_index(self) -> bool:
        return self._snapshot is not None

    def clear(self) -> None:
        self._snapshot = None

    def __len__(self) -> int:
        snapshot = self._snapshot
        return len(snapshot.documents) if snapshot else 0

    def search(self, query: str, limit: int | None = None) -> list[SearchMatch]:
        snapshot = self._snapshot
        if snapshot is None:
            return []
        needle = default_process(query or "")
        if len(needle) < self._min_query_length:
            return []

        scored: list[tuple[float, float, SearchMatch]] = []
        for document in snapshot.documents:
            best = 0.0
            best_field = ""
            weighted = 0.0
            for field, values in zip(self._fields, document.fields):
                field_best = max(
                    (_similarity(needle, value) for value in values), default=0.0
                )
                weighted += field.weight * field_best
                if field_best > best:
                    best = field_best
                    best_field = field.name
            if best >= self._threshold:
                scored.append(
                    (best, weighted, SearchMatch(document.record, best, best_field))
                )

        scored.sort(key=lambda entry: (-entry[0], -entry[1]))
        matches = [entry[2] for entry in scored]
        if limit is not None:
            matches = matches[:limit]
        return matches

    def search_one(self, query: str) -> AnimeRecord | None:
        matches = self.search(query, limit=1)
        return matches[0].record if matches else None


def _similarity(needle: str, value: str) -> float:
    # Substring alignment only when the candidate is at least as long as the
    # query, so a short title found inside a long query does not score 100.
    if len(value) >= len(needle):
        return fuzz.partial_ratio(needle, value)
    return fuzz.ratio(needle, value)
