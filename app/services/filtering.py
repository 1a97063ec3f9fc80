"""Pure filter, search, sort and paginate pipeline over in-memory records."""

from __future__ import annotations

from typing import Callable, Sequence

from ..models import AnimeRecord, FilterableItem, FilterOptions, FilterResult
from ..utils import fold_text
from .search import FuzzySearchIndex

SPECIAL_MEDIA_TYPE = "special"


def filter_and_page(
    items: Sequence[FilterableItem],
    options: FilterOptions,
    search_index: FuzzySearchIndex | None = None,
) -> FilterResult:
    """Apply status, specials, genre and text filters, then sort and slice.

    ``total`` is the count before any filter and ``filtered`` the count
    before slicing. When ``search_index`` is omitted or not built, fuzzy
    queries run against a throwaway index over ``items`` that keeps the
    given index's threshold and minimum query length.
    """

    total = len(items)
    result = list(items)

    if options.status and options.status != "all":
        result = [
            item
            for item in result
            if item.watch_data is not None and item.watch_data.status == options.status
        ]

    if options.hide_specials:
        result = [item for item in result if not is_special(item.record)]

    if options.genres:
        wanted = {fold_text(genre.strip()) for genre in options.genres if genre.strip()}
        if wanted:
            result = [
                item
                for item in result
                if wanted <= {fold_text(name) for name in item.record.genre_names()}
            ]

    query = (options.query or "").strip()
    if query:
        if options.search_strategy == "simple":
            result = _search_simple(result, query)
        else:
            result = _search_fuzzy(result, query, search_index)

    result = sort_items(result, options.sort, options.sort_direction)
    filtered = len(result)

    if options.limit is not None:
        result = result[options.offset : options.offset + options.limit]
    elif options.offset:
        result = result[options.offset :]

    return FilterResult(items=result, total=total, filtered=filtered)


def to_filterable(records: Sequence[AnimeRecord]) -> list[FilterableItem]:
    return [FilterableItem(record=record) for record in records]


def is_special(record: AnimeRecord) -> bool:
    return (record.media_type or "").lower() == SPECIAL_MEDIA_TYPE


def sort_items(
    items: list[FilterableItem], sort: str, direction: str = "desc"
) -> list[FilterableItem]:
    """Stable sort; missing values always sort last whatever the direction."""

    descending = direction == "desc"
    if sort == "rating":
        return _sort_with_missing(items, lambda item: item.record.score, descending)
    if sort == "newest":
        return _sort_with_missing(
            items, lambda item: item.record.start_date or None, descending
        )
    if sort == "name":
        return sorted(
            items,
            key=lambda item: (fold_text(item.record.title), item.record.title),
            reverse=descending,
        )
    if sort == "rating_personal":
        return _sort_with_missing(
            items,
            lambda item: item.watch_data.rating if item.watch_data else None,
            descending,
        )
    # "added": callers supply items in the order they were added.
    return list(items)


def _sort_with_missing(
    items: list[FilterableItem],
    value: Callable[[FilterableItem], object],
    descending: bool,
) -> list[FilterableItem]:
    present = [item for item in items if value(item) is not None]
    missing = [item for item in items if value(item) is None]
    present.sort(key=value, reverse=descending)  # type: ignore[arg-type]
    return present + missing


def _search_simple(items: list[FilterableItem], query: str) -> list[FilterableItem]:
    needle = query.lower()
    return [
        item
        for item in items
        if any(needle in variant.lower() for variant in item.record.title_variants())
    ]


def _search_fuzzy(
    items: list[FilterableItem],
    query: str,
    search_index: FuzzySearchIndex | None,
) -> list[FilterableItem]:
    if search_index is not None and search_index.has_index():
        by_id = {item.record.id: item for item in items}
        matched: list[FilterableItem] = []
        for match in search_index.search(query):
            item = by_id.pop(match.record.id, None)
            if item is not None:
                matched.append(item)
        return matched

    scratch = search_index.blank_copy() if search_index is not None else FuzzySearchIndex()
    scratch.build(item.record for item in items)
    by_id = {item.record.id: item for item in items}
    return [by_id[match.record.id] for match in scratch.search(query)]
