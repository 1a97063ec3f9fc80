"""Tests for the in-memory filter, sort and pagination pipeline."""

from __future__ import annotations

from datetime import datetime

import pytest

from app.models import FilterableItem, FilterOptions, WatchData
from app.services.filtering import filter_and_page, sort_items, to_filterable
from app.services.search import FuzzySearchIndex


@pytest.fixture
def items(make_record) -> list[FilterableItem]:
    return [
        FilterableItem(
            record=make_record(1, "Bocchi the Rock!", score=8.8, start_date="2022-10-09",
                               media_type="tv", genres=[{"name": "Comedy"}, {"name": "Music"}]),
            watch_data=WatchData(status="completed", rating=9, date_added=datetime(2023, 1, 1)),
        ),
        FilterableItem(
            record=make_record(2, "Bocchi Special", score=7.5, start_date="2023-03-01",
                               media_type="special", genres=[{"name": "Comedy"}]),
            watch_data=WatchData(status="watching"),
        ),
        FilterableItem(
            record=make_record(3, "Érased", start_date="2016-01-08", media_type="tv",
                               genres=[{"name": "Mystery"}]),
            watch_data=WatchData(status="completed", rating=7),
        ),
        FilterableItem(record=make_record(4, "Akira", score=6.0, media_type="movie")),
    ]


def test_defaults_sort_by_rating_with_missing_scores_last(items) -> None:
    result = filter_and_page(items, FilterOptions())

    assert [record.id for record in result.records()] == [1, 2, 4, 3]
    assert result.total == 4
    assert result.filtered == 4


def test_status_and_specials_filters(items) -> None:
    result = filter_and_page(items, FilterOptions(status="completed", hide_specials=True))

    assert [record.id for record in result.records()] == [1, 3]

    everything = filter_and_page(items, FilterOptions(status="all", hide_specials=True))
    assert 2 not in [record.id for record in everything.records()]


def test_genre_filter_requires_every_genre(items) -> None:
    result = filter_and_page(items, FilterOptions(genres=["comedy", "MUSIC"]))

    assert [record.id for record in result.records()] == [1]


def test_simple_search_is_case_insensitive_substring(items) -> None:
    result = filter_and_page(items, FilterOptions(query="BOCCHI", search_strategy="simple"))

    assert sorted(record.id for record in result.records()) == [1, 2]


def test_fuzzy_search_uses_supplied_index_restricted_to_items(items, make_record) -> None:
    index = FuzzySearchIndex()
    index.build([item.record for item in items] + [make_record(99, "Bocchi Movie")])

    result = filter_and_page(
        items, FilterOptions(query="bocchi", hide_specials=True), search_index=index
    )

    assert [record.id for record in result.records()] == [1]


def test_fuzzy_search_without_index_builds_a_scratch_index(items) -> None:
    result = filter_and_page(items, FilterOptions(query="erased"))

    assert [record.id for record in result.records()] == [3]


def test_scratch_index_keeps_configured_match_settings(items) -> None:
    strict = FuzzySearchIndex(threshold=100.0)
    long_queries = FuzzySearchIndex(min_query_length=10)

    typo = filter_and_page(items, FilterOptions(query="akria"), search_index=strict)
    short = filter_and_page(items, FilterOptions(query="erased"), search_index=long_queries)
    lenient = filter_and_page(items, FilterOptions(query="akria"))

    assert typo.records() == []
    assert short.records() == []
    assert [record.id for record in lenient.records()] == [4]
    assert not strict.has_index()


def test_pagination_reports_counts_before_slicing(items) -> None:
    result = filter_and_page(items, FilterOptions(limit=2, offset=1))

    assert [record.id for record in result.records()] == [2, 4]
    assert result.total == 4
    assert result.filtered == 4


def test_name_sort_ignores_case_and_accents(items) -> None:
    ascending = sort_items(items, "name", "asc")
    descending = sort_items(items, "name", "desc")

    assert [item.record.id for item in ascending] == [4, 2, 1, 3]
    assert [item.record.id for item in descending] == [3, 1, 2, 4]


def test_newest_and_personal_rating_sorts_keep_missing_last(items) -> None:
    newest_ascending = sort_items(items, "newest", "asc")
    personal = sort_items(items, "rating_personal", "desc")

    assert [item.record.id for item in newest_ascending] == [3, 1, 2, 4]
    assert [item.record.id for item in personal] == [1, 3, 2, 4]


def test_added_sort_preserves_input_order(make_record) -> None:
    records = [make_record(3), make_record(1), make_record(2)]

    result = filter_and_page(to_filterable(records), FilterOptions(sort="added"))

    assert [record.id for record in result.records()] == [3, 1, 2]
