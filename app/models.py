"""Pydantic models describing catalog records and query payloads."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

MediaStatus = Literal["watching", "completed", "plan_to_watch", "on_hold", "dropped"]
SortType = Literal["rating", "newest", "added", "name", "rating_personal"]
SearchStrategy = Literal["fuzzy", "simple"]
Season = Literal["winter", "spring", "summer", "fall"]


class NamedEntity(BaseModel):
    """A genre, studio or other ``{id, name}`` reference."""

    id: int = Field(default=0, validation_alias=AliasChoices("id", "mal_id"))
    name: str


class AlternativeTitles(BaseModel):
    en: str | None = None
    ja: str | None = None
    synonyms: list[str] = Field(default_factory=list)


class Picture(BaseModel):
    medium: str
    large: str


class RelationEntry(BaseModel):
    id: int = Field(validation_alias=AliasChoices("id", "mal_id"))
    type: str | None = None
    name: str | None = None


class Relation(BaseModel):
    relation: str
    entry: list[RelationEntry] = Field(default_factory=list)


class StreamingLink(BaseModel):
    name: str
    url: str


class AnimeRecord(BaseModel):
    """Canonical catalog entity as ingested from the bulk origin.

    The trailing block of fields is only ever filled by enrichment; ``None``
    means "not fetched yet" while an empty value means "fetched, nothing
    found".
    """

    model_config = ConfigDict(populate_by_name=True)

    id: int
    title: str
    alternative_titles: AlternativeTitles = Field(default_factory=AlternativeTitles)
    main_picture: Picture | None = None
    score: float | None = Field(
        default=None, validation_alias=AliasChoices("score", "mean")
    )
    rank: int | None = None
    popularity: int | None = None
    num_scoring_users: int | None = None
    num_episodes: int | None = None
    start_date: str | None = None
    end_date: str | None = None
    status: str | None = None
    media_type: str | None = None
    rating: str | None = None
    genres: list[NamedEntity] = Field(default_factory=list)
    studios: list[NamedEntity] = Field(default_factory=list)
    relations: list[Relation] | None = None

    synopsis: str | None = None
    source: str | None = None
    background: str | None = None
    streaming: list[StreamingLink] | None = None

    def title_variants(self) -> list[str]:
        """Return every non-empty title the record is known by."""

        variants = [self.title]
        alt = self.alternative_titles
        if alt.en:
            variants.append(alt.en)
        if alt.ja:
            variants.append(alt.ja)
        variants.extend(synonym for synonym in alt.synonyms if synonym)
        return [variant for variant in variants if variant and variant.strip()]

    def genre_names(self) -> list[str]:
        return [genre.name for genre in self.genres if genre.name]

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, payload: str | bytes) -> "AnimeRecord":
        return cls.model_validate_json(payload)

    @classmethod
    def from_detail_payload(cls, data: dict[str, Any]) -> "AnimeRecord":
        """Map a Jikan-style ``/anime/{id}/full`` payload onto a record."""

        aired = data.get("aired") or {}
        images = (data.get("images") or {}).get("jpg") or {}
        picture: dict[str, str] | None = None
        if images.get("image_url"):
            picture = {
                "medium": images["image_url"],
                "large": images.get("large_image_url") or images["image_url"],
            }
        synonyms = [
            str(value) for value in data.get("title_synonyms") or [] if value
        ]
        return cls.model_validate(
            {
                "id": data.get("mal_id") or data.get("id"),
                "title": data.get("title")
                or data.get("title_english")
                or "Unknown",
                "alternative_titles": {
                    "en": data.get("title_english") or None,
                    "ja": data.get("title_japanese") or None,
                    "synonyms": synonyms,
                },
                "main_picture": picture,
                "score": data.get("score"),
                "rank": data.get("rank"),
                "popularity": data.get("popularity"),
                "num_scoring_users": data.get("scored_by"),
                "num_episodes": data.get("episodes"),
                "start_date": _date_part(aired.get("from")),
                "end_date": _date_part(aired.get("to")),
                "status": data.get("status"),
                "media_type": _lower(data.get("type")),
                "rating": data.get("rating"),
                "genres": data.get("genres") or [],
                "studios": data.get("studios") or [],
                "relations": data.get("relations") or [],
                "synopsis": data.get("synopsis") or "",
                "source": data.get("source") or "",
                "background": data.get("background") or "",
            }
        )


class WatchData(BaseModel):
    """Personal list data attached to a record by collaborators."""

    status: MediaStatus | None = None
    rating: float | None = None
    date_added: datetime | None = None


class FilterableItem(BaseModel):
    record: AnimeRecord
    watch_data: WatchData | None = None


class FilterOptions(BaseModel):
    """Options accepted by :func:`app.services.filtering.filter_and_page`."""

    query: str | None = None
    search_strategy: SearchStrategy = "fuzzy"
    sort: SortType = "rating"
    sort_direction: Literal["asc", "desc"] = "desc"
    hide_specials: bool = False
    status: MediaStatus | Literal["all"] | None = None
    genres: list[str] = Field(default_factory=list)
    limit: int | None = Field(default=None, ge=0)
    offset: int = Field(default=0, ge=0)


class FilterResult(BaseModel):
    items: list[FilterableItem] = Field(default_factory=list)
    total: int = 0
    filtered: int = 0

    def records(self) -> list[AnimeRecord]:
        return [item.record for item in self.items]


class RefreshResult(BaseModel):
    success: bool
    count: int = 0
    fetched_at: datetime | None = None


def _date_part(value: Any) -> str | None:
    if not isinstance(value, str) or not value:
        return None
    return value.split("T", 1)[0]


def _lower(value: Any) -> str | None:
    if not isinstance(value, str) or not value:
        return None
    return value.strip().lower()
