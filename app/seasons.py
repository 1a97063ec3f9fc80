"""Broadcast season helpers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from .models import Season

SEASON_ORDER: tuple[Season, ...] = ("winter", "spring", "summer", "fall")

SEASON_MONTHS: dict[Season, tuple[int, int, int]] = {
    "winter": (1, 2, 3),
    "spring": (4, 5, 6),
    "summer": (7, 8, 9),
    "fall": (10, 11, 12),
}

MONTH_TO_SEASON: dict[int, Season] = {
    month: season for season, months in SEASON_MONTHS.items() for month in months
}

SEASON_LABELS: dict[Season, str] = {
    "winter": "Winter",
    "spring": "Spring",
    "summer": "Summer",
    "fall": "Autumn",
}


@dataclass(frozen=True, slots=True)
class SeasonYear:
    year: int
    season: Season

    @property
    def label(self) -> str:
        return f"{SEASON_LABELS[self.season]} {self.year}"

    def previous(self) -> "SeasonYear":
        index = SEASON_ORDER.index(self.season)
        if index == 0:
            return SeasonYear(self.year - 1, SEASON_ORDER[-1])
        return SeasonYear(self.year, SEASON_ORDER[index - 1])

    def next(self) -> "SeasonYear":
        index = SEASON_ORDER.index(self.season)
        if index == len(SEASON_ORDER) - 1:
            return SeasonYear(self.year + 1, SEASON_ORDER[0])
        return SeasonYear(self.year, SEASON_ORDER[index + 1])


def season_for_month(month: int) -> Season:
    try:
        return MONTH_TO_SEASON[month]
    except KeyError:
        raise ValueError(f"Invalid month: {month}") from None


def current_season(today: date | None = None) -> SeasonYear:
    today = today or date.today()
    return SeasonYear(today.year, season_for_month(today.month))


def parse_season(start_date: str | None) -> SeasonYear | None:
    """Derive the broadcast season from an ISO ``YYYY-MM[-DD]`` start date.

    Returns ``None`` for anything that does not carry a usable year and month,
    which keeps such records out of every seasonal bucket.
    """

    if not start_date:
        return None
    parts = start_date.strip().split("-")
    if len(parts) < 2:
        return None
    try:
        year = int(parts[0])
        month = int(parts[1][:2])
    except ValueError:
        return None
    if month < 1 or month > 12:
        return None
    return SeasonYear(year, MONTH_TO_SEASON[month])


def parse_season_param(value: str | None) -> Season | None:
    if not value:
        return None
    lowered = value.strip().lower()
    if lowered == "autumn":
        lowered = "fall"
    for season in SEASON_ORDER:
        if season == lowered:
            return season
    return None
