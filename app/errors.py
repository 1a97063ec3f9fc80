"""Exception hierarchy shared by the catalog services."""

from __future__ import annotations


class CatalogError(Exception):
    """Base class for catalog cache failures."""


class OriginUnavailable(CatalogError):
    """The bulk or detail origin could not be reached or answered non-success."""

    def __init__(self, source: str, reason: str):
        super().__init__(f"{source} unavailable: {reason}")
        self.source = source
        self.reason = reason


class StoreUnavailable(CatalogError):
    """A Redis read or write failed."""


class ParseError(CatalogError):
    """A row or payload could not be turned into a record."""


class EnrichmentStepFailure(CatalogError):
    """An enrichment step failed or timed out."""

    def __init__(self, step: str, reason: str):
        super().__init__(f"enrichment step {step!r} failed: {reason}")
        self.step = step


class RateLimitExceeded(CatalogError):
    """The scrape layer refused a request because its window is full."""
