"""Shared retry loop for outbound HTTP calls."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from ..errors import OriginUnavailable

logger = logging.getLogger(__name__)


async def get_with_retries(
    client: httpx.AsyncClient,
    url: str,
    *,
    source: str,
    retry_limit: int,
    backoff_seconds: float,
    **kwargs: Any,
) -> httpx.Response:
    """Issue a GET, retrying transient failures (network errors, 5xx).

    Raises :class:`OriginUnavailable` once retries are exhausted or the
    response carries any other non-success status.
    """

    attempt = 0
    while True:
        try:
            response = await client.get(url, **kwargs)
        except httpx.HTTPError as exc:
            attempt += 1
            if attempt <= retry_limit:
                logger.info(
                    "Transient error talking to %s (%s). Retrying in %.1fs",
                    source,
                    exc.__class__.__name__,
                    backoff_seconds,
                )
                await asyncio.sleep(backoff_seconds)
                continue
            raise OriginUnavailable(source, f"{exc.__class__.__name__}: {exc}") from exc

        if 500 <= response.status_code < 600:
            attempt += 1
            if attempt <= retry_limit:
                logger.info(
                    "%s answered %s for %s. Retrying in %.1fs",
                    source,
                    response.status_code,
                    url,
                    backoff_seconds,
                )
                await asyncio.sleep(backoff_seconds)
                continue
        if response.status_code >= 400:
            raise OriginUnavailable(source, f"HTTP {response.status_code}")
        return response
