"""Entry point for the anime catalog service."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException

from .config import Settings, settings
from .services.catalog import CatalogService
from .services.detail import DetailClient
from .services.enrichment import EnrichmentPipeline, default_steps
from .services.indexer import RECORD_COUNT_FIELD, IndexBuilder
from .services.origin import OriginLoader
from .services.resolver import EntityResolver
from .services.scraper import StreamingScraper
from .store import CatalogKeys, CatalogStore, build_redis

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app: FastAPI


def build_catalog_service(
    config: Settings,
    store: CatalogStore,
    origin_client: httpx.AsyncClient,
    detail_client: httpx.AsyncClient,
    scrape_client: httpx.AsyncClient,
) -> CatalogService:
    """Wire every collaborator of :class:`CatalogService` from settings."""

    detail = DetailClient(config, detail_client)
    scraper = StreamingScraper(config, scrape_client)
    pipeline = EnrichmentPipeline(
        default_steps(detail, scraper),
        store,
        ttl_seconds=config.enriched_record_ttl_seconds,
        step_timeout_seconds=config.enrichment_timeout_seconds,
    )
    resolver = EntityResolver(
        store,
        detail,
        pipeline,
        record_ttl_seconds=config.record_ttl_seconds,
        batch_size=config.batch_size,
    )
    return CatalogService(
        config,
        store,
        OriginLoader(config, origin_client),
        resolver,
        IndexBuilder(config, store),
    )


async def open_http_clients(
    config: Settings, exit_stack: AsyncExitStack
) -> tuple[httpx.AsyncClient, httpx.AsyncClient, httpx.AsyncClient]:
    """Open the origin, detail and scrape clients, closed with ``exit_stack``."""

    timeout = httpx.Timeout(
        config.http_timeout_seconds, connect=config.http_connect_timeout_seconds
    )
    origin_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(timeout=timeout, follow_redirects=True)
    )
    detail_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(base_url=str(config.detail_api_url), timeout=timeout)
    )
    scrape_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(timeout=timeout, follow_redirects=True)
    )
    return origin_client, detail_client, scrape_client


@asynccontextmanager
async def lifespan(_: FastAPI):
    exit_stack = AsyncExitStack()
    origin_client, detail_client, scrape_client = await open_http_clients(
        settings, exit_stack
    )
    store = CatalogStore(
        build_redis(settings.redis_url), CatalogKeys(settings.key_prefix)
    )
    catalog_service = build_catalog_service(
        settings, store, origin_client, detail_client, scrape_client
    )

    app.state.catalog_service = catalog_service
    await catalog_service.start()

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await catalog_service.stop()
        await store.close()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Cached anime catalog with derived indices and fuzzy search",
        version="1.0.0",
        lifespan=lifespan,
    )
    register_routes(fastapi_app)
    return fastapi_app


def get_catalog_service(app: FastAPI) -> CatalogService:
    service = getattr(app.state, "catalog_service", None)
    if not isinstance(service, CatalogService):
        raise RuntimeError("Catalog service not initialised")
    return service


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.post("/admin/refresh")
    async def trigger_refresh() -> dict[str, Any]:
        service = get_catalog_service(fastapi_app)
        result = await service.refresh()
        if not result.success:
            raise HTTPException(
                status_code=503,
                detail="Catalog refresh failed; previous data retained",
            )
        return result.model_dump(mode="json")

    @fastapi_app.get("/admin/status")
    async def refresh_status() -> dict[str, Any]:
        service = get_catalog_service(fastapi_app)
        last_refresh = await service.last_refresh_timestamp()
        count = await service.record_count()
        return {
            "last_refresh": last_refresh.isoformat() if last_refresh else None,
            RECORD_COUNT_FIELD: count,
            "refreshing": service.is_refreshing(),
            "search_index_ready": service.search_index.has_index(),
        }


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )
