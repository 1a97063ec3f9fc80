"""Module executed when running ``python -m animecatalog``."""

from __future__ import annotations

import uvicorn

from app.config import settings


def main() -> None:
    """Serve the catalog app with the configured host, port and log level."""

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        log_level=settings.log_level.lower(),
        reload=settings.environment == "development",
    )


if __name__ == "__main__":  # pragma: no cover - runtime entrypoint
    main()
