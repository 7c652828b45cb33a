"""Command-line entrypoint for running the proxy."""

from __future__ import annotations

import sys

import structlog
import uvicorn
from pydantic import ValidationError

from ..common.observability import configure_logging
from ..common.settings import ProxySettings
from .app import create_app


LOGGER = structlog.get_logger("cra_proxy.main")


def main() -> None:
    try:
        settings = ProxySettings()
        host, port = settings.bind_address()
    except (ValidationError, ValueError) as exc:
        configure_logging("cra_proxy")
        LOGGER.error("invalid_configuration", error=str(exc))
        sys.exit(2)

    app = create_app(settings)
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_config=None,
        log_level=settings.log_level.lower(),
        proxy_headers=True,
    )


if __name__ == "__main__":
    main()
