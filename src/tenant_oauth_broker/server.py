"""Entrypoint for the tenant OAuth broker."""

from __future__ import annotations

import logging

from tenant_oauth_broker import __version__
from tenant_oauth_broker.config import load_settings
from tenant_oauth_broker.logging_utils import configure_logging


def run_entrypoint() -> None:
    """Serve the broker over HTTP with uvicorn."""
    settings = load_settings()
    configure_logging()
    logging.info("Initializing tenant OAuth broker v%s", __version__)
    logging.info("Log file configured at: %s", settings.logging.file)

    from tenant_oauth_broker.transport.http_server import create_http_app

    try:
        import uvicorn
    except ImportError as exc:
        raise RuntimeError("uvicorn is required to serve the broker") from exc

    app = create_http_app()
    # No websocket endpoints are exposed.
    uvicorn.run(
        app,
        host=settings.server.host,
        port=settings.server.port,
        ws="none",
        log_config=None,
    )


if __name__ == "__main__":  # pragma: no cover
    run_entrypoint()
