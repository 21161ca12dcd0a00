#!/usr/bin/env python3
"""Entry point for the GuiaVision live assistant control server.

    uvicorn guiavision_server:app --host 0.0.0.0 --port 8080

or simply ``python guiavision_server.py`` / ``guiavision-server``.
"""
from guiavision.config import settings
from guiavision.logging_config import setup_default_logging, get_logger

setup_default_logging()
logger = get_logger(__name__)

from guiavision.server.api import app  # noqa: E402  (import after logging setup)


def uvicorn_options() -> dict:
    options = dict(host=settings.host, port=settings.port, reload=False, access_log=True, loop="asyncio")
    if settings.https:
        options.update(ssl_keyfile=settings.ssl_key, ssl_certfile=settings.ssl_cert)
    return options


def main() -> None:
    import uvicorn
    scheme = "https" if settings.https else "http"
    logger.info(f"Starting GuiaVision server → {scheme}://localhost:{settings.port}")
    uvicorn.run("guiavision.server.api:app", **uvicorn_options())


if __name__ == "__main__":  # pragma: no cover
    main()
