"""
Run with:   python main.py
Or:         uvicorn main:app --host 0.0.0.0 --port 3000
"""

import logging
import os
import sys

import dotenv
from fastapi import FastAPI

from gateway_server import build_app
from mcp_bridge.errors import ConfigError
from mcp_bridge.settings import Settings

dotenv.load_dotenv(override=False)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s | %(name)s | %(message)s",
)
logger = logging.getLogger("main")


def load_app() -> FastAPI:
    # a half-configured gateway must not start
    try:
        settings = Settings.from_env()
        app = build_app(settings)
    except ConfigError as e:
        logger.critical("Fatal: %s", e)
        sys.exit(1)
    logger.info(
        "MCP HTTP server configured: default server=%s, auth=%s",
        settings.default_server or "(none)",
        "disabled" if settings.disable_auth else "bearer",
    )
    return app


app = load_app()


def run() -> None:
    import uvicorn

    settings: Settings = app.state.settings
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
