from __future__ import annotations

import uvicorn

import config as CFG
from museum_booking.logs import setup_logging

from .app import app


def run() -> None:
    """Entry point for launching the API with uvicorn."""
    setup_logging(CFG.LOG_LEVEL, CFG.LOG_FILE)
    uvicorn.run(
        app,
        host=CFG.WEB_HOST,
        port=CFG.WEB_PORT,
        reload=False,
        log_level=CFG.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
