"""
pulse.api.__main__ — Entry point for ``python -m pulse.api``
============================================================

Serves :data:`pulse.api.main.app` with uvicorn on the ``dashboard_port``
from ``config.yaml``.
"""

from __future__ import annotations

import logging
import os

import uvicorn
from dotenv import load_dotenv

from pulse.config import load_config

logger = logging.getLogger("pulse.api")


def main() -> None:
    """Load config and run the API server (blocking)."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
        datefmt="%H:%M:%S",
    )
    load_dotenv()
    cfg = load_config(os.getenv("PULSE_CONFIG", "config.yaml"))
    host = os.getenv("PULSE_HOST", "0.0.0.0")
    logger.info("Starting Pulse API on %s:%d (env=%s)", host, cfg.dashboard_port, cfg.environment)
    uvicorn.run("pulse.api.main:app", host=host, port=cfg.dashboard_port, log_config=None)


if __name__ == "__main__":
    main()
