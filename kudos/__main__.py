"""
kudos.__main__ — Entry point for ``python -m kudos``
=====================================================

Configures logging and serves :data:`kudos.api.main.app` with uvicorn.
"""

from __future__ import annotations

import logging
import os

import uvicorn
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("kudos")


def main() -> None:
    """Serve the Kudos API."""
    load_dotenv()
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    logger.info("Starting Kudos on %s:%d", host, port)
    uvicorn.run("kudos.api.main:app", host=host, port=port, log_config=None)


if __name__ == "__main__":
    main()
