"""
Module runner to start the FastAPI server.

Usage:
    python -m channel_hub.run
"""
import os

import uvicorn
from dotenv import load_dotenv

from channel_hub.core.logging import get_logger

logger = get_logger(__name__)


def _env_bool(name: str, default: bool = False) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return val.strip().lower() in {"1", "true", "yes", "on"}


# PUBLIC_INTERFACE
def main():
    """Entry point to start the FastAPI server with environment-based configuration."""
    load_dotenv()
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "3001"))
    log_level = os.getenv("LOG_LEVEL", "info").lower()
    reload = _env_bool("RELOAD", False)

    logger.info("Starting Channel Hub", extra={"host": host, "port": port, "reload": reload})
    uvicorn.run(
        "channel_hub.api.main:app",
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )


if __name__ == "__main__":
    main()
