"""Logging configuration utilities for the lbsync daemon."""
import logging
import os


def setup_logging(level: str | None = None) -> None:
    """Configure root logging based on the LOG_LEVEL environment variable."""
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )
    # httpx logs every request at INFO; the clients keep their own metrics.
    logging.getLogger("httpx").setLevel(max(logging.getLogger().level, logging.WARNING))
