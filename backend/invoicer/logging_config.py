import logging
import sys

from invoicer.config import settings


def setup_logging() -> None:
    """Configure root logging from settings (called once at start-up)."""
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    logging.basicConfig(
        level=log_level,
        format=settings.log_format,
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    # Quiet chatty libraries
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.debug else logging.WARNING
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
