import logging

from livequery.config import Settings


def setup_logging(settings: Settings) -> None:
    """Configure logging for applications embedding livequery.

    The format includes timestamp, log level, logger name, and message.
    """
    log_level_name = settings.log_level.upper()
    level = getattr(logging, log_level_name, logging.INFO)

    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )

    # httpx logs every request at INFO
    httpx_level = max(level, logging.WARNING)
    for logger_name in ("httpx", "httpcore"):
        logging.getLogger(logger_name).setLevel(httpx_level)
