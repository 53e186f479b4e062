import logging
import sys

from pythonjsonlogger.json import JsonFormatter

from datarelay.core.config import get_settings


PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
JSON_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    """Install a single stdout handler on the root logger."""
    settings = get_settings()
    handler = logging.StreamHandler(sys.stdout)
    if str(settings.log_format or "").strip().lower() == "json":
        handler.setFormatter(JsonFormatter(JSON_FORMAT))
    else:
        handler.setFormatter(logging.Formatter(PLAIN_FORMAT))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(str(settings.log_level or "INFO").upper())
    # httpx logs every request at INFO; we log our own attempt lines.
    logging.getLogger("httpx").setLevel(logging.WARNING)
