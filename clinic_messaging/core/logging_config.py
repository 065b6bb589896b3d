import logging
import sys
from contextvars import ContextVar

from clinic_messaging.core.config import get_settings

NO_REQUEST_ID = "-"

# Set by the request-id middleware, read by every log record of the request.
request_id_var: ContextVar[str] = ContextVar("request_id", default=NO_REQUEST_ID)


class RequestIdFilter(logging.Filter):
    """Attach the current request id to log records."""

    def filter(self, record):
        record.request_id = request_id_var.get()
        return True


class SafeFormatter(logging.Formatter):

    def format(self, record):
        if not hasattr(record, "request_id"):
            record.request_id = NO_REQUEST_ID
        return super().format(record)


_configured = False


def setup_logging(level: str | None = None) -> logging.Logger:
    global _configured
    settings = get_settings()
    package_logger = logging.getLogger("clinic_messaging")
    package_logger.setLevel(getattr(logging, (level or settings.log_level).upper(), logging.INFO))
    if _configured:
        return package_logger

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(SafeFormatter(settings.log_format))
    handler.addFilter(RequestIdFilter())
    package_logger.addHandler(handler)
    package_logger.propagate = False
    _configured = True

    package_logger.info("Logging is set up.")
    return package_logger
