import contextvars
import logging
import os
from logging.handlers import TimedRotatingFileHandler
from typing import Optional

from .config import get_settings

request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="-")

_file_handler: Optional[TimedRotatingFileHandler] = None


class RequestContextFilter(logging.Filter):
    """Stamp every record with the request id of the current task."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = request_id_var.get()
        return True


def setup_logging(level: Optional[str] = None, log_dir: Optional[str] = None) -> None:
    global _file_handler
    cfg = get_settings()
    level = level or cfg.LOG_LEVEL
    log_dir = cfg.LOG_DIR if log_dir is None else log_dir

    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())
    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s %(name)s [request_id=%(request_id)s]: %(message)s"
    )
    context_filter = RequestContextFilter()

    if _file_handler:
        _file_handler.close()
        _file_handler = None

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    stream_handler.addFilter(context_filter)
    handlers = [stream_handler]

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        # Daily rotation, keep 14 days
        _file_handler = TimedRotatingFileHandler(
            os.path.join(log_dir, "agent_service.log"), when="midnight", interval=1, backupCount=14
        )
        _file_handler.setFormatter(formatter)
        _file_handler.addFilter(context_filter)
        handlers.append(_file_handler)

    root_logger.handlers = handlers
    root_logger.info("[BOOT] Logging initialized (level=%s, dir=%s)", level, log_dir or "-")


def close_logging() -> None:
    global _file_handler
    if _file_handler:
        _file_handler.close()
        _file_handler = None
