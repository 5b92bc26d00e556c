# app/core/logging_setup.py
import logging
import os
from datetime import datetime
from logging.handlers import RotatingFileHandler

_FORMAT = "[%(asctime)s] [%(name)s] %(levelname)s %(message)s"
_DATE_FORMAT = "%H:%M:%S"


def _build_file_handler(log_path: str) -> RotatingFileHandler:
    file_handler = RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=3)
    file_handler.setFormatter(logging.Formatter(_FORMAT, _DATE_FORMAT))
    file_handler.setLevel(logging.DEBUG)
    file_handler.name = "attention_file"
    return file_handler


def _build_stream_handler(level: str) -> logging.StreamHandler:
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(logging.Formatter(_FORMAT, _DATE_FORMAT))
    stream_handler.setLevel(level)
    stream_handler.name = "attention_stream"
    return stream_handler


def _replace_handlers(
    logger: logging.Logger,
    handlers: list[logging.Handler],
    propagate: bool = False,
) -> None:
    logger.handlers = []
    for handler in handlers:
        logger.addHandler(handler)
    logger.propagate = propagate


def configure_logging(level: str = "INFO", log_dir: str | None = None, prefix: str = "server") -> str | None:
    """
    Install console (and optionally rotating file) handlers on the
    ``attention`` logger hierarchy and the uvicorn loggers.

    Returns the log file path when file logging is enabled.
    """
    handlers: list[logging.Handler] = [_build_stream_handler(level.upper())]
    log_path: str | None = None

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
        log_path = os.path.join(log_dir, f"{prefix}_{timestamp}.log")
        handlers.append(_build_file_handler(log_path))

    app_logger = logging.getLogger("attention")
    app_logger.setLevel(logging.DEBUG)
    # Root carries no handlers of ours; propagation only feeds external collectors.
    _replace_handlers(app_logger, handlers, propagate=True)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uv_logger = logging.getLogger(name)
        uv_logger.setLevel(logging.INFO)
        _replace_handlers(uv_logger, handlers)

    app_logger.info("Logging initialized: %s", log_path or "console only")
    return log_path
