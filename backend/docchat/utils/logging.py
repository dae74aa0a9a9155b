# docchat/utils/logging.py
import logging
import os
from logging.handlers import RotatingFileHandler
from pythonjsonlogger import jsonlogger
from docchat.config import settings

SERVICE_NAME = os.getenv("SERVICE_NAME", "chat-worker")  # override in docker env if desired


class ContextFilter(logging.Filter):
    def filter(self, record):
        # Pipeline code passes these through `extra`; default to None if absent
        if not hasattr(record, "message_id"):
            record.message_id = None
        if not hasattr(record, "session_id"):
            record.session_id = None
        record.worker_id = settings.worker_id
        record.service = SERVICE_NAME
        return True


base_format = (
    "%(asctime)s %(levelname)s %(service)s %(worker_id)s %(name)s %(message)s "
    "%(message_id)s %(session_id)s"
)

json_formatter = jsonlogger.JsonFormatter(base_format)

logger = logging.getLogger()
logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

_context_filter = ContextFilter()

# Console / stdout handler (always on for containers)
stream_handler = logging.StreamHandler()
stream_handler.setFormatter(json_formatter)
stream_handler.addFilter(_context_filter)
logger.addHandler(stream_handler)

# Optional file handler
if settings.log_to_file:
    settings.log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        settings.log_dir / "worker.log",
        maxBytes=10_000_000,
        backupCount=5,
        encoding="utf-8"
    )
    file_handler.setFormatter(json_formatter)
    file_handler.addFilter(_context_filter)
    logger.addHandler(file_handler)

# Keep sqlalchemy and the S3 client quiet
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
logging.getLogger("botocore").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)
