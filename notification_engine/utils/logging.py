import json
import logging
import os
import sys
from contextlib import contextmanager
from datetime import date
from pathlib import Path
from typing import Iterator

from loguru import logger
from pydantic import BaseModel

from notification_engine.utils.context import get_request_id

DEFAULT_REQUEST_ID = "engine"

# Loggers that Celery and SQLAlchemy configure on their own at worker start
WORKER_LOGGERS = ("celery", "celery.task", "celery.beat", "sqlalchemy.engine")


class LogProfile(BaseModel):
    """One named profile of config/logging_config.json"""

    log_dir: str = "logs"
    filename: str
    level: str = "info"
    rotation: str = "20 MB"
    retention: str = "14 days"
    console_format: str
    file_format: str
    use_json_logs: bool = False

    @property
    def log_file(self) -> str:
        return f"{self.log_dir}/{date.today().strftime('%Y-%m-%d')}-{self.filename}"


class InterceptHandler(logging.Handler):
    """Forwards stdlib log records (Celery, SQLAlchemy) into loguru"""

    def emit(self, record):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.bind(request_id=get_request_id() or DEFAULT_REQUEST_ID).opt(
            depth=depth, exception=record.exc_info
        ).log(level, record.getMessage())


def load_profile(config_path: Path, environment: str) -> LogProfile:
    with open(config_path) as config_file:
        config = json.load(config_file)
    return LogProfile(**config.get(environment, config["logger"]))


def intercept_worker_loggers() -> None:
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for log_name in WORKER_LOGGERS:
        worker_logger = logging.getLogger(log_name)
        worker_logger.handlers = [InterceptHandler()]
        worker_logger.propagate = False


def configure_logging(profile: LogProfile, level_override: str = ""):
    level = (level_override or profile.level).upper()

    logger.remove()
    logger.configure(extra={"request_id": DEFAULT_REQUEST_ID})

    logger.add(
        sys.stdout,
        enqueue=True,
        backtrace=True,
        level=level,
        format=profile.console_format,
        colorize=True,
    )

    if profile.use_json_logs:
        logger.add(
            profile.log_file,
            rotation=profile.rotation,
            retention=profile.retention,
            enqueue=True,
            backtrace=True,
            level=level,
            serialize=True,
        )
    else:
        logger.add(
            profile.log_file,
            rotation=profile.rotation,
            retention=profile.retention,
            enqueue=True,
            backtrace=True,
            level=level,
            format=profile.file_format,
            colorize=False,
        )

    intercept_worker_loggers()
    return logger


@contextmanager
def task_context(task_name: str) -> Iterator[None]:
    """Tag every record logged inside the block with ``task``"""
    with logger.contextualize(task=task_name):
        yield


config_path = Path(
    os.getenv(
        "LOGGING_CONFIG_PATH",
        Path(__file__).resolve().parent.parent / "config" / "logging_config.json",
    )
)
environment = (
    "production"
    if os.getenv("ENVIRONMENT", "development") == "production"
    else "logger"
)
custom_logger = configure_logging(
    load_profile(config_path, environment), os.getenv("LOG_LEVEL", "")
)


def get_logger():
    """Get the custom logger instance with request ID binding."""
    return custom_logger.bind(request_id=get_request_id() or DEFAULT_REQUEST_ID)
