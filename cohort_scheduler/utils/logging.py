import json
import logging
import sys
from datetime import date
from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger

from cohort_scheduler.config.settings import settings
from cohort_scheduler.utils.context import get_request_id

LOGGING_CONFIG_PATH = Path(__file__).resolve().parent.parent / "logging_config.json"

# Third-party loggers routed through loguru
INTERCEPTED_LOGGERS = (
    "uvicorn",
    "uvicorn.error",
    "uvicorn.access",
    "fastapi",
    "celery",
    "celery.task",
    "httpx",
    "sqlalchemy.engine",
)


def _inject_request_id(record):
    request_id = get_request_id()
    if request_id:
        record["extra"]["request_id"] = request_id


class InterceptHandler(logging.Handler):
    """Forward stdlib log records to loguru, tagged with the current request id."""

    def emit(self, record: logging.LogRecord):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


class CustomizeLogger:
    """
    Configure loguru from one profile of logging_config.json.

    A profile without `log_dir` logs to the console only. The LOG_LEVEL setting,
    when given, overrides the profile's level.
    """

    @classmethod
    def make_logger(cls, config_path: Path, profile: str, level: Optional[str] = None):
        profiles = cls.load_logging_config(config_path)
        config = profiles.get(profile) or profiles["development"]

        logger.remove()
        logger.configure(extra={"request_id": "app"}, patcher=_inject_request_id)

        level = (level or config["level"]).upper()
        logger.add(
            sys.stdout,
            enqueue=config.get("enqueue", True),
            backtrace=True,
            level=level,
            format=config["console_format"],
            colorize=config.get("colorize", True),
        )

        if config.get("log_dir"):
            cls._add_file_sink(config, level)

        cls._setup_intercept_handlers()
        return logger

    @staticmethod
    def _add_file_sink(config: Dict[str, Any], level: str):
        path = Path(config["log_dir"]) / (
            f"{date.today().strftime('%Y-%m-%d')}-{config['filename']}"
        )
        options: Dict[str, Any] = {
            "rotation": config.get("rotation"),
            "retention": config.get("retention"),
            "enqueue": True,
            "backtrace": True,
            "level": level,
            "colorize": False,
        }
        if config.get("use_json_logs"):
            options["serialize"] = True
        else:
            options["format"] = config["file_format"]
        logger.add(str(path), **options)

    @staticmethod
    def _setup_intercept_handlers():
        logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
        for name in INTERCEPTED_LOGGERS:
            logging.getLogger(name).handlers = [InterceptHandler()]
        # Engine echo stays off unless explicitly enabled
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    @staticmethod
    def load_logging_config(config_path: Path) -> Dict[str, Any]:
        with open(config_path) as config_file:
            return json.load(config_file)


custom_logger = CustomizeLogger.make_logger(
    LOGGING_CONFIG_PATH, settings.ENVIRONMENT, settings.LOG_LEVEL or None
)


def get_logger():
    """Loguru logger whose records carry the request id active at emit time."""
    return custom_logger
