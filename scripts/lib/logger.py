"""
Centralized logging for Funnel Hub.

Every module logger writes through one shared set of handlers: stdout, plus
logs/YYYYMMDD_funnel_hub.log when LOG_TO_FILE=true. LOG_LEVEL sets the level.

Usage:
    from scripts.lib.logger import setup_logger
    logger = setup_logger(__name__)
    logger.info("Fetching funnel for pipeline %d", pipeline_id)
"""
import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
LOG_DIR = PROJECT_ROOT / "logs"

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_handlers: Optional[List[logging.Handler]] = None


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


def log_file_path(log_dir: Path = None, day: datetime = None) -> Path:
    stamp = (day or datetime.now()).strftime("%Y%m%d")
    return Path(log_dir or LOG_DIR) / f"{stamp}_funnel_hub.log"


def build_handlers(log_to_file: bool = None, log_dir: Path = None) -> List[logging.Handler]:
    """Stdout handler, plus the daily file handler when file logging is on."""
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_to_file is None:
        log_to_file = _env_flag("LOG_TO_FILE")
    if log_to_file:
        path = log_file_path(log_dir)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def _shared_handlers() -> List[logging.Handler]:
    global _handlers
    if _handlers is None:
        _handlers = build_handlers()
    return _handlers


def setup_logger(name: str, level: str = None) -> logging.Logger:
    """
    Return the logger for ``name`` wired to the shared handlers.

    Args:
        name: Logger name (module name or component label).
        level: Level name; defaults to LOG_LEVEL or INFO.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logger.setLevel(getattr(logging, level_name, logging.INFO))
    for handler in _shared_handlers():
        logger.addHandler(handler)
    logger.propagate = False
    return logger
