"""Logging configuration setup."""

import copy
import logging
import logging.config
import os
from datetime import datetime
from typing import Optional, Tuple

from mcp_switchboard.constants import DEFAULT_LOG_LEVEL, LOG_DIR

VALID_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

BASE_LOG_CFG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "simple_file": {
            "format": ("%(asctime)s - %(name)25s:%(lineno)-4d - " "%(levelname)-7s - %(message)s"),
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
    },
    "handlers": {
        "file_handler": {
            "class": "logging.FileHandler",
            "level": "DEBUG",
            "formatter": "simple_file",
            "filename": "temp_log_name.log",
            "encoding": "utf-8",
        },
    },
    "loggers": {
        "mcp_switchboard": {
            "handlers": ["file_handler"],
            "propagate": False,
            "level": "INFO",
        },
        "mcp_switchboard.bridge": {
            "handlers": ["file_handler"],
            "propagate": False,
            "level": "INFO",
        },
        "mcp_switchboard.config": {
            "handlers": ["file_handler"],
            "propagate": False,
            "level": "INFO",
        },
        "mcp": {
            "handlers": ["file_handler"],
            "propagate": False,
            "level": "INFO",
        },
    },
    "root": {
        "handlers": ["file_handler"],
        "level": "WARNING",
    },
}


def setup_logging(
    log_lvl_str: str = DEFAULT_LOG_LEVEL, *, log_dir: Optional[str] = None
) -> Tuple[str, str]:
    """
    Set up the logging system.

    Uses a timestamped log file under *log_dir* (default :data:`LOG_DIR`)
    and applies the requested level to the switchboard and SDK loggers.

    Args:
        log_lvl_str: The desired log level string (e.g., 'debug', 'info').
        log_dir: Directory for the log file.

    Returns:
        A tuple of (log_file_path, validated_log_level).
    """
    log_lvl_valid = log_lvl_str.upper()
    if log_lvl_valid not in VALID_LEVELS:
        logging.getLogger(__name__).warning(
            "Invalid log level '%s'. Using 'INFO'.", log_lvl_str
        )
        log_lvl_valid = "INFO"

    target_dir = log_dir or LOG_DIR
    ts = datetime.now().strftime("%Y%m%d_%H%M%S")
    os.makedirs(target_dir, exist_ok=True)
    log_fpath = os.path.join(target_dir, f"switchboard_{ts}_{log_lvl_valid}.log")

    log_cfg: dict = copy.deepcopy(BASE_LOG_CFG)
    log_cfg["handlers"]["file_handler"]["filename"] = log_fpath

    for name in log_cfg["loggers"]:
        log_cfg["loggers"][name]["level"] = log_lvl_valid
    log_cfg["root"]["level"] = log_lvl_valid if log_lvl_valid == "DEBUG" else "WARNING"

    logging.config.dictConfig(log_cfg)
    logging.getLogger(__name__).info(
        "Logging initialized. File log level: %s, log file: %s", log_lvl_valid, log_fpath
    )
    return log_fpath, log_lvl_valid
