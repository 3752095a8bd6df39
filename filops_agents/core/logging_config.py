"""
Logging setup for the FilOps agents.

One console handler on the root logger, an optional file handler, and fixed
levels for the agent modules and noisy third-party libraries. Components get
their logger through ``get_logger(__name__)``.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional

from filops_agents.core.config import settings

SIMPLE_FORMAT = "%(levelname)s %(name)s: %(message)s"

DETAILED_FORMAT = "%(asctime)s %(levelname)-8s %(name)s [%(filename)s:%(lineno)d %(funcName)s] %(message)s"

JSON_FORMAT = (
    '{"ts": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", '
    '"where": "%(filename)s:%(lineno)d", "msg": "%(message)s"}'
)

LOG_FORMATS: Dict[str, str] = {
    "simple": SIMPLE_FORMAT,
    "detailed": DETAILED_FORMAT,
    "json": JSON_FORMAT,
}

LOG_FILE_NAME = "filops_agents.log"

MODULE_LOG_LEVELS = {
    "filops_agents.agent_core.runtime": "DEBUG",
    "filops_agents.agent_core.actions": "DEBUG",
    "filops_agents.agent_core.agent_registry": "INFO",
    "filops_agents.agent_core.policy": "INFO",
    "filops_agents.agent_core.repos": "INFO",
    "filops_agents.agent_core.integrations": "INFO",
    "sqlalchemy.engine": "WARNING",
    "sqlalchemy.pool": "WARNING",
    "aiosqlite": "WARNING",
    "httpx": "WARNING",
    "httpcore": "WARNING",
    "asyncio": "WARNING",
}


def _handlers(level: str, formatter: logging.Formatter, file_dir: Optional[Path]) -> List[logging.Handler]:
    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(formatter)
    handlers: List[logging.Handler] = [console]

    if file_dir is not None:
        file_dir.mkdir(parents=True, exist_ok=True)
        to_file = logging.FileHandler(file_dir / LOG_FILE_NAME)
        to_file.setLevel(logging.DEBUG)
        to_file.setFormatter(formatter)
        handlers.append(to_file)
    return handlers


def setup_logging(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    enable_file: Optional[bool] = None,
    log_file_dir: Optional[str] = None,
) -> None:
    """
    Configure the root logger.

    Arguments left as ``None`` fall back to ``settings``. Unknown format names
    use the detailed format. Calling this again replaces the handlers installed
    by the previous call.

    Args:
        log_level: Console level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: simple, detailed or json
        enable_file: Also write DEBUG and above to ``<log_file_dir>/filops_agents.log``
        log_file_dir: Directory for the log file
    """
    level = (log_level or settings.log_level).upper()
    fmt = log_format or settings.log_format
    file_logging = settings.enable_file_logging if enable_file is None else enable_file
    file_dir = Path(log_file_dir or settings.log_file_dir) if file_logging else None

    formatter = logging.Formatter(LOG_FORMATS.get(fmt, DETAILED_FORMAT), datefmt="%Y-%m-%d %H:%M:%S")

    root = logging.getLogger()
    # Handlers filter; the root itself lets everything through.
    root.setLevel(logging.DEBUG)
    for old in list(root.handlers):
        root.removeHandler(old)
    for handler in _handlers(level, formatter, file_dir):
        root.addHandler(handler)

    for module_name, module_level in MODULE_LOG_LEVELS.items():
        logging.getLogger(module_name).setLevel(module_level)

    root.info("Logging configured: level=%s format=%s file=%s", level, fmt, file_dir)


def get_logger(name: str) -> logging.Logger:
    """Return the logger for ``name`` (normally the caller's ``__name__``)."""
    return logging.getLogger(name)
