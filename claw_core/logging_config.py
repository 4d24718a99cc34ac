"""
Centralized logging configuration for claw_core.

Configures the ``claw_core`` parent logger so every child logger
(claw_core.queue, claw_core.backends.container, …) inherits handlers and
level automatically.
"""

import logging
import logging.handlers
from pathlib import Path
from typing import Optional

_logging_configured = False


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    data_dir: Optional[str] = None,
) -> None:
    """Configure claw_core logging with console and optional file output.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Path to log file.
            - ``None``  → ``{data_dir}/logs/claw_core.log``
            - ``"none"`` → disable file logging
            - any other string → use as explicit file path
        data_dir: Data directory used to build the default log path.
            Falls back to ``<project_root>/data`` when omitted.
    """
    global _logging_configured
    if _logging_configured:
        return
    _logging_configured = True

    numeric_level = getattr(logging, level.upper(), logging.INFO)

    parent_logger = logging.getLogger("claw_core")
    parent_logger.setLevel(numeric_level)
    parent_logger.propagate = False

    fmt = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # -- Console handler (always on) --
    console = logging.StreamHandler()
    console.setLevel(numeric_level)
    console.setFormatter(fmt)
    parent_logger.addHandler(console)

    # -- File handler --
    if isinstance(log_file, str) and log_file.lower() == "none":
        return

    if log_file is None:
        if data_dir is None:
            from claw_core.config.loader import _find_project_root

            data_dir = str(_find_project_root() / "data")
        log_dir = Path(data_dir) / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        resolved_path = str(log_dir / "claw_core.log")
    else:
        resolved_path = log_file
        Path(resolved_path).parent.mkdir(parents=True, exist_ok=True)

    file_handler = logging.handlers.RotatingFileHandler(
        resolved_path,
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(fmt)
    parent_logger.addHandler(file_handler)
