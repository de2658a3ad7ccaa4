"""
Logging Configuration

VTID: VTID-01204

Centralized logging setup for the evidence engine.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

PACKAGE_LOGGER = "vitana_evidence"


class EvidenceFormatter(logging.Formatter):
    """Formatter with color support: [HH:MM:SS.mmm] LEVEL [logger] message"""

    COLORS = {
        "DEBUG": "\033[36m",      # Cyan
        "INFO": "\033[32m",       # Green
        "WARNING": "\033[33m",    # Yellow
        "ERROR": "\033[31m",      # Red
        "CRITICAL": "\033[35m",   # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True, stream=None):
        super().__init__()
        stream = stream or sys.stdout
        self.use_colors = use_colors and hasattr(stream, "isatty") and stream.isatty()

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]
        level = f"{record.levelname:8}"

        if self.use_colors:
            color = self.COLORS.get(record.levelname, "")
            level = f"{color}{level}{self.RESET}"

        parts = [
            f"[{timestamp}]",
            level,
            f"[{record.name}]",
            record.getMessage(),
        ]

        if record.exc_info:
            parts.append("\n" + self.formatException(record.exc_info))

        return " ".join(parts)


def setup_logging(
    level: str = "WARNING",
    log_file: Optional[str] = None,
    use_colors: bool = True,
) -> logging.Logger:
    """
    Configure logging for the engine.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional file path for log output (always DEBUG, no colors)
        use_colors: Enable colored console output

    Returns:
        The package root logger
    """
    root_logger = logging.getLogger(PACKAGE_LOGGER)
    console_level = getattr(logging, level.upper(), logging.WARNING)
    root_logger.setLevel(logging.DEBUG if log_file else console_level)
    root_logger.propagate = False

    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(EvidenceFormatter(use_colors=use_colors, stream=sys.stdout))
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(EvidenceFormatter(use_colors=False))
        root_logger.addHandler(file_handler)

    # third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    root_logger.debug("Logging configured")
    return root_logger
