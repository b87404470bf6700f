# src/core/log.py
from __future__ import annotations
import logging
import sys
from typing import Optional, TextIO


FORMAT = "[%(levelname)s] %(message)s"

COLORS = {
    "DEBUG": "\033[0;34m",
    "INFO": "\033[0;32m",
    "WARNING": "\033[1;33m",
    "ERROR": "\033[0;31m",
    "CRITICAL": "\033[0;31m",
}
RESET = "\033[0m"


class ColorFormatter(logging.Formatter):
    """Colore le préfixe ``[LEVEL]`` comme les scripts shell d'origine."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        color = COLORS.get(record.levelname)
        prefix = f"[{record.levelname}]"
        if color and message.startswith(prefix):
            message = f"{color}{prefix}{RESET}{message[len(prefix):]}"
        return message


def setup_logging(level: str = "INFO", stream: Optional[TextIO] = None) -> logging.Logger:
    """
    Configure le logging de l'outil (stderr par défaut).

    Args:
        level: DEBUG, INFO, WARNING ou ERROR

    Returns:
        logging.Logger: logger racine configuré
    """
    numeric_level = getattr(logging, level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {level}")

    stream = stream or sys.stderr
    handler = logging.StreamHandler(stream)
    if hasattr(stream, "isatty") and stream.isatty():
        handler.setFormatter(ColorFormatter(FORMAT))
    else:
        handler.setFormatter(logging.Formatter(FORMAT))

    logging.basicConfig(level=numeric_level, handlers=[handler], force=True)
    return logging.getLogger()
