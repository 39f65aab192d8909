"""
Logging setup for questforge.

Pipeline code passes its context through ``extra`` (``component``,
``session_id``, ``stage``, ``call_id``...). The formatters here append
those fields to the line so they survive into plain-text output:

    logger = get_logger(__name__)
    logger.info("World committed", extra={"component": "Pipeline", "session_id": sid})

    2026-01-01 12:00:00 INFO     questforge.engine.orchestrator  World committed  [component=Pipeline session_id=...]
"""

import logging
import sys
from pathlib import Path
from typing import Literal, Optional

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

# Record attributes shown after the message when a caller sets them
CONTEXT_FIELDS = ("component", "session_id", "stage", "attempt", "call_id", "request_id", "alarm")

QUIET_LOGGERS = ("httpx", "httpcore", "openai", "sqlalchemy.engine")

_LEVEL_COLORS = {
    logging.DEBUG: "\033[36m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[1;35m",
}
_DIM = "\033[2m"
_RESET = "\033[0m"


class ContextFormatter(logging.Formatter):
    """Formatter that appends pipeline context fields as key=value pairs"""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = self.context_of(record)
        return f"{line}  [{context}]" if context else line

    @staticmethod
    def context_of(record: logging.LogRecord) -> str:
        pairs = []
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                pairs.append(f"{field}={value}")
        return " ".join(pairs)


class ColoredFormatter(ContextFormatter):
    """Console formatter: colors the whole header by level, dims the context"""

    def format(self, record: logging.LogRecord) -> str:
        color = _LEVEL_COLORS.get(record.levelno, "")
        line = logging.Formatter.format(self, record)
        if color:
            line = f"{color}{line}{_RESET}"
        context = self.context_of(record)
        return f"{line}  {_DIM}[{context}]{_RESET}" if context else line


def _pattern(include_timestamp: bool) -> str:
    body = "%(levelname)-8s %(name)s  %(message)s"
    return f"%(asctime)s {body}" if include_timestamp else body


def setup_logging(
    level: LogLevel = "INFO",
    log_file: Optional[str] = None,
    enable_colors: bool = True,
    include_timestamp: bool = True,
) -> None:
    """
    Replace the root logger's handlers with a console handler and,
    when ``log_file`` is given, a plain-text file handler.

    Colors are only used when stdout is a terminal.
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO
    pattern = _pattern(include_timestamp)
    datefmt = "%Y-%m-%d %H:%M:%S"

    use_colors = enable_colors and sys.stdout.isatty()
    formatter_cls = ColoredFormatter if use_colors else ContextFormatter
    handlers: list = [logging.StreamHandler(sys.stdout)]
    handlers[0].setFormatter(formatter_cls(pattern, datefmt=datefmt))

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(ContextFormatter(pattern, datefmt=datefmt))
        handlers.append(file_handler)

    root = logging.getLogger()
    for old in root.handlers[:]:
        root.removeHandler(old)
    for handler in handlers:
        handler.setLevel(numeric_level)
        root.addHandler(handler)
    root.setLevel(numeric_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    root.debug(f"Logging configured: level={level} file={log_file or '-'}")


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_module_level(module_name: str, level: LogLevel) -> None:
    """Override the level of one logger subtree, e.g. 'questforge.providers'"""
    logging.getLogger(module_name).setLevel(level.upper())
