import logging
import os
import sys
from typing import Tuple

from .config import Config


LOGGER_NAME = "mfoldbot.bot"
LOG_FORMAT = "%(asctime)sZ %(levelname)s %(message)s"
LOG_DATEFMT = "%Y-%m-%dT%H:%M:%S"

_RESET = "\033[0m"
_BOLD = "\033[1m"
_DIM = "\033[2m"
_RED = "\033[31m"
_GREEN = "\033[32m"
_YELLOW = "\033[33m"
_MAGENTA = "\033[35m"
_CYAN = "\033[36m"
_LEVEL_COLORS = {
    "DEBUG": _CYAN,
    "INFO": _GREEN,
    "WARNING": _YELLOW,
    "ERROR": _RED,
    "CRITICAL": _RED,
}

# (substring, tag, color); first match wins.
_STEP_TAGS: Tuple[Tuple[str, str, str], ...] = (
    ("LLM request", "LLM REQUEST", _CYAN),
    ("LLM response", "LLM RESPONSE", _MAGENTA),
    ("drafting market", "DRAFT", _CYAN),
    ("action=create_market", "CREATE", _MAGENTA),
    ("action=resolve_market", "RESOLVE", _MAGENTA),
    ("orphaned market", "ORPHAN", _YELLOW),
    ("ACTION SUCCESS", "SUCCESS", _GREEN),
)


def _stream_supports_color() -> bool:
    if os.getenv("NO_COLOR"):
        return False
    if os.getenv("FORCE_COLOR", "").strip().lower() in {"1", "true", "yes"}:
        return True
    return bool(sys.stderr.isatty())


class ColorFormatter(logging.Formatter):
    """Console formatter that tags market lifecycle steps and dims sleep lines."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        color = _LEVEL_COLORS.get(record.levelname.upper())
        if not color:
            return message
        for needle, tag, tag_color in _STEP_TAGS:
            if needle in message:
                return f"{_BOLD}{tag_color}[{tag}] {message}{_RESET}"
        if "Sleeping seconds=" in message:
            return f"{_DIM}{color}{message}{_RESET}"
        return f"{color}{message}{_RESET}"


def setup_logging(cfg: Config) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, cfg.log_level, logging.INFO))
    logger.handlers.clear()
    logger.propagate = False

    plain = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)
    console = logging.StreamHandler()
    if _stream_supports_color():
        console.setFormatter(ColorFormatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT))
    else:
        console.setFormatter(plain)
    logger.addHandler(console)

    if cfg.log_path:
        cfg.log_path.parent.mkdir(parents=True, exist_ok=True)
        log_file = logging.FileHandler(cfg.log_path, encoding="utf-8")
        log_file.setFormatter(plain)
        logger.addHandler(log_file)

    return logger
