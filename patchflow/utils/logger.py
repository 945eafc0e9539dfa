import datetime
import logging
import os
import sys
from pathlib import Path

import termcolor

__appname__ = "patchflow"

if os.name == "nt":  # Windows
    import colorama
    colorama.init()

LEVEL_COLORS = {
    "DEBUG": "blue",
    "INFO": "white",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red",
}

STREAM_FORMAT = "%(when)s [%(tag)s] %(where)s - %(text)s"
FILE_FORMAT = (
    "%(asctime)s [%(levelname)s] %(module)s:%(funcName)s:%(lineno)d - %(message)s"
)


def log_dir() -> Path:
    """Directory of the daily log files; PATCHFLOW_LOG_DIR overrides it."""
    default = Path.home() / f"{__appname__}_logs"
    return Path(os.environ.get("PATCHFLOW_LOG_DIR", default)).expanduser().resolve()


def log_file_path() -> Path:
    today = datetime.date.today().isoformat()
    return log_dir() / f"{__appname__}_{today}.log"


class ColoredFormatter(logging.Formatter):
    """Stream formatter that colours the level tag and message by severity."""

    def __init__(self, fmt=STREAM_FORMAT, use_color=True):
        super().__init__(fmt)
        self.use_color = use_color

    def _paint(self, text, color, bold=False):
        if not self.use_color:
            return str(text)
        return termcolor.colored(str(text), color=color,
                                 attrs=["bold"] if bold else None)

    def format(self, record):
        color = LEVEL_COLORS.get(record.levelname)
        painted = self.use_color and color is not None
        record.when = self._paint(
            datetime.datetime.fromtimestamp(record.created), "green")
        record.where = self._paint(
            f"{record.module}:{record.funcName}:{record.lineno}", "cyan")
        tag = "{:<7}".format(record.levelname)
        text = record.getMessage()
        record.tag = self._paint(tag, color, bold=True) if painted else tag
        record.text = self._paint(text, color, bold=True) if painted else text
        return super().format(record)


def configure_logger(name: str = __appname__,
                     level=logging.INFO,
                     log_file: Path | None = None) -> logging.Logger:
    """Attach a coloured stderr handler and a plain daily file handler."""
    log = logging.getLogger(name)
    log.setLevel(level)
    if log.handlers:
        return log

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(
        ColoredFormatter(use_color=sys.stderr.isatty() or os.name == "nt"))
    log.addHandler(stream_handler)

    log_file = Path(log_file) if log_file is not None else log_file_path()
    log_file.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_file)
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
    log.addHandler(file_handler)
    return log


def set_level(level) -> None:
    """Apply a level name (``"DEBUG"``) or number to the package logger."""
    if isinstance(level, str):
        level = level.upper()
    logger.setLevel(level)


logger = configure_logger()
