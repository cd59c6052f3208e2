import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = PROJECT_ROOT / ".logs"
LOG_FILE = LOG_DIR / "water_erp.log"

_FORMATTER = logging.Formatter(
    fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


def _file_handler(path: Path) -> RotatingFileHandler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        path,
        maxBytes=1_000_000,
        backupCount=5,
        encoding="utf-8",
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(_FORMATTER)
    return handler


def _configure_logging() -> logging.Logger:
    """Configure the package logger with a rotating file and stderr output."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)

    try:
        logger.addHandler(_file_handler(LOG_FILE))
    except (OSError, PermissionError) as exc:
        print(
            f"Warning: unable to open log file '{LOG_FILE}': {exc}",
            file=sys.stderr,
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(_FORMATTER)
    logger.addHandler(console_handler)

    return logger


def use_log_file(path: Path) -> Optional[Path]:
    """Redirect the package's rotating log file to ``path``.

    The stderr handler is untouched. When ``path`` cannot be opened the
    current file handler stays in place and ``None`` is returned.
    """

    path = Path(path).expanduser().resolve()
    for existing in log.handlers:
        if isinstance(existing, RotatingFileHandler) and existing.baseFilename == str(path):
            return path

    try:
        handler = _file_handler(path)
    except OSError as exc:
        log.warning("Unable to open log file '%s': %s", path, exc)
        return None

    for existing in list(log.handlers):
        if isinstance(existing, RotatingFileHandler):
            log.removeHandler(existing)
            existing.close()
    log.addHandler(handler)
    log.info("Logging to '%s'", path)
    return path


log = _configure_logging()
log.info("Logger initialized for the 'water_erp' package.")
