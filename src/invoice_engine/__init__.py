import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Mapping, Optional


LOG_DIR_ENV = "INVOICE_ENGINE_LOG_DIR"
LOG_FILE_NAME = "invoice_engine.log"


def resolve_log_dir(environ: Optional[Mapping[str, str]] = None, cwd: Optional[Path] = None) -> Path:
    """Return the log directory: ``$INVOICE_ENGINE_LOG_DIR`` or ``./.logs``.

    The default is relative to the working directory, never to the installed
    package.
    """

    environ = os.environ if environ is None else environ
    override = environ.get(LOG_DIR_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return (cwd if cwd is not None else Path.cwd()) / ".logs"


def _configure_logging() -> logging.Logger:
    """Attach a rotating file handler and a console handler to the package logger."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    log_file = resolve_log_dir() / LOG_FILE_NAME
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(log_file, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    except OSError as exc:
        print(f"Warning: invoice engine logs will not be written to '{log_file}': {exc}", file=sys.stderr)
    else:
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.debug("Logger initialized for the 'invoice_engine' package.")
