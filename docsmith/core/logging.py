"""Process-wide logging: stdout plus a rotating file under the library's log directory."""

import logging
import logging.handlers
import sys
import time
import traceback
from pathlib import Path
from types import TracebackType

from docsmith.config import Settings
from docsmith.sandbox.compiler import ARTIFACT_FILENAME

# Job stages run on worker threads, so the thread name tells concurrent jobs apart.
LOG_LINE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(threadName)s] %(message)s"
LOG_DATE_FORMAT = "%H:%M:%S"
LOG_FORMATTER = logging.Formatter(LOG_LINE_FORMAT, datefmt=LOG_DATE_FORMAT)

TAIL_FRAMES = 5
QUIET_LOGGERS = ("httpx", "httpcore", "multipart", "python_multipart")

# Track logging state
_LOG_FILE_PATH: Path | None = None
_LOGGING_INITIALIZED = False

ExcInfo = tuple[type[BaseException] | None, BaseException | None, TracebackType | None]


class TruncatedFormatter(logging.Formatter):
  """Console formatter that shortens tracebacks but keeps frames from generated code."""

  # ruff: noqa: N802
  def formatException(self, ei: ExcInfo) -> str:
    lines = traceback.format_exception(*ei)
    if len(lines) <= TAIL_FRAMES + 1:
      return "".join(lines)

    # Header, any generator frames, then the tail that names the error.
    middle = lines[1:-TAIL_FRAMES]
    generator_frames = [line for line in middle if f'File "{ARTIFACT_FILENAME}"' in line]
    return "".join(lines[:1] + generator_frames + ["    ...\n"] + lines[-TAIL_FRAMES:])


def _rotated_name(default_name: str) -> str:
  """Name backups `docsmith_x.log-1` instead of `docsmith_x.log.1`."""
  base_filename, _, num = default_name.rpartition(".")
  if num.isdigit() and base_filename.endswith(".log"):
    return f"{base_filename}-{num}"
  return default_name


def _build_handlers(settings: Settings) -> tuple[logging.Handler, logging.Handler, Path]:
  """Create a stdout handler and a rotating file handler under the configured log directory."""
  log_dir = settings.log_dir
  try:
    log_dir.mkdir(parents=True, exist_ok=True)
  except OSError as exc:
    raise RuntimeError(f"Failed to create log directory at {log_dir}: {exc}") from exc

  log_path = log_dir / f"docsmith_{time.strftime('%Y%m%d_%H%M%S')}.log"
  try:
    # Touch early so the file exists even if handlers have not flushed yet.
    log_path.touch(exist_ok=True)
  except OSError as exc:
    raise RuntimeError(f"Failed to create log file at {log_path}: {exc}") from exc

  stream = logging.StreamHandler(sys.stdout)
  stream.setFormatter(TruncatedFormatter(LOG_LINE_FORMAT, datefmt=LOG_DATE_FORMAT))

  # The file keeps full tracebacks.
  file_handler = logging.handlers.RotatingFileHandler(log_path, encoding="utf-8", maxBytes=settings.log_max_bytes, backupCount=settings.log_backup_count)
  file_handler.namer = _rotated_name
  file_handler.setFormatter(LOG_FORMATTER)
  return stream, file_handler, log_path


def setup_logging(settings: Settings) -> Path:
  """Route the root, uvicorn and fastapi loggers to our handlers and return the log file path."""
  stream_handler, file_handler, log_path = _build_handlers(settings)
  for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi"):
    log = logging.getLogger(logger_name)
    log.handlers = [stream_handler, file_handler]
    log.propagate = False

  level = logging.DEBUG if settings.debug else logging.INFO
  logging.basicConfig(level=level, handlers=[stream_handler, file_handler], force=True)
  logging.getLogger().setLevel(level)

  # Completion transport chatter stays out of job logs unless it is a problem.
  for logger_name in QUIET_LOGGERS:
    logging.getLogger(logger_name).setLevel(logging.WARNING)

  if not log_path.exists():
    raise RuntimeError(f"Logging initialization failed; log file missing at {log_path}")
  return log_path


def _log_template_library(logger: logging.Logger, settings: Settings) -> None:
  from docsmith.templates.store import FilesystemTemplateStore

  try:
    descriptors = FilesystemTemplateStore(settings.templates_root).list()
  except OSError as exc:
    logger.warning("Failed to scan template library at %s: %s", settings.templates_root, exc)
    return

  if not descriptors:
    logger.warning("No templates found under %s", settings.templates_root)
    return
  summary = ", ".join(f"{descriptor.slug} ({descriptor.kind})" for descriptor in descriptors)
  logger.info("Template library loaded from %s (%d templates): %s", settings.templates_root, len(descriptors), summary)


def _initialize_logging(settings: Settings) -> None:
  """Initialize logging once and report what the service will serve."""
  global _LOG_FILE_PATH, _LOGGING_INITIALIZED
  logger = logging.getLogger("docsmith.core.logging")
  if _LOGGING_INITIALIZED:
    return
  log_path = setup_logging(settings)
  _LOG_FILE_PATH = log_path
  _LOGGING_INITIALIZED = True
  logger.info("Logging initialized. Writing to %s", _LOG_FILE_PATH)
  _log_template_library(logger, settings)
