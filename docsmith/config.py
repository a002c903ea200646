"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(override=False)


@dataclass(frozen=True)
class Settings:
  """Typed settings for the Docsmith service."""

  environment: str
  debug: bool
  library_root: Path
  templates_root: Path
  allowed_origins: tuple[str, ...]
  max_jobs: int
  ai_cache_ttl_seconds: int
  sandbox_timeout_seconds: float
  sandbox_max_workers: int
  completion_base_url: str
  completion_api_key: str | None
  completion_timeout_seconds: float
  log_dir: Path
  log_max_bytes: int
  log_backup_count: int

  @property
  def jobs_file(self) -> Path:
    """Location of the persisted job collection."""
    return self.library_root / ".jobs" / "jobs.json"

  @property
  def documents_root(self) -> Path:
    """Root directory for generated customer documents."""
    return self.library_root / "documents"


def _parse_bool(raw: str | None) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return False

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value


def _positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _positive_float(name: str, default: str) -> float:
  value = float(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive number.")
  return value


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  # Local desktop use is the default deployment, so an unset value means the bundled UI only.
  if not raw:
    return ("http://localhost:5173",)

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if "*" in origins:
    raise ValueError("DOCSMITH_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("DOCSMITH_ENV", "development").lower()
  debug = _parse_bool(os.getenv("DOCSMITH_DEBUG"))

  library_root = Path(os.getenv("DOCSMITH_LIBRARY_ROOT", "./library")).expanduser()
  templates_root = Path(os.getenv("DOCSMITH_TEMPLATES_ROOT") or library_root / "templates").expanduser()
  log_dir = Path(os.getenv("DOCSMITH_LOG_DIR") or library_root / "logs").expanduser()

  log_backup_count = int(os.getenv("DOCSMITH_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("DOCSMITH_LOG_BACKUP_COUNT must be zero or a positive integer.")

  completion_base_url = (os.getenv("DOCSMITH_COMPLETION_BASE_URL") or "http://localhost:3001").strip().rstrip("/")

  return Settings(
    environment=environment,
    debug=debug,
    library_root=library_root,
    templates_root=templates_root,
    allowed_origins=_parse_origins(os.getenv("DOCSMITH_ALLOWED_ORIGINS")),
    max_jobs=_positive_int("DOCSMITH_MAX_JOBS", "200"),
    ai_cache_ttl_seconds=_positive_int("DOCSMITH_AI_CACHE_TTL_SECONDS", "900"),
    sandbox_timeout_seconds=_positive_float("DOCSMITH_SANDBOX_TIMEOUT_SECONDS", "600"),
    sandbox_max_workers=_positive_int("DOCSMITH_SANDBOX_MAX_WORKERS", "8"),
    completion_base_url=completion_base_url,
    completion_api_key=_optional_str(os.getenv("DOCSMITH_COMPLETION_API_KEY")),
    completion_timeout_seconds=_positive_float("DOCSMITH_COMPLETION_TIMEOUT_SECONDS", "300"),
    log_dir=log_dir,
    log_max_bytes=_positive_int("DOCSMITH_LOG_MAX_BYTES", "5242880"),
    log_backup_count=log_backup_count,
  )
