"""Storage interfaces for generation jobs."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

import msgspec

from docsmith.jobs.models import GenerationJob
from docsmith.utils.files import atomic_write_bytes

logger = logging.getLogger(__name__)


class JobsRepository(Protocol):
  """Repository contract for job persistence; every save rewrites the whole collection."""

  def load_all(self) -> list[GenerationJob]:
    """Return the persisted collection, most recent first."""

  def save_all(self, jobs: list[GenerationJob]) -> None:
    """Replace the persisted collection atomically."""


class JsonFileJobsRepository:
  """Persist the job collection as a single JSON document."""

  def __init__(self, path: Path) -> None:
    self._path = path
    self._encoder = msgspec.json.Encoder()
    self._decoder = msgspec.json.Decoder(list[GenerationJob])

  @property
  def path(self) -> Path:
    return self._path

  def load_all(self) -> list[GenerationJob]:
    try:
      payload = self._path.read_bytes()
    except FileNotFoundError:
      return []
    except OSError as exc:
      logger.warning("Jobs file unreadable at %s: %s; starting with an empty collection", self._path, exc)
      return []

    try:
      return self._decoder.decode(payload)
    except (msgspec.DecodeError, msgspec.ValidationError) as exc:
      logger.warning("Jobs file corrupt at %s: %s; starting with an empty collection", self._path, exc)
      return []

  def save_all(self, jobs: list[GenerationJob]) -> None:
    atomic_write_bytes(self._path, self._encoder.encode(jobs), prefix=".jobs-")


class InMemoryJobsRepository:
  """Non-durable repository used when persistence is not wanted."""

  def __init__(self) -> None:
    self._jobs: list[GenerationJob] = []

  def load_all(self) -> list[GenerationJob]:
    return list(self._jobs)

  def save_all(self, jobs: list[GenerationJob]) -> None:
    self._jobs = list(jobs)
