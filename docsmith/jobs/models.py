"""Domain models for document generation jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

JobStatus = Literal["running", "done", "error", "cancelled"]
StepStatus = Literal["start", "ok"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"done", "error", "cancelled"})


@dataclass
class JobStep:
  """One named pipeline phase; restarting a step clears its end and duration."""

  name: str
  status: StepStatus
  started_at: str
  ended_at: str | None = None
  duration_ms: int | None = None


@dataclass
class JobFile:
  path: str
  name: str


@dataclass(frozen=True)
class JobSpec:
  """Caller-supplied description of what a job generates."""

  customer_id: str
  template: str
  customer_name: str | None = None
  workspace: str | None = None
  filename: str | None = None


@dataclass
class GenerationJob:
  """Represents a document generation job."""

  job_id: str
  customer_id: str
  template: str
  status: JobStatus
  started_at: str
  updated_at: str
  customer_name: str | None = None
  workspace: str | None = None
  used_workspace: str | None = None
  filename: str | None = None
  logs: list[str] = field(default_factory=list)
  steps: list[JobStep] = field(default_factory=list)
  file: JobFile | None = None
  error: str | None = None
  cancelled: bool = False
  completed_at: str | None = None

  @property
  def is_terminal(self) -> bool:
    return self.status in TERMINAL_STATUSES
