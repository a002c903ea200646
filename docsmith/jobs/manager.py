"""In-process job collection with durable write-through persistence."""

from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Callable
from datetime import datetime

from docsmith.jobs.models import GenerationJob, JobFile, JobSpec, JobStep
from docsmith.storage.jobs_repo import JobsRepository
from docsmith.utils.clock import iso_timestamp, parse_iso_timestamp, utc_now
from docsmith.utils.ids import generate_job_id

logger = logging.getLogger(__name__)

DEFAULT_MAX_JOBS = 200
# Cancellations for ids the server has not seen yet; bounded so stray ids cannot grow it forever.
MAX_PENDING_CANCELS = 1000


class JobManager:
  """Owns every GenerationJob; all mutations are serialized and flushed before returning."""

  def __init__(self, repo: JobsRepository, *, max_jobs: int = DEFAULT_MAX_JOBS, clock: Callable[[], datetime] = utc_now, on_evict: Callable[[list[str]], None] | None = None) -> None:
    """Load the persisted collection; `on_evict` receives the ids of jobs dropped by the cap."""

    self._repo = repo
    self._on_evict = on_evict
    self._max_jobs = max(max_jobs, 1)
    self._clock = clock
    self._lock = threading.RLock()
    self._pending_cancels: dict[str, str] = {}
    self._jobs: list[GenerationJob] = repo.load_all()[: self._max_jobs]
    logger.info("Loaded %d persisted jobs", len(self._jobs))

  def _now(self) -> str:
    return iso_timestamp(self._clock())

  def _find(self, job_id: str) -> GenerationJob | None:
    for job in self._jobs:
      if job.job_id == job_id:
        return job
    return None

  def _flush(self) -> None:
    """Persist the whole collection; callers hold the lock."""

    self._repo.save_all(self._jobs)

  def _insert(self, job: GenerationJob) -> None:
    self._jobs.insert(0, job)
    if len(self._jobs) > self._max_jobs:
      evicted = self._jobs[self._max_jobs :]
      del self._jobs[self._max_jobs :]
      logger.debug("Evicted %d oldest jobs", len(evicted))
      if self._on_evict is not None:
        self._on_evict([job.job_id for job in evicted])

  def create(self, spec: JobSpec) -> GenerationJob:
    """Create a running job under a generated identifier."""

    return self.create_with_id(generate_job_id(), spec)

  def create_with_id(self, job_id: str, spec: JobSpec) -> GenerationJob:
    """Create a job under a caller-chosen id; an existing id is returned unchanged."""

    with self._lock:
      # Repeated creates with one id return the first job.
      existing = self._find(job_id)
      if existing is not None:
        return copy.deepcopy(existing)

      now = self._now()
      job = GenerationJob(job_id=job_id, customer_id=spec.customer_id, customer_name=spec.customer_name, template=spec.template, workspace=spec.workspace, filename=spec.filename, status="running", started_at=now, updated_at=now)
      # A cancel that arrived before the job existed applies now.
      pending_since = self._pending_cancels.pop(job_id, None)
      if pending_since is not None:
        job.cancelled = True
        job.status = "cancelled"
        job.completed_at = now
        job.logs.append(f"cancelled before start (requested {pending_since})")
      self._insert(job)
      self._flush()
      return copy.deepcopy(job)

  def append_log(self, job_id: str, line: str) -> None:
    """Append a log line; terminal jobs still accept lines so late cancellation notes are kept."""

    with self._lock:
      job = self._find(job_id)
      if job is None:
        return
      job.logs.append(line)
      job.updated_at = self._now()
      self._flush()

  def step_start(self, job_id: str, name: str) -> None:
    """Open a step, or reopen it with its end time and duration reset."""

    with self._lock:
      job = self._find(job_id)
      if job is None or job.is_terminal:
        return
      now = self._now()
      step = next((item for item in job.steps if item.name == name), None)
      if step is None:
        job.steps.append(JobStep(name=name, status="start", started_at=now))
      else:
        step.status = "start"
        step.started_at = now
        step.ended_at = None
        step.duration_ms = None
      job.updated_at = now
      self._flush()

  def step_ok(self, job_id: str, name: str) -> None:
    """Close a step and record its duration; a step never started is opened and closed at once."""

    with self._lock:
      job = self._find(job_id)
      if job is None or job.is_terminal:
        return
      now = self._now()
      step = next((item for item in job.steps if item.name == name), None)
      if step is None:
        step = JobStep(name=name, status="start", started_at=now)
        job.steps.append(step)
      step.status = "ok"
      step.ended_at = now
      elapsed = parse_iso_timestamp(now) - parse_iso_timestamp(step.started_at)
      step.duration_ms = max(int(elapsed.total_seconds() * 1000), 0)
      job.updated_at = now
      self._flush()

  def set_meta(self, job_id: str, *, used_workspace: str | None = None, filename: str | None = None) -> None:
    """Update descriptive fields of a running job."""

    with self._lock:
      job = self._find(job_id)
      if job is None or job.is_terminal:
        return
      if used_workspace is not None:
        job.used_workspace = used_workspace
      if filename is not None:
        job.filename = filename
      job.updated_at = self._now()
      self._flush()

  def mark_done(self, job_id: str, file: JobFile, *, used_workspace: str | None = None) -> bool:
    """Record the output file; returns False when the job already reached a terminal state."""

    with self._lock:
      job = self._find(job_id)
      if job is None or job.is_terminal:
        return False
      now = self._now()
      job.status = "done"
      job.file = file
      if used_workspace is not None:
        job.used_workspace = used_workspace
      job.updated_at = now
      job.completed_at = now
      self._flush()
      return True

  def mark_error(self, job_id: str, message: str) -> None:
    """Fail a running job; terminal jobs keep their outcome."""

    with self._lock:
      job = self._find(job_id)
      if job is None or job.is_terminal:
        return
      now = self._now()
      job.status = "error"
      job.error = message
      job.updated_at = now
      job.completed_at = now
      self._flush()

  def mark_cancelled(self, job_id: str, checkpoint: str) -> None:
    """Record that the pipeline stopped at a checkpoint after observing the cancel flag."""

    with self._lock:
      job = self._find(job_id)
      if job is None:
        return
      now = self._now()
      job.logs.append(f"cancelled at {checkpoint}")
      if not job.is_terminal:
        job.status = "cancelled"
        job.cancelled = True
        job.completed_at = now
      job.updated_at = now
      self._flush()

  def cancel(self, job_id: str) -> GenerationJob | None:
    """Flag a job as cancelled; in-flight work notices at its next checkpoint."""

    with self._lock:
      job = self._find(job_id)
      if job is None:
        if len(self._pending_cancels) >= MAX_PENDING_CANCELS:
          self._pending_cancels.pop(next(iter(self._pending_cancels)))
        self._pending_cancels[job_id] = self._now()
        logger.info("Recorded cancellation for unknown job %s", job_id)
        return None
      if job.is_terminal:
        return copy.deepcopy(job)
      now = self._now()
      job.cancelled = True
      job.status = "cancelled"
      job.completed_at = now
      job.updated_at = now
      job.logs.append("cancel requested")
      self._flush()
      return copy.deepcopy(job)

  def is_cancelled(self, job_id: str) -> bool:
    """True once cancellation was requested, including for ids not created yet."""

    with self._lock:
      job = self._find(job_id)
      if job is None:
        return job_id in self._pending_cancels
      return job.cancelled

  def get(self, job_id: str) -> GenerationJob | None:
    """Copy of one job, or None for unknown ids."""

    with self._lock:
      job = self._find(job_id)
      return copy.deepcopy(job) if job is not None else None

  def list(self, limit: int = 50) -> list[GenerationJob]:
    """Copies of the newest `limit` jobs, most recent first."""

    with self._lock:
      return copy.deepcopy(self._jobs[: max(limit, 0)])

  def delete(self, job_id: str) -> bool:
    """Remove one job record; returns False for unknown ids."""

    with self._lock:
      job = self._find(job_id)
      if job is None:
        return False
      self._jobs.remove(job)
      self._flush()
      return True

  def clear(self) -> int:
    """Drop every job and pending cancellation; returns how many jobs were removed."""

    with self._lock:
      removed = len(self._jobs)
      self._jobs.clear()
      self._pending_cancels.clear()
      self._flush()
      return removed
