"""Job progress tracking: job log, steps, events, and cancellation checkpoints."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from docsmith.core.errors import JobCancelledError
from docsmith.jobs.events import DoneEvent, ErrorEvent, InfoEvent, LogEvent, ProgressBroker, StepEvent
from docsmith.jobs.manager import JobManager

logger = logging.getLogger(__name__)

PIPELINE_STEPS: tuple[str, ...] = ("resolve", "enhance", "compile", "execute", "merge", "write")


class JobProgressTracker:
  """Track one job's steps and log lines, mirroring each update onto the event broker."""

  def __init__(self, *, job_id: str, manager: JobManager, broker: ProgressBroker | None = None, planned_steps: Sequence[str] = PIPELINE_STEPS) -> None:
    self._job_id = job_id
    self._manager = manager
    self._broker = broker
    self._planned_steps = tuple(planned_steps)
    self._completed: set[str] = set()

  @property
  def job_id(self) -> str:
    return self._job_id

  @property
  def progress(self) -> int:
    if not self._planned_steps:
      return 100
    return int(len(self._completed) * 100 / len(self._planned_steps))

  def _publish(self, event) -> None:
    if self._broker is not None:
      self._broker.publish(self._job_id, event)

  def info(self, *, template: str, workspace: str | None) -> None:
    """Announce the job and its template to event subscribers."""

    self._publish(InfoEvent(job_id=self._job_id, template=template, workspace=workspace))

  def log(self, message: str) -> None:
    """Append a line to the job log; safe to call from sandbox worker threads."""

    logger.info("job=%s %s", self._job_id, message)
    self._manager.append_log(self._job_id, message)
    self._publish(LogEvent(message=message))

  def step_start(self, name: str) -> None:
    """Open a step on the job record and publish it at the current progress."""

    self._manager.step_start(self._job_id, name)
    self._publish(StepEvent(name=name, status="start", progress=self.progress))

  def step_ok(self, name: str) -> None:
    """Close a step; planned steps advance the progress percentage."""

    self._manager.step_ok(self._job_id, name)
    if name in self._planned_steps:
      self._completed.add(name)
    self._publish(StepEvent(name=name, status="ok", progress=self.progress))

  def is_cancelled(self) -> bool:
    return self._manager.is_cancelled(self._job_id)

  def checkpoint(self, name: str) -> None:
    """Raise JobCancelledError when the job was cancelled since the last checkpoint."""

    if self._manager.is_cancelled(self._job_id):
      raise JobCancelledError(f"Job {self._job_id} cancelled at {name}", checkpoint=name)

  def cancelled(self, checkpoint: str) -> None:
    """Finish the job as cancelled at `checkpoint` and end its event streams."""

    logger.info("job=%s cancelled at %s", self._job_id, checkpoint)
    self._manager.mark_cancelled(self._job_id, checkpoint)
    self._publish(LogEvent(message=f"cancelled at {checkpoint}"))
    self.close()

  def done(self, *, path: str) -> None:
    """Publish the output path; the job record was already marked done."""

    self._publish(DoneEvent(file=path, job_id=self._job_id))
    self.close()

  def error(self, message: str) -> None:
    """Fail the job with `message` and end its event streams."""

    self._manager.mark_error(self._job_id, message)
    self._publish(ErrorEvent(message=message, job_id=self._job_id))
    self.close()

  def close(self) -> None:
    """End live event streams for the job."""

    if self._broker is not None:
      self._broker.close(self._job_id)
