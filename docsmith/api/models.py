from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictStr

from docsmith.jobs.models import GenerationJob

IDENTIFIER_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$"


class GenerateRequest(BaseModel):
  """Request payload for document generation."""

  customer_id: StrictStr = Field(min_length=1, max_length=128, pattern=IDENTIFIER_PATTERN, description="Customer identifier; names the output directory.")
  customer_name: StrictStr | None = Field(default=None, min_length=1, max_length=200, description="Display name used in the output directory and generator context.")
  template: StrictStr = Field(min_length=1, max_length=128, pattern=IDENTIFIER_PATTERN, description="Template slug in the template library.", examples=["quarterly-report"])
  workspace: StrictStr | None = Field(default=None, min_length=1, max_length=128, pattern=IDENTIFIER_PATTERN, description="Completion workspace; defaults to the template's workspace.")
  filename: StrictStr | None = Field(default=None, min_length=1, max_length=200, description="Output filename override; `{{ts}}` expands to epoch milliseconds.")
  job_id: StrictStr | None = Field(default=None, min_length=1, max_length=128, pattern=IDENTIFIER_PATTERN, description="Client-chosen job id so the client can cancel before this call returns.")
  instructions: StrictStr | None = Field(default=None, max_length=4000, description="Free-text instructions passed to enhancement and the generator.")
  refresh_ai: StrictBool = Field(default=False, description="Ignore a fresh cached generator and enhance again.")
  model_config = ConfigDict(extra="forbid")


class GenerateResponse(BaseModel):
  job_id: str


class JobStepResponse(BaseModel):
  name: str
  status: Literal["start", "ok"]
  started_at: str
  ended_at: str | None = None
  duration_ms: int | None = None


class JobFileResponse(BaseModel):
  path: str
  name: str


class JobResponse(BaseModel):
  """Public view of a generation job."""

  job_id: str
  customer_id: str
  customer_name: str | None = None
  template: str
  workspace: str | None = None
  used_workspace: str | None = None
  filename: str | None = None
  status: Literal["running", "done", "error", "cancelled"]
  logs: list[str]
  steps: list[JobStepResponse]
  file: JobFileResponse | None = None
  error: str | None = None
  cancelled: bool
  started_at: str
  updated_at: str
  completed_at: str | None = None

  @classmethod
  def from_job(cls, job: GenerationJob) -> JobResponse:
    return cls(
      job_id=job.job_id,
      customer_id=job.customer_id,
      customer_name=job.customer_name,
      template=job.template,
      workspace=job.workspace,
      used_workspace=job.used_workspace,
      filename=job.filename,
      status=job.status,
      logs=list(job.logs),
      steps=[JobStepResponse(name=step.name, status=step.status, started_at=step.started_at, ended_at=step.ended_at, duration_ms=step.duration_ms) for step in job.steps],
      file=JobFileResponse(path=job.file.path, name=job.file.name) if job.file is not None else None,
      error=job.error,
      cancelled=job.cancelled,
      started_at=job.started_at,
      updated_at=job.updated_at,
      completed_at=job.completed_at,
    )


class JobListResponse(BaseModel):
  jobs: list[JobResponse]


class CancelResponse(BaseModel):
  job_id: str
  status: Literal["running", "done", "error", "cancelled", "pending"]
  cancelled: bool


class DeleteResponse(BaseModel):
  deleted: int
