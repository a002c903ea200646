import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, Query
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse

from docsmith.api.deps import get_broker, get_job_manager
from docsmith.api.models import CancelResponse, DeleteResponse, JobListResponse, JobResponse
from docsmith.core.errors import JobNotFoundError
from docsmith.jobs.events import DoneEvent, ErrorEvent, LogEvent, ProgressBroker, ProgressEvent, Subscription, encode_sse
from docsmith.jobs.manager import JobManager
from docsmith.jobs.models import GenerationJob

router = APIRouter()
logger = logging.getLogger("docsmith.api.routes.jobs")

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}


def _require_job(manager: JobManager, job_id: str) -> GenerationJob:
  job = manager.get(job_id)
  if job is None:
    raise JobNotFoundError(f"Job {job_id} not found.")
  return job


def _terminal_event(job: GenerationJob) -> ProgressEvent:
  if job.status == "done" and job.file is not None:
    return DoneEvent(file=job.file.path, job_id=job.job_id)
  if job.status == "error":
    return ErrorEvent(message=job.error or "Job failed.", job_id=job.job_id)
  return LogEvent(message=job.logs[-1] if job.logs else job.status)


async def _event_stream(job: GenerationJob, subscription: Subscription, broker: ProgressBroker) -> AsyncIterator[str]:
  try:
    # Jobs finished before this process started have no live channel; replay their final state.
    if job.is_terminal and not subscription.backlog:
      yield encode_sse(_terminal_event(job))
      return
    async for event in subscription.events():
      yield encode_sse(event)
  finally:
    broker.unsubscribe(subscription)


@router.get("", response_model=JobListResponse)
async def list_jobs(limit: int = Query(default=50, ge=1, le=200), manager: JobManager = Depends(get_job_manager)) -> JobListResponse:  # noqa: B008
  """List jobs, most recent first."""

  jobs = await run_in_threadpool(manager.list, limit)
  return JobListResponse(jobs=[JobResponse.from_job(job) for job in jobs])


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, manager: JobManager = Depends(get_job_manager)) -> JobResponse:  # noqa: B008
  """Fetch one job with its logs and steps."""

  return JobResponse.from_job(await run_in_threadpool(_require_job, manager, job_id))


@router.post("/{job_id}/cancel", response_model=CancelResponse)
async def cancel_job(job_id: str, manager: JobManager = Depends(get_job_manager)) -> CancelResponse:  # noqa: B008
  """Flag a job as cancelled; unknown ids are remembered until the job is created."""

  # Cancelling flushes the job collection, so it runs off the event loop.
  job = await run_in_threadpool(manager.cancel, job_id)
  if job is None:
    return CancelResponse(job_id=job_id, status="pending", cancelled=True)
  logger.info("Cancellation requested for job %s (status %s)", job_id, job.status)
  return CancelResponse(job_id=job.job_id, status=job.status, cancelled=job.cancelled)


@router.delete("/{job_id}", response_model=DeleteResponse)
async def delete_job(job_id: str, manager: JobManager = Depends(get_job_manager), broker: ProgressBroker = Depends(get_broker)) -> DeleteResponse:  # noqa: B008
  """Remove a job record; generated files are left in place."""

  if not await run_in_threadpool(manager.delete, job_id):
    raise JobNotFoundError(f"Job {job_id} not found.")
  broker.forget(job_id)
  return DeleteResponse(deleted=1)


@router.delete("", response_model=DeleteResponse)
async def clear_jobs(manager: JobManager = Depends(get_job_manager), broker: ProgressBroker = Depends(get_broker)) -> DeleteResponse:  # noqa: B008
  """Remove every job record and the event history kept for them."""

  deleted = await run_in_threadpool(manager.clear)
  broker.clear()
  return DeleteResponse(deleted=deleted)


@router.get("/{job_id}/events")
async def stream_job_events(job_id: str, manager: JobManager = Depends(get_job_manager), broker: ProgressBroker = Depends(get_broker)) -> StreamingResponse:  # noqa: B008
  """Server-sent progress events for a job; disconnecting only ends this stream."""

  job = await run_in_threadpool(_require_job, manager, job_id)
  subscription = broker.subscribe(job_id)
  return StreamingResponse(_event_stream(job, subscription, broker), media_type="text/event-stream", headers=SSE_HEADERS)
