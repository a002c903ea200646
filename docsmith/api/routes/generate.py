import logging

from fastapi import APIRouter, BackgroundTasks, Depends, status
from fastapi.concurrency import run_in_threadpool

from docsmith.api.deps import get_job_manager, get_pipeline
from docsmith.api.models import GenerateRequest, GenerateResponse
from docsmith.jobs.manager import JobManager
from docsmith.jobs.models import JobSpec
from docsmith.jobs.pipeline import GenerationPipeline

router = APIRouter()
logger = logging.getLogger("docsmith.api.routes.generate")


@router.post("", response_model=GenerateResponse, status_code=status.HTTP_202_ACCEPTED)
async def generate_document(  # noqa: B008
  request: GenerateRequest,
  background_tasks: BackgroundTasks,
  manager: JobManager = Depends(get_job_manager),  # noqa: B008
  pipeline: GenerationPipeline = Depends(get_pipeline),  # noqa: B008
) -> GenerateResponse:
  """Create a generation job and run it in the background."""

  # Unknown or malformed templates are rejected before any job is recorded.
  await run_in_threadpool(pipeline.describe_template, request.template)

  spec = JobSpec(customer_id=request.customer_id, template=request.template, customer_name=request.customer_name, workspace=request.workspace, filename=request.filename)
  # Creating the job flushes the collection to disk.
  if request.job_id:
    job = await run_in_threadpool(manager.create_with_id, request.job_id, spec)
  else:
    job = await run_in_threadpool(manager.create, spec)
  logger.info("Accepted job %s for template %s (customer %s)", job.job_id, request.template, request.customer_id)

  background_tasks.add_task(pipeline.run, job.job_id, instructions=request.instructions, refresh_ai=request.refresh_ai)
  return GenerateResponse(job_id=job.job_id)
