"""Runs one generation job: resolve, enhance, compile, execute, merge, write."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable, Coroutine
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol, TypeVar

from docsmith.ai.enhancement import CodeArtifact, EnhancementCache, base_artifact
from docsmith.ai.providers.base import CompletionModel
from docsmith.core.errors import CompletionServiceError, ContractViolation, DocsmithError, EnhancementError, JobCancelledError, SandboxError
from docsmith.jobs.events import ProgressBroker
from docsmith.jobs.manager import JobManager
from docsmith.jobs.models import GenerationJob, JobFile
from docsmith.jobs.progress import JobProgressTracker
from docsmith.merge.engine import merge_result
from docsmith.merge.skeleton import template_skeleton
from docsmith.sandbox.compiler import compile_artifact
from docsmith.sandbox.executor import SandboxExecutor
from docsmith.sandbox.toolkit import CapabilityBinding
from docsmith.templates.store import FilesystemTemplateStore, TemplateDescriptor
from docsmith.utils.clock import iso_timestamp, utc_now
from docsmith.utils.files import atomic_write_bytes
from docsmith.utils.ids import slugify

logger = logging.getLogger(__name__)

TIMESTAMP_TOKEN = "{{ts}}"
MAX_ANALYSIS_CHARS = 6000

T = TypeVar("T")

_UNSAFE_FILENAME_RE = re.compile(r'[\\/:*?"<>|\x00-\x1f]+')
_UNSAFE_COMPONENT_RE = re.compile(r"[^A-Za-z0-9_-]+")


class CompletionProvider(Protocol):
  def get_model(self, workspace: str) -> CompletionModel: ...


def output_filename(descriptor: TemplateDescriptor, override: str | None, *, millis: int) -> str:
  """Override, else the template's filename pattern, else `<slug>-{{ts}}`; extension follows the kind."""
  pattern = (override or "").strip() or (descriptor.meta.output.filename_pattern or "").strip() or f"{descriptor.slug}-{TIMESTAMP_TOKEN}"
  name = _UNSAFE_FILENAME_RE.sub("-", pattern.replace(TIMESTAMP_TOKEN, str(millis))).strip(" .-") or f"{descriptor.slug}-{millis}"
  if not name.lower().endswith(descriptor.extension):
    name += descriptor.extension
  return name


def customer_directory(documents_root: Path, customer_id: str, customer_name: str | None) -> Path:
  safe_id = _UNSAFE_COMPONENT_RE.sub("-", customer_id).strip("-") or "customer"
  return documents_root / f"{safe_id}-{slugify(customer_name or customer_id, fallback='customer')}"


class GenerationPipeline:
  """Coordinates the stages of one job and records every outcome on the job."""

  def __init__(
    self,
    *,
    manager: JobManager,
    store: FilesystemTemplateStore,
    cache: EnhancementCache,
    executor: SandboxExecutor,
    documents_root: Path,
    completion: CompletionProvider | None = None,
    broker: ProgressBroker | None = None,
    clock: Callable[[], datetime] = utc_now,
  ) -> None:
    self._manager = manager
    self._store = store
    self._cache = cache
    self._executor = executor
    self._documents_root = documents_root
    self._completion = completion
    self._broker = broker
    self._clock = clock

  def describe_template(self, slug: str) -> TemplateDescriptor:
    """Resolve a template up front so bad requests fail before a job exists."""
    return self._store.get(slug)

  async def run(self, job_id: str, *, instructions: str | None = None, refresh_ai: bool = False) -> GenerationJob | None:
    """Execute the job to a terminal state and return its final record.

    Every job update is flushed to disk before it returns, so the stages run on a worker
    thread; only completion round trips and the sandbox wait are awaited on the event loop.
    """
    loop = asyncio.get_running_loop()
    # The loop's default executor, not the request threadpool, so nested threadpool calls never wait on it.
    return await asyncio.to_thread(self._run_blocking, job_id, loop, instructions=instructions, refresh_ai=refresh_ai)

  def _run_blocking(self, job_id: str, loop: asyncio.AbstractEventLoop, *, instructions: str | None, refresh_ai: bool) -> GenerationJob | None:
    job = self._manager.get(job_id)
    if job is None:
      logger.warning("Pipeline started for unknown job %s", job_id)
      return None
    tracker = JobProgressTracker(job_id=job_id, manager=self._manager, broker=self._broker)
    if job.is_terminal:
      tracker.close()
      return job

    tracker.info(template=job.template, workspace=job.workspace)
    try:
      self._execute(job, tracker, loop, instructions=instructions, refresh_ai=refresh_ai)
    except JobCancelledError as exc:
      tracker.cancelled(exc.checkpoint or "unknown")
    except SandboxError as exc:
      self._fail(tracker, f"sandbox:{exc.label} {exc}", f"{exc.label}: {exc}")
    except DocsmithError as exc:
      self._fail(tracker, f"{exc.code}: {exc}", str(exc))
    except Exception as exc:  # noqa: BLE001
      logger.exception("job=%s failed unexpectedly", job_id)
      self._fail(tracker, f"unexpected error: {type(exc).__name__}: {exc}", f"Unexpected error: {exc}")
    return self._manager.get(job_id)

  def _fail(self, tracker: JobProgressTracker, log_line: str, message: str) -> None:
    tracker.log(log_line)
    # A failure surfacing after cancellation still ends as cancelled.
    if tracker.is_cancelled():
      tracker.cancelled("failure")
      return
    tracker.error(message)

  def _execute(self, job: GenerationJob, tracker: JobProgressTracker, loop: asyncio.AbstractEventLoop, *, instructions: str | None, refresh_ai: bool) -> None:
    # Resolve the template and the workspace the job runs against.
    tracker.step_start("resolve")
    descriptor = self._store.get(job.template)
    template_bytes = descriptor.read_template()
    workspace = job.workspace or descriptor.meta.workspace_slug
    if workspace:
      self._manager.set_meta(job.job_id, used_workspace=workspace)
    tracker.log(f"template {descriptor.slug} ({descriptor.kind}) workspace={workspace or '-'}")
    tracker.step_ok("resolve")

    tracker.checkpoint("enhance")
    tracker.step_start("enhance")
    artifact = self._resolve_artifact(descriptor, template_bytes, workspace, tracker, loop, instructions=instructions, refresh_ai=refresh_ai)
    tracker.step_ok("enhance")

    # A generator that breaks the entry-point contract is dropped from the cache.
    tracker.checkpoint("compile")
    tracker.step_start("compile")
    try:
      compiled = compile_artifact(artifact.source)
    except ContractViolation:
      self._cache.invalidate(artifact, log=tracker.log)
      raise
    tracker.step_ok("compile")

    tracker.checkpoint("execute")
    tracker.step_start("execute")
    binding = CapabilityBinding(
      job_id=job.job_id,
      model=self._model_for(workspace),
      loop=loop,
      log=tracker.log,
      is_cancelled=tracker.is_cancelled,
      template=template_bytes,
      template_kind=descriptor.kind,
    )
    context = self._context(job, workspace, instructions)
    try:
      result = _await_on(loop, self._executor.run(compiled, binding=binding, context=context))
    except ContractViolation:
      self._cache.invalidate(artifact, log=tracker.log)
      raise
    # Generators may swallow JobCancelledError; the flag is checked again here.
    tracker.checkpoint("after-execute")
    tracker.step_ok("execute")

    tracker.checkpoint("merge")
    tracker.step_start("merge")
    outcome = merge_result(descriptor.kind, template_bytes, result)
    if outcome.degradation is not None:
      tracker.log(f"merge:degraded {outcome.degradation}")
    tracker.step_ok("merge")

    tracker.checkpoint("write")
    tracker.step_start("write")
    millis = int(self._clock().timestamp() * 1000)
    filename = output_filename(descriptor, job.filename, millis=millis)
    path = customer_directory(self._documents_root, job.customer_id, job.customer_name) / filename
    atomic_write_bytes(path, outcome.data, prefix=".docsmith-")
    tracker.log(f"wrote {path}")
    tracker.step_ok("write")

    # A cancel that lands during the write wins; the file stays on disk but is not reported.
    if not self._manager.mark_done(job.job_id, JobFile(path=str(path), name=filename), used_workspace=workspace):
      tracker.cancelled("after-write")
      return
    tracker.done(path=str(path))

  def _model_for(self, workspace: str | None) -> CompletionModel | None:
    if self._completion is None or not workspace:
      return None
    return self._completion.get_model(workspace)

  def _context(self, job: GenerationJob, workspace: str | None, instructions: str | None) -> dict[str, Any]:
    return {
      "customer_id": job.customer_id,
      "customer_name": job.customer_name or job.customer_id,
      "workspace": workspace,
      "now": iso_timestamp(self._clock()),
      "instructions": instructions or "",
    }

  def _resolve_artifact(self, descriptor: TemplateDescriptor, template_bytes: bytes, workspace: str | None, tracker: JobProgressTracker, loop: asyncio.AbstractEventLoop, *, instructions: str | None, refresh_ai: bool) -> CodeArtifact:
    """Enhanced generator when available; enhancement failures fall back to the base generator."""
    model = self._model_for(workspace)
    if model is None or workspace is None:
      tracker.log("ai-enhance:skipped no completion workspace; using base generator")
      return base_artifact(descriptor)

    try:
      analysis = template_skeleton(template_bytes, descriptor.kind, "text")
    except Exception as exc:  # noqa: BLE001
      logger.debug("Template analysis unavailable for %s: %s", descriptor.slug, exc)
      analysis = None

    try:
      resolving = self._cache.resolve(
        descriptor,
        workspace=workspace,
        model=model,
        session_id=f"docsmith-job-{tracker.job_id}",
        force_refresh=refresh_ai,
        template_analysis=analysis[:MAX_ANALYSIS_CHARS] if analysis else None,
        instructions=instructions,
        log=tracker.log,
      )
      return _await_on(loop, resolving)
    except (EnhancementError, CompletionServiceError) as exc:
      tracker.log(f"ai-enhance:error {exc}; using base generator")
      return base_artifact(descriptor)


def _await_on(loop: asyncio.AbstractEventLoop, coroutine: Coroutine[Any, Any, T]) -> T:
  """Run a coroutine on the service loop from a pipeline thread and wait for its result."""
  return asyncio.run_coroutine_threadsafe(coroutine, loop).result()
