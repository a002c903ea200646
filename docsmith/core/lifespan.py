from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import FastAPI

from docsmith.ai.enhancement import EnhancementCache
from docsmith.ai.providers.anythingllm import AnythingLLMProvider
from docsmith.config import Settings, get_settings
from docsmith.core.logging import _initialize_logging
from docsmith.jobs.events import ProgressBroker
from docsmith.jobs.manager import JobManager
from docsmith.jobs.pipeline import GenerationPipeline
from docsmith.sandbox.executor import SandboxExecutor
from docsmith.storage.jobs_repo import JsonFileJobsRepository
from docsmith.templates.store import FilesystemTemplateStore


@dataclass
class Services:
  """Request-independent collaborators shared by every route."""

  manager: JobManager
  broker: ProgressBroker
  pipeline: GenerationPipeline
  executor: SandboxExecutor
  completion: AnythingLLMProvider | None = None

  async def aclose(self) -> None:
    self.executor.shutdown()
    if self.completion is not None:
      await self.completion.aclose()


def build_services(settings: Settings) -> Services:
  broker = ProgressBroker(max_closed_channels=settings.max_jobs)
  manager = JobManager(JsonFileJobsRepository(settings.jobs_file), max_jobs=settings.max_jobs, on_evict=lambda job_ids: broker.forget(*job_ids))
  executor = SandboxExecutor(timeout_seconds=settings.sandbox_timeout_seconds, max_workers=settings.sandbox_max_workers)
  completion = AnythingLLMProvider(base_url=settings.completion_base_url, api_key=settings.completion_api_key, timeout_seconds=settings.completion_timeout_seconds)
  pipeline = GenerationPipeline(
    manager=manager,
    store=FilesystemTemplateStore(settings.templates_root),
    cache=EnhancementCache(ttl_seconds=settings.ai_cache_ttl_seconds),
    executor=executor,
    documents_root=settings.documents_root,
    completion=completion,
    broker=broker,
  )
  return Services(manager=manager, broker=broker, pipeline=pipeline, executor=executor, completion=completion)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Set up logging and shared services; services injected before startup are kept."""
  settings = get_settings()
  logger = logging.getLogger("docsmith.core.lifespan")

  try:
    _initialize_logging(settings)
    logger.info("Startup complete - logging verified.")
  except Exception:  # noqa: BLE001
    logger.warning("Initial logging setup failed; continuing with default handlers.", exc_info=True)

  owned = getattr(app.state, "services", None) is None
  if owned:
    app.state.services = build_services(settings)
    logger.info("Template library at %s; documents written to %s", settings.templates_root, settings.documents_root)

  try:
    yield
  finally:
    if owned:
      await app.state.services.aclose()
      app.state.services = None
