"""Shared FastAPI dependencies resolving the service collaborators."""

from __future__ import annotations

from fastapi import Request

from docsmith.core.lifespan import Services
from docsmith.jobs.events import ProgressBroker
from docsmith.jobs.manager import JobManager
from docsmith.jobs.pipeline import GenerationPipeline


def get_services(request: Request) -> Services:
  services = getattr(request.app.state, "services", None)
  if services is None:
    raise RuntimeError("Services are not initialised; the application lifespan has not run.")
  return services


def get_job_manager(request: Request) -> JobManager:
  return get_services(request).manager


def get_pipeline(request: Request) -> GenerationPipeline:
  return get_services(request).pipeline


def get_broker(request: Request) -> ProgressBroker:
  return get_services(request).broker
