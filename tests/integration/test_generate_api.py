from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Ensure required settings are available before importing the app.
os.environ.setdefault("DOCSMITH_ALLOWED_ORIGINS", "http://localhost")

from docsmith.ai.enhancement import EnhancementCache  # noqa: E402
from docsmith.core.lifespan import Services  # noqa: E402
from docsmith.jobs.events import ProgressBroker  # noqa: E402
from docsmith.jobs.manager import JobManager  # noqa: E402
from docsmith.jobs.models import JobSpec  # noqa: E402
from docsmith.jobs.pipeline import GenerationPipeline  # noqa: E402
from docsmith.main import app  # noqa: E402
from docsmith.sandbox.executor import SandboxExecutor  # noqa: E402
from docsmith.storage.jobs_repo import InMemoryJobsRepository  # noqa: E402
from docsmith.templates.store import FilesystemTemplateStore  # noqa: E402

GENERATOR = """
def generate(toolkit, builder, context):
    builder.add_heading("Hello " + context["customer_name"], 1)
"""


@pytest.fixture
def services(tmp_path: Path, docx_factory) -> Iterator[Services]:
  template_dir = tmp_path / "templates" / "welcome-letter"
  template_dir.mkdir(parents=True)
  (template_dir / "template.docx").write_bytes(docx_factory("<w:p/><w:sectPr/>"))
  (template_dir / "generator.full.py").write_text(GENERATOR, encoding="utf-8")

  manager = JobManager(InMemoryJobsRepository())
  broker = ProgressBroker()
  executor = SandboxExecutor(timeout_seconds=5, max_workers=1)
  pipeline = GenerationPipeline(manager=manager, store=FilesystemTemplateStore(tmp_path / "templates"), cache=EnhancementCache(), executor=executor, documents_root=tmp_path / "documents", broker=broker)
  injected = Services(manager=manager, broker=broker, pipeline=pipeline, executor=executor)
  app.state.services = injected
  yield injected
  app.state.services = None
  executor.shutdown()


@pytest.fixture
def client(services: Services) -> Iterator[TestClient]:
  with TestClient(app) as test_client:
    yield test_client


def test_health(client: TestClient) -> None:
  response = client.get("/health")
  assert response.status_code == 200
  assert response.json()["status"] == "ok"
  assert response.headers["x-request-id"]


def test_generate_accepts_and_runs_the_job(client: TestClient, services: Services, tmp_path: Path) -> None:
  response = client.post("/v1/generate", json={"customer_id": "c-1", "customer_name": "Ada", "template": "welcome-letter"})

  assert response.status_code == 202
  job_id = response.json()["job_id"]
  # Background tasks finish before the test client returns.
  job = client.get(f"/v1/jobs/{job_id}").json()
  assert job["status"] == "done"
  assert job["file"]["path"].startswith(str(tmp_path / "documents" / "c-1-ada"))
  assert Path(job["file"]["path"]).is_file()
  assert [step["name"] for step in job["steps"]] == ["resolve", "enhance", "compile", "execute", "merge", "write"]


def test_client_chosen_job_id_can_be_cancelled_before_creation(client: TestClient) -> None:
  cancel = client.post("/v1/jobs/early-1/cancel")
  assert cancel.json() == {"job_id": "early-1", "status": "pending", "cancelled": True}

  response = client.post("/v1/generate", json={"customer_id": "c-1", "template": "welcome-letter", "job_id": "early-1"})
  assert response.status_code == 202
  assert response.json() == {"job_id": "early-1"}

  job = client.get("/v1/jobs/early-1").json()
  assert job["status"] == "cancelled"
  assert job["cancelled"] is True
  assert job["file"] is None
  assert job["logs"][0].startswith("cancelled before start")


def test_unknown_template_is_rejected_without_a_job(client: TestClient) -> None:
  response = client.post("/v1/generate", json={"customer_id": "c-1", "template": "missing"})

  assert response.status_code == 404
  body = response.json()
  assert body["code"] == "template_not_found"
  assert body["requestId"] == response.headers["x-request-id"]
  assert client.get("/v1/jobs").json() == {"jobs": []}


@pytest.mark.parametrize(
  "payload",
  [
    {"customer_id": "c-1", "template": "welcome-letter", "colour": "blue"},
    {"template": "welcome-letter"},
    {"customer_id": "", "template": "welcome-letter"},
    {"customer_id": "c-1", "template": "../etc"},
    {"customer_id": "c-1", "template": "welcome-letter", "refresh_ai": "yes"},
  ],
)
def test_invalid_requests_are_rejected(client: TestClient, payload: dict) -> None:
  response = client.post("/v1/generate", json=payload)
  assert response.status_code == 422
  assert all("input" not in error for error in response.json()["detail"])
  assert client.get("/v1/jobs").json() == {"jobs": []}


def test_cancel_marks_a_running_job(client: TestClient, services: Services) -> None:
  job = services.manager.create(JobSpec(customer_id="c-1", template="welcome-letter"))

  response = client.post(f"/v1/jobs/{job.job_id}/cancel")

  assert response.json() == {"job_id": job.job_id, "status": "cancelled", "cancelled": True}
  assert services.manager.get(job.job_id).logs == ["cancel requested"]
