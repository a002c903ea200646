"""Error taxonomy shared by the job, sandbox, enhancement, and merge layers."""

from __future__ import annotations


class DocsmithError(Exception):
  """Base class for every domain failure raised by the service."""

  code = "docsmith_error"

  def __init__(self, message: str) -> None:
    super().__init__(message)
    self.message = message

  def __str__(self) -> str:
    return self.message


class ValidationError(DocsmithError):
  """Request inputs are missing or invalid; raised before a job exists."""

  code = "validation_error"


class JobNotFoundError(DocsmithError):
  """No job exists for the requested identifier."""

  code = "job_not_found"


class TemplateNotFoundError(DocsmithError):
  """The template store has no template for the requested slug."""

  code = "template_not_found"


class TemplateStructureError(DocsmithError):
  """The template archive does not have the structure the merge engine expects."""

  code = "template_structure_error"


class EnhancementError(DocsmithError):
  """The completion service returned code that fails the entry-point contract."""

  code = "enhancement_error"


class CompletionServiceError(DocsmithError):
  """The completion service could not be reached or rejected the request."""

  code = "completion_service_error"


class SandboxError(DocsmithError):
  """Base class for failures raised while compiling or running an artifact."""

  code = "sandbox_error"
  # Label written into job logs so the failure class stays visible after the fact.
  label = "SandboxError"


class ContractViolation(SandboxError):
  """The artifact does not expose a usable `generate(toolkit, builder, context)` entry point."""

  code = "contract_violation"
  label = "ContractViolation"


class ArtifactRuntimeError(SandboxError):
  """The artifact raised an exception while running."""

  code = "artifact_runtime_error"
  label = "RuntimeError"


class ArtifactTimeoutError(SandboxError):
  """The artifact exceeded its wall-clock execution budget."""

  code = "artifact_timeout"
  label = "TimeoutError"


class ResultShapeError(SandboxError):
  """The artifact returned a value that does not match the template kind."""

  code = "result_shape_error"
  label = "ResultShapeError"


class JobCancelledError(DocsmithError):
  """Raised at a checkpoint once a job's cancel flag has been observed."""

  code = "job_cancelled"

  def __init__(self, message: str, *, checkpoint: str | None = None) -> None:
    super().__init__(message)
    self.checkpoint = checkpoint


class MergeDegradation(DocsmithError):
  """Structural merge was impossible; a standalone document was produced instead.

  Not a failure: the merge engine reports it alongside the degraded output.
  """

  code = "merge_degraded"
