"""Run compiled generators on a bounded worker pool under a wall-clock budget."""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from docsmith.core.errors import ArtifactRuntimeError, ArtifactTimeoutError, ContractViolation, JobCancelledError, SandboxError
from docsmith.sandbox.builder import DocumentBuilder
from docsmith.sandbox.compiler import CompiledArtifact
from docsmith.sandbox.contract import ENTRY_POINT
from docsmith.sandbox.results import normalize_result
from docsmith.sandbox.toolkit import CapabilityBinding, Toolkit
from docsmith.schema.results import GenerationResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 600.0


def _invoke(artifact: CompiledArtifact, toolkit: Toolkit, builder: DocumentBuilder, context: dict[str, Any], log: Any) -> Any:
  namespace = artifact.new_namespace(log)
  exec(artifact.code, namespace)  # noqa: S102
  entry = namespace.get(ENTRY_POINT)
  if not callable(entry):
    raise ContractViolation(f"Generator does not define a callable {ENTRY_POINT}(toolkit, builder, context).")
  return entry(toolkit, builder, context)


class SandboxExecutor:
  """Executes one artifact per call; each call gets a fresh namespace, builder and toolkit."""

  def __init__(self, *, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS, max_workers: int = 8) -> None:
    self._timeout_seconds = timeout_seconds
    self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="docsmith-sandbox")

  @property
  def timeout_seconds(self) -> float:
    return self._timeout_seconds

  async def run(self, artifact: CompiledArtifact, *, binding: CapabilityBinding, context: dict[str, Any], timeout_seconds: float | None = None) -> GenerationResult:
    """Call `generate(toolkit, builder, context)` and normalise its return value.

    Raises ArtifactTimeoutError when the budget runs out, ArtifactRuntimeError when the
    generator raises, ContractViolation or ResultShapeError for structural problems.
    """
    timeout = timeout_seconds if timeout_seconds is not None else self._timeout_seconds
    builder = DocumentBuilder()
    toolkit = Toolkit(binding)
    loop = asyncio.get_running_loop()
    future = loop.run_in_executor(self._pool, _invoke, artifact, toolkit, builder, dict(context), binding.log)

    try:
      # asyncio.wait leaves the future's own exceptions alone, so a TimeoutError raised by the
      # generator is reported as a runtime failure rather than as the budget running out.
      done, _ = await asyncio.wait({future}, timeout=timeout)
    finally:
      binding.expire()

    if not done:
      logger.warning("job=%s generator exceeded %.1fs; worker thread abandoned", binding.job_id, timeout)
      raise ArtifactTimeoutError(f"Generator exceeded its {timeout:g}s execution budget.")

    try:
      value = future.result()
    except (SandboxError, JobCancelledError):
      raise
    except Exception as exc:
      raise ArtifactRuntimeError(f"Generator raised {type(exc).__name__}: {exc}") from exc

    return normalize_result(value, kind=binding.template_kind, builder=builder)

  def shutdown(self) -> None:
    self._pool.shutdown(wait=False, cancel_futures=True)
