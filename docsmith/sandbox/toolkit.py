"""Capabilities granted to a generator for one job.

Generators run on worker threads; every completion round trip is scheduled back onto the
service event loop and the worker blocks until it returns.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable, Coroutine
from concurrent.futures import CancelledError as FutureCancelledError
from concurrent.futures import Future
from typing import Any

from docsmith.ai.json_parser import parse_json_or_text
from docsmith.ai.providers.base import CompletionMode, CompletionModel
from docsmith.core.errors import CompletionServiceError, JobCancelledError
from docsmith.merge.render import html_to_docx, markdown_to_html
from docsmith.merge.skeleton import template_skeleton
from docsmith.schema.results import TemplateKind

logger = logging.getLogger(__name__)


class BindingExpiredError(RuntimeError):
  """A capability was used after its execution ended (timeout or completion)."""


class CapabilityBinding:
  """Per-execution state behind the toolkit: job identity, completion model, and the host loop."""

  def __init__(
    self,
    *,
    job_id: str,
    model: CompletionModel | None,
    loop: asyncio.AbstractEventLoop,
    log: Callable[[str], None],
    is_cancelled: Callable[[], bool],
    template: bytes,
    template_kind: TemplateKind,
  ) -> None:
    self.job_id = job_id
    self.template = template
    self.template_kind = template_kind
    self.log = log
    self._model = model
    self._loop = loop
    self._is_cancelled = is_cancelled
    self._lock = threading.Lock()
    self._inflight: set[Future[Any]] = set()
    self._expired = False

  @property
  def session_id(self) -> str:
    return f"docsmith-job-{self.job_id}"

  @property
  def expired(self) -> bool:
    return self._expired

  def _run(self, factory: Callable[[], Coroutine[Any, Any, Any]]) -> Any:
    if self._expired:
      raise BindingExpiredError("Toolkit is no longer available; the generator's execution has ended.")
    if self._is_cancelled():
      raise JobCancelledError(f"Job {self.job_id} was cancelled", checkpoint="toolkit")

    future = asyncio.run_coroutine_threadsafe(factory(), self._loop)
    with self._lock:
      # expire() may have run between the check above and scheduling.
      if self._expired:
        future.cancel()
        raise BindingExpiredError("Toolkit is no longer available; the generator's execution has ended.")
      self._inflight.add(future)
    try:
      return future.result()
    except FutureCancelledError as exc:
      raise BindingExpiredError("Completion request was abandoned because the execution ended.") from exc
    finally:
      with self._lock:
        self._inflight.discard(future)

  def complete(self, prompt: str, mode: CompletionMode) -> str:
    if self._model is None:
      raise CompletionServiceError("No completion service is configured for this job.")
    model = self._model
    if not isinstance(prompt, str) or not prompt.strip():
      raise ValueError("Prompt must be a non-empty string.")
    response = self._run(lambda: model.complete(prompt, mode=mode, session_id=self.session_id))
    return response.text

  def expire(self) -> None:
    """Cancel in-flight round trips; any later capability call raises."""

    with self._lock:
      self._expired = True
      pending = list(self._inflight)
    for future in pending:
      future.cancel()
    if pending:
      logger.info("job=%s cancelled %d in-flight completion request(s)", self.job_id, len(pending))


class Toolkit:
  """The `toolkit` argument of `generate(toolkit, builder, context)`."""

  def __init__(self, binding: CapabilityBinding) -> None:
    self._binding = binding

  def json(self, prompt: str) -> Any:
    """Ask the completion service and parse JSON from the reply, falling back to its text."""

    return parse_json_or_text(self._binding.complete(prompt, "chat"))

  def query(self, prompt: str) -> str:
    return self._binding.complete(prompt, "query")

  def text(self, prompt: str) -> str:
    return self._binding.complete(prompt, "chat")

  def get_skeleton(self, fmt: str = "html") -> str:
    return template_skeleton(self._binding.template, self._binding.template_kind, fmt)

  def markdown_to_html(self, markdown: str) -> str:
    return markdown_to_html(markdown)

  def html_to_docx(self, html: str) -> bytes:
    return html_to_docx(html)

  def log(self, message: Any) -> None:
    self._binding.log(f"generator: {message}")
