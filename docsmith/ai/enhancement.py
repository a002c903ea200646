"""Per-(template, workspace) cache of AI-enhanced generators.

A cached generator is fresh while it is younger than the TTL and newer than the base
generator it was derived from. The cache timestamp is the file's modification time.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Literal

from starlette.concurrency import run_in_threadpool

from docsmith.ai.prompting import render_enhancement_prompt
from docsmith.ai.providers.base import CompletionModel
from docsmith.core.errors import ContractViolation, EnhancementError
from docsmith.sandbox.compiler import compile_artifact
from docsmith.templates.store import TemplateDescriptor
from docsmith.utils.clock import utc_now
from docsmith.utils.files import atomic_write_bytes

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 15 * 60

_CODE_FENCE_RE = re.compile(r"```(?:python|py)?[^\n]*\n(.*?)```", re.DOTALL | re.IGNORECASE)

Provenance = Literal["base", "enhanced"]


@dataclass(frozen=True)
class CodeArtifact:
  """Generator source in effect for one run."""

  source: str
  provenance: Provenance
  cached_at: datetime | None = None
  cache_path: Path | None = None

  @property
  def is_enhanced(self) -> bool:
    return self.provenance == "enhanced"


def cache_key(template: str, workspace: str) -> str:
  """Deterministic file-safe key for a (template, workspace) pair."""
  digest = hashlib.sha256(f"{template}\x00{workspace}".encode("utf-8")).hexdigest()
  return digest[:32]


def extract_code(response: str) -> str:
  """Body of the first fenced code block, or the whole response when there is none."""
  match = _CODE_FENCE_RE.search(response)
  code = match.group(1) if match else response
  return code.strip() + "\n"


class EnhancementCache:
  """Enhanced generators on disk, one file per (template, workspace), refreshed after a TTL."""

  def __init__(self, *, ttl_seconds: float = DEFAULT_TTL_SECONDS, clock: Callable[[], datetime] = utc_now) -> None:
    self._ttl_seconds = ttl_seconds
    self._clock = clock

  def cache_path(self, descriptor: TemplateDescriptor, workspace: str) -> Path:
    """Location of the enhanced generator for a template and workspace."""

    return descriptor.cache_dir / f"{cache_key(descriptor.slug, workspace)}.py"

  def is_fresh(self, cache_path: Path, base_path: Path) -> bool:
    """True when the entry is younger than the TTL and not older than the base generator."""

    try:
      cached_at = cache_path.stat().st_mtime
    except FileNotFoundError:
      return False
    base_modified = base_path.stat().st_mtime
    age = self._clock().timestamp() - cached_at
    return age < self._ttl_seconds and cached_at >= base_modified

  async def resolve(
    self,
    descriptor: TemplateDescriptor,
    *,
    workspace: str,
    model: CompletionModel,
    session_id: str | None = None,
    force_refresh: bool = False,
    template_analysis: str | None = None,
    document_metadata: str | None = None,
    instructions: str | None = None,
    log: Callable[[str], None] = logger.info,
  ) -> CodeArtifact:
    """Return the cached enhanced generator when fresh, otherwise enhance the base generator once.

    Raises EnhancementError (or CompletionServiceError) without touching the existing cache entry.
    File access and `log` (which may persist the job) run in the threadpool.
    """
    path = self.cache_path(descriptor, workspace)
    if not force_refresh and await run_in_threadpool(self.is_fresh, path, descriptor.base_artifact_path):
      await run_in_threadpool(log, f"ai-cache:hit {descriptor.slug}/{workspace}")
      return await run_in_threadpool(self._load, path)

    reason = "forced refresh" if force_refresh else ("stale" if await run_in_threadpool(path.exists) else "empty")
    await run_in_threadpool(log, f"ai-cache:miss {descriptor.slug}/{workspace} ({reason})")

    prompt = render_enhancement_prompt(
      base_code=await run_in_threadpool(descriptor.read_base_artifact),
      template_name=descriptor.display_name,
      template_kind=descriptor.kind,
      template_analysis=template_analysis,
      document_metadata=document_metadata,
      instructions=instructions,
    )
    response = await model.complete(prompt, mode="chat", session_id=session_id)
    code = extract_code(response.text)
    # Only a generator that compiles and keeps the entry point may replace the cached one.
    try:
      compile_artifact(code)
    except ContractViolation as exc:
      raise EnhancementError(f"Enhanced generator rejected: {exc}") from exc

    await run_in_threadpool(self._store, path, code)
    await run_in_threadpool(log, f"ai-cache:stored {descriptor.slug}/{workspace}")
    return await run_in_threadpool(self._load, path)

  def _store(self, path: Path, code: str) -> None:
    """Write the entry atomically and stamp it with the cache clock."""

    atomic_write_bytes(path, code.encode("utf-8"), prefix=".ai-cache-")
    stamp = self._clock().timestamp()
    os.utime(path, (stamp, stamp))

  def _load(self, path: Path) -> CodeArtifact:
    cached_at = datetime.fromtimestamp(path.stat().st_mtime, tz=self._clock().tzinfo)
    return CodeArtifact(source=path.read_text(encoding="utf-8"), provenance="enhanced", cached_at=cached_at, cache_path=path)

  def invalidate(self, artifact: CodeArtifact, *, log: Callable[[str], None] = logger.info) -> bool:
    """Delete the cache entry an enhanced artifact came from so the next run regenerates it."""

    if not artifact.is_enhanced or artifact.cache_path is None:
      return False
    try:
      artifact.cache_path.unlink()
    except FileNotFoundError:
      return False
    log(f"ai-cache:invalidated {artifact.cache_path.name}")
    return True


def base_artifact(descriptor: TemplateDescriptor) -> CodeArtifact:
  """The template's own generator, used when no enhancement applies."""

  return CodeArtifact(source=descriptor.read_base_artifact(), provenance="base")
