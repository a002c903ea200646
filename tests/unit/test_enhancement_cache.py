from __future__ import annotations

import os
from datetime import UTC, datetime
from pathlib import Path

import pytest

from docsmith.ai.enhancement import EnhancementCache, base_artifact, cache_key, extract_code
from docsmith.ai.providers.base import CompletionMode, CompletionModel, CompletionResponse
from docsmith.core.errors import CompletionServiceError, EnhancementError
from docsmith.templates.store import FilesystemTemplateStore, TemplateDescriptor

BASE_SOURCE = "def generate(toolkit, builder, context):\n    builder.add_paragraph('base')\n"
ENHANCED_REPLY = "Sure.\n```python\ndef generate(toolkit, builder, context):\n    builder.add_paragraph(toolkit.text('Say hi'))\n```\n"
BASE_WRITTEN_AT = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


class FakeModel(CompletionModel):
  def __init__(self, replies: list[str] | None = None, *, error: Exception | None = None) -> None:
    self.name = "fake"
    self.prompts: list[str] = []
    self._replies = list(replies or [])
    self._error = error

  async def complete(self, prompt: str, *, mode: CompletionMode = "chat", session_id: str | None = None) -> CompletionResponse:
    self.prompts.append(prompt)
    if self._error is not None:
      raise self._error
    return CompletionResponse(text=self._replies.pop(0) if self._replies else ENHANCED_REPLY)


class FakeClock:
  def __init__(self, moment: datetime) -> None:
    self.moment = moment

  def __call__(self) -> datetime:
    return self.moment

  def at(self, hour: int, minute: int) -> None:
    self.moment = datetime(2024, 3, 1, hour, minute, tzinfo=UTC)


def _touch(path: Path, moment: datetime) -> None:
  os.utime(path, (moment.timestamp(), moment.timestamp()))


@pytest.fixture
def descriptor(tmp_path: Path) -> TemplateDescriptor:
  directory = tmp_path / "quarterly-report"
  directory.mkdir()
  (directory / "template.docx").write_bytes(b"docx")
  base = directory / "generator.full.py"
  base.write_text(BASE_SOURCE, encoding="utf-8")
  _touch(base, BASE_WRITTEN_AT)
  return FilesystemTemplateStore(tmp_path).get("quarterly-report")


@pytest.fixture
def clock() -> FakeClock:
  return FakeClock(datetime(2024, 3, 1, 14, 45, tzinfo=UTC))


@pytest.mark.anyio
async def test_cache_hit_within_ttl_and_miss_after(descriptor: TemplateDescriptor, clock: FakeClock) -> None:
  cache = EnhancementCache(ttl_seconds=15 * 60, clock=clock)
  model = FakeModel()
  lines: list[str] = []

  first = await cache.resolve(descriptor, workspace="acme", model=model, log=lines.append)
  assert first.is_enhanced
  assert first.cached_at == datetime(2024, 3, 1, 14, 45, tzinfo=UTC)
  assert "toolkit.text('Say hi')" in first.source
  assert len(model.prompts) == 1

  clock.at(14, 59)
  second = await cache.resolve(descriptor, workspace="acme", model=model, log=lines.append)
  assert second.source == first.source
  assert len(model.prompts) == 1

  clock.at(15, 1)
  await cache.resolve(descriptor, workspace="acme", model=model, log=lines.append)
  assert len(model.prompts) == 2

  assert lines == [
    "ai-cache:miss quarterly-report/acme (empty)",
    "ai-cache:stored quarterly-report/acme",
    "ai-cache:hit quarterly-report/acme",
    "ai-cache:miss quarterly-report/acme (stale)",
    "ai-cache:stored quarterly-report/acme",
  ]


@pytest.mark.anyio
async def test_prompt_embeds_base_generator_and_context(descriptor: TemplateDescriptor, clock: FakeClock) -> None:
  model = FakeModel()
  await EnhancementCache(clock=clock).resolve(descriptor, workspace="acme", model=model, template_analysis="<h1>Title</h1>", instructions="Be brief")

  (prompt,) = model.prompts
  assert BASE_SOURCE.strip() in prompt
  assert 'document template "quarterly-report"' in prompt
  assert "Template structure:\n<h1>Title</h1>" in prompt
  assert "Additional instructions from the user:\nBe brief" in prompt
  assert "DOCUMENT_METADATA" not in prompt


@pytest.mark.anyio
async def test_workspaces_have_separate_entries(descriptor: TemplateDescriptor, clock: FakeClock) -> None:
  cache = EnhancementCache(clock=clock)
  model = FakeModel()
  await cache.resolve(descriptor, workspace="acme", model=model)
  await cache.resolve(descriptor, workspace="globex", model=model)
  assert len(model.prompts) == 2
  assert cache.cache_path(descriptor, "acme") != cache.cache_path(descriptor, "globex")


@pytest.mark.anyio
async def test_rejected_enhancement_keeps_the_previous_entry(descriptor: TemplateDescriptor, clock: FakeClock) -> None:
  cache = EnhancementCache(clock=clock)
  stored = await cache.resolve(descriptor, workspace="acme", model=FakeModel())

  with pytest.raises(EnhancementError, match="rejected"):
    await cache.resolve(descriptor, workspace="acme", model=FakeModel(["```python\nimport os\ndef generate(toolkit, builder, context):\n    pass\n```"]), force_refresh=True)

  assert stored.cache_path is not None
  assert stored.cache_path.read_text(encoding="utf-8") == stored.source


@pytest.mark.anyio
async def test_completion_failures_propagate(descriptor: TemplateDescriptor, clock: FakeClock) -> None:
  cache = EnhancementCache(clock=clock)
  with pytest.raises(CompletionServiceError):
    await cache.resolve(descriptor, workspace="acme", model=FakeModel(error=CompletionServiceError("offline")))
  assert not cache.cache_path(descriptor, "acme").exists()


@pytest.mark.anyio
async def test_newer_base_generator_invalidates_the_entry(descriptor: TemplateDescriptor, clock: FakeClock) -> None:
  cache = EnhancementCache(clock=clock)
  model = FakeModel()
  await cache.resolve(descriptor, workspace="acme", model=model)

  _touch(descriptor.base_artifact_path, datetime(2024, 3, 1, 14, 50, tzinfo=UTC))
  clock.at(14, 51)
  lines: list[str] = []
  await cache.resolve(descriptor, workspace="acme", model=model, log=lines.append)

  assert len(model.prompts) == 2
  assert lines[0] == "ai-cache:miss quarterly-report/acme (stale)"


@pytest.mark.anyio
async def test_forced_refresh_skips_a_fresh_entry(descriptor: TemplateDescriptor, clock: FakeClock) -> None:
  cache = EnhancementCache(clock=clock)
  model = FakeModel()
  await cache.resolve(descriptor, workspace="acme", model=model)
  lines: list[str] = []
  await cache.resolve(descriptor, workspace="acme", model=model, force_refresh=True, log=lines.append)
  assert len(model.prompts) == 2
  assert lines[0] == "ai-cache:miss quarterly-report/acme (forced refresh)"


@pytest.mark.anyio
async def test_invalidate_removes_only_enhanced_entries(descriptor: TemplateDescriptor, clock: FakeClock) -> None:
  cache = EnhancementCache(clock=clock)
  artifact = await cache.resolve(descriptor, workspace="acme", model=FakeModel())

  assert cache.invalidate(base_artifact(descriptor)) is False
  assert cache.invalidate(artifact) is True
  assert artifact.cache_path is not None and not artifact.cache_path.exists()
  assert cache.invalidate(artifact) is False


def test_cache_key_is_stable_and_file_safe() -> None:
  key = cache_key("quarterly-report", "acme")
  assert key == cache_key("quarterly-report", "acme")
  assert key != cache_key("quarterly-report", "globex")
  assert len(key) == 32
  assert key.isalnum()


def test_extract_code_prefers_the_first_fence() -> None:
  assert extract_code("intro\n```py\nx = 1\n```\n```python\ny = 2\n```") == "x = 1\n"
  assert extract_code("  def generate(a, b, c):\n    pass  ") == "def generate(a, b, c):\n    pass\n"
