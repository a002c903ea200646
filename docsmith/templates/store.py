"""Filesystem template library.

Layout per template: `<root>/<slug>/template.docx|template.xlsx`, `generator.full.py`, and an
optional `template.json` with display name, default workspace and output filename pattern.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

import msgspec

from docsmith.core.errors import TemplateNotFoundError, ValidationError
from docsmith.schema.results import TemplateKind

logger = logging.getLogger(__name__)

BASE_ARTIFACT_NAME = "generator.full.py"
META_FILE_NAME = "template.json"
CACHE_DIR_NAME = ".ai-cache"
TEMPLATE_FILES: dict[str, TemplateKind] = {"template.docx": "document", "template.xlsx": "spreadsheet"}
KIND_EXTENSIONS: dict[TemplateKind, str] = {"document": ".docx", "spreadsheet": ".xlsx"}

_SLUG_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


class TemplateOutput(msgspec.Struct, rename="camel"):
  filename_pattern: str | None = None


class TemplateMeta(msgspec.Struct, rename="camel"):
  name: str | None = None
  workspace_slug: str | None = None
  output: TemplateOutput = msgspec.field(default_factory=TemplateOutput)


@dataclass(frozen=True)
class TemplateDescriptor:
  slug: str
  kind: TemplateKind
  template_path: Path
  base_artifact_path: Path
  directory: Path
  meta: TemplateMeta

  @property
  def display_name(self) -> str:
    return self.meta.name or self.slug

  @property
  def cache_dir(self) -> Path:
    return self.directory / CACHE_DIR_NAME

  @property
  def extension(self) -> str:
    return KIND_EXTENSIONS[self.kind]

  def read_template(self) -> bytes:
    return self.template_path.read_bytes()

  def read_base_artifact(self) -> str:
    return self.base_artifact_path.read_text(encoding="utf-8")


class FilesystemTemplateStore:
  """Resolve template slugs to descriptors under a single root directory."""

  def __init__(self, root: Path) -> None:
    self._root = root

  @property
  def root(self) -> Path:
    return self._root

  def get(self, slug: str) -> TemplateDescriptor:
    if not _SLUG_RE.match(slug or "") or ".." in slug:
      raise ValidationError(f"Invalid template identifier {slug!r}.")
    directory = self._root / slug
    if not directory.is_dir():
      raise TemplateNotFoundError(f"Template {slug!r} not found.")

    found = [(directory / name, kind) for name, kind in TEMPLATE_FILES.items() if (directory / name).is_file()]
    if not found:
      raise TemplateNotFoundError(f"Template {slug!r} has no template.docx or template.xlsx.")
    if len(found) > 1:
      logger.warning("Template %s has both docx and xlsx files; using %s", slug, found[0][0].name)
    template_path, kind = found[0]

    base_artifact_path = directory / BASE_ARTIFACT_NAME
    if not base_artifact_path.is_file():
      raise TemplateNotFoundError(f"Template {slug!r} has no {BASE_ARTIFACT_NAME}.")

    return TemplateDescriptor(slug=slug, kind=kind, template_path=template_path, base_artifact_path=base_artifact_path, directory=directory, meta=self._load_meta(directory / META_FILE_NAME))

  @staticmethod
  def _load_meta(path: Path) -> TemplateMeta:
    try:
      return msgspec.json.decode(path.read_bytes(), type=TemplateMeta)
    except FileNotFoundError:
      return TemplateMeta()
    except (OSError, msgspec.DecodeError, msgspec.ValidationError) as exc:
      logger.warning("Ignoring unreadable template metadata %s: %s", path, exc)
      return TemplateMeta()

  def list(self) -> list[TemplateDescriptor]:
    if not self._root.is_dir():
      return []
    descriptors = []
    for directory in sorted(self._root.iterdir()):
      if not directory.is_dir() or directory.name.startswith("."):
        continue
      try:
        descriptors.append(self.get(directory.name))
      except (TemplateNotFoundError, ValidationError) as exc:
        logger.debug("Skipping %s: %s", directory, exc)
    return descriptors
