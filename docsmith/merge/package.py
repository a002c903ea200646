"""Read and rewrite OOXML zip packages without disturbing untouched parts."""

from __future__ import annotations

import html
import io
import posixpath
import re
import zipfile
from dataclasses import dataclass

from docsmith.core.errors import TemplateStructureError


class OoxmlPackage:
  """In-memory view of a zipped OOXML package.

  Parts keep their original ZipInfo (order, timestamps, compression) unless replaced;
  new parts are appended in insertion order.
  """

  def __init__(self, data: bytes) -> None:
    try:
      archive = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile as exc:
      raise TemplateStructureError(f"Template is not a valid zip package: {exc}") from exc
    with archive:
      self._infos: dict[str, zipfile.ZipInfo] = {info.filename: info for info in archive.infolist()}
      self._parts: dict[str, bytes] = {name: archive.read(name) for name in self._infos}
    self._order: list[str] = list(self._infos)

  def __contains__(self, name: str) -> bool:
    return name in self._parts

  def names(self) -> list[str]:
    return list(self._order)

  def read(self, name: str) -> bytes:
    try:
      return self._parts[name]
    except KeyError as exc:
      raise TemplateStructureError(f"Package part {name} is missing.") from exc

  def read_text(self, name: str) -> str:
    return self.read(name).decode("utf-8")

  def write(self, name: str, data: bytes) -> None:
    if name not in self._parts:
      self._order.append(name)
    self._parts[name] = data

  def write_text(self, name: str, text: str) -> None:
    self.write(name, text.encode("utf-8"))

  def remove(self, name: str) -> None:
    if name in self._parts:
      del self._parts[name]
      self._infos.pop(name, None)
      self._order.remove(name)

  def unique_name(self, name: str) -> str:
    """`word/media/image1.png` -> `word/media/image1_1.png` while taken."""
    if name not in self._parts:
      return name
    stem, ext = posixpath.splitext(name)
    counter = 1
    while f"{stem}_{counter}{ext}" in self._parts:
      counter += 1
    return f"{stem}_{counter}{ext}"

  def to_bytes(self) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
      for name in self._order:
        info = self._infos.get(name)
        if info is None:
          info = zipfile.ZipInfo(name, date_time=(1980, 1, 1, 0, 0, 0))
          info.compress_type = zipfile.ZIP_DEFLATED
        archive.writestr(info, self._parts[name])
    return buffer.getvalue()


def resolve_target(source_part: str, target: str) -> str:
  """Resolve a relationship Target relative to the part that owns the relationship."""
  if target.startswith("/"):
    return target.lstrip("/")
  base = posixpath.dirname(source_part)
  return posixpath.normpath(posixpath.join(base, target))


def relative_target(source_part: str, part_name: str) -> str:
  return posixpath.relpath(part_name, posixpath.dirname(source_part) or ".")


def rels_part_for(part_name: str) -> str:
  """`word/document.xml` -> `word/_rels/document.xml.rels`."""
  directory, filename = posixpath.split(part_name)
  return posixpath.join(directory, "_rels", f"{filename}.rels")


ROOT_RELS_PART = "_rels/.rels"
CONTENT_TYPES_PART = "[Content_Types].xml"
REL_TYPE_OFFICE_DOCUMENT = "http://schemas.openxmlformats.org/officeDocument/2006/relationships/officeDocument"

_RELATIONSHIP_RE = re.compile(r"<Relationship\b([^>]*?)/?>")
_ATTR_RE = re.compile(r'([\w:]+)="([^"]*)"')


@dataclass(frozen=True)
class Relationship:
  rel_id: str
  rel_type: str
  target: str
  external: bool


def parse_relationships(xml: str) -> list[Relationship]:
  relationships: list[Relationship] = []
  for match in _RELATIONSHIP_RE.finditer(xml):
    attributes = {name: html.unescape(value) for name, value in _ATTR_RE.findall(match.group(1))}
    if "Id" not in attributes:
      continue
    relationships.append(Relationship(rel_id=attributes["Id"], rel_type=attributes.get("Type", ""), target=attributes.get("Target", ""), external=attributes.get("TargetMode", "").lower() == "external"))
  return relationships


def part_relationships(package: OoxmlPackage, part_name: str) -> list[Relationship]:
  rels_part = rels_part_for(part_name)
  if rels_part not in package:
    return []
  return parse_relationships(package.read_text(rels_part))


def main_part(package: OoxmlPackage, default: str) -> str:
  """Locate the package's main part through the root relationships."""
  if ROOT_RELS_PART in package:
    for relationship in parse_relationships(package.read_text(ROOT_RELS_PART)):
      if relationship.rel_type == REL_TYPE_OFFICE_DOCUMENT and not relationship.external:
        return resolve_target("", relationship.target)
  if default in package:
    return default
  raise TemplateStructureError("Template package has no main part.")
