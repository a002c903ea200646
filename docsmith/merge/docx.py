"""Splice generated body markup into a word-processing template.

Only the body-content window of the main document part is replaced: everything before
the window (namespaces, preamble) and the trailing body-level `w:sectPr` stay byte-identical,
so headers, footers and page setup survive untouched.
"""

from __future__ import annotations

import io
import logging
import mimetypes
import posixpath
import re
from dataclasses import dataclass
from xml.sax.saxutils import escape

from docx import Document
from docx.oxml.ns import qn
from lxml import etree

from docsmith.core.errors import MergeDegradation, TemplateStructureError
from docsmith.merge.package import CONTENT_TYPES_PART, OoxmlPackage, main_part, parse_relationships, relative_target, rels_part_for, resolve_target
from docsmith.merge.render import markup_to_standalone
from docsmith.schema.results import DocumentResult

logger = logging.getLogger(__name__)

DEFAULT_MAIN_PART = "word/document.xml"

REL_TYPE_IMAGE = "http://schemas.openxmlformats.org/officeDocument/2006/relationships/image"
REL_TYPE_HYPERLINK = "http://schemas.openxmlformats.org/officeDocument/2006/relationships/hyperlink"
RELS_NAMESPACE = "http://schemas.openxmlformats.org/package/2006/relationships"

_BODY_OPEN_RE = re.compile(r"<w:body(?:\s[^>]*)?>")
_BODY_CLOSE = "</w:body>"
# Exact tag name: `<w:sectPrChange` must not count as a sectPr.
_SECT_PR_TOKEN_RE = re.compile(r"<w:sectPr(?:\s[^>]*)?/?>|</w:sectPr>")
_BLOCK_RE = re.compile(r"<w:(?:p|tbl)[\s>/]")
_REL_REF_RE = re.compile(r'\b(r:(?:embed|link|id))="([^"]+)"')
_NUMERIC_ID_RE = re.compile(r"^rId(\d+)$")

_IMAGE_CONTENT_TYPES = {
  "png": "image/png",
  "jpg": "image/jpeg",
  "jpeg": "image/jpeg",
  "gif": "image/gif",
  "bmp": "image/bmp",
  "tif": "image/tiff",
  "tiff": "image/tiff",
  "emf": "image/x-emf",
  "wmf": "image/x-wmf",
  "svg": "image/svg+xml",
}


@dataclass(frozen=True)
class MergeOutcome:
  """Merged package bytes; `degradation` is set when a standalone fallback was produced."""

  data: bytes
  degradation: MergeDegradation | None = None


def body_window(xml: str) -> tuple[int, int]:
  """Return the [start, end) offsets of the replaceable body content."""
  opening = _BODY_OPEN_RE.search(xml)
  close_index = xml.rfind(_BODY_CLOSE)
  if opening is None or close_index < opening.end():
    raise TemplateStructureError("Template document has no <w:body> element.")

  start = opening.end()
  inner = xml[start:close_index]
  sect_start = _trailing_sect_pr_start(inner, len(inner.rstrip()))
  if sect_start is None:
    return start, close_index
  return start, start + sect_start


def _trailing_sect_pr_start(inner: str, content_end: int) -> int | None:
  """Offset of the outermost `w:sectPr` that closes the body content, if any.

  Tracked section changes nest a `w:sectPr` inside `w:sectPrChange`, so tags are matched by
  depth rather than by the last opening tag.
  """
  depth = 0
  outer_start = 0
  trailing: tuple[int, int] | None = None
  for token in _SECT_PR_TOKEN_RE.finditer(inner):
    tag = token.group(0)
    if tag.startswith("</"):
      if depth == 0:
        raise TemplateStructureError("Template body contains an unmatched </w:sectPr>.")
      depth -= 1
      if depth == 0:
        trailing = (outer_start, token.end())
    elif tag.endswith("/>"):
      if depth == 0:
        trailing = (token.start(), token.end())
    else:
      if depth == 0:
        outer_start = token.start()
      depth += 1

  if depth:
    raise TemplateStructureError("Template body contains an unclosed <w:sectPr>.")
  # A sectPr inside a paragraph marks a mid-document section break and is body content.
  if trailing is None or trailing[1] != content_end:
    return None
  return trailing[0]


def has_block_content(markup: str) -> bool:
  return _BLOCK_RE.search(markup) is not None


def main_document_part(package: OoxmlPackage) -> str:
  return main_part(package, DEFAULT_MAIN_PART)


def extract_body_fragment(package_bytes: bytes) -> str:
  """Serialize the body children (minus sectPr) of a standalone document.

  Each element carries its own namespace declarations so the fragment is valid in any host.
  """
  document = Document(io.BytesIO(package_bytes))
  body = document.element.body
  parts = [etree.tostring(child, encoding="unicode") for child in body.iterchildren() if child.tag != qn("w:sectPr")]
  return "".join(parts)


def merge_document(template: bytes, result: DocumentResult) -> MergeOutcome:
  """Replace the template's body window with the result markup.

  Markup without any paragraph or table element cannot be spliced; the outcome is then a
  standalone document flagged with a MergeDegradation.
  """
  package = OoxmlPackage(template)
  document_part = main_document_part(package)
  xml = package.read_text(document_part)
  start, end = body_window(xml)

  fragment = result.markup
  if not has_block_content(fragment):
    degradation = MergeDegradation("Generated markup contains no paragraph or table; produced a standalone document instead of merging into the template.")
    if result.package is not None:
      return MergeOutcome(data=result.package, degradation=degradation)
    return MergeOutcome(data=markup_to_standalone(fragment), degradation=degradation)

  if result.package is not None:
    fragment = merge_relationships(package, document_part, fragment, OoxmlPackage(result.package))

  package.write_text(document_part, xml[:start] + fragment + xml[end:])
  return MergeOutcome(data=package.to_bytes())


def merge_relationships(target: OoxmlPackage, document_part: str, fragment: str, source: OoxmlPackage) -> str:
  """Copy image and hyperlink relationships the fragment uses from `source` into `target`.

  New ids are allocated above every existing numeric `rIdN` in the target, media lands under a
  collision-free name, and the fragment's references are rewritten in a single pass.
  """
  source_main = main_document_part(source)
  source_rels_part = rels_part_for(source_main)
  if source_rels_part not in source:
    return fragment
  source_rels = {relationship.rel_id: relationship for relationship in parse_relationships(source.read_text(source_rels_part))}

  referenced: list[str] = []
  for match in _REL_REF_RE.finditer(fragment):
    rel_id = match.group(2)
    if rel_id not in referenced:
      referenced.append(rel_id)
  if not referenced:
    return fragment

  target_rels_part = rels_part_for(document_part)
  if target_rels_part in target:
    rels_xml = target.read_text(target_rels_part)
  else:
    rels_xml = f'<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n<Relationships xmlns="{RELS_NAMESPACE}"></Relationships>'
  existing = parse_relationships(rels_xml)
  next_number = max((int(match.group(1)) for rel in existing if (match := _NUMERIC_ID_RE.match(rel.rel_id))), default=0) + 1

  mapping: dict[str, str] = {}
  dropped: set[str] = set()
  new_entries: list[str] = []
  for rel_id in referenced:
    relationship = source_rels.get(rel_id)
    if relationship is None or relationship.rel_type not in {REL_TYPE_IMAGE, REL_TYPE_HYPERLINK}:
      # Left in place the old id could resolve to an unrelated template relationship.
      logger.warning("Dropping fragment relationship %s (%s); only image and hyperlink relationships are merged", rel_id, relationship.rel_type if relationship else "missing")
      dropped.add(rel_id)
      continue
    new_id = f"rId{next_number}"
    next_number += 1
    if relationship.external:
      new_entries.append(_relationship_xml(new_id, relationship.rel_type, relationship.target, external=True))
    else:
      source_part = resolve_target(source_main, relationship.target)
      media_name = target.unique_name(posixpath.join(posixpath.dirname(document_part), "media", posixpath.basename(source_part)))
      target.write(media_name, source.read(source_part))
      _ensure_default_content_type(target, media_name)
      new_entries.append(_relationship_xml(new_id, relationship.rel_type, relative_target(document_part, media_name), external=False))
    mapping[rel_id] = new_id

  if mapping:
    closing = rels_xml.rfind("</Relationships>")
    if closing < 0:
      raise TemplateStructureError(f"Relationships part {target_rels_part} is malformed.")
    target.write_text(target_rels_part, rels_xml[:closing] + "".join(new_entries) + rels_xml[closing:])
    logger.debug("Merged %d relationships into %s: %s", len(mapping), target_rels_part, mapping)

  def _rewrite(match: re.Match[str]) -> str:
    rel_id = match.group(2)
    if rel_id in dropped:
      return ""
    replacement = mapping.get(rel_id)
    if replacement is None:
      return match.group(0)
    return f'{match.group(1)}="{replacement}"'

  return _REL_REF_RE.sub(_rewrite, fragment)


def _relationship_xml(rel_id: str, rel_type: str, target: str, *, external: bool) -> str:
  mode = ' TargetMode="External"' if external else ""
  return f'<Relationship Id="{rel_id}" Type="{rel_type}" Target="{escape(target, {chr(34): "&quot;"})}"{mode}/>'


def _ensure_default_content_type(package: OoxmlPackage, part_name: str) -> None:
  extension = posixpath.splitext(part_name)[1].lstrip(".").lower()
  if not extension:
    return
  types_xml = package.read_text(CONTENT_TYPES_PART)
  if re.search(rf'<Default\b[^>]*\bExtension="{re.escape(extension)}"', types_xml, re.IGNORECASE):
    return
  if re.search(rf'<Override\b[^>]*\bPartName="/{re.escape(part_name)}"', types_xml):
    return
  content_type = _IMAGE_CONTENT_TYPES.get(extension) or mimetypes.guess_type(f"x.{extension}")[0] or "application/octet-stream"
  closing = types_xml.rfind("</Types>")
  if closing < 0:
    raise TemplateStructureError("[Content_Types].xml is malformed.")
  package.write_text(CONTENT_TYPES_PART, f'{types_xml[:closing]}<Default Extension="{extension}" ContentType="{content_type}"/>{types_xml[closing:]}')
