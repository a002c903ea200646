"""Local conversions: markdown to HTML, HTML to docx, and builder nodes to docx."""

from __future__ import annotations

import base64
import binascii
import io
import logging
import re
from collections.abc import Iterable
from typing import Any

import markdown as markdown_lib
from bs4 import BeautifulSoup, NavigableString, Tag
from docx import Document
from docx.enum.text import WD_BREAK
from docx.shared import Inches, Pt, RGBColor
from docx.text.paragraph import Paragraph as DocxParagraph

from docsmith.schema.results import BlockNode, BulletItem, Heading, NumberedItem, PageBreak, Paragraph, Table, TextRun

logger = logging.getLogger(__name__)

MARKDOWN_EXTENSIONS = ["tables", "fenced_code", "sane_lists"]
MAX_IMAGE_WIDTH = Inches(6)
MONOSPACE_FONT = "Courier New"

_HEADING_TAGS = {f"h{level}": level for level in range(1, 7)}
_COLOR_RE = re.compile(r"color\s*:\s*#?([0-9a-fA-F]{6})\b")
_DATA_URI_RE = re.compile(r"^data:image/[\w.+-]+;base64,(.*)$", re.DOTALL)


def markdown_to_html(text: str) -> str:
  return markdown_lib.markdown(text or "", extensions=MARKDOWN_EXTENSIONS)


def _save(document: Any) -> bytes:
  buffer = io.BytesIO()
  document.save(buffer)
  return buffer.getvalue()


def _list_style(ordered: bool, depth: int) -> str:
  base = "List Number" if ordered else "List Bullet"
  # The default template defines list styles up to level 3.
  level = min(depth, 3)
  return base if level <= 1 else f"{base} {level}"


class _HtmlRenderer:
  """Walk a parsed HTML tree and emit python-docx blocks."""

  def __init__(self, document: Any) -> None:
    self._document = document

  def render_blocks(self, parent: Tag, *, depth: int = 0) -> None:
    pending_inline: list[Any] = []

    def flush() -> None:
      if any(not isinstance(node, NavigableString) or node.strip() for node in pending_inline):
        paragraph = self._document.add_paragraph()
        for node in pending_inline:
          self._add_inline(paragraph, node, {})
      pending_inline.clear()

    for child in parent.children:
      if isinstance(child, Tag) and self._is_block(child):
        flush()
        self._render_block(child, depth=depth)
      else:
        pending_inline.append(child)
    flush()

  @staticmethod
  def _is_block(tag: Tag) -> bool:
    return tag.name in _HEADING_TAGS or tag.name in {"p", "div", "ul", "ol", "table", "pre", "blockquote", "hr", "section", "article", "body", "html"}

  def _render_block(self, tag: Tag, *, depth: int) -> None:
    name = tag.name
    if name in _HEADING_TAGS:
      paragraph = self._document.add_heading("", level=_HEADING_TAGS[name])
      self._add_inline_children(paragraph, tag, {})
    elif name == "p":
      paragraph = self._document.add_paragraph()
      self._add_inline_children(paragraph, tag, {})
    elif name in {"ul", "ol"}:
      self._render_list(tag, ordered=name == "ol", depth=depth + 1)
    elif name == "table":
      self._render_table(tag)
    elif name == "pre":
      paragraph = self._document.add_paragraph()
      lines = tag.get_text().rstrip("\n").split("\n")
      for index, line in enumerate(lines):
        run = paragraph.add_run(line)
        run.font.name = MONOSPACE_FONT
        if index < len(lines) - 1:
          run.add_break()
    elif name == "blockquote":
      paragraph = self._document.add_paragraph(style="Quote")
      self._add_inline_children(paragraph, tag, {})
    elif name == "hr":
      self._document.add_paragraph()
    else:
      self.render_blocks(tag, depth=depth)

  def _render_list(self, tag: Tag, *, ordered: bool, depth: int) -> None:
    for item in tag.find_all("li", recursive=False):
      paragraph = self._document.add_paragraph(style=_list_style(ordered, depth))
      nested: list[Tag] = []
      for child in item.children:
        if isinstance(child, Tag) and child.name in {"ul", "ol"}:
          nested.append(child)
        elif isinstance(child, Tag) and child.name == "p":
          self._add_inline_children(paragraph, child, {})
        else:
          self._add_inline(paragraph, child, {})
      for sublist in nested:
        self._render_list(sublist, ordered=sublist.name == "ol", depth=depth + 1)

  def _render_table(self, tag: Tag) -> None:
    rows = [row for row in tag.find_all("tr") if row.find_parent("table") is tag]
    if not rows:
      return
    grid = [row.find_all(["td", "th"], recursive=False) for row in rows]
    columns = max((len(cells) for cells in grid), default=0)
    if columns == 0:
      return
    table = self._document.add_table(rows=len(grid), cols=columns)
    table.style = "Table Grid"
    for row_index, cells in enumerate(grid):
      for column_index, cell in enumerate(cells):
        paragraph = table.cell(row_index, column_index).paragraphs[0]
        self._add_inline_children(paragraph, cell, {"bold": True} if cell.name == "th" else {})

  def _add_inline_children(self, paragraph: DocxParagraph, tag: Tag, fmt: dict[str, Any]) -> None:
    for child in tag.children:
      self._add_inline(paragraph, child, fmt)

  def _add_inline(self, paragraph: DocxParagraph, node: Any, fmt: dict[str, Any]) -> None:
    if isinstance(node, NavigableString):
      text = str(node)
      if not text.strip() and not paragraph.runs:
        return
      _apply_format(paragraph.add_run(re.sub(r"\s+", " ", text)), fmt)
      return
    if not isinstance(node, Tag):
      return

    name = node.name
    if name == "br":
      paragraph.add_run().add_break()
      return
    if name == "img":
      self._add_image(paragraph, node)
      return

    child_fmt = dict(fmt)
    if name in {"b", "strong"}:
      child_fmt["bold"] = True
    elif name in {"i", "em"}:
      child_fmt["italic"] = True
    elif name in {"u", "ins"}:
      child_fmt["underline"] = True
    elif name in {"s", "strike", "del"}:
      child_fmt["strike"] = True
    elif name == "code":
      child_fmt["font"] = MONOSPACE_FONT
    elif name == "sup":
      child_fmt["superscript"] = True
    elif name == "sub":
      child_fmt["subscript"] = True
    elif name == "a":
      child_fmt["underline"] = True
      child_fmt.setdefault("color", "0563C1")
    color = _COLOR_RE.search(node.get("style", "") or "")
    if color is not None:
      child_fmt["color"] = color.group(1)
    self._add_inline_children(paragraph, node, child_fmt)

  def _add_image(self, paragraph: DocxParagraph, node: Tag) -> None:
    source = node.get("src", "") or ""
    match = _DATA_URI_RE.match(source)
    if match is None:
      # Remote images are never fetched; keep the alt text.
      alt = node.get("alt")
      if alt:
        paragraph.add_run(str(alt))
      return
    try:
      payload = base64.b64decode(match.group(1), validate=False)
    except (binascii.Error, ValueError):
      logger.warning("Skipping image with undecodable data URI")
      return
    try:
      shape = paragraph.add_run().add_picture(io.BytesIO(payload))
    except Exception as exc:  # noqa: BLE001
      logger.warning("Skipping unsupported embedded image: %s", exc)
      return
    if shape.width > MAX_IMAGE_WIDTH:
      ratio = MAX_IMAGE_WIDTH / shape.width
      shape.height = int(shape.height * ratio)
      shape.width = MAX_IMAGE_WIDTH


def _apply_format(run: Any, fmt: dict[str, Any]) -> None:
  if fmt.get("bold"):
    run.bold = True
  if fmt.get("italic"):
    run.italic = True
  if fmt.get("underline"):
    run.underline = True
  if fmt.get("strike"):
    run.font.strike = True
  if fmt.get("superscript"):
    run.font.superscript = True
  if fmt.get("subscript"):
    run.font.subscript = True
  if fmt.get("font"):
    run.font.name = fmt["font"]
  if fmt.get("size"):
    run.font.size = Pt(fmt["size"])
  if fmt.get("color"):
    run.font.color.rgb = RGBColor.from_string(fmt["color"].lstrip("#")[-6:].upper())


def html_to_docx(html: str) -> bytes:
  """Render an HTML fragment into a standalone docx package."""
  document = Document()
  soup = BeautifulSoup(html or "", "html.parser")
  _HtmlRenderer(document).render_blocks(soup.body or soup)
  return _save(document)


def _add_runs(paragraph: DocxParagraph, runs: Iterable[TextRun]) -> None:
  for item in runs:
    run = paragraph.add_run(item.text)
    _apply_format(run, {"bold": item.bold, "italic": item.italic, "underline": item.underline, "strike": item.strike, "color": item.color, "font": item.font, "size": item.size})


def render_builder_document(nodes: Iterable[BlockNode]) -> bytes:
  """Render builder nodes, in order, into a standalone docx package."""
  document = Document()
  for node in nodes:
    if isinstance(node, Heading):
      _add_runs(document.add_heading("", level=node.level), node.runs)
    elif isinstance(node, Paragraph):
      _add_runs(document.add_paragraph(), node.runs)
    elif isinstance(node, BulletItem):
      _add_runs(document.add_paragraph(style="List Bullet"), node.runs)
    elif isinstance(node, NumberedItem):
      _add_runs(document.add_paragraph(style="List Number"), node.runs)
    elif isinstance(node, Table):
      columns = max((len(row) for row in node.rows), default=0)
      if not node.rows or columns == 0:
        continue
      table = document.add_table(rows=len(node.rows), cols=columns)
      table.style = "Table Grid"
      for row_index, row in enumerate(node.rows):
        for column_index, value in enumerate(row):
          table.cell(row_index, column_index).text = value
      if node.widths:
        for column_index, width in enumerate(node.widths[:columns]):
          for cell in table.columns[column_index].cells:
            cell.width = Inches(width)
    elif isinstance(node, PageBreak):
      document.add_paragraph().add_run().add_break(WD_BREAK.PAGE)
  return _save(document)


def markup_to_standalone(markup: str) -> bytes:
  """Fallback document holding the plain text of markup that could not be merged."""
  document = Document()
  text = BeautifulSoup(markup or "", "html.parser").get_text("\n")
  for line in text.splitlines():
    if line.strip():
      document.add_paragraph(line.strip())
  return _save(document)
