"""Simplified renderings of a template body, used by generators as a structural reference."""

from __future__ import annotations

import io
from html import escape
from typing import Literal

from docx import Document
from docx.table import Table as DocxTable
from docx.text.paragraph import Paragraph as DocxParagraph

from docsmith.merge.xlsx import WorkbookEditor, cell_text, column_letters
from docsmith.schema.results import TemplateKind

SkeletonFormat = Literal["html", "text"]


def _heading_level(paragraph: DocxParagraph) -> int | None:
  name = paragraph.style.name if paragraph.style is not None else ""
  if name == "Title":
    return 1
  if name.startswith("Heading "):
    suffix = name.removeprefix("Heading ")
    if suffix.isdigit():
      return min(int(suffix), 6)
  return None


def _is_list_item(paragraph: DocxParagraph) -> bool:
  name = paragraph.style.name if paragraph.style is not None else ""
  return name.startswith("List") or paragraph._p.pPr is not None and paragraph._p.pPr.numPr is not None


def _table_rows(table: DocxTable) -> list[list[str]]:
  return [[cell.text.strip() for cell in row.cells] for row in table.rows]


def document_skeleton(data: bytes, fmt: SkeletonFormat = "html") -> str:
  document = Document(io.BytesIO(data))
  lines: list[str] = []
  in_list = False
  for block in document.iter_inner_content():
    if isinstance(block, DocxTable):
      if in_list and fmt == "html":
        lines.append("</ul>")
      in_list = False
      rows = _table_rows(block)
      if fmt == "text":
        lines.extend(" | ".join(row) for row in rows)
        continue
      rendered = "".join("<tr>" + "".join(f"<td>{escape(value)}</td>" for value in row) + "</tr>" for row in rows)
      lines.append(f"<table>{rendered}</table>")
      continue

    text = block.text.strip()
    list_item = _is_list_item(block)
    if fmt == "text":
      if text:
        lines.append(f"- {text}" if list_item else text)
      continue
    if list_item and not in_list:
      lines.append("<ul>")
    elif not list_item and in_list:
      lines.append("</ul>")
    in_list = list_item
    level = _heading_level(block)
    if list_item:
      lines.append(f"<li>{escape(text)}</li>")
    elif level is not None:
      lines.append(f"<h{level}>{escape(text)}</h{level}>")
    elif text:
      lines.append(f"<p>{escape(text)}</p>")
  if in_list and fmt == "html":
    lines.append("</ul>")
  return "\n".join(lines)


def spreadsheet_skeleton(data: bytes, fmt: SkeletonFormat = "html") -> str:
  workbook = WorkbookEditor(data)
  shared = workbook.shared_strings()
  sections: list[str] = []
  for name in workbook.sheet_names:
    sheet = workbook.sheet(name)
    if fmt == "text":
      lines = [f"# {name}"]
      for row in sheet.rows:
        for cell in row.cells:
          value = cell_text(cell, shared)
          if value:
            lines.append(f"{column_letters(cell.column)}{row.number}: {value}")
      sections.append("\n".join(lines))
      continue
    rows = []
    for row in sheet.rows:
      cells = "".join(f'<td data-ref="{column_letters(cell.column)}{row.number}">{escape(cell_text(cell, shared))}</td>' for cell in row.cells)
      rows.append(f'<tr data-row="{row.number}">{cells}</tr>')
    sections.append(f'<table data-sheet="{escape(name)}">{"".join(rows)}</table>')
  return "\n".join(sections)


def template_skeleton(data: bytes, kind: TemplateKind, fmt: str = "html") -> str:
  """Render the template body as simplified HTML or plain text."""
  if fmt not in ("html", "text"):
    raise ValueError(f"Unsupported skeleton format {fmt!r}; use 'html' or 'text'.")
  if kind == "spreadsheet":
    return spreadsheet_skeleton(data, fmt)
  return document_skeleton(data, fmt)
