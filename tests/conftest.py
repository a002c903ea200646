"""Shared fixtures: isolated settings and in-memory OOXML template factories."""

from __future__ import annotations

import io
import os
import tempfile
import zipfile
from collections.abc import Callable

import pytest

# Settings are cached per process; point them at a throwaway library before anything imports them.
_LIBRARY_ROOT = tempfile.mkdtemp(prefix="docsmith-tests-")
os.environ["DOCSMITH_LIBRARY_ROOT"] = _LIBRARY_ROOT
os.environ["DOCSMITH_ALLOWED_ORIGINS"] = "http://localhost"
os.environ.pop("DOCSMITH_COMPLETION_API_KEY", None)

W_NAMESPACES = 'xmlns:w="http://schemas.openxmlformats.org/wordprocessingml/2006/main" xmlns:r="http://schemas.openxmlformats.org/officeDocument/2006/relationships"'
S_NAMESPACES = 'xmlns="http://schemas.openxmlformats.org/spreadsheetml/2006/main" xmlns:r="http://schemas.openxmlformats.org/officeDocument/2006/relationships"'
RELS_NS = "http://schemas.openxmlformats.org/package/2006/relationships"
REL_BASE = "http://schemas.openxmlformats.org/officeDocument/2006/relationships"
XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'

DEFAULT_STYLES_XML = (
  f'{XML_DECLARATION}<styleSheet xmlns="http://schemas.openxmlformats.org/spreadsheetml/2006/main">'
  '<fonts count="1"><font><sz val="11"/><name val="Calibri"/></font></fonts>'
  '<fills count="2"><fill><patternFill patternType="none"/></fill><fill><patternFill patternType="gray125"/></fill></fills>'
  '<borders count="1"><border><left/><right/><top/><bottom/><diagonal/></border></borders>'
  '<cellStyleXfs count="1"><xf numFmtId="0" fontId="0" fillId="0" borderId="0"/></cellStyleXfs>'
  '<cellXfs count="2"><xf numFmtId="0" fontId="0" fillId="0" borderId="0" xfId="0"/><xf numFmtId="4" fontId="0" fillId="0" borderId="0" xfId="0" applyNumberFormat="1"/></cellXfs>'
  "</styleSheet>"
)


def _zip(parts: dict[str, bytes | str]) -> bytes:
  buffer = io.BytesIO()
  with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
    for name, payload in parts.items():
      archive.writestr(name, payload)
  return buffer.getvalue()


def read_part(data: bytes, name: str) -> str:
  with zipfile.ZipFile(io.BytesIO(data)) as archive:
    return archive.read(name).decode("utf-8")


def part_names(data: bytes) -> list[str]:
  with zipfile.ZipFile(io.BytesIO(data)) as archive:
    return archive.namelist()


def build_docx(body: str, *, relationships: str = "", parts: dict[str, bytes | str] | None = None, defaults: str = "") -> bytes:
  """Minimal WordprocessingML package whose body is exactly `body`."""
  content_types = (
    f'{XML_DECLARATION}<Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types">'
    '<Default Extension="rels" ContentType="application/vnd.openxmlformats-package.relationships+xml"/>'
    '<Default Extension="xml" ContentType="application/xml"/>'
    f"{defaults}"
    '<Override PartName="/word/document.xml" ContentType="application/vnd.openxmlformats-officedocument.wordprocessingml.document.main+xml"/>'
    "</Types>"
  )
  package: dict[str, bytes | str] = {
    "[Content_Types].xml": content_types,
    "_rels/.rels": f'{XML_DECLARATION}<Relationships xmlns="{RELS_NS}"><Relationship Id="rId1" Type="{REL_BASE}/officeDocument" Target="word/document.xml"/></Relationships>',
    "word/document.xml": f"{XML_DECLARATION}<w:document {W_NAMESPACES}><w:body>{body}</w:body></w:document>",
    "word/_rels/document.xml.rels": f'{XML_DECLARATION}<Relationships xmlns="{RELS_NS}">{relationships}</Relationships>',
  }
  package.update(parts or {})
  return _zip(package)


def build_xlsx(
  sheets: dict[str, str],
  *,
  tails: dict[str, str] | None = None,
  shared_strings: list[str] | None = None,
  defined_names: str = "",
  calc_chain: bool = False,
  styles: str | None = DEFAULT_STYLES_XML,
  extra_parts: dict[str, bytes | str] | None = None,
  sheet_relationships: dict[str, str] | None = None,
) -> bytes:
  """Minimal SpreadsheetML package; `sheets` maps sheet names to their `<sheetData>` rows."""
  tails = tails or {}
  sheet_relationships = sheet_relationships or {}
  overrides = ['<Override PartName="/xl/workbook.xml" ContentType="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet.main+xml"/>']
  workbook_rels: list[str] = []
  sheet_entries: list[str] = []
  package: dict[str, bytes | str] = {}

  for index, (name, rows) in enumerate(sheets.items(), start=1):
    part = f"xl/worksheets/sheet{index}.xml"
    package[part] = f'{XML_DECLARATION}<worksheet {S_NAMESPACES}><dimension ref="A1"/><sheetData>{rows}</sheetData>{tails.get(name, "")}</worksheet>'
    if name in sheet_relationships:
      package[f"xl/worksheets/_rels/sheet{index}.xml.rels"] = f'{XML_DECLARATION}<Relationships xmlns="{RELS_NS}">{sheet_relationships[name]}</Relationships>'
    overrides.append(f'<Override PartName="/{part}" ContentType="application/vnd.openxmlformats-officedocument.spreadsheetml.worksheet+xml"/>')
    workbook_rels.append(f'<Relationship Id="rId{index}" Type="{REL_BASE}/worksheet" Target="worksheets/sheet{index}.xml"/>')
    sheet_entries.append(f'<sheet name="{name}" sheetId="{index}" r:id="rId{index}"/>')

  next_id = len(sheets) + 1
  if styles is not None:
    package["xl/styles.xml"] = styles
    overrides.append('<Override PartName="/xl/styles.xml" ContentType="application/vnd.openxmlformats-officedocument.spreadsheetml.styles+xml"/>')
    workbook_rels.append(f'<Relationship Id="rId{next_id}" Type="{REL_BASE}/styles" Target="styles.xml"/>')
    next_id += 1
  if shared_strings is not None:
    items = "".join(f"<si><t>{text}</t></si>" for text in shared_strings)
    package["xl/sharedStrings.xml"] = f'{XML_DECLARATION}<sst xmlns="http://schemas.openxmlformats.org/spreadsheetml/2006/main" count="{len(shared_strings)}" uniqueCount="{len(shared_strings)}">{items}</sst>'
    overrides.append('<Override PartName="/xl/sharedStrings.xml" ContentType="application/vnd.openxmlformats-officedocument.spreadsheetml.sharedStrings+xml"/>')
    workbook_rels.append(f'<Relationship Id="rId{next_id}" Type="{REL_BASE}/sharedStrings" Target="sharedStrings.xml"/>')
    next_id += 1
  if calc_chain:
    package["xl/calcChain.xml"] = f'{XML_DECLARATION}<calcChain xmlns="http://schemas.openxmlformats.org/spreadsheetml/2006/main"><c r="A1" i="1"/></calcChain>'
    overrides.append('<Override PartName="/xl/calcChain.xml" ContentType="application/vnd.openxmlformats-officedocument.spreadsheetml.calcChain+xml"/>')
    workbook_rels.append(f'<Relationship Id="rId{next_id}" Type="{REL_BASE}/calcChain" Target="calcChain.xml"/>')
    next_id += 1

  package["[Content_Types].xml"] = (
    f'{XML_DECLARATION}<Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types">'
    '<Default Extension="rels" ContentType="application/vnd.openxmlformats-package.relationships+xml"/>'
    '<Default Extension="xml" ContentType="application/xml"/>'
    f"{''.join(overrides)}</Types>"
  )
  package["_rels/.rels"] = f'{XML_DECLARATION}<Relationships xmlns="{RELS_NS}"><Relationship Id="rId1" Type="{REL_BASE}/officeDocument" Target="xl/workbook.xml"/></Relationships>'
  package["xl/workbook.xml"] = f'{XML_DECLARATION}<workbook {S_NAMESPACES}><sheets>{"".join(sheet_entries)}</sheets>{defined_names}<calcPr calcId="191029"/></workbook>'
  package["xl/_rels/workbook.xml.rels"] = f'{XML_DECLARATION}<Relationships xmlns="{RELS_NS}">{"".join(workbook_rels)}</Relationships>'
  package.update(extra_parts or {})
  return _zip(package)


@pytest.fixture
def anyio_backend() -> str:
  return "asyncio"


@pytest.fixture
def docx_factory() -> Callable[..., bytes]:
  return build_docx


@pytest.fixture
def xlsx_factory() -> Callable[..., bytes]:
  return build_xlsx


@pytest.fixture
def read_ooxml_part() -> Callable[[bytes, str], str]:
  return read_part


@pytest.fixture
def ooxml_part_names() -> Callable[[bytes], list[str]]:
  return part_names
