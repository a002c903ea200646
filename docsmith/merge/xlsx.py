"""Apply sheet operations to a spreadsheet template by editing its XML parts in place.

Only parts an operation touches are re-serialized; inside a touched worksheet, rows and
cells that were not written keep their original markup.
"""

from __future__ import annotations

import html
import logging
import math
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from xml.sax.saxutils import escape

from docsmith.core.errors import TemplateStructureError
from docsmith.merge.package import CONTENT_TYPES_PART, OoxmlPackage, main_part, part_relationships, rels_part_for, resolve_target
from docsmith.schema.results import CellWrite, InsertRows, SetCells, SheetOp, WriteRange

logger = logging.getLogger(__name__)

DEFAULT_WORKBOOK_PART = "xl/workbook.xml"
REL_TYPE_WORKSHEET = "http://schemas.openxmlformats.org/officeDocument/2006/relationships/worksheet"
REL_TYPE_TABLE = "http://schemas.openxmlformats.org/officeDocument/2006/relationships/table"
REL_TYPE_STYLES = "http://schemas.openxmlformats.org/officeDocument/2006/relationships/styles"
REL_TYPE_CALC_CHAIN = "http://schemas.openxmlformats.org/officeDocument/2006/relationships/calcChain"
REL_TYPE_SHARED_STRINGS = "http://schemas.openxmlformats.org/officeDocument/2006/relationships/sharedStrings"

MAX_COLUMN = 16384
MAX_ROW = 1048576
FIRST_CUSTOM_NUMFMT_ID = 164

BUILTIN_NUMBER_FORMATS = {
  "General": 0,
  "0": 1,
  "0.00": 2,
  "#,##0": 3,
  "#,##0.00": 4,
  "0%": 9,
  "0.00%": 10,
  "0.00E+00": 11,
  "# ?/?": 12,
  "# ??/??": 13,
  "mm-dd-yy": 14,
  "d-mmm-yy": 15,
  "d-mmm": 16,
  "mmm-yy": 17,
  "h:mm AM/PM": 18,
  "h:mm:ss AM/PM": 19,
  "h:mm": 20,
  "h:mm:ss": 21,
  "m/d/yy h:mm": 22,
  "@": 49,
}

_SHEET_RE = re.compile(r"<sheet\b([^>]*?)/?>")
_SHEET_DATA_RE = re.compile(r"<sheetData\b([^>]*?)(?:/>|>(.*?)</sheetData>)", re.DOTALL)
_ROW_RE = re.compile(r"<row\b([^>]*?)(?:/>|>(.*?)</row>)", re.DOTALL)
_CELL_RE = re.compile(r"<c\b([^>]*?)(?:/>|>(.*?)</c>)", re.DOTALL)
_FORMULA_RE = re.compile(r"<f\b([^>]*?)(?:/>|>(.*?)</f>)", re.DOTALL)
_COL_RE = re.compile(r"<col\b([^>]*?)/?>")
_ATTR_RE = re.compile(r'([\w:]+)="([^"]*)"')
_CELL_REF_RE = re.compile(r"^\$?([A-Za-z]{1,3})\$?([0-9]+)$")
_STRING_LITERAL_RE = re.compile(r'("(?:[^"]|"")*")')
_FORMULA_REF_RE = re.compile(r"(?<![A-Za-z0-9_.$'])((?:'(?:[^']|'')+'|[A-Za-z_][A-Za-z0-9_.]*)!)?(\$?[A-Za-z]{1,3}\$?[0-9]+)(?::(\$?[A-Za-z]{1,3}\$?[0-9]+))?(?![A-Za-z0-9_(!])")
_SHIFTABLE_REF_RE = re.compile(r"^(\$?[A-Za-z]{1,3}\$?)([0-9]+)$")
_RANGE_ATTR_RE = re.compile(r'(<(?:mergeCell|conditionalFormatting|dataValidation|hyperlink|autoFilter|table)\b[^>]*?\s(?:ref|sqref)=")([^"]*)(")')
_DIMENSION_RE = re.compile(r'(<dimension\b[^>]*?\sref=")([^"]*)(")')
_DEFINED_NAME_RE = re.compile(r"(<definedName\b[^>]*>)(.*?)(</definedName>)", re.DOTALL)
_ILLEGAL_XML_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")


def column_index(letters: str) -> int:
  """`A` -> 1, `AA` -> 27."""
  index = 0
  for char in letters.upper():
    index = index * 26 + (ord(char) - 64)
  return index


def column_letters(index: int) -> str:
  letters = ""
  while index > 0:
    index, remainder = divmod(index - 1, 26)
    letters = chr(65 + remainder) + letters
  return letters


def split_ref(ref: str) -> tuple[int, int]:
  """`$B$12` -> (2, 12)."""
  match = _CELL_REF_RE.match(ref)
  if match is None:
    raise ValueError(f"Invalid cell reference {ref!r}")
  column, row = column_index(match.group(1)), int(match.group(2))
  if not 1 <= column <= MAX_COLUMN or not 1 <= row <= MAX_ROW:
    raise ValueError(f"Cell reference {ref!r} is outside the worksheet grid")
  return column, row


def _attrs(text: str) -> dict[str, str]:
  return {name: html.unescape(value) for name, value in _ATTR_RE.findall(text)}


def _set_attr(attrs: str, name: str, value: str | None) -> str:
  """Set, replace, or (value None) remove one attribute in an open-tag attribute string."""
  pattern = re.compile(rf'\s{re.escape(name)}="[^"]*"')
  if value is None:
    return pattern.sub("", attrs, count=1)
  rendered = f' {name}="{escape(value, {chr(34): "&quot;"})}"'
  if pattern.search(attrs):
    return pattern.sub(lambda _: rendered, attrs, count=1)
  return attrs.rstrip() + rendered


def _argb(color: str) -> str:
  value = color.lstrip("#").upper()
  return value if len(value) == 8 else f"FF{value}"


def _unquote_sheet(qualifier: str) -> str:
  name = qualifier[:-1]
  if name.startswith("'") and name.endswith("'"):
    name = name[1:-1].replace("''", "'")
  return name


def _shift_ref(ref: str, *, at: int, count: int) -> str:
  """`$B$7` -> `$B$9` for at=5, count=2; references above `at` are unchanged."""
  match = _SHIFTABLE_REF_RE.match(ref)
  if match is None:
    return ref
  number = int(match.group(2))
  if number < at:
    return ref
  return f"{match.group(1)}{number + count}"


def shift_formula(formula: str, *, at: int, count: int, sheet_name: str, qualified_only: bool = False) -> str:
  """Move row references at or below `at` down by `count`.

  Unqualified references belong to the formula's own sheet; qualified ones shift only when
  they name `sheet_name`. String literals are never touched.
  """

  def _shift(match: re.Match[str]) -> str:
    qualifier, first, last = match.groups()
    if qualifier is None and qualified_only:
      return match.group(0)
    if qualifier is not None and _unquote_sheet(qualifier) != sheet_name:
      return match.group(0)
    shifted = _shift_ref(first, at=at, count=count)
    if last is not None:
      shifted += ":" + _shift_ref(last, at=at, count=count)
    return f"{qualifier or ''}{shifted}"

  pieces = _STRING_LITERAL_RE.split(formula)
  # Odd indexes are the captured string literals.
  return "".join(piece if index % 2 else _FORMULA_REF_RE.sub(_shift, piece) for index, piece in enumerate(pieces))


def shift_range_list(value: str, *, at: int, count: int) -> str:
  """Shift `A5:B6 C9` style reference lists used by merges, validations and tables."""
  ranges = []
  for item in value.split(" "):
    ranges.append(":".join(_shift_ref(ref, at=at, count=count) for ref in item.split(":")))
  return " ".join(ranges)


@dataclass
class _Cell:
  column: int
  attrs: str
  body: str | None
  raw: str | None

  def xml(self) -> str:
    if self.raw is not None:
      return self.raw
    if self.body is None or self.body == "":
      return f"<c{self.attrs}/>"
    return f"<c{self.attrs}>{self.body}</c>"

  @property
  def style(self) -> int | None:
    raw = _attrs(self.attrs).get("s")
    return int(raw) if raw is not None and raw.isdigit() else None

  @property
  def has_formula(self) -> bool:
    return self.body is not None and "<f" in self.body


@dataclass
class _Row:
  number: int
  attrs: str
  cells: list[_Cell] = field(default_factory=list)
  raw: str | None = None

  def xml(self) -> str:
    if self.raw is not None:
      return self.raw
    if not self.cells:
      return f"<row{self.attrs}/>"
    return f"<row{self.attrs}>{''.join(cell.xml() for cell in self.cells)}</row>"

  def touch(self) -> None:
    self.raw = None
    # Spans are an optional hint; stale spans make Excel repair the file.
    self.attrs = _set_attr(self.attrs, "spans", None)


class _StyleSheet:
  """Append-only editor for xl/styles.xml: new fonts, fills, number formats and cell formats."""

  _SECTION_NAMES = ("numFmts", "fonts", "fills", "cellXfs")

  def __init__(self, xml: str) -> None:
    self._xml = xml
    self._items: dict[str, list[str]] = {}
    self._added: dict[str, list[str]] = {name: [] for name in self._SECTION_NAMES}
    for name in self._SECTION_NAMES:
      self._items[name] = self._parse_section(name)
    if not self._items["fonts"] or not self._items["fills"] or not self._items["cellXfs"]:
      raise TemplateStructureError("styles.xml is missing fonts, fills or cell formats.")
    self._custom_formats = {html.unescape(_attrs(item).get("formatCode", "")): int(_attrs(item).get("numFmtId", "0")) for item in self._items["numFmts"]}
    self._cache: dict[tuple, int] = {}
    self.modified = False

  def _section(self, name: str) -> re.Match[str] | None:
    return re.search(rf"<{name}\b([^>]*?)(?:/>|>(.*?)</{name}>)", self._xml, re.DOTALL)

  def _parse_section(self, name: str) -> list[str]:
    match = self._section(name)
    if match is None or match.group(2) is None:
      return []
    element = {"numFmts": "numFmt", "fonts": "font", "fills": "fill", "cellXfs": "xf"}[name]
    return [item.group(0) for item in re.finditer(rf"<{element}\b[^>]*?(?:/>|>.*?</{element}>)", match.group(2), re.DOTALL)]

  def _append(self, section: str, item: str) -> int:
    self._items[section].append(item)
    self._added[section].append(item)
    self.modified = True
    return len(self._items[section]) - 1

  def _number_format_id(self, code: str) -> int:
    if code in BUILTIN_NUMBER_FORMATS:
      return BUILTIN_NUMBER_FORMATS[code]
    if code in self._custom_formats:
      return self._custom_formats[code]
    next_id = max([FIRST_CUSTOM_NUMFMT_ID - 1, *self._custom_formats.values()]) + 1
    self._append("numFmts", f'<numFmt numFmtId="{next_id}" formatCode="{escape(code, {chr(34): "&quot;"})}"/>')
    self._custom_formats[code] = next_id
    return next_id

  def _derive_font(self, font_id: int, write: CellWrite) -> int:
    base = self._items["fonts"][font_id] if font_id < len(self._items["fonts"]) else self._items["fonts"][0]
    if base.endswith("/>") and "</font>" not in base:
      base = base[:-2].rstrip() + "></font>"
    open_end = base.index(">") + 1
    head, inner = base[:open_end], base[open_end : -len("</font>")]
    for flag, tag in ((write.bold, "b"), (write.italic, "i"), (write.strike, "strike"), (write.underline, "u")):
      if flag is None:
        continue
      inner = re.sub(rf"<{tag}\b[^>]*/>", "", inner)
      if flag:
        inner = f"<{tag}/>" + inner
    if write.color is not None:
      inner = re.sub(r"<color\b[^>]*/>", "", inner)
      inner = f'<color rgb="{_argb(write.color)}"/>' + inner
    derived = f"{head}{inner}</font>"
    if derived in self._items["fonts"]:
      return self._items["fonts"].index(derived)
    return self._append("fonts", derived)

  def _derive_fill(self, color: str) -> int:
    argb = _argb(color)
    fill = f'<fill><patternFill patternType="solid"><fgColor rgb="{argb}"/><bgColor indexed="64"/></patternFill></fill>'
    if fill in self._items["fills"]:
      return self._items["fills"].index(fill)
    return self._append("fills", fill)

  def derive(self, base_index: int | None, write: CellWrite) -> int:
    """Index of a cell format equal to `base_index` plus the write's style overrides."""
    key = (base_index, write.number_format, write.bold, write.italic, write.underline, write.strike, write.color, write.bg, write.align, write.wrap)
    if key in self._cache:
      return self._cache[key]

    xfs = self._items["cellXfs"]
    base = xfs[base_index] if base_index is not None and base_index < len(xfs) else xfs[0]
    match = re.match(r"<xf\b([^>]*?)(?:/>|>(.*?)</xf>)", base, re.DOTALL)
    if match is None:
      raise TemplateStructureError("styles.xml contains an unreadable cell format.")
    attrs, body = match.group(1), match.group(2) or ""
    current = _attrs(attrs)

    if write.number_format is not None:
      attrs = _set_attr(attrs, "numFmtId", str(self._number_format_id(write.number_format)))
      attrs = _set_attr(attrs, "applyNumberFormat", "1")
    if any(value is not None for value in (write.bold, write.italic, write.underline, write.strike, write.color)):
      attrs = _set_attr(attrs, "fontId", str(self._derive_font(int(current.get("fontId", "0")), write)))
      attrs = _set_attr(attrs, "applyFont", "1")
    if write.bg is not None:
      attrs = _set_attr(attrs, "fillId", str(self._derive_fill(write.bg)))
      attrs = _set_attr(attrs, "applyFill", "1")
    if write.align is not None or write.wrap is not None:
      alignment = re.search(r"<alignment\b([^>]*?)/>", body)
      alignment_attrs = alignment.group(1) if alignment is not None else ""
      if write.align is not None:
        alignment_attrs = _set_attr(alignment_attrs, "horizontal", write.align)
      if write.wrap is not None:
        alignment_attrs = _set_attr(alignment_attrs, "wrapText", "1" if write.wrap else None)
      rendered = f"<alignment{alignment_attrs}/>"
      # alignment precedes protection in CT_Xf.
      body = body.replace(alignment.group(0), rendered) if alignment is not None else rendered + body
      attrs = _set_attr(attrs, "applyAlignment", "1")

    derived = f"<xf{attrs}>{body}</xf>" if body else f"<xf{attrs}/>"
    index = xfs.index(derived) if derived in xfs else self._append("cellXfs", derived)
    self._cache[key] = index
    return index

  def to_xml(self) -> str:
    xml = self._xml
    for name in self._SECTION_NAMES:
      added = self._added[name]
      if not added:
        continue
      match = self._section(name)
      total = str(len(self._items[name]))
      if match is None:
        # numFmts is the first child of styleSheet.
        opening = re.search(r"<styleSheet\b[^>]*>", xml)
        if opening is None:
          raise TemplateStructureError("styles.xml has no styleSheet element.")
        section = f'<{name} count="{total}">{"".join(added)}</{name}>'
        xml = xml[: opening.end()] + section + xml[opening.end() :]
        continue
      attrs = _set_attr(match.group(1), "count", total)
      section = f"<{name}{attrs}>{match.group(2) or ''}{''.join(added)}</{name}>"
      xml = xml[: match.start()] + section + xml[match.end() :]
    return xml


class _Worksheet:
  """Row/cell view over one worksheet part that re-serializes only what changed."""

  def __init__(self, name: str, part: str, xml: str) -> None:
    self.name = name
    self.part = part
    data = _SHEET_DATA_RE.search(xml)
    if data is None:
      raise TemplateStructureError(f"Worksheet {name!r} has no sheetData element.")
    self._head = xml[: data.start()]
    self._tail = xml[data.end() :]
    self._data_attrs = data.group(1).rstrip()
    self._rows = self._parse_rows(data.group(2) or "")
    self._column_styles = self._parse_column_styles(self._head)
    self.modified = False
    self.formulas_disturbed = False

  @property
  def rows(self) -> list[_Row]:
    return list(self._rows)

  @staticmethod
  def _parse_rows(inner: str) -> list[_Row]:
    rows: list[_Row] = []
    previous = 0
    for match in _ROW_RE.finditer(inner):
      attrs = match.group(1)
      number_raw = _attrs(attrs).get("r")
      number = int(number_raw) if number_raw and number_raw.isdigit() else previous + 1
      previous = number
      row = _Row(number=number, attrs=attrs.rstrip(), raw=match.group(0))
      previous_column = 0
      for cell_match in _CELL_RE.finditer(match.group(2) or ""):
        ref = _attrs(cell_match.group(1)).get("r")
        column = split_ref(ref)[0] if ref else previous_column + 1
        previous_column = column
        row.cells.append(_Cell(column=column, attrs=cell_match.group(1).rstrip(), body=cell_match.group(2), raw=cell_match.group(0)))
      rows.append(row)
    return rows

  @staticmethod
  def _parse_column_styles(head: str) -> list[tuple[int, int, int]]:
    styles = []
    for match in _COL_RE.finditer(head):
      attrs = _attrs(match.group(1))
      if "style" in attrs and "min" in attrs and "max" in attrs:
        styles.append((int(attrs["min"]), int(attrs["max"]), int(attrs["style"])))
    return styles

  def _find_row(self, number: int) -> _Row | None:
    return next((row for row in self._rows if row.number == number), None)

  def _ensure_row(self, number: int) -> _Row:
    row = self._find_row(number)
    if row is None:
      row = _Row(number=number, attrs=f' r="{number}"')
      self._rows.append(row)
      self._rows.sort(key=lambda item: item.number)
    return row

  def _default_style(self, row: _Row, column: int) -> int | None:
    row_attrs = _attrs(row.attrs)
    if row_attrs.get("customFormat") in {"1", "true"} and row_attrs.get("s", "").isdigit():
      return int(row_attrs["s"])
    for first, last, style in self._column_styles:
      if first <= column <= last:
        return style
    return None

  def _ensure_cell(self, row: _Row, column: int) -> _Cell:
    for cell in row.cells:
      if cell.column == column:
        return cell
    style = self._default_style(row, column)
    attrs = f' r="{column_letters(column)}{row.number}"'
    if style:
      attrs += f' s="{style}"'
    cell = _Cell(column=column, attrs=attrs, body=None, raw=None)
    row.cells.append(cell)
    row.cells.sort(key=lambda item: item.column)
    return cell

  def insert_rows(self, op: InsertRows) -> None:
    at, count = op.at, op.count
    for row in self._rows:
      if row.number >= at:
        row.number += count
        row.touch()
        row.attrs = _set_attr(row.attrs, "r", str(row.number))
        for cell in row.cells:
          cell.raw = None
          cell.attrs = _set_attr(cell.attrs, "r", f"{column_letters(cell.column)}{row.number}")

    for row in self._rows:
      for cell in row.cells:
        if not cell.has_formula:
          continue
        shifted = _FORMULA_RE.sub(lambda match: self._shift_formula_element(match, at, count), cell.body)
        if shifted != cell.body:
          cell.body = shifted
          cell.raw = None
          row.touch()

    self._tail = _RANGE_ATTR_RE.sub(lambda match: f"{match.group(1)}{shift_range_list(match.group(2), at=at, count=count)}{match.group(3)}", self._tail)

    if op.copy_style_from_row is not None:
      source = self._find_row(op.copy_style_from_row)
      if source is not None:
        self._clone_row_style(source, range(at, at + count))

    self.modified = True
    self.formulas_disturbed = True

  def _shift_formula_element(self, match: re.Match[str], at: int, count: int) -> str:
    attrs, text = match.group(1), match.group(2)
    shared_ref = _attrs(attrs).get("ref")
    if shared_ref:
      attrs = _set_attr(attrs, "ref", shift_range_list(shared_ref, at=at, count=count))
    if text is None:
      return f"<f{attrs}/>"
    shifted = shift_formula(html.unescape(text), at=at, count=count, sheet_name=self.name)
    return f"<f{attrs}>{escape(shifted)}</f>"

  def shift_qualified_references(self, sheet_name: str, at: int, count: int) -> None:
    """Follow rows inserted on another sheet in formulas that name that sheet."""

    def _shift(match: re.Match[str]) -> str:
      if match.group(2) is None:
        return match.group(0)
      shifted = shift_formula(html.unescape(match.group(2)), at=at, count=count, sheet_name=sheet_name, qualified_only=True)
      return f"<f{match.group(1)}>{escape(shifted)}</f>"

    for row in self._rows:
      for cell in row.cells:
        if not cell.has_formula:
          continue
        body = _FORMULA_RE.sub(_shift, cell.body)
        if body != cell.body:
          cell.body = body
          cell.raw = None
          row.touch()
          self.modified = True
          self.formulas_disturbed = True

  def _clone_row_style(self, source: _Row, numbers: Iterable[int]) -> None:
    source_attrs = _attrs(source.attrs)
    for number in numbers:
      row = self._ensure_row(number)
      row.touch()
      for name in ("s", "customFormat", "ht", "customHeight"):
        if name in source_attrs:
          row.attrs = _set_attr(row.attrs, name, source_attrs[name])
      for source_cell in source.cells:
        style = source_cell.style
        if style is None:
          continue
        cell = self._ensure_cell(row, source_cell.column)
        cell.raw = None
        cell.attrs = _set_attr(cell.attrs, "s", str(style))

  def write_cell(self, write: CellWrite, styles: _StyleSheet | None) -> None:
    column, number = split_ref(write.ref)
    row = self._ensure_row(number)
    cell = self._ensure_cell(row, column)
    row.touch()
    cell.raw = None

    if write.has_style:
      if styles is None:
        raise TemplateStructureError("Workbook has no styles part; cell formatting cannot be applied.")
      style = styles.derive(cell.style, write)
      cell.attrs = _set_attr(cell.attrs, "s", str(style) if style else None)

    # None leaves the existing value in place so style-only writes keep content.
    if write.value is None:
      self.modified = True
      return

    if cell.has_formula:
      self.formulas_disturbed = True
    cell_type, body = _value_markup(write.value)
    for name in ("t", "vm", "cm"):
      cell.attrs = _set_attr(cell.attrs, name, None)
    if cell_type is not None:
      cell.attrs = _set_attr(cell.attrs, "t", cell_type)
    cell.body = body
    self.modified = True

  def _dimension(self) -> str | None:
    cells = [(cell.column, row.number) for row in self._rows for cell in row.cells]
    if not cells:
      return None
    columns = [column for column, _ in cells]
    numbers = [number for _, number in cells]
    first = f"{column_letters(min(columns))}{min(numbers)}"
    last = f"{column_letters(max(columns))}{max(numbers)}"
    return first if first == last else f"{first}:{last}"

  def to_xml(self) -> str:
    head = self._head
    dimension = self._dimension()
    if dimension is not None:
      head = _DIMENSION_RE.sub(lambda match: f"{match.group(1)}{dimension}{match.group(3)}", head, count=1)
    rows = "".join(row.xml() for row in self._rows)
    return f"{head}<sheetData{self._data_attrs}>{rows}</sheetData>{self._tail}"


def _format_number(value: int | float) -> str:
  if isinstance(value, int):
    return str(value)
  if value.is_integer() and abs(value) < 1e15:
    return str(int(value))
  return repr(value)


def _value_markup(value: str | int | float | bool) -> tuple[str | None, str]:
  """Return the cell `t` attribute and body for a written value; strings are inline."""
  if isinstance(value, bool):
    return "b", f"<v>{1 if value else 0}</v>"
  if isinstance(value, int | float) and (isinstance(value, int) or math.isfinite(value)):
    return None, f"<v>{_format_number(value)}</v>"
  text = _ILLEGAL_XML_CHARS_RE.sub("", str(value))
  if text == "":
    return None, ""
  if text.startswith("=") and len(text) > 1:
    return None, f"<f>{escape(text[1:])}</f>"
  return "inlineStr", f'<is><t xml:space="preserve">{escape(text)}</t></is>'


def inline_text(markup: str) -> str:
  """Concatenated `<t>` text of a string item, skipping phonetic runs."""
  markup = re.sub(r"<rPh\b.*?</rPh>", "", markup, flags=re.DOTALL)
  return "".join(html.unescape(text) for text in re.findall(r"<t\b[^>]*>(.*?)</t>", markup, re.DOTALL))


def cell_text(cell: _Cell, shared_strings: Sequence[str]) -> str:
  """Display text for a parsed cell: cached values, or the formula when nothing is cached."""
  body = cell.body or ""
  cell_type = _attrs(cell.attrs).get("t", "n")
  value = re.search(r"<v\b[^>]*>(.*?)</v>", body, re.DOTALL)
  if cell_type == "inlineStr":
    return inline_text(body)
  if value is not None:
    raw = html.unescape(value.group(1))
    if cell_type == "s":
      index = int(raw) if raw.isdigit() else -1
      return shared_strings[index] if 0 <= index < len(shared_strings) else ""
    if cell_type == "b":
      return "TRUE" if raw == "1" else "FALSE"
    return raw
  formula = _FORMULA_RE.search(body)
  if formula is not None and formula.group(2):
    return "=" + html.unescape(formula.group(2))
  return ""


def expand_range(op: WriteRange) -> list[CellWrite]:
  """Turn a rectangular value grid into per-cell writes anchored at `op.start`; None cells are skipped."""
  start_column, start_row = split_ref(op.start)
  writes: list[CellWrite] = []
  for row_offset, values in enumerate(op.values):
    for column_offset, value in enumerate(values):
      if value is None:
        continue
      ref = f"{column_letters(start_column + column_offset)}{start_row + row_offset}"
      writes.append(CellWrite(ref=ref, value=value, number_format=op.number_format))
  return writes


class WorkbookEditor:
  """Apply SheetOps to a workbook package held in memory."""

  def __init__(self, data: bytes) -> None:
    self._package = OoxmlPackage(data)
    self._workbook_part = main_part(self._package, DEFAULT_WORKBOOK_PART)
    self._workbook_xml = self._package.read_text(self._workbook_part)
    self._workbook_modified = False
    self._relationships = part_relationships(self._package, self._workbook_part)
    self._sheets = self._parse_sheets()
    if not self._sheets:
      raise TemplateStructureError("Workbook declares no worksheets.")
    self._open: dict[str, _Worksheet] = {}
    self._styles: _StyleSheet | None = None
    self._styles_part: str | None = None

  def _parse_sheets(self) -> list[tuple[str, str]]:
    targets = {rel.rel_id: resolve_target(self._workbook_part, rel.target) for rel in self._relationships if rel.rel_type == REL_TYPE_WORKSHEET}
    sheets = []
    for match in _SHEET_RE.finditer(self._workbook_xml):
      attrs = _attrs(match.group(1))
      target = targets.get(attrs.get("r:id", ""))
      # Chart sheets and dialog sheets are not editable targets.
      if target is not None:
        sheets.append((attrs.get("name", ""), target))
    return sheets

  @property
  def sheet_names(self) -> list[str]:
    return [name for name, _ in self._sheets]

  def sheet(self, name: str | None) -> _Worksheet:
    if name is None:
      sheet_name, part = self._sheets[0]
    else:
      found = next(((sheet_name, part) for sheet_name, part in self._sheets if sheet_name == name), None)
      if found is None:
        found = next(((sheet_name, part) for sheet_name, part in self._sheets if sheet_name.casefold() == name.casefold()), None)
      if found is None:
        raise TemplateStructureError(f"Worksheet {name!r} not found; available: {', '.join(self.sheet_names)}")
      sheet_name, part = found
    if part not in self._open:
      if part not in self._package:
        raise TemplateStructureError(f"Worksheet part {part} for {sheet_name!r} is missing.")
      self._open[part] = _Worksheet(sheet_name, part, self._package.read_text(part))
    return self._open[part]

  def shared_strings(self) -> list[str]:
    """Plain text of every shared string item, in index order."""
    part = next((resolve_target(self._workbook_part, rel.target) for rel in self._relationships if rel.rel_type == REL_TYPE_SHARED_STRINGS), None)
    if part is None or part not in self._package:
      return []
    items = re.findall(r"<si\b[^>]*>(.*?)</si>", self._package.read_text(part), re.DOTALL)
    return [inline_text(item) for item in items]

  def _stylesheet(self) -> _StyleSheet | None:
    if self._styles is None:
      part = next((resolve_target(self._workbook_part, rel.target) for rel in self._relationships if rel.rel_type == REL_TYPE_STYLES), None)
      if part is None or part not in self._package:
        return None
      self._styles_part = part
      self._styles = _StyleSheet(self._package.read_text(part))
    return self._styles

  def apply(self, ops: Sequence[SheetOp]) -> None:
    for op in ops:
      worksheet = self.sheet(op.sheet)
      if isinstance(op, InsertRows):
        worksheet.insert_rows(op)
        self._shift_sheet_references(worksheet, op)
      elif isinstance(op, SetCells):
        for write in op.cells:
          worksheet.write_cell(write, self._stylesheet() if write.has_style else None)
      elif isinstance(op, WriteRange):
        for write in expand_range(op):
          worksheet.write_cell(write, self._stylesheet() if write.has_style else None)

  def _shift_sheet_references(self, worksheet: _Worksheet, op: InsertRows) -> None:
    """Keep defined names and table ranges pointing at the same cells after an insert."""

    def _shift_defined(match: re.Match[str]) -> str:
      shifted = shift_formula(html.unescape(match.group(2)), at=op.at, count=op.count, sheet_name=worksheet.name, qualified_only=True)
      return f"{match.group(1)}{escape(shifted)}{match.group(3)}"

    updated = _DEFINED_NAME_RE.sub(_shift_defined, self._workbook_xml)
    if updated != self._workbook_xml:
      self._workbook_xml = updated
      self._workbook_modified = True

    for name, _ in self._sheets:
      other = self.sheet(name)
      if other is not worksheet:
        other.shift_qualified_references(worksheet.name, op.at, op.count)

    for relationship in part_relationships(self._package, worksheet.part):
      if relationship.rel_type != REL_TYPE_TABLE or relationship.external:
        continue
      table_part = resolve_target(worksheet.part, relationship.target)
      if table_part not in self._package:
        continue
      xml = self._package.read_text(table_part)
      shifted = _RANGE_ATTR_RE.sub(lambda match: f"{match.group(1)}{shift_range_list(match.group(2), at=op.at, count=op.count)}{match.group(3)}", xml)
      if shifted != xml:
        self._package.write_text(table_part, shifted)

  def _drop_calc_chain(self) -> None:
    calc_rel = next((rel for rel in self._relationships if rel.rel_type == REL_TYPE_CALC_CHAIN), None)
    if calc_rel is None:
      return
    part = resolve_target(self._workbook_part, calc_rel.target)
    self._package.remove(part)
    rels_part = rels_part_for(self._workbook_part)
    rels_xml = self._package.read_text(rels_part)
    self._package.write_text(rels_part, re.sub(rf'<Relationship\b[^>]*\bId="{re.escape(calc_rel.rel_id)}"[^>]*/>', "", rels_xml))
    types_xml = self._package.read_text(CONTENT_TYPES_PART)
    self._package.write_text(CONTENT_TYPES_PART, re.sub(rf'<Override\b[^>]*\bPartName="/{re.escape(part)}"[^>]*/>', "", types_xml))
    logger.debug("Dropped calculation chain %s", part)

  def _request_full_calculation(self) -> None:
    calc = re.search(r"<calcPr\b([^>]*?)/>", self._workbook_xml)
    if calc is not None:
      replacement = f"<calcPr{_set_attr(calc.group(1), 'fullCalcOnLoad', '1')}/>"
      self._workbook_xml = self._workbook_xml[: calc.start()] + replacement + self._workbook_xml[calc.end() :]
    else:
      anchors = [match.end() for match in re.finditer(r"</sheets>|</functionGroups>|<functionGroups\b[^>]*/>|</externalReferences>|</definedNames>", self._workbook_xml)]
      if not anchors:
        return
      position = max(anchors)
      self._workbook_xml = self._workbook_xml[:position] + '<calcPr fullCalcOnLoad="1"/>' + self._workbook_xml[position:]
    self._workbook_modified = True

  def to_bytes(self) -> bytes:
    touched = [sheet for sheet in self._open.values() if sheet.modified]
    for sheet in touched:
      self._package.write_text(sheet.part, sheet.to_xml())
    if self._styles is not None and self._styles.modified and self._styles_part is not None:
      self._package.write_text(self._styles_part, self._styles.to_xml())
    if any(sheet.formulas_disturbed for sheet in touched):
      self._drop_calc_chain()
    if touched:
      self._request_full_calculation()
    if self._workbook_modified:
      self._package.write_text(self._workbook_part, self._workbook_xml)
    return self._package.to_bytes()


def merge_spreadsheet(template: bytes, ops: Sequence[SheetOp]) -> bytes:
  """Apply the ordered ops to a copy of the template workbook and return the new archive."""
  editor = WorkbookEditor(template)
  try:
    editor.apply(ops)
  except ValueError as exc:
    raise TemplateStructureError(f"Sheet operation could not be applied: {exc}") from exc
  return editor.to_bytes()
