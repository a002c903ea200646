"""Tagged result shapes produced by generation artifacts.

Artifacts return loosely shaped Python values; the sandbox converts them into these
structs so the merge engine only ever sees one validated variant per template kind.
"""

from __future__ import annotations

from typing import Annotated, Literal

import msgspec

CELL_REF_PATTERN = r"^\$?[A-Za-z]{1,3}\$?[1-9][0-9]*$"
HEX_COLOR_PATTERN = r"^#?(?:[0-9A-Fa-f]{6}|[0-9A-Fa-f]{8})$"

CellRef = Annotated[str, msgspec.Meta(pattern=CELL_REF_PATTERN)]
HexColor = Annotated[str, msgspec.Meta(pattern=HEX_COLOR_PATTERN)]
RowNumber = Annotated[int, msgspec.Meta(ge=1)]
Scalar = str | int | float | bool | None

TemplateKind = Literal["document", "spreadsheet"]


class TextRun(msgspec.Struct, frozen=True, omit_defaults=True, forbid_unknown_fields=True):
  text: str
  bold: bool = False
  italic: bool = False
  underline: bool = False
  strike: bool = False
  color: HexColor | None = None
  font: str | None = None
  size: Annotated[float, msgspec.Meta(gt=0, le=400)] | None = None


class Heading(msgspec.Struct, tag_field="type", tag="heading", frozen=True, forbid_unknown_fields=True):
  level: Annotated[int, msgspec.Meta(ge=1, le=9)]
  runs: tuple[TextRun, ...]


class Paragraph(msgspec.Struct, tag_field="type", tag="paragraph", frozen=True, forbid_unknown_fields=True):
  runs: tuple[TextRun, ...]


class BulletItem(msgspec.Struct, tag_field="type", tag="bullet_item", frozen=True, forbid_unknown_fields=True):
  runs: tuple[TextRun, ...]


class NumberedItem(msgspec.Struct, tag_field="type", tag="numbered_item", frozen=True, forbid_unknown_fields=True):
  runs: tuple[TextRun, ...]


class Table(msgspec.Struct, tag_field="type", tag="table", frozen=True, forbid_unknown_fields=True):
  rows: tuple[tuple[str, ...], ...]
  widths: tuple[Annotated[float, msgspec.Meta(gt=0)], ...] | None = None


class PageBreak(msgspec.Struct, tag_field="type", tag="page_break", frozen=True, forbid_unknown_fields=True):
  pass


BlockNode = Heading | Paragraph | BulletItem | NumberedItem | Table | PageBreak


class CellWrite(msgspec.Struct, omit_defaults=True, forbid_unknown_fields=True):
  ref: CellRef
  value: Scalar = None
  number_format: str | None = None
  bold: bool | None = None
  italic: bool | None = None
  underline: bool | None = None
  strike: bool | None = None
  color: HexColor | None = None
  bg: HexColor | None = None
  align: Literal["left", "center", "right", "justify"] | None = None
  wrap: bool | None = None

  @property
  def has_style(self) -> bool:
    return any(value is not None for value in (self.number_format, self.bold, self.italic, self.underline, self.strike, self.color, self.bg, self.align, self.wrap))


class InsertRows(msgspec.Struct, tag_field="op", tag="insert_rows", forbid_unknown_fields=True):
  at: RowNumber
  count: Annotated[int, msgspec.Meta(ge=1, le=100000)] = 1
  copy_style_from_row: RowNumber | None = None
  sheet: str | None = None


class SetCells(msgspec.Struct, tag_field="op", tag="set_cells", forbid_unknown_fields=True):
  cells: list[CellWrite]
  sheet: str | None = None


class WriteRange(msgspec.Struct, tag_field="op", tag="write_range", forbid_unknown_fields=True):
  start: CellRef
  values: list[list[Scalar]]
  number_format: str | None = None
  sheet: str | None = None


SheetOp = InsertRows | SetCells | WriteRange


class DocumentResult(msgspec.Struct, tag_field="kind", tag="document"):
  """Body-level WordprocessingML fragment, optionally with the package it was cut from."""

  markup: str
  # Standalone archive the fragment came from; its image relationships are merged too.
  package: bytes | None = None


class SpreadsheetResult(msgspec.Struct, tag_field="kind", tag="spreadsheet"):
  sheet_ops: list[SheetOp]


class BuilderDocumentResult(msgspec.Struct, tag_field="kind", tag="builder", frozen=True):
  """Saved builder output; immutable so a generator cannot edit it after `save()`."""

  nodes: tuple[BlockNode, ...]


GenerationResult = DocumentResult | SpreadsheetResult | BuilderDocumentResult


def expected_kind(result: GenerationResult) -> TemplateKind:
  """Return the template kind a result variant may be merged into."""
  if isinstance(result, SpreadsheetResult):
    return "spreadsheet"
  return "document"
