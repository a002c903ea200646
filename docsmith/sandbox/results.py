"""Convert whatever a generator returned into the GenerationResult variant for its template kind."""

from __future__ import annotations

from typing import Any

import msgspec

from docsmith.core.errors import ResultShapeError
from docsmith.merge.docx import extract_body_fragment
from docsmith.merge.render import html_to_docx, markdown_to_html
from docsmith.sandbox.builder import DocumentBuilder
from docsmith.schema.results import BuilderDocumentResult, DocumentResult, GenerationResult, SheetOp, SpreadsheetResult, TemplateKind

_DOCUMENT_KEYS = ("markup", "html", "markdown", "docx")
_SPREADSHEET_KEYS = ("sheet_ops", "sheets")

# Grouped per-sheet shape produced by older generators.
_LEGACY_CELL_KEYS = {"v": "value", "numFmt": "number_format"}
_LEGACY_INSERT_KEYS = {"copyStyleFromRow": "copy_style_from_row"}
_LEGACY_RANGE_KEYS = {"numFmt": "number_format"}


def _describe(value: Any) -> str:
  if isinstance(value, dict):
    return f"dict with keys {sorted(str(key) for key in value)[:8]}"
  return type(value).__name__


def _rename(item: Any, mapping: dict[str, str]) -> Any:
  if not isinstance(item, dict):
    return item
  return {mapping.get(key, key): value for key, value in item.items()}


def flatten_legacy_sheets(sheets: Any) -> list[dict[str, Any]]:
  """`{"sheets": [{name, insertRows, cells, ranges}]}` -> ordered op dicts (insertRows, cells, ranges per sheet)."""
  if not isinstance(sheets, list):
    raise ResultShapeError("'sheets' must be a list of sheet specs.")
  ops: list[dict[str, Any]] = []
  for spec in sheets:
    if not isinstance(spec, dict):
      raise ResultShapeError(f"Sheet spec must be a dict, got {_describe(spec)}.")
    sheet = spec.get("name")
    for insert in spec.get("insertRows") or []:
      ops.append({"op": "insert_rows", **_rename(insert, _LEGACY_INSERT_KEYS), "sheet": sheet})
    cells = spec.get("cells") or []
    if cells:
      ops.append({"op": "set_cells", "cells": [_rename(cell, _LEGACY_CELL_KEYS) for cell in cells], "sheet": sheet})
    for block in spec.get("ranges") or []:
      ops.append({"op": "write_range", **_rename(block, _LEGACY_RANGE_KEYS), "sheet": sheet})
  return ops


def _document_from_package(package: bytes) -> DocumentResult:
  try:
    markup = extract_body_fragment(package)
  except Exception as exc:  # noqa: BLE001
    raise ResultShapeError(f"Returned docx bytes are not a readable document: {exc}") from exc
  return DocumentResult(markup=markup, package=package)


def _normalize_document(value: Any, builder: DocumentBuilder) -> GenerationResult:
  if isinstance(value, BuilderDocumentResult):
    return value
  if value is None:
    if builder.saved is not None:
      return builder.saved
    if builder.has_nodes:
      return builder.save()
    raise ResultShapeError("Generator returned nothing and added no content to the builder.")
  if not isinstance(value, dict):
    raise ResultShapeError(f"Document generators must return a dict or the saved builder document, got {_describe(value)}.")
  if any(key in value for key in _SPREADSHEET_KEYS):
    raise ResultShapeError("Generator returned spreadsheet operations for a document template.")

  if isinstance(value.get("markup"), str):
    return DocumentResult(markup=value["markup"])
  if isinstance(value.get("html"), str):
    return _document_from_package(html_to_docx(value["html"]))
  if isinstance(value.get("markdown"), str):
    return _document_from_package(html_to_docx(markdown_to_html(value["markdown"])))
  if isinstance(value.get("docx"), bytes | bytearray):
    return _document_from_package(bytes(value["docx"]))
  raise ResultShapeError(f"Document generators must return one of {', '.join(_DOCUMENT_KEYS)}; got {_describe(value)}.")


def _normalize_spreadsheet(value: Any, builder: DocumentBuilder) -> GenerationResult:
  if isinstance(value, BuilderDocumentResult) or (value is None and builder.has_nodes):
    raise ResultShapeError("Generator built a document for a spreadsheet template.")
  if isinstance(value, list):
    raw_ops: Any = value
  elif isinstance(value, dict) and "sheet_ops" in value:
    raw_ops = value["sheet_ops"]
  elif isinstance(value, dict) and "sheets" in value:
    raw_ops = flatten_legacy_sheets(value["sheets"])
  elif isinstance(value, dict) and any(key in value for key in _DOCUMENT_KEYS):
    raise ResultShapeError("Generator returned document content for a spreadsheet template.")
  else:
    raise ResultShapeError(f"Spreadsheet generators must return sheet operations, got {_describe(value)}.")

  try:
    ops = msgspec.convert(raw_ops, list[SheetOp])
  except msgspec.ValidationError as exc:
    raise ResultShapeError(f"Invalid sheet operations: {exc}") from exc
  return SpreadsheetResult(sheet_ops=ops)


def normalize_result(value: Any, *, kind: TemplateKind, builder: DocumentBuilder) -> GenerationResult:
  """Return the one GenerationResult variant valid for `kind`; anything else is a ResultShapeError."""
  if kind == "spreadsheet":
    return _normalize_spreadsheet(value, builder)
  return _normalize_document(value, builder)
