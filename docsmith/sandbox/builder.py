"""Imperative document builder exposed to generators."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import msgspec

from docsmith.schema.results import BlockNode, BuilderDocumentResult, BulletItem, Heading, NumberedItem, PageBreak, Paragraph, Table, TextRun

RUN_OPTIONS = frozenset({"bold", "italic", "underline", "strike", "color", "font", "size"})


class BuilderFrozenError(RuntimeError):
  """The builder was used after `save()`."""


def _make_run(text: Any, options: dict[str, Any]) -> TextRun:
  unknown = set(options) - RUN_OPTIONS
  if unknown:
    raise TypeError(f"Unknown text run options: {', '.join(sorted(unknown))}")
  try:
    return msgspec.convert({"text": "" if text is None else str(text), **options}, TextRun)
  except msgspec.ValidationError as exc:
    raise ValueError(f"Invalid text run: {exc}") from exc


def _make_runs(content: Any, options: dict[str, Any]) -> tuple[TextRun, ...]:
  """Accept plain text or a list of text/run-dict segments."""
  if isinstance(content, list | tuple):
    runs: list[TextRun] = []
    for segment in content:
      if isinstance(segment, dict):
        segment_options = {key: value for key, value in segment.items() if key != "text"}
        runs.append(_make_run(segment.get("text", ""), {**options, **segment_options}))
      else:
        runs.append(_make_run(segment, options))
    return tuple(runs)
  return (_make_run(content, options),)


class DocumentBuilder:
  """Accumulates block nodes in call order; `save()` freezes them into a BuilderDocumentResult."""

  def __init__(self) -> None:
    self._nodes: list[BlockNode] = []
    self._saved: BuilderDocumentResult | None = None

  @property
  def has_nodes(self) -> bool:
    return bool(self._nodes)

  @property
  def saved(self) -> BuilderDocumentResult | None:
    return self._saved

  def _append(self, node: BlockNode) -> None:
    if self._saved is not None:
      raise BuilderFrozenError("Document already saved; no further content can be added.")
    self._nodes.append(node)

  def add_heading(self, text: Any, level: int = 1, **run: Any) -> None:
    """Append a heading of level 1 to 9."""

    try:
      checked = msgspec.convert({"level": level, "runs": []}, Heading)
    except msgspec.ValidationError as exc:
      raise ValueError(f"Invalid heading level {level!r}: {exc}") from exc
    self._append(Heading(level=checked.level, runs=_make_runs(text, run)))

  def add_paragraph(self, text: Any = "", **run: Any) -> None:
    """Append a paragraph; run options apply to every segment unless a segment overrides them."""

    self._append(Paragraph(runs=_make_runs(text, run)))

  def add_bullet_list(self, items: Iterable[Any], **run: Any) -> None:
    """Append one bullet item per entry."""

    for item in items:
      self._append(BulletItem(runs=_make_runs(item, run)))

  def add_numbered_list(self, items: Iterable[Any], **run: Any) -> None:
    for item in items:
      self._append(NumberedItem(runs=_make_runs(item, run)))

  def add_table(self, rows: Iterable[Iterable[Any]], widths: Iterable[float] | None = None) -> None:
    """Append a table of stringified cells; `widths` are column widths in inches."""

    grid = [tuple("" if cell is None else str(cell) for cell in row) for row in rows]
    payload: dict[str, Any] = {"rows": grid, "widths": tuple(widths) if widths is not None else None}
    try:
      self._append(msgspec.convert(payload, Table))
    except msgspec.ValidationError as exc:
      raise ValueError(f"Invalid table: {exc}") from exc

  def page_break(self) -> None:
    self._append(PageBreak())

  def save(self) -> BuilderDocumentResult:
    """Freeze the accumulated nodes; repeated calls return the same document."""
    if self._saved is None:
      self._saved = BuilderDocumentResult(nodes=tuple(self._nodes))
    return self._saved
