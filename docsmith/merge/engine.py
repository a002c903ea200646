"""Route a generation result to the merge path for its template kind."""

from __future__ import annotations

import logging

from docsmith.core.errors import ResultShapeError
from docsmith.merge.docx import MergeOutcome, extract_body_fragment, merge_document
from docsmith.merge.render import render_builder_document
from docsmith.merge.xlsx import merge_spreadsheet
from docsmith.schema.results import BuilderDocumentResult, DocumentResult, GenerationResult, SpreadsheetResult, TemplateKind, expected_kind

logger = logging.getLogger(__name__)


def merge_result(kind: TemplateKind, template: bytes, result: GenerationResult) -> MergeOutcome:
  """Merge `result` into a copy of `template`; the template bytes are never modified."""
  if expected_kind(result) != kind:
    raise ResultShapeError(f"A {type(result).__name__} cannot be merged into a {kind} template.")

  if isinstance(result, SpreadsheetResult):
    logger.debug("Applying %d sheet operations", len(result.sheet_ops))
    return MergeOutcome(data=merge_spreadsheet(template, result.sheet_ops))

  if isinstance(result, BuilderDocumentResult):
    package = render_builder_document(result.nodes)
    result = DocumentResult(markup=extract_body_fragment(package), package=package)

  return merge_document(template, result)
