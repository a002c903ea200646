"""Lenient JSON parsing helpers for completion-service output."""

from __future__ import annotations

import json
import re
from typing import Any

_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)


def parse_json_with_fallback(raw: str) -> Any:
  """Parse JSON from model output, tolerating prose, code fences, and trailing commas."""
  last_error: json.JSONDecodeError | None = None

  # Prefer strict parsing so valid JSON is preserved without mutation.
  try:
    return json.loads(raw)
  except json.JSONDecodeError as exc:
    last_error = exc

  fence = _FENCE_RE.search(raw)
  if fence is not None:
    try:
      return json.loads(fence.group(1))
    except json.JSONDecodeError as exc:
      last_error = exc

  # Extract the first JSON object/array to ignore leading or trailing text.
  candidate = _extract_json_block(raw)
  if candidate is None:
    raise last_error

  try:
    return json.loads(candidate)
  except json.JSONDecodeError as exc:
    last_error = exc

  try:
    return json.loads(_strip_trailing_commas(candidate))
  except json.JSONDecodeError as exc:
    last_error = exc

  raise last_error


def parse_json_or_text(raw: str) -> Any:
  """Structured data when the text carries a parseable JSON payload, else the text itself."""
  try:
    return parse_json_with_fallback(raw)
  except json.JSONDecodeError:
    return raw


def _extract_json_block(raw: str) -> str | None:
  """Locate the first balanced JSON object/array for recovery parsing."""
  start_index: int | None = None
  depth = 0
  in_string = False
  escape = False

  # Scan the text for a balanced JSON payload while honoring string escapes.
  for index, char in enumerate(raw):
    if start_index is None:
      if char in "{[":
        start_index = index
        depth = 1

      continue

    if in_string:
      if escape:
        escape = False
        continue

      if char == "\\":
        escape = True
        continue

      if char == '"':
        in_string = False

      continue

    if char == '"':
      in_string = True
      continue

    if char in "{[":
      depth += 1
      continue

    if char in "}]":
      depth -= 1

      if depth == 0:
        return raw[start_index : index + 1]

  return None


def _strip_trailing_commas(raw: str) -> str:
  """Remove trailing commas before closing brackets for lenient parsing."""
  return _TRAILING_COMMA_RE.sub(r"\1", raw)
