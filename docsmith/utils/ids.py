"""Identifier utilities."""

from __future__ import annotations

import re
import unicodedata
import uuid

_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


def generate_job_id() -> str:
  """Return a new job identifier."""
  return str(uuid.uuid4())


def slugify(value: str, *, fallback: str = "item") -> str:
  """Lowercase ASCII slug with dash separators."""
  normalized = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
  slug = _SLUG_STRIP.sub("-", normalized.lower()).strip("-")
  return slug or fallback
