"""Prompt rendering for generator enhancement."""

from __future__ import annotations

import re
from functools import lru_cache
from pathlib import Path

from docsmith.schema.results import TemplateKind

CAPABILITY_LINES = (
  "  - toolkit.json(prompt) -> parsed JSON value (or the raw text when the reply has no JSON)",
  "  - toolkit.query(prompt) -> text answered from the workspace documents",
  "  - toolkit.text(prompt) -> free text",
  "  - toolkit.get_skeleton(fmt='html' | 'text') -> simplified rendering of the template body",
  "  - toolkit.markdown_to_html(markdown) -> html",
  "  - toolkit.html_to_docx(html) -> docx bytes",
  "  - builder.add_heading(text, level=1), builder.add_paragraph(text), builder.add_bullet_list(items), builder.add_numbered_list(items), builder.add_table(rows, widths=None), builder.page_break(), builder.save()",
)


@lru_cache(maxsize=8)
def _load_prompt(name: str) -> str:
  try:
    path = Path(__file__).parent / "prompts" / name
    return path.read_text(encoding="utf-8").strip()
  except (FileNotFoundError, PermissionError, UnicodeDecodeError) as exc:
    raise RuntimeError(f"Failed to load prompt '{name}': {exc}") from exc


def _replace_tokens(template: str, values: dict[str, str]) -> str:
  """Substitute every token in one pass; inserted values are never scanned again."""
  if not values:
    return template
  # Longest first so a token that prefixes another cannot shadow it.
  pattern = re.compile("|".join(re.escape(key) for key in sorted(values, key=len, reverse=True)))
  return pattern.sub(lambda match: values[match.group(0)], template)


def _section(title: str, body: str | None) -> str:
  if not body or not body.strip():
    return ""
  return f"{title}:\n{body.strip()}"


def render_enhancement_prompt(
  *,
  base_code: str,
  template_name: str,
  template_kind: TemplateKind,
  template_analysis: str | None = None,
  document_metadata: str | None = None,
  instructions: str | None = None,
) -> str:
  """Embed the base generator and optional context into the enhancement prompt."""
  return _replace_tokens(
    _load_prompt("enhance_generator.md"),
    {
      "TEMPLATE_KIND": template_kind,
      "TEMPLATE_NAME": template_name,
      "CAPABILITIES": "\n".join(CAPABILITY_LINES),
      "TEMPLATE_ANALYSIS": _section("Template structure", template_analysis),
      "DOCUMENT_METADATA": _section("Relevant documents", document_metadata),
      "USER_INSTRUCTIONS": _section("Additional instructions from the user", instructions),
      "BASE_CODE": base_code.rstrip(),
    },
  )
