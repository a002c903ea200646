from __future__ import annotations

from docsmith.ai.prompting import render_enhancement_prompt


BASE = 'def generate(toolkit, builder, context):\n    return {"markup": "TEMPLATE_NAME"}\n'


def test_base_code_and_metadata_are_embedded() -> None:
  prompt = render_enhancement_prompt(base_code=BASE, template_name="Quote", template_kind="document", template_analysis="Heading: Offer")

  assert 'document template "Quote"' in prompt
  assert "Template structure:\nHeading: Offer" in prompt
  assert "toolkit.json(prompt)" in prompt
  assert "Additional instructions" not in prompt


def test_inserted_values_are_not_substituted_again() -> None:
  prompt = render_enhancement_prompt(
    base_code=BASE,
    template_name="Quote",
    template_kind="document",
    instructions="Keep BASE_CODE short and mention TEMPLATE_KIND once.",
  )

  assert "Keep BASE_CODE short and mention TEMPLATE_KIND once." in prompt
  assert prompt.count("def generate(toolkit, builder, context):") == 1
  # Tokens inside the generator source survive verbatim.
  assert 'return {"markup": "TEMPLATE_NAME"}' in prompt
