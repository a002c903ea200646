from __future__ import annotations

import io
import logging
import zipfile

import pytest
from docx import Document
from lxml import etree

from docsmith.core.errors import TemplateStructureError
from docsmith.merge.docx import body_window, merge_document
from docsmith.merge.engine import merge_result
from docsmith.schema.results import BuilderDocumentResult, DocumentResult, Heading, Paragraph, TextRun

REL_BASE = "http://schemas.openxmlformats.org/officeDocument/2006/relationships"
HELLO = "<w:p><w:r><w:t>Hello</w:t></w:r></w:p>"
SECT_PR = '<w:sectPr><w:headerReference w:type="default" r:id="rId7"/><w:pgSz w:w="12240" w:h="15840"/></w:sectPr>'
PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image-payload"


def _body(xml: str) -> str:
  return xml[xml.index("<w:body>") + len("<w:body>") : xml.rindex("</w:body>")]


def test_body_is_replaced_before_self_closing_sect_pr(docx_factory, read_ooxml_part) -> None:
  template = docx_factory("<w:p><w:r><w:t>X</w:t></w:r></w:p><w:sectPr/>")

  outcome = merge_document(template, DocumentResult(markup=HELLO))

  assert outcome.degradation is None
  assert _body(read_ooxml_part(outcome.data, "word/document.xml")) == f"{HELLO}<w:sectPr/>"


def test_bytes_outside_the_window_are_untouched(docx_factory, read_ooxml_part, ooxml_part_names) -> None:
  styles = '<w:styles xmlns:w="http://schemas.openxmlformats.org/wordprocessingml/2006/main"><w:style w:styleId="Custom"/></w:styles>'
  header = '<w:hdr xmlns:w="http://schemas.openxmlformats.org/wordprocessingml/2006/main"><w:p><w:r><w:t>Letterhead</w:t></w:r></w:p></w:hdr>'
  template = docx_factory(
    f"<w:p><w:r><w:t>Old one</w:t></w:r></w:p><w:tbl><w:tr><w:tc><w:p/></w:tc></w:tr></w:tbl>{SECT_PR}",
    relationships=f'<Relationship Id="rId7" Type="{REL_BASE}/header" Target="header1.xml"/>',
    parts={"word/styles.xml": styles, "word/header1.xml": header},
  )
  original = read_ooxml_part(template, "word/document.xml")
  start, end = body_window(original)

  outcome = merge_document(template, DocumentResult(markup=HELLO))
  merged = read_ooxml_part(outcome.data, "word/document.xml")

  assert merged[:start] == original[:start]
  assert merged.endswith(original[end:])
  assert original[end:].startswith("<w:sectPr>")
  assert merged[start : len(merged) - len(original[end:])] == HELLO
  for name in ("word/styles.xml", "word/header1.xml", "word/_rels/document.xml.rels", "[Content_Types].xml"):
    assert read_ooxml_part(outcome.data, name) == read_ooxml_part(template, name)
  assert ooxml_part_names(outcome.data) == ooxml_part_names(template)


def test_window_without_sect_pr_runs_to_body_close(docx_factory, read_ooxml_part) -> None:
  template = docx_factory("<w:p><w:r><w:t>Old</w:t></w:r></w:p>")
  outcome = merge_document(template, DocumentResult(markup=HELLO))
  assert _body(read_ooxml_part(outcome.data, "word/document.xml")) == HELLO


def test_missing_body_is_a_structure_error() -> None:
  with pytest.raises(TemplateStructureError):
    body_window('<w:document xmlns:w="urn:x"><w:p/></w:document>')


def test_non_zip_template_is_a_structure_error() -> None:
  with pytest.raises(TemplateStructureError):
    merge_document(b"plain bytes", DocumentResult(markup=HELLO))


def test_markup_without_blocks_degrades_to_standalone_document(docx_factory) -> None:
  template = docx_factory("<w:p/><w:sectPr/>")

  outcome = merge_document(template, DocumentResult(markup="just some <b>text</b>"))

  assert outcome.degradation is not None
  assert outcome.degradation.code == "merge_degraded"
  document = Document(io.BytesIO(outcome.data))
  assert [paragraph.text for paragraph in document.paragraphs] == ["just some", "text"]


def test_image_relationships_get_fresh_ids_and_media_names(docx_factory, read_ooxml_part) -> None:
  template = docx_factory(
    f"<w:p/>{SECT_PR}",
    relationships=(f'<Relationship Id="rId1" Type="{REL_BASE}/styles" Target="styles.xml"/><Relationship Id="rId7" Type="{REL_BASE}/header" Target="header1.xml"/><Relationship Id="rId3" Type="{REL_BASE}/image" Target="media/image1.png"/>'),
    parts={"word/media/image1.png": b"template-image"},
  )
  source = docx_factory(
    '<w:p><w:r><w:drawing><a:blip r:embed="rId1"/></w:drawing></w:r><w:hyperlink r:id="rId2"/></w:p>',
    relationships=(f'<Relationship Id="rId1" Type="{REL_BASE}/image" Target="media/image1.png"/><Relationship Id="rId2" Type="{REL_BASE}/hyperlink" Target="https://example.com/a?b=1&amp;c=2" TargetMode="External"/>'),
    parts={"word/media/image1.png": PNG_BYTES},
  )
  fragment = '<w:p><w:r><w:drawing><a:blip r:embed="rId1"/></w:drawing></w:r><w:hyperlink r:id="rId2"><w:r><w:t>rId1</w:t></w:r></w:hyperlink></w:p>'

  outcome = merge_document(template, DocumentResult(markup=fragment, package=source))

  body = _body(read_ooxml_part(outcome.data, "word/document.xml"))
  assert 'r:embed="rId8"' in body
  assert 'r:id="rId9"' in body
  # Text that merely looks like an id is not rewritten.
  assert "<w:t>rId1</w:t>" in body

  rels = read_ooxml_part(outcome.data, "word/_rels/document.xml.rels")
  assert f'<Relationship Id="rId8" Type="{REL_BASE}/image" Target="media/image1_1.png"/>' in rels
  assert 'Id="rId9"' in rels
  assert 'TargetMode="External"' in rels
  assert "c=2" in rels

  assert read_ooxml_part(outcome.data, "word/media/image1.png") == "template-image"
  with zipfile.ZipFile(io.BytesIO(outcome.data)) as archive:
    assert archive.read("word/media/image1_1.png") == PNG_BYTES

  content_types = read_ooxml_part(outcome.data, "[Content_Types].xml")
  assert content_types.count('Extension="png"') == 1
  assert 'ContentType="image/png"' in content_types


def test_existing_extension_default_is_not_duplicated(docx_factory, read_ooxml_part) -> None:
  template = docx_factory("<w:p/><w:sectPr/>", defaults='<Default Extension="png" ContentType="image/png"/>')
  source = docx_factory("<w:p/>", relationships=f'<Relationship Id="rId1" Type="{REL_BASE}/image" Target="media/image1.png"/>', parts={"word/media/image1.png": PNG_BYTES})

  outcome = merge_document(template, DocumentResult(markup='<w:p><a:blip r:embed="rId1"/></w:p>', package=source))

  assert read_ooxml_part(outcome.data, "[Content_Types].xml").count('Extension="png"') == 1
  assert 'r:embed="rId1"' in _body(read_ooxml_part(outcome.data, "word/document.xml"))


def test_builder_result_is_rendered_and_spliced(docx_factory, read_ooxml_part) -> None:
  template = docx_factory(f"<w:p/>{SECT_PR}", relationships=f'<Relationship Id="rId7" Type="{REL_BASE}/header" Target="header1.xml"/>')
  result = BuilderDocumentResult(nodes=(Heading(level=1, runs=(TextRun(text="Quarterly Report"),)), Paragraph(runs=(TextRun(text="Numbers are up.", bold=True),))))

  outcome = merge_result("document", template, result)

  assert outcome.degradation is None
  merged = read_ooxml_part(outcome.data, "word/document.xml")
  assert "Quarterly Report" in merged
  assert "Numbers are up." in merged
  assert merged.count("<w:sectPr") == 1
  assert merged.rstrip().endswith(f"{SECT_PR}</w:body></w:document>")


def test_tracked_section_change_keeps_the_whole_sect_pr(docx_factory, read_ooxml_part) -> None:
  tracked = '<w:sectPr><w:pgSz w:w="12240" w:h="15840"/><w:sectPrChange w:id="1" w:author="Ada" w:date="2024-01-01T00:00:00Z"><w:sectPr/></w:sectPrChange></w:sectPr>'
  template = docx_factory(f"<w:p><w:r><w:t>X</w:t></w:r></w:p>{tracked}")

  outcome = merge_document(template, DocumentResult(markup=HELLO))

  merged = read_ooxml_part(outcome.data, "word/document.xml")
  assert _body(merged) == f"{HELLO}{tracked}"
  etree.fromstring(merged.encode("utf-8"))


def test_paragraph_level_sect_pr_is_body_content(docx_factory, read_ooxml_part) -> None:
  template = docx_factory("<w:p><w:pPr><w:sectPr><w:pgSz/></w:sectPr></w:pPr></w:p><w:p/>")

  outcome = merge_document(template, DocumentResult(markup=HELLO))

  assert _body(read_ooxml_part(outcome.data, "word/document.xml")) == HELLO


def test_unbalanced_sect_pr_is_a_structure_error() -> None:
  xml = '<w:document xmlns:w="urn:x"><w:body><w:p/></w:sectPr></w:body></w:document>'
  with pytest.raises(TemplateStructureError):
    body_window(xml)


def test_unsupported_relationships_are_dropped_from_the_fragment(docx_factory, read_ooxml_part, caplog) -> None:
  template = docx_factory(f"<w:p/>{SECT_PR}", relationships=f'<Relationship Id="rId7" Type="{REL_BASE}/header" Target="header1.xml"/>')
  source = docx_factory("<w:p/>", relationships=f'<Relationship Id="rId7" Type="{REL_BASE}/chart" Target="charts/chart1.xml"/>')
  fragment = '<w:p><w:r><c:chart r:id="rId7"/></w:r></w:p>'

  with caplog.at_level(logging.WARNING, logger="docsmith.merge.docx"):
    outcome = merge_document(template, DocumentResult(markup=fragment, package=source))

  body = _body(read_ooxml_part(outcome.data, "word/document.xml"))
  assert 'r:id="rId7"' not in body.replace(SECT_PR, "")
  assert "<c:chart />" in body
  assert "Dropping fragment relationship rId7" in caplog.text
  assert read_ooxml_part(outcome.data, "word/_rels/document.xml.rels") == read_ooxml_part(template, "word/_rels/document.xml.rels")
