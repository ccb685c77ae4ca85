"""Render editor and intake-form HTML into Word documents."""

import io
import logging
import re

from bs4 import BeautifulSoup, Comment, NavigableString, Tag
from docx import Document
from docx.enum.text import WD_ALIGN_PARAGRAPH
from docx.oxml import OxmlElement
from docx.oxml.ns import qn
from docx.shared import Pt, RGBColor

from assembly import extract_body_fragment

logger = logging.getLogger(__name__)

ORGANISATION_HEADER = "Alberta Public Safety and Emergency Services"
DEFAULT_FONT = "Calibri"
DEFAULT_FONT_SIZE_PT = 13

HEADING_TAGS = ("h1", "h2", "h3", "h4", "h5", "h6")
BLOCK_TAGS = {"p", "div", "blockquote", "ul", "ol", "table", "hr", "pre", *HEADING_TAGS}
_ALIGN = {
    "left": WD_ALIGN_PARAGRAPH.LEFT,
    "center": WD_ALIGN_PARAGRAPH.CENTER,
    "right": WD_ALIGN_PARAGRAPH.RIGHT,
    "justify": WD_ALIGN_PARAGRAPH.JUSTIFY,
}
_HEX_RE = re.compile(r"#([0-9a-fA-F]{6}|[0-9a-fA-F]{3})\b")


def _styles(tag: Tag) -> dict:
    result = {}
    for declaration in (tag.get("style") or "").split(";"):
        if ":" in declaration:
            prop, value = declaration.split(":", 1)
            result[prop.strip().lower()] = value.strip().lower()
    return result


def _hex(value: str | None) -> str | None:
    match = _HEX_RE.search(value or "")
    if not match:
        return None
    digits = match.group(1)
    if len(digits) == 3:
        digits = "".join(ch * 2 for ch in digits)
    return digits.upper()


def _format_for(tag: Tag, fmt: dict) -> dict:
    fmt = dict(fmt)
    styles = _styles(tag)
    if tag.name in ("strong", "b", "th") or styles.get("font-weight") in ("bold", "700", "600"):
        fmt["bold"] = True
    if tag.name in ("em", "i") or styles.get("font-style") == "italic":
        fmt["italic"] = True
    if tag.name == "u" or "underline" in styles.get("text-decoration", ""):
        fmt["underline"] = True
    if tag.name in ("s", "strike", "del") or "line-through" in styles.get("text-decoration", ""):
        fmt["strike"] = True
    color = _hex(styles.get("color"))
    if color:
        fmt["color"] = color
    return fmt


def _add_text(paragraph, text: str, fmt: dict) -> None:
    run = paragraph.add_run(text)
    run.bold = fmt.get("bold") or None
    run.italic = fmt.get("italic") or None
    run.underline = fmt.get("underline") or None
    if fmt.get("strike"):
        run.font.strike = True
    if fmt.get("color"):
        run.font.color.rgb = RGBColor.from_string(fmt["color"])


def _add_inline(paragraph, node, fmt: dict) -> None:
    if isinstance(node, Comment):
        return
    if isinstance(node, NavigableString):
        text = re.sub(r"\s+", " ", str(node))
        if text.strip() or (text and paragraph.runs):
            _add_text(paragraph, text, fmt)
        return
    if node.name == "br":
        paragraph.add_run().add_break()
        return
    if node.name in ("ul", "ol", "table"):
        return
    fmt = _format_for(node, fmt)
    for child in node.children:
        _add_inline(paragraph, child, fmt)


def _apply_alignment(paragraph, tag: Tag) -> None:
    alignment = _ALIGN.get(_styles(tag).get("text-align", ""))
    if alignment is not None:
        paragraph.alignment = alignment


def _shade(cell, fill: str) -> None:
    tc_pr = cell._tc.get_or_add_tcPr()
    shd = OxmlElement("w:shd")
    shd.set(qn("w:val"), "clear")
    shd.set(qn("w:color"), "auto")
    shd.set(qn("w:fill"), fill)
    tc_pr.append(shd)


def _row_flag(row, name: str) -> None:
    tr_pr = row._tr.get_or_add_trPr()
    tr_pr.append(OxmlElement(name))


def _bottom_border(paragraph) -> None:
    p_pr = paragraph._p.get_or_add_pPr()
    borders = OxmlElement("w:pBdr")
    bottom = OxmlElement("w:bottom")
    bottom.set(qn("w:val"), "single")
    bottom.set(qn("w:sz"), "12")
    bottom.set(qn("w:space"), "1")
    bottom.set(qn("w:color"), "000000")
    borders.append(bottom)
    p_pr.append(borders)


def _own_rows(table: Tag) -> list:
    return [tr for tr in table.find_all("tr") if tr.find_parent("table") is table]


class _Writer:
    def __init__(self, document):
        self.document = document

    def blocks(self, container, parent: Tag, fmt: dict | None = None) -> None:
        """Write the children of ``parent`` into ``container`` (document or cell)."""
        fmt = fmt or {}
        pending = None
        for child in parent.children:
            if isinstance(child, Tag) and child.name in BLOCK_TAGS:
                pending = None
                self.block(container, child, fmt)
            elif isinstance(child, (Tag, NavigableString)) and not isinstance(child, Comment):
                if pending is None:
                    if isinstance(child, NavigableString) and not str(child).strip():
                        continue
                    pending = self._paragraph(container)
                _add_inline(pending, child, fmt)

    def _paragraph(self, container, style: str | None = None):
        # A fresh table cell already holds one empty paragraph.
        if container is not self.document and len(container.paragraphs) == 1 and not container.paragraphs[0].text:
            paragraph = container.paragraphs[0]
            if style:
                paragraph.style = style
            return paragraph
        return container.add_paragraph(style=style)

    def block(self, container, tag: Tag, fmt: dict, level: int = 0) -> None:
        if tag.name in HEADING_TAGS:
            if container is self.document:
                paragraph = self.document.add_heading(level=min(int(tag.name[1]), 4))
            else:
                paragraph = self._paragraph(container)
                fmt = dict(fmt, bold=True)
            _apply_alignment(paragraph, tag)
            _add_inline(paragraph, tag, fmt)
        elif tag.name in ("ul", "ol"):
            self.list(container, tag, fmt, level)
        elif tag.name == "table":
            self.table(container, tag)
        elif tag.name == "hr":
            _bottom_border(self._paragraph(container))
        elif tag.name == "blockquote":
            paragraph = self._paragraph(container, "Quote") if container is self.document else self._paragraph(container)
            _add_inline(paragraph, tag, dict(fmt, italic=True))
        elif tag.name == "div" and tag.find(list(BLOCK_TAGS)):
            self.blocks(container, tag, fmt)
        else:
            paragraph = self._paragraph(container)
            _apply_alignment(paragraph, tag)
            _add_inline(paragraph, tag, fmt)

    def list(self, container, tag: Tag, fmt: dict, level: int = 0) -> None:
        base = "List Number" if tag.name == "ol" else "List Bullet"
        style = base if level == 0 else f"{base} {min(level + 1, 3)}"
        for item in tag.find_all("li", recursive=False):
            paragraph = self._paragraph(container, style if container is self.document else None)
            _add_inline(paragraph, item, fmt)
            for nested in item.find_all(["ul", "ol"], recursive=False):
                self.list(container, nested, fmt, level + 1)

    def table(self, container, tag: Tag) -> None:
        rows = _own_rows(tag)
        width = max((len(tr.find_all(["td", "th"], recursive=False)) for tr in rows), default=0)
        if not rows or not width:
            return
        table = container.add_table(rows=len(rows), cols=width)
        table.style = "Table Grid"
        for row_index, tr in enumerate(rows):
            row = table.rows[row_index]
            _row_flag(row, "w:cantSplit")
            cells = tr.find_all(["td", "th"], recursive=False)
            if cells and all(cell.name == "th" for cell in cells):
                _row_flag(row, "w:tblHeader")
            for col_index, source in enumerate(cells[:width]):
                cell = row.cells[col_index]
                fill = _hex(_styles(source).get("background-color"))
                if fill:
                    _shade(cell, fill)
                self.blocks(cell, source, _format_for(source, {}))
        if container is self.document:
            self.document.add_paragraph()


def html_to_docx(
    html: str,
    header_text: str | None = ORGANISATION_HEADER,
    font: str = DEFAULT_FONT,
    font_size_pt: int = DEFAULT_FONT_SIZE_PT,
) -> bytes:
    """Convert an HTML fragment or standalone document into ``.docx`` bytes.

    Table rows are marked so Word never splits them across pages, and header
    rows repeat on every page.
    """
    document = Document()
    normal = document.styles["Normal"]
    normal.font.name = font
    normal.font.size = Pt(font_size_pt)

    if header_text:
        header = document.sections[0].header.paragraphs[0]
        header.alignment = WD_ALIGN_PARAGRAPH.CENTER
        run = header.add_run(header_text)
        run.font.name = font
        run.font.size = Pt(font_size_pt)

    soup = BeautifulSoup(extract_body_fragment(html), "html.parser")
    _Writer(document).blocks(document, soup)
    if not document.paragraphs and not document.tables:
        document.add_paragraph("")

    buffer = io.BytesIO()
    document.save(buffer)
    logger.debug("rendered docx (%d bytes)", buffer.tell())
    return buffer.getvalue()


def docx_filename(title: str | None) -> str:
    """Download name for an exported brief: whitespace becomes underscores."""
    name = re.sub(r"\s+", "_", (title or "").strip())
    return f"{name or 'document'}.docx"


def storage_file_name(title: str | None) -> str:
    name = re.sub(r"[^A-Za-z0-9_-]", "", re.sub(r"\s+", "_", (title or "").strip()))
    return f"{name or 'document'}.docx"
