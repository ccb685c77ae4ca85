"""Two-stage PDF composition for policy documents.

``rasterize`` lays the PDF-mode HTML out into pages; ``decorate`` then draws
the metadata header and the classification footer onto every page.  The
header needs the final page count ("3 of 7"), which is only known once the
whole document has been laid out, hence the two explicit stages.  The
chrome is drawn with reportlab as vector text and merged onto the rendered
pages with pypdf, so it stays searchable.
"""

import io
import logging
import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path

import requests
from pypdf import PdfReader, PdfWriter
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader, simpleSplit
from reportlab.pdfgen import canvas

from errors import PdfGenerationError
from metadata import PolicyMeta
from page_template import (
    BASE_MARGIN_MM,
    BRANCH_TEXT,
    DEPARTMENT_LINES,
    DRAW_DEPARTMENT,
    FOOTER_RESERVED_MM,
    META_NARROW_COL_MM,
    META_TABLE_WIDTH_MM,
)

logger = logging.getLogger(__name__)

FOOTER_TEXT = os.environ.get("POLICY_FOOTER_TEXT", "Classification: Protected B")
LOGO_SOURCE = os.environ.get("POLICY_LOGO", "")
JPEG_QUALITY = int(os.environ.get("POLICY_JPEG_QUALITY", "95"))
LOGO_TIMEOUT = 10

FOOTER_BLUE = (0, 135, 190)
BORDER_GREY = (120, 120, 120)
LABEL_GREY = (60, 60, 60)
VALUE_GREY = (110, 110, 110)
NEAR_BLACK = (20, 20, 20)

# Header table geometry (millimetres from the top-left corner of the page).
HEADER_ROW_MM = 15
HEADER_TOP_MM = BASE_MARGIN_MM + 2
LABEL_OFFSET_MM = 4.2
VALUE_OFFSET_MM = 10.6
VALUE_LINE_GAP_MM = 4.3
CELL_PAD_MM = 2
LOGO_HEIGHT_MM = 12.5
DEFAULT_LOGO_ASPECT = 3.0


@dataclass
class RenderedPdf:
    pdf_bytes: bytes
    page_count: int


@dataclass
class Logo:
    image: ImageReader
    aspect: float = DEFAULT_LOGO_ASPECT


def _rgb(c, color) -> None:
    r, g, b = color
    c.setFillColorRGB(r / 255, g / 255, b / 255)


def _stroke_rgb(c, color) -> None:
    r, g, b = color
    c.setStrokeColorRGB(r / 255, g / 255, b / 255)


def count_pages(document) -> int:
    """Return the number of laid out pages in ``document``.

    Renderers that expose an explicit page-count accessor are asked directly.
    Otherwise the page list is counted, ignoring a leading placeholder entry
    some renderers keep at index zero.
    """
    for name in ("page_count", "get_number_of_pages"):
        accessor = getattr(document, name, None)
        if callable(accessor):
            return max(1, int(accessor()))
        if isinstance(accessor, int):
            return max(1, accessor)
    pages = list(getattr(document, "pages", None) or [])
    if len(pages) > 1 and not pages[0]:
        return len(pages) - 1
    return max(1, len(pages))


def rasterize(html: str) -> RenderedPdf:
    """Lay out PDF-mode ``html`` into A4 pages.

    A temporary working directory is created for the call and removed when it
    returns, whether rendering succeeded or not.  Referenced images and fonts
    are fetched while the document is laid out, before any page is written.
    """
    # Imported here: WeasyPrint needs Pango at import time.
    from weasyprint import HTML

    with tempfile.TemporaryDirectory(prefix="policy-render-") as workdir:
        html_path = os.path.join(workdir, "document.html")
        pdf_path = os.path.join(workdir, "document.pdf")
        with open(html_path, "w", encoding="utf-8") as f:
            f.write(html)
        try:
            document = HTML(filename=html_path, base_url=workdir).render()
            page_count = count_pages(document)
            document.write_pdf(pdf_path, jpeg_quality=JPEG_QUALITY)
        except Exception as exc:
            raise PdfGenerationError("rasterize", str(exc)) from exc
        with open(pdf_path, "rb") as f:
            pdf_bytes = f.read()

    if not pdf_bytes:
        raise PdfGenerationError("rasterize", "renderer produced an empty document")
    logger.debug("rasterized %d page(s), %d bytes", page_count, len(pdf_bytes))
    return RenderedPdf(pdf_bytes=pdf_bytes, page_count=page_count)


def load_logo(source: str | None = None) -> Logo | None:
    """Load the header logo from a file path or an http(s) URL.

    Returns ``None`` when the logo cannot be loaded; the header is then drawn
    without it.
    """
    source = LOGO_SOURCE if source is None else source
    if not source:
        return None
    try:
        if source.startswith(("http://", "https://")):
            resp = requests.get(source, timeout=LOGO_TIMEOUT)
            resp.raise_for_status()
            data = resp.content
        else:
            data = Path(source).read_bytes()
        image = ImageReader(io.BytesIO(data))
        width, height = image.getSize()
    except Exception as exc:
        logger.warning("logo %s could not be loaded, using a text-only header: %s", source, exc)
        return None
    aspect = width / height if width and height else DEFAULT_LOGO_ASPECT
    return Logo(image=image, aspect=aspect)


def _draw_header(c, page_w: float, page_h: float, page_no: int, total: int,
                 meta: PolicyMeta, logo: Logo | None, draw_department: bool) -> None:
    def y(top_mm: float) -> float:
        return page_h - top_mm * mm

    content_w = page_w / mm - 2 * BASE_MARGIN_MM
    narrow_w = META_NARROW_COL_MM
    mid_w = META_TABLE_WIDTH_MM - narrow_w
    brand_w = max(35, content_w - META_TABLE_WIDTH_MM)

    x0 = BASE_MARGIN_MM
    x1 = x0 + content_w
    x_brand_end = x0 + brand_w
    x_narrow = x0 + brand_w + mid_w
    y0 = HEADER_TOP_MM
    y_mid = y0 + HEADER_ROW_MM
    y1 = y0 + 2 * HEADER_ROW_MM

    _stroke_rgb(c, BORDER_GREY)
    c.setLineWidth(0.2 * mm)
    # The brand cell stays open on its top and left sides; SUBJECT spans
    # underneath it.
    c.line(x_brand_end * mm, y(y0), x1 * mm, y(y0))
    c.line(x1 * mm, y(y0), x1 * mm, y(y1))
    c.line(x0 * mm, y(y1), x1 * mm, y(y1))
    c.line(x0 * mm, y(y_mid), x1 * mm, y(y_mid))
    c.line(x_narrow * mm, y(y0), x_narrow * mm, y(y1))
    c.line(x_brand_end * mm, y(y0), x_brand_end * mm, y(y_mid))
    c.line(x0 * mm, y(y_mid), x0 * mm, y(y1))

    text_x = x0 + CELL_PAD_MM
    if logo is not None:
        logo_h = LOGO_HEIGHT_MM
        logo_w = logo_h * logo.aspect
        dept_w = 34 if draw_department else 0
        gap = 2.5 if draw_department else 0
        max_w = max(16, brand_w - CELL_PAD_MM * 2 - dept_w - gap)
        if logo_w > max_w:
            logo_h *= max_w / logo_w
            logo_w = max_w
        logo_top = y0 + (HEADER_ROW_MM - logo_h) / 2
        try:
            c.drawImage(logo.image, text_x * mm, y(logo_top + logo_h),
                        width=logo_w * mm, height=logo_h * mm, mask="auto")
            text_x = text_x + logo_w + 2.5
        except Exception as exc:
            logger.warning("logo could not be drawn: %s", exc)

    if draw_department and DEPARTMENT_LINES:
        dept_y = y0 + 6.2
        c.setFont("Helvetica", 9)
        _rgb(c, FOOTER_BLUE)
        for i, line in enumerate(DEPARTMENT_LINES[:2]):
            c.drawString(text_x * mm, y(dept_y + i * 4.1), line)
        if BRANCH_TEXT:
            c.setFont("Helvetica", 7.5)
            _rgb(c, (140, 140, 140))
            c.drawString(text_x * mm, y(dept_y + 8.1), BRANCH_TEXT)

    c.setFont("Helvetica-Bold", 8)
    _rgb(c, LABEL_GREY)
    c.drawString((x_brand_end + 2) * mm, y(y0 + LABEL_OFFSET_MM), "SECTION")
    c.drawCentredString((x_narrow + narrow_w / 2) * mm, y(y0 + LABEL_OFFSET_MM), "NUMBER")
    c.drawString((x0 + 2) * mm, y(y_mid + LABEL_OFFSET_MM), "SUBJECT")
    c.drawCentredString((x_narrow + narrow_w / 2) * mm, y(y_mid + LABEL_OFFSET_MM), "PAGE")

    c.setFont("Times-Bold", 10.5)
    _rgb(c, VALUE_GREY)
    section_lines = simpleSplit((meta.section or "").strip(), "Times-Bold", 10.5, (mid_w - 4) * mm)[:2]
    for i, line in enumerate(section_lines):
        c.drawString((x_brand_end + 2) * mm, y(y0 + VALUE_OFFSET_MM + i * VALUE_LINE_GAP_MM), line)
    subject_lines = simpleSplit((meta.subject or "").strip(), "Times-Bold", 10.5, (brand_w + mid_w - 4) * mm)[:2]
    for i, line in enumerate(subject_lines):
        c.drawString((x0 + 2) * mm, y(y_mid + VALUE_OFFSET_MM + i * VALUE_LINE_GAP_MM), line)

    _rgb(c, NEAR_BLACK)
    c.drawCentredString((x_narrow + narrow_w / 2) * mm, y(y0 + VALUE_OFFSET_MM), (meta.number or "").strip())
    c.setFont("Times-Roman", 10.5)
    c.drawCentredString((x_narrow + narrow_w / 2) * mm, y(y_mid + VALUE_OFFSET_MM), f"{page_no} of {total}")


def _draw_footer(c, page_w: float, page_h: float, text: str) -> None:
    footer_top = page_h / mm - (BASE_MARGIN_MM + FOOTER_RESERVED_MM)
    y_line = footer_top + 2.2
    y_text = y_line + 5.5

    _stroke_rgb(c, FOOTER_BLUE)
    c.setLineWidth(0.6 * mm)
    c.line(BASE_MARGIN_MM * mm, page_h - y_line * mm, page_w - BASE_MARGIN_MM * mm, page_h - y_line * mm)
    if text:
        c.setFont("Times-Roman", 10.5)
        _rgb(c, NEAR_BLACK)
        c.drawString(BASE_MARGIN_MM * mm, page_h - y_text * mm, text)


def _overlay(page_w: float, page_h: float, page_no: int, total: int, meta: PolicyMeta,
             logo: Logo | None, footer_text: str, draw_department: bool):
    buffer = io.BytesIO()
    c = canvas.Canvas(buffer, pagesize=(page_w, page_h))
    _draw_header(c, page_w, page_h, page_no, total, meta, logo, draw_department)
    _draw_footer(c, page_w, page_h, footer_text)
    c.showPage()
    c.save()
    buffer.seek(0)
    return PdfReader(buffer).pages[0]


def decorate(
    raster: RenderedPdf,
    meta: PolicyMeta,
    logo: Logo | None = None,
    footer_text: str | None = None,
    draw_department: bool | None = None,
) -> bytes:
    """Draw the header table and footer onto every page of ``raster``."""
    footer_text = FOOTER_TEXT if footer_text is None else footer_text
    draw_department = DRAW_DEPARTMENT if draw_department is None else draw_department
    try:
        reader = PdfReader(io.BytesIO(raster.pdf_bytes))
        total = len(reader.pages)
        if total != raster.page_count:
            logger.warning(
                "page count mismatch: renderer reported %d, document has %d",
                raster.page_count,
                total,
            )
        writer = PdfWriter(clone_from=reader)
        for page_no, page in enumerate(writer.pages, start=1):
            page_w = float(page.mediabox.width)
            page_h = float(page.mediabox.height)
            page.merge_page(_overlay(page_w, page_h, page_no, total, meta, logo,
                                     footer_text, draw_department))
        out = io.BytesIO()
        writer.write(out)
    except Exception as exc:
        raise PdfGenerationError("decorate", str(exc)) from exc
    return out.getvalue()


def compose_policy_pdf(html: str, meta: PolicyMeta, logo_source: str | None = None) -> RenderedPdf:
    """Rasterize PDF-mode ``html`` and decorate every page with the header."""
    raster = rasterize(html)
    logo = load_logo(logo_source)
    pdf_bytes = decorate(raster, meta, logo)
    if not pdf_bytes:
        raise PdfGenerationError("decorate", "decorated document is empty")
    return RenderedPdf(pdf_bytes=pdf_bytes, page_count=len(PdfReader(io.BytesIO(pdf_bytes)).pages))


def make_pdf_name(original_name: str, number: str | None = None, subject: str | None = None) -> str:
    """Build ``{number}_{subject}.pdf`` from the policy metadata.

    The subject falls back to the uploaded file name without its ``.docx``
    extension; ``policy.pdf`` is used when nothing usable remains.
    """
    stem = re.sub(r"\.docx$", "", original_name or "", flags=re.IGNORECASE)
    base = re.sub(r"[^\w\s-]+", "", (subject or "").strip() or stem, flags=re.ASCII)
    num = re.sub(r"[^\w.-]+", "", number or "", flags=re.ASCII)
    safe = re.sub(r"\s+", "_", f"{num + '_' if num else ''}{base}".strip())
    return f"{safe or 'policy'}.pdf"
