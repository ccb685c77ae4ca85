"""Wrap normalized policy HTML in the standard paginated page layout.

Two modes are supported.  ``preview`` renders the metadata header inline
(sticky at the top of the scrolling preview).  ``pdf`` leaves the header out
of the flow and reserves the header and footer bands through the ``@page``
margins; the compositor draws the header on every page afterwards.
"""

import os
import sys
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

from metadata import PolicyMeta

# Source checkouts and editable installs keep the templates beside the
# modules; wheel installs place them under ``share/policydesk/templates``.
TEMPLATE_DIRS = [
    str(Path(__file__).resolve().parent / "templates"),
    str(Path(sys.prefix) / "share" / "policydesk" / "templates"),
]

# Page geometry in millimetres (A4 portrait).
PAGE_WIDTH_MM = 210
PAGE_HEIGHT_MM = 297
BASE_MARGIN_MM = 15
HEADER_RESERVED_MM = 30
HEADER_GAP_MM = 6
FOOTER_RESERVED_MM = 12
CONTENT_WIDTH_MM = PAGE_WIDTH_MM - 2 * BASE_MARGIN_MM
META_TABLE_WIDTH_MM = 110
META_NARROW_COL_MM = 30
HEADER_BRAND_COL_MM = 60

PDF_MARGINS_MM = (
    BASE_MARGIN_MM + HEADER_RESERVED_MM + HEADER_GAP_MM,
    BASE_MARGIN_MM,
    BASE_MARGIN_MM + FOOTER_RESERVED_MM,
    BASE_MARGIN_MM,
)

DEPARTMENT_LINES = tuple(
    line.strip()
    for line in os.environ.get(
        "POLICY_DEPARTMENT_TEXT", "Public Safety and|Emergency Services"
    ).split("|")
    if line.strip()
)
BRANCH_TEXT = os.environ.get("POLICY_BRANCH_TEXT", "Community Corrections Branch")
DRAW_DEPARTMENT = os.environ.get("POLICY_DRAW_DEPARTMENT", "true").lower() == "true"
LOGO_URL = os.environ.get("POLICY_LOGO_URL", "/static/logo.png")

EMPTY_BODY_HTML = "<p>(No content parsed)</p>"

MODES = ("pdf", "preview")

_env = Environment(
    loader=FileSystemLoader(TEMPLATE_DIRS),
    autoescape=select_autoescape(["html"]),
    keep_trailing_newline=True,
)


def wrap_with_policy_template(
    body_html: str,
    meta: PolicyMeta | None = None,
    mode: str = "pdf",
    draw_department: bool | None = None,
    logo_url: str | None = None,
) -> str:
    """Return a standalone HTML document for ``body_html``.

    ``body_html`` is inserted as-is (it is expected to be normalized and
    sanitized already); the metadata values are escaped.
    """
    if mode not in MODES:
        raise ValueError(f"Unknown render mode: {mode}")
    meta = meta or PolicyMeta()
    template = _env.get_template("policy_document.html")
    return template.render(
        mode=mode,
        meta=meta,
        body_html=body_html,
        draw_department=DRAW_DEPARTMENT if draw_department is None else draw_department,
        department_lines=DEPARTMENT_LINES,
        branch_text=BRANCH_TEXT,
        logo_url=LOGO_URL if logo_url is None else logo_url,
        content_width=CONTENT_WIDTH_MM,
        margins=PDF_MARGINS_MM,
        header_reserved=HEADER_RESERVED_MM,
        meta_table_width=META_TABLE_WIDTH_MM,
        narrow_col=META_NARROW_COL_MM,
        brand_col=HEADER_BRAND_COL_MM,
        middle_col=CONTENT_WIDTH_MM - HEADER_BRAND_COL_MM - META_NARROW_COL_MM,
    )


def build_pdf_html(body_html: str, meta: PolicyMeta | None = None) -> str:
    """PDF-mode document with a placeholder when nothing was parsed."""
    return wrap_with_policy_template(body_html.strip() or EMPTY_BODY_HTML, meta, mode="pdf")
