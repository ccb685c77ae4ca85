"""Clean up HTML produced from legacy Word policy documents.

The converted markup still carries the old printed header (a metadata table,
department lines and a logo), stray classification lines, runs of empty
paragraphs and list markup that no longer says whether it is numbered.  The
passes below rebuild a clean document tree; every pass works on the parsed
tree and is best effort, so a failure in one pass leaves that pass's input
untouched and the remaining passes still run.  The final pass sanitizes the
result against an allow-list.
"""

import logging
import re

import bleach
from bleach.css_sanitizer import CSSSanitizer
from bs4 import BeautifulSoup, Comment, NavigableString, Tag

logger = logging.getLogger(__name__)

# Legacy header elements are only stripped near the top of the document.
HEADER_WINDOW_CHARS = 6000

HEADER_TABLE_WORDS = ("section", "number", "subject", "page")
HEADER_LINE_RE = re.compile(
    r"^\s*(alberta|government of alberta|public safety and emergency services)",
    re.IGNORECASE,
)
CLASSIFICATION_RE = re.compile(r"Classification:\s*Protected\s+[AB]\s*", re.IGNORECASE)

SECTION_LABELS = (
    "POLICY STATEMENT",
    "DEFINITIONS",
    "STANDARDS",
    "PROCEDURES",
    "SCOPE",
    "PURPOSE",
    "BACKGROUND",
    "RESPONSIBILITIES",
)
LABEL_RE = re.compile(rf"^({'|'.join(SECTION_LABELS)}):?$", re.IGNORECASE)
POLICY_STATEMENT = "Policy Statement"

ORDERED_TYPES = {"1", "a", "A", "i", "I"}
NUMBERED_STYLES = {"decimal", "lower-alpha", "upper-alpha", "lower-roman", "upper-roman",
                   "lower-latin", "upper-latin", "decimal-leading-zero"}
BULLET_STYLES = {"none", "disc", "circle", "square"}
LIST_STYLE_RE = re.compile(r"list-style-type\s*:\s*([\w-]+)", re.IGNORECASE)
BULLET_GLYPH_RE = re.compile(r"^\s*[•‣▪◦●○■□·–*-]\s*")

UNSAFE_ELEMENTS = ("script", "style", "iframe", "object", "embed", "noscript", "template", "head", "title")

ALLOWED_TAGS = [
    "p", "br", "hr", "div", "span", "blockquote",
    "h1", "h2", "h3", "h4", "h5", "h6",
    "strong", "b", "em", "i", "u", "s", "strike", "sub", "sup",
    "a", "img",
    "ul", "ol", "li",
    "table", "caption", "colgroup", "col", "thead", "tbody", "tfoot", "tr", "td", "th",
]
ALLOWED_PROTOCOLS = ["http", "https", "mailto", "data"]
ALLOWED_CSS = [
    "text-align", "font-weight", "font-style", "text-decoration", "color",
    "background-color", "list-style-type", "width", "vertical-align",
    "padding", "margin-left", "border", "border-collapse",
]
_ATTRS = {
    "*": {"class", "style"},
    "a": {"href", "title", "name"},
    "img": {"src", "alt", "width", "height"},
    "ol": {"type", "start"},
    "td": {"colspan", "rowspan"},
    "th": {"colspan", "rowspan", "scope"},
    "col": {"width", "span"},
}

_css_sanitizer = CSSSanitizer(allowed_css_properties=ALLOWED_CSS)


def _allow_attribute(tag: str, name: str, value: str) -> bool:
    if name in _ATTRS["*"] or name in _ATTRS.get(tag, ()):
        # Embedded data URIs are only meaningful for images.
        if name == "href" and value.strip().lower().startswith("data:"):
            return False
        return True
    return False


# -- helpers ----------------------------------------------------------------
def _line_starts(source: str) -> list[int]:
    starts = [0]
    for match in re.finditer(r"\n", source):
        starts.append(match.end())
    return starts


def _source_offset(tag: Tag, starts: list[int]) -> int:
    line = getattr(tag, "sourceline", None)
    pos = getattr(tag, "sourcepos", None)
    if line is None or pos is None:
        return 0
    return starts[min(line, len(starts)) - 1] + pos


def _is_blank(tag: Tag) -> bool:
    """Paragraph with no visible text and nothing but line breaks inside."""
    if tag.get_text().strip():
        return False
    return all(child.name == "br" for child in tag.find_all(True))


def _next_element_sibling(tag: Tag):
    sibling = tag.next_sibling
    while sibling is not None:
        if isinstance(sibling, Tag):
            return sibling
        if isinstance(sibling, NavigableString) and str(sibling).strip():
            return sibling
        sibling = sibling.next_sibling
    return None


def _first_content(node):
    for child in node.children:
        if isinstance(child, Comment):
            continue
        if isinstance(child, NavigableString) and not str(child).strip():
            continue
        return child
    return None


def _spacer(soup: BeautifulSoup) -> Tag:
    p = soup.new_tag("p")
    p.string = "\xa0"
    return p


# -- passes -----------------------------------------------------------------
def strip_legacy_header(soup: BeautifulSoup, source: str) -> None:
    """Remove the old printed header table, department lines and logo."""
    starts = _line_starts(source)
    for table in soup.find_all("table"):
        if table.decomposed:
            continue
        if _source_offset(table, starts) > HEADER_WINDOW_CHARS:
            continue
        text = table.get_text(" ").lower()
        if all(word in text for word in HEADER_TABLE_WORDS):
            table.decompose()

    for p in soup.find_all("p"):
        if p.decomposed:
            continue
        if _source_offset(p, starts) >= HEADER_WINDOW_CHARS:
            continue
        if HEADER_LINE_RE.match(p.get_text()):
            p.decompose()

    first = _first_content(soup)
    if isinstance(first, Tag) and first.name == "img":
        first.decompose()
    elif isinstance(first, Tag) and first.name == "p":
        inner = _first_content(first)
        if isinstance(inner, Tag) and inner.name == "img":
            if first.get_text().strip():
                inner.decompose()
            else:
                first.decompose()


def remove_classification_lines(soup: BeautifulSoup) -> None:
    for text in soup.find_all(string=CLASSIFICATION_RE):
        text.replace_with(CLASSIFICATION_RE.sub("", str(text)))


def collapse_empty_paragraphs(soup: BeautifulSoup) -> None:
    """Replace runs of two or more empty paragraphs with one spacer."""
    for p in soup.find_all("p"):
        if p.decomposed or not _is_blank(p):
            continue
        run = [p]
        sibling = _next_element_sibling(p)
        while isinstance(sibling, Tag) and sibling.name == "p" and _is_blank(sibling):
            run.append(sibling)
            sibling = _next_element_sibling(sibling)
        if len(run) < 2:
            continue
        run[0].replace_with(_spacer(soup))
        for extra in run[1:]:
            extra.decompose()


def promote_label_paragraphs(soup: BeautifulSoup) -> None:
    """Turn ``<p>POLICY STATEMENT:</p>`` style labels into ``<h2>`` headings."""
    for p in soup.find_all("p"):
        if p.find(["img", "table"]):
            continue
        match = LABEL_RE.match(p.get_text().strip())
        if not match:
            continue
        heading = soup.new_tag("h2")
        heading.string = match.group(1).lower().title()
        p.replace_with(heading)


def ensure_policy_statement_spacer(soup: BeautifulSoup) -> None:
    for heading in soup.find_all("h2"):
        if heading.get_text().strip().lower() != POLICY_STATEMENT.lower():
            continue
        following = _next_element_sibling(heading)
        if isinstance(following, Tag) and following.name == "p" and _is_blank(following):
            return
        heading.insert_after(_spacer(soup))
        return


def _looks_unordered(ol: Tag, style_type: str | None) -> bool:
    if style_type in BULLET_STYLES:
        return True
    items = ol.find_all("li", recursive=False)
    return bool(items) and all(BULLET_GLYPH_RE.match(li.get_text()) for li in items)


def _strip_bullet_glyph(li: Tag) -> None:
    for text in li.find_all(string=True):
        if not str(text).strip():
            continue
        text.replace_with(BULLET_GLYPH_RE.sub("", str(text), count=1))
        return


def normalize_lists(soup: BeautifulSoup) -> None:
    """Keep numbered lists ordered with an explicit type; demote bullet lists."""
    for ol in soup.find_all("ol"):
        list_type = ol.get("type")
        match = LIST_STYLE_RE.search(ol.get("style", ""))
        style_type = match.group(1).lower() if match else None
        if list_type in ORDERED_TYPES or style_type in NUMBERED_STYLES:
            continue
        if _looks_unordered(ol, style_type):
            ol.name = "ul"
            if "type" in ol.attrs:
                del ol["type"]
            for li in ol.find_all("li", recursive=False):
                _strip_bullet_glyph(li)
            continue
        ol["type"] = "1"

    for ul in soup.find_all("ul"):
        for p in ul.find_all("p"):
            if not p.decomposed and not p.get_text().strip() and not p.find(True):
                p.decompose()


def remove_empty_list_items(soup: BeautifulSoup) -> None:
    for li in soup.find_all("li"):
        if li.decomposed:
            continue
        if not li.get_text().strip() and not li.find(["img", "table", "ul", "ol"]):
            li.decompose()


def drop_unsafe_elements(soup: BeautifulSoup) -> None:
    """Remove elements whose content must never reach the output."""
    for tag in soup.find_all(list(UNSAFE_ELEMENTS)):
        tag.decompose()
    for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
        comment.extract()


def sanitize(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    drop_unsafe_elements(soup)
    return bleach.clean(
        soup.decode(formatter="html5"),
        tags=ALLOWED_TAGS,
        attributes=_allow_attribute,
        protocols=ALLOWED_PROTOCOLS,
        css_sanitizer=_css_sanitizer,
        strip=True,
        strip_comments=True,
    )


def _run_pass(name: str, func, *args) -> None:
    try:
        func(*args)
    except Exception:
        logger.warning("normalizer pass %s failed; skipping it", name, exc_info=True)


def normalize_policy_html(html: str) -> str:
    """Return cleaned, sanitized HTML for a converted policy document."""
    source = html or ""
    soup = BeautifulSoup(source, "html.parser")

    _run_pass("strip_legacy_header", strip_legacy_header, soup, source)
    _run_pass("remove_classification_lines", remove_classification_lines, soup)
    _run_pass("collapse_empty_paragraphs", collapse_empty_paragraphs, soup)
    _run_pass("promote_label_paragraphs", promote_label_paragraphs, soup)
    _run_pass("ensure_policy_statement_spacer", ensure_policy_statement_spacer, soup)
    _run_pass("normalize_lists", normalize_lists, soup)
    _run_pass("remove_empty_list_items", remove_empty_list_items, soup)

    return sanitize(soup.decode(formatter="html5")).strip()
