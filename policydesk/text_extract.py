"""Text and HTML extraction for uploaded Word documents."""

import io
import logging
import os

import mammoth
from docx import Document

logger = logging.getLogger(__name__)

# Word paragraph styles mapped onto semantic HTML so headings survive the
# conversion and the normalizer only has to deal with label paragraphs.
STYLE_MAP = """
paragraph[style-name='Title'] => h1:fresh
paragraph[style-name='Heading 1'] => h1:fresh
paragraph[style-name='Heading 2'] => h2:fresh
paragraph[style-name='Heading 3'] => h3:fresh
paragraph[style-name='Heading 4'] => h4:fresh
paragraph[style-name='List Number'] => ol > li:fresh
paragraph[style-name='List Bullet'] => ul > li:fresh
r[style-name='Strong'] => strong
r[style-name='Emphasis'] => em
"""

DOCX_MIMETYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


def is_docx_filename(filename: str | None) -> bool:
    return bool(filename) and os.path.splitext(filename)[1].lower() == ".docx"


def extract_raw_text(data: bytes) -> str:
    """Return the plain text of a DOCX document.

    Paragraph breaks are kept as newlines, which the metadata extractor relies
    on when a label and its value sit on consecutive lines.
    """
    if not data.startswith(b"PK"):
        raise ValueError("not a .docx document")
    try:
        result = mammoth.extract_raw_text(io.BytesIO(data))
        return result.value
    except Exception:
        logger.warning("mammoth raw text extraction failed, falling back to python-docx", exc_info=True)
        doc = Document(io.BytesIO(data))
        return "\n".join(p.text for p in doc.paragraphs)


def docx_to_html(data: bytes) -> str:
    """Convert a DOCX document to an HTML fragment."""
    with io.BytesIO(data) as buffer:
        result = mammoth.convert_to_html(buffer, style_map=STYLE_MAP)
    for message in result.messages:
        logger.debug("mammoth %s: %s", message.type, message.message)
    return result.value.strip()
