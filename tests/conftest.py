import os
import sys
import importlib
import tempfile
from pathlib import Path

import pytest

repo_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(repo_root))
sys.path.insert(0, str(repo_root / "policydesk"))

# Storage and models read their settings at import time.
os.environ["STORAGE__TYPE"] = "fs"
os.environ.setdefault("STORAGE__FS_PATH", tempfile.mkdtemp(prefix="policydesk-files-"))
os.environ["DATABASE_URL"] = f"sqlite:///{repo_root / 'test.db'}"


@pytest.fixture(scope="session", autouse=True)
def setup_database():
    db_path = repo_root / "test.db"
    models = importlib.import_module("models")
    models.Base.metadata.create_all(bind=models.engine)

    yield

    models.Base.metadata.drop_all(bind=models.engine)
    models.engine.dispose()
    if db_path.exists():
        db_path.unlink()


@pytest.fixture(autouse=True)
def reset_database():
    m = importlib.import_module("models")
    m.SessionLocal.remove()
    m.Base.metadata.drop_all(bind=m.engine)
    m.Base.metadata.create_all(bind=m.engine)
    yield


def make_pdf(text: str = "", pages: int = 1, square=None) -> bytes:
    """Small reportlab PDF used as a stand-in for rendered documents.

    ``square`` is ``(x, y, size)`` in points from the top-left corner and is
    drawn filled black on every page.
    """
    import io

    from reportlab.lib.pagesizes import A4
    from reportlab.pdfgen import canvas

    buffer = io.BytesIO()
    c = canvas.Canvas(buffer, pagesize=A4)
    width, height = A4
    for page in range(pages):
        if text:
            c.setFont("Helvetica", 12)
            c.drawString(72, height - 300, f"{text} {page + 1}")
        if square:
            x, y, size = square
            c.rect(x, height - y - size, size, size, stroke=0, fill=1)
        c.showPage()
    c.save()
    return buffer.getvalue()


def make_docx(paragraphs) -> bytes:
    """Build a ``.docx`` whose body is ``paragraphs`` (strings or (style, text))."""
    import io

    from docx import Document

    document = Document()
    for item in paragraphs:
        if isinstance(item, tuple):
            style, text = item
            document.add_paragraph(text, style=style)
        else:
            document.add_paragraph(item)
    buffer = io.BytesIO()
    document.save(buffer)
    return buffer.getvalue()
