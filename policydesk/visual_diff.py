"""Block-sampled visual comparison of two rendered PDF versions.

Each page pair is compared on a grid of square blocks.  Five points per
block (the four corners and the centre) are sampled in both renditions, the
absolute luma difference is averaged over the usable samples and the block is
flagged when the average reaches the threshold.  Samples that are near-white
in both renditions carry no information and are skipped, so blank margins
never light up.
"""

import io
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

import fitz  # PyMuPDF
import numpy as np
from PIL import Image, ImageDraw

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_SIZE = int(os.environ.get("DIFF_BLOCK_SIZE", "5"))
DEFAULT_THRESHOLD = float(os.environ.get("DIFF_THRESHOLD", "18"))
DEFAULT_SCALE = float(os.environ.get("DIFF_SCALE", "1.35"))

WHITE_LUMA = 245
HIGHLIGHT_RGBA = (255, 235, 59, round(0.38 * 255))


@dataclass
class DiffOptions:
    block_size: int = DEFAULT_BLOCK_SIZE
    threshold: float = DEFAULT_THRESHOLD
    scale: float = DEFAULT_SCALE

    def validate(self) -> "DiffOptions":
        if int(self.block_size) < 1:
            raise ValueError("block_size must be at least 1")
        if self.threshold < 0:
            raise ValueError("threshold must not be negative")
        if self.scale <= 0:
            raise ValueError("scale must be positive")
        self.block_size = int(self.block_size)
        return self


@dataclass(frozen=True)
class DiffBlock:
    x: int
    y: int


@dataclass
class RenderedPage:
    page_index: int
    image: Image.Image

    @property
    def width_px(self) -> int:
        return self.image.width

    @property
    def height_px(self) -> int:
        return self.image.height


@dataclass
class DiffOverlay:
    """Highlighted blocks for one page pair, sized to the new page."""

    page_index: int
    width: int
    height: int
    block_size: int
    blocks: list[DiffBlock] = field(default_factory=list)

    def image(self) -> Image.Image:
        return paint_overlay((self.width, self.height), self.blocks, self.block_size)

    def composite(self, new_image: Image.Image) -> Image.Image:
        """Return ``new_image`` with the highlight overlay blended on top."""
        base = new_image.convert("RGBA")
        return Image.alpha_composite(base, self.image())

    def to_dict(self) -> dict:
        return {
            "page": self.page_index + 1,
            "width": self.width,
            "height": self.height,
            "block_size": self.block_size,
            "blocks": [{"x": b.x, "y": b.y} for b in self.blocks],
        }


@dataclass
class DocumentComparison:
    page: int
    pages_old: int
    pages_new: int
    overlay: DiffOverlay
    new_page: RenderedPage

    @property
    def matched_pages(self) -> int:
        return matched_page_count(self.pages_old, self.pages_new)

    def to_dict(self) -> dict:
        data = self.overlay.to_dict()
        data.update(
            pages_old=self.pages_old,
            pages_new=self.pages_new,
            matched_pages=self.matched_pages,
            changed_blocks=len(self.overlay.blocks),
        )
        return data

    def to_png(self) -> bytes:
        buffer = io.BytesIO()
        self.overlay.composite(self.new_page.image).convert("RGB").save(buffer, format="PNG")
        return buffer.getvalue()


def matched_page_count(pages_old: int, pages_new: int) -> int:
    return max(1, min(pages_old, pages_new))


def _luma(image: Image.Image) -> np.ndarray:
    rgb = np.asarray(image.convert("RGB"), dtype=np.float64)
    return 0.299 * rgb[..., 0] + 0.587 * rgb[..., 1] + 0.114 * rgb[..., 2]


def diff_blocks(
    old_image: Image.Image,
    new_image: Image.Image,
    block_size: int = DEFAULT_BLOCK_SIZE,
    threshold: float = DEFAULT_THRESHOLD,
) -> list[DiffBlock]:
    """Return the origins of blocks whose sampled luma differs by ``threshold``.

    Only the overlapping region of the two images is compared.  Blocks with no
    usable sample are never flagged.
    """
    block_size = int(block_size)
    if block_size < 1:
        raise ValueError("block_size must be at least 1")
    width = min(old_image.width, new_image.width)
    height = min(old_image.height, new_image.height)
    if width <= 0 or height <= 0:
        return []

    old_luma = _luma(old_image)
    new_luma = _luma(new_image)

    xs = np.arange(0, width, block_size)
    ys = np.arange(0, height, block_size)
    sums = np.zeros((len(ys), len(xs)))
    counts = np.zeros((len(ys), len(xs)), dtype=np.int64)

    last = block_size - 1
    offsets = ((0, 0), (last, 0), (0, last), (last, last), (block_size // 2, block_size // 2))
    for dx, dy in offsets:
        px = xs + dx
        py = ys + dy
        inside = (py < height)[:, None] & (px < width)[None, :]
        grid_x, grid_y = np.meshgrid(np.minimum(px, width - 1), np.minimum(py, height - 1))
        a = old_luma[grid_y, grid_x]
        b = new_luma[grid_y, grid_x]
        usable = inside & ~((a > WHITE_LUMA) & (b > WHITE_LUMA))
        sums += np.where(usable, np.abs(a - b), 0.0)
        counts += usable

    averages = np.divide(sums, counts, out=np.zeros_like(sums), where=counts > 0)
    flagged = (counts > 0) & (averages >= threshold)
    return [DiffBlock(int(xs[col]), int(ys[row])) for row, col in np.argwhere(flagged)]


def paint_overlay(size: tuple[int, int], blocks: list[DiffBlock], block_size: int) -> Image.Image:
    """Transparent RGBA image with every flagged block filled in yellow."""
    overlay = Image.new("RGBA", size, (0, 0, 0, 0))
    draw = ImageDraw.Draw(overlay)
    for block in blocks:
        draw.rectangle(
            [block.x, block.y, block.x + block_size - 1, block.y + block_size - 1],
            fill=HIGHLIGHT_RGBA,
        )
    return overlay


def compare_pages(old_page: RenderedPage, new_page: RenderedPage, options: DiffOptions | None = None) -> DiffOverlay:
    options = (options or DiffOptions()).validate()
    blocks = diff_blocks(old_page.image, new_page.image, options.block_size, options.threshold)
    return DiffOverlay(
        page_index=new_page.page_index,
        width=new_page.width_px,
        height=new_page.height_px,
        block_size=options.block_size,
        blocks=blocks,
    )


# -- rendering ---------------------------------------------------------------
def _render(doc, page_index: int, scale: float) -> RenderedPage:
    page = doc.load_page(page_index)
    pix = page.get_pixmap(matrix=fitz.Matrix(scale, scale), alpha=False)
    image = Image.frombytes("RGB", (pix.width, pix.height), pix.samples)
    return RenderedPage(page_index=page_index, image=image)


def render_pdf_pages(pdf_bytes: bytes, scale: float = DEFAULT_SCALE) -> list[RenderedPage]:
    with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
        return [_render(doc, i, scale) for i in range(doc.page_count)]


def render_pdf_page(pdf_bytes: bytes, page_index: int, scale: float = DEFAULT_SCALE) -> RenderedPage:
    with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
        return _render(doc, page_index, scale)


def pdf_page_count(pdf_bytes: bytes) -> int:
    with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
        return doc.page_count


def _resolve(source) -> bytes:
    return source() if callable(source) else source


def _load(source) -> tuple[bytes, int]:
    data = _resolve(source)
    return data, pdf_page_count(data)


def compare_documents(old_source, new_source, page: int = 1, options: DiffOptions | None = None) -> DocumentComparison:
    """Compare one page of two PDF renditions.

    ``old_source`` and ``new_source`` are PDF bytes or zero-argument callables
    returning them.  Both renditions are fetched, and then rendered, in
    parallel; the diff only runs once both are available.  ``page`` is
    1-based and clamped to the pages both documents have.
    """
    options = (options or DiffOptions()).validate()
    with ThreadPoolExecutor(max_workers=2) as pool:
        old_future = pool.submit(_load, old_source)
        new_future = pool.submit(_load, new_source)
        old_pdf, pages_old = old_future.result()
        new_pdf, pages_new = new_future.result()

        matched = matched_page_count(pages_old, pages_new)
        page = min(max(1, int(page)), matched)
        old_future = pool.submit(render_pdf_page, old_pdf, page - 1, options.scale)
        new_future = pool.submit(render_pdf_page, new_pdf, page - 1, options.scale)
        old_page = old_future.result()
        new_page = new_future.result()

    overlay = compare_pages(old_page, new_page, options)
    logger.info(
        "compared page %d of %d/%d: %d changed block(s)",
        page,
        pages_old,
        pages_new,
        len(overlay.blocks),
    )
    return DocumentComparison(
        page=page,
        pages_old=pages_old,
        pages_new=pages_new,
        overlay=overlay,
        new_page=new_page,
    )
