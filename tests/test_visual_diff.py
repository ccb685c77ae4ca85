import pytest
from PIL import Image, ImageDraw

from conftest import make_pdf
from visual_diff import (
    DiffOptions,
    RenderedPage,
    compare_documents,
    compare_pages,
    diff_blocks,
    matched_page_count,
    paint_overlay,
)


def _page(size=(100, 100), square=None, fill=(0, 0, 0), background=(255, 255, 255)):
    image = Image.new("RGB", size, background)
    if square:
        x, y, side = square
        ImageDraw.Draw(image).rectangle([x, y, x + side - 1, y + side - 1], fill=fill)
    return image


def test_identical_pages_have_no_changes():
    page = _page(square=(10, 10, 30))
    assert diff_blocks(page, page.copy()) == []


def test_added_square_flags_exactly_its_blocks():
    old = _page()
    new = _page(square=(20, 20, 50))
    blocks = diff_blocks(old, new, block_size=5, threshold=18)
    assert len(blocks) == 100
    assert {b.x for b in blocks} == set(range(20, 70, 5))
    assert {b.y for b in blocks} == set(range(20, 70, 5))


def test_diff_is_symmetric():
    a = _page(square=(5, 5, 20))
    b = _page(square=(40, 30, 25), fill=(90, 90, 90))
    assert set(diff_blocks(a, b)) == set(diff_blocks(b, a))


def test_raising_threshold_never_adds_blocks():
    a = _page(square=(5, 5, 40), fill=(200, 200, 200))
    b = _page(square=(20, 20, 40), fill=(0, 0, 0))
    low = set(diff_blocks(a, b, threshold=10))
    high = set(diff_blocks(a, b, threshold=100))
    assert high <= low
    assert low


def test_near_white_differences_are_ignored():
    old = _page(background=(255, 255, 255))
    new = _page(background=(250, 250, 250))
    assert diff_blocks(old, new, threshold=0) == []


def test_only_overlapping_region_is_compared():
    old = _page(size=(100, 100))
    new = _page(size=(120, 80), square=(100, 0, 20))
    assert diff_blocks(old, new) == []


def test_invalid_block_size():
    with pytest.raises(ValueError):
        diff_blocks(_page(), _page(), block_size=0)
    with pytest.raises(ValueError):
        DiffOptions(block_size=0).validate()


def test_overlay_is_translucent_and_sized_to_new_page():
    old = RenderedPage(0, _page(size=(60, 60)))
    new = RenderedPage(0, _page(size=(80, 70), square=(10, 10, 10)))
    overlay = compare_pages(old, new, DiffOptions(block_size=5, threshold=18))
    image = overlay.image()
    assert image.size == (80, 70)
    assert image.getpixel((12, 12))[3] == 97
    assert image.getpixel((40, 40))[3] == 0
    data = overlay.to_dict()
    assert data["page"] == 1
    assert len(data["blocks"]) == 4


def test_paint_overlay_fills_blocks():
    image = paint_overlay((20, 20), [], 5)
    assert image.getbbox() is None


def test_matched_page_count():
    assert matched_page_count(3, 5) == 3
    assert matched_page_count(0, 0) == 1


def test_compare_documents_renders_and_clamps_page():
    old_pdf = make_pdf(pages=2)
    new_pdf = make_pdf(pages=3, square=(100, 100, 60))
    calls = []

    def load_new():
        calls.append("new")
        return new_pdf

    comparison = compare_documents(old_pdf, load_new, page=10, options=DiffOptions(scale=0.5))
    assert calls == ["new"]
    assert comparison.page == 2
    assert comparison.pages_old == 2
    assert comparison.pages_new == 3
    assert comparison.matched_pages == 2
    data = comparison.to_dict()
    assert data["changed_blocks"] > 0
    assert data["page"] == 2
    assert comparison.to_png().startswith(b"\x89PNG")


def test_compare_documents_without_changes():
    pdf = make_pdf("Same text")
    comparison = compare_documents(pdf, pdf, options=DiffOptions(scale=0.5))
    assert comparison.overlay.blocks == []
