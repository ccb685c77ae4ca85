import pytest
from bs4 import BeautifulSoup

from assembly import BRIEF_TEMPLATE, generate_download_html
from editor import HISTORY_LIMIT, EditorSession, LoadState, RowAnchor, SyncState


def _squash(html):
    return " ".join(html.split())


def _soup(html):
    return BeautifulSoup(html, "html.parser")


def test_initial_states():
    empty = EditorSession()
    assert empty.load_state is LoadState.UNINITIALIZED
    assert empty.sync_state is SyncState.IDLE
    assert not empty.should_autosave()
    assert EditorSession("<p>Hi</p>").should_autosave()


def test_states_are_injectable():
    session = EditorSession(
        "<p>Hi</p>",
        sync_state=SyncState.APPLYING_PROGRAMMATIC_UPDATE,
        load_state=LoadState.UNINITIALIZED,
    )
    assert not session.should_autosave()
    assert session.sync("<p>Other</p>") is False
    assert session.sync_state is SyncState.IDLE
    assert session.html == "<p>Hi</p>"


def test_bold_toggles_and_notifies_listener():
    seen = []
    session = EditorSession("<p>Hello</p>", on_change=seen.append)
    assert session.apply_command("bold")
    assert session.html == "<p><strong>Hello</strong></p>"
    assert seen == ["<p><strong>Hello</strong></p>"]
    assert session.sync_state is SyncState.APPLYING_PROGRAMMATIC_UPDATE
    assert session.apply_command("bold")
    assert session.html == "<p>Hello</p>"


def test_echo_of_own_change_is_not_rerendered():
    session = EditorSession("<p>Hello</p>")
    session.apply_command("italic")
    assert session.sync(session.html) is False
    assert session.sync_state is SyncState.IDLE
    assert session.apply_command("undo")
    assert session.html == "<p>Hello</p>"


def test_external_content_replaces_document():
    session = EditorSession("<p>Old</p>")
    pushed = (
        "<!DOCTYPE html><html><head><style>p { color: red; }</style></head>"
        '<body><p>New</p><button class="add-row-btn">+ Add row</button></body></html>'
    )
    assert session.sync(pushed) is True
    assert session.html == "<p>New</p>"
    assert session.load_state is LoadState.LOADED
    assert session.undo() is False


def test_unknown_command_is_a_noop():
    session = EditorSession("<p>Hello</p>")
    assert session.apply_command("explode") is False
    assert session.apply_command("bold", target="#missing") is False
    assert session.html == "<p>Hello</p>"


def test_format_block():
    session = EditorSession("<p>Title</p>")
    assert session.apply_command("formatBlock", "<h2>")
    assert session.html == "<h2>Title</h2>"
    assert session.apply_command("formatBlock", "script") is False


def test_lists_toggle():
    session = EditorSession("<p>Item</p>")
    session.apply_command("insertUnorderedList")
    assert session.html == "<ul><li>Item</li></ul>"
    session.apply_command("insertOrderedList", target="li")
    assert session.html == "<ol><li>Item</li></ol>"
    session.apply_command("insertOrderedList", target="li")
    assert session.html == "<p>Item</p>"


def test_links():
    session = EditorSession("<p>Docs</p>")
    assert session.apply_command("createLink", "javascript:alert(1)") is False
    assert session.apply_command("createLink", "https://example.com")
    assert session.html == '<p><a href="https://example.com">Docs</a></p>'
    assert session.apply_command("unlink")
    assert session.html == "<p>Docs</p>"


def test_alignment_and_indent():
    session = EditorSession("<p>Text</p>")
    session.apply_command("justifyCenter")
    session.apply_command("indent")
    session.apply_command("indent")
    p = _soup(session.html).p
    assert p["style"] == "text-align: center; margin-left: 80px;"
    session.apply_command("outdent")
    session.apply_command("outdent")
    assert _soup(session.html).p["style"] == "text-align: center;"
    assert session.apply_command("outdent") is False


def test_font_and_colour_commands_validate_values():
    session = EditorSession("<p>Text</p>")
    assert session.apply_command("fontSize", "9") is False
    assert session.apply_command("foreColor", "red; background: url(x)") is False
    assert session.apply_command("fontName", "Comic Sans") is False
    assert session.apply_command("fontSize", "5")
    assert session.apply_command("hiliteColor", "#FFFF00", target="span")
    span = _soup(session.html).find("span")
    assert span["style"] == "font-size: 18pt;"
    assert span.find("span")["style"] == "background-color: #FFFF00;"


def test_horizontal_rule_and_insert_html():
    session = EditorSession("<p>Top</p>")
    session.apply_command("insertHorizontalRule")
    session.apply_command("insertHTML", "<p>After</p>")
    soup = _soup(session.html)
    assert [tag.name for tag in soup.find_all(recursive=False)] == ["p", "hr", "p", "p"]
    assert "border-top: 2px solid #000" in soup.hr["style"]
    assert soup.find_all("p")[-1].get_text() == "After"


def test_insert_html_into_empty_editor_marks_loaded():
    session = EditorSession()
    assert session.apply_command("insertHTML", "<p>First</p>")
    assert session.should_autosave()


def test_undo_redo_and_history_limit():
    session = EditorSession("<p>Text</p>")
    session.apply_command("bold")
    assert session.undo()
    assert session.html == "<p>Text</p>"
    assert session.redo()
    assert session.html == "<p><strong>Text</strong></p>"
    assert session.redo() is False

    for _ in range(HISTORY_LIMIT + 10):
        session.apply_command("indent")
    undone = 0
    while session.undo():
        undone += 1
    assert undone == HISTORY_LIMIT


def test_grid_table_insert():
    session = EditorSession("<p>Intro</p>")
    session.insert_table("grid", rows=3, cols=2)
    table = _soup(session.html).find("table")
    rows = table.find_all("tr")
    assert len(rows) == 3
    assert len(rows[0].find_all("th")) == 2
    assert len(rows[1].find_all("td")) == 2


def test_unknown_table_template():
    session = EditorSession("<p>Intro</p>")
    with pytest.raises(ValueError):
        session.insert_table("budget")
    assert session.html == "<p>Intro</p>"


def test_row_anchors_follow_changes():
    session = EditorSession("<h2>Notes</h2><p>Text</p>")
    assert session.row_anchors() == []
    session.insert_table("risks_issues")
    anchors = session.row_anchors()
    assert anchors == [RowAnchor(heading_index=1, heading_text="Risks and Issues", table_index=0)]
    assert session.row_anchors() == anchors


def test_append_row_copies_styles_without_bold():
    session = EditorSession()
    session.insert_table("executive_summary")
    assert session.append_row(0)
    table = _soup(session.html).find("table")
    rows = table.find_all("tr")
    assert len(rows) == 3
    new_row = rows[-1]
    first_cell = new_row.find("td")
    assert "font-weight" not in first_cell["style"]
    assert "vertical-align: top" in first_cell["style"]
    assert [td.get_text() for td in new_row.find_all("td")] == [
        td.get_text() for td in rows[1].find_all("td")
    ]
    assert session.append_row(7) is False


def test_append_row_duplicates_content_and_unwraps_bold():
    session = EditorSession(
        '<h2>T</h2><table><tr><td><b>Alpha</b></td>'
        '<td><span style="font-weight: bold; color: #ff0000;">Beta</span></td></tr></table>'
    )
    assert session.append_row(0)
    assert session.html.count("Alpha") == 2
    assert session.html.count("Beta") == 2
    new_row = _soup(session.html).find_all("tr")[-1]
    assert new_row.find(["b", "strong"]) is None
    assert new_row.find("span")["style"] == "color: #ff0000;"
    first_row = _soup(session.html).find_all("tr")[0]
    assert first_row.find("b") is not None


def test_export_import_round_trip():
    session = EditorSession(BRIEF_TEMPLATE, title="Weekly Brief")
    exported = session.export_html()
    assert exported.startswith("<!DOCTYPE html>")

    restored = EditorSession()
    restored.import_document(exported)
    assert restored.title == "Weekly Brief"
    assert _squash(restored.html) == _squash(session.html)


def test_import_plain_fragment_keeps_title():
    session = EditorSession(title="Mine")
    session.import_document(generate_download_html("", "<p>Body</p>"))
    assert session.title == "Mine"
    assert session.html == "<p>Body</p>"
