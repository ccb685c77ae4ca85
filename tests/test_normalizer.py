from bs4 import BeautifulSoup

from normalizer import normalize_policy_html, sanitize


def _soup(html):
    return BeautifulSoup(html, "html.parser")


def test_removes_scripts_and_event_handlers():
    html = (
        '<p onclick="steal()">Hello<script>alert(1)</script></p>'
        '<a href="javascript:alert(1)">x</a><iframe src="http://evil"></iframe>'
    )
    out = normalize_policy_html(html)
    assert "script" not in out
    assert "onclick" not in out
    assert "javascript:" not in out
    assert "iframe" not in out
    assert "Hello" in out


def test_style_blocks_are_dropped_with_content():
    out = sanitize("<style>p { color: red; }</style><p>Body</p>")
    assert "color: red" not in out
    assert out == "<p>Body</p>"


def test_strips_legacy_header_table_and_department_lines():
    html = (
        "<p>Public Safety and Emergency Services</p>"
        "<table><tr><td>SECTION</td><td>NUMBER</td></tr>"
        "<tr><td>SUBJECT</td><td>PAGE</td></tr></table>"
        "<p>Body text</p>"
    )
    out = normalize_policy_html(html)
    assert "<table" not in out
    assert "Public Safety" not in out
    assert "Body text" in out


def test_other_tables_are_kept():
    html = "<table><tr><td>Term</td><td>Meaning</td></tr></table>"
    assert "<table>" in normalize_policy_html(html)


def test_leading_logo_is_removed():
    out = normalize_policy_html('<p><img src="logo.png"></p><p>Text</p>')
    assert "img" not in out
    assert "Text" in out


def test_classification_line_is_removed():
    out = normalize_policy_html("<p>Classification: Protected B</p><p>Rule</p>")
    assert "Protected" not in out


def test_runs_of_empty_paragraphs_collapse_to_one_spacer():
    out = normalize_policy_html("<p>A</p><p></p><p><br></p><p></p><p>B</p>")
    paragraphs = _soup(out).find_all("p")
    assert [p.get_text() for p in paragraphs] == ["A", "\xa0", "B"]


def test_label_paragraph_becomes_heading_with_spacer():
    out = normalize_policy_html("<p>POLICY STATEMENT:</p><p>All staff must comply.</p>")
    soup = _soup(out)
    heading = soup.find("h2")
    assert heading.get_text() == "Policy Statement"
    spacer = heading.find_next_sibling()
    assert spacer.name == "p" and spacer.get_text() == "\xa0"


def test_numbered_list_keeps_explicit_type():
    out = normalize_policy_html('<ol type="a"><li>first</li><li>second</li></ol>')
    ol = _soup(out).find("ol")
    assert ol["type"] == "a"


def test_plain_ordered_list_gets_decimal_type():
    ol = _soup(normalize_policy_html("<ol><li>one</li><li>two</li></ol>")).find("ol")
    assert ol["type"] == "1"


def test_bullet_list_in_ordered_markup_is_demoted():
    html = "<ol><li>• apples</li><li>• pears</li></ol>"
    soup = _soup(normalize_policy_html(html))
    assert soup.find("ol") is None
    items = [li.get_text() for li in soup.find("ul").find_all("li")]
    assert items == ["apples", "pears"]


def test_empty_list_items_are_removed():
    soup = _soup(normalize_policy_html("<ul><li>keep</li><li> </li><li></li></ul>"))
    assert [li.get_text() for li in soup.find_all("li")] == ["keep"]


def test_never_raises_on_garbage():
    assert normalize_policy_html("") == ""
    assert isinstance(normalize_policy_html("<p><b>unclosed"), str)
