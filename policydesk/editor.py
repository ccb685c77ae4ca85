"""Server-side model of the rich-text brief editor.

An :class:`EditorSession` owns the document tree of one brief.  Two explicit
state fields replace the implicit flags a browser editor would keep:

``sync_state``
    ``APPLYING_PROGRAMMATIC_UPDATE`` while a change made through the session
    is being echoed back by the caller.  The next :meth:`EditorSession.sync`
    call then only clears the flag; any other ``sync`` is an external change
    (template load, import) and re-renders the tree.

``load_state``
    ``LOADED`` once real content has been loaded.  Autosave is suppressed
    before that so an empty editor never overwrites stored content.
"""

import copy
import logging
import re
from dataclasses import dataclass
from enum import Enum

from bs4 import BeautifulSoup, NavigableString, Tag

from assembly import extract_body_fragment, generate_download_html, grid_table_html, table_template_html

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 50

HORIZONTAL_RULE_HTML = '<hr style="border: none; border-top: 2px solid #000; margin: 16px 0;"><p><br></p>'
BLOCK_FORMATS = {"p", "h1", "h2", "h3", "h4", "blockquote"}
FONT_SIZES_PT = {1: 8, 2: 10, 3: 12, 4: 14, 5: 18, 6: 24, 7: 36}
FONT_NAMES = {"Calibri", "Arial", "Times New Roman", "Georgia", "Verdana", "Courier New"}
INDENT_PX = 40
ADD_ROW_SELECTOR = "button.add-row-btn, .add-row-container, [data-add-row]"
HEADINGS = ["h1", "h2", "h3", "h4", "h5", "h6"]

_COLOR_RE = re.compile(r"^(#[0-9a-fA-F]{3,8}|[a-zA-Z]+|rgba?\([\d\s.,%]+\))$")
_INLINE_WRAPPERS = {
    "bold": "strong",
    "italic": "em",
    "underline": "u",
    "strikeThrough": "s",
}
_ALIGNMENTS = {
    "justifyLeft": "left",
    "justifyCenter": "center",
    "justifyRight": "right",
    "justifyFull": "justify",
}


class SyncState(Enum):
    IDLE = "idle"
    APPLYING_PROGRAMMATIC_UPDATE = "applying_programmatic_update"


class LoadState(Enum):
    UNINITIALIZED = "uninitialized"
    LOADED = "loaded"


@dataclass(frozen=True)
class RowAnchor:
    """A heading immediately followed by a table that can take more rows."""

    heading_index: int
    heading_text: str
    table_index: int

    def to_dict(self) -> dict:
        return {
            "heading_index": self.heading_index,
            "heading_text": self.heading_text,
            "table_index": self.table_index,
        }


def _parse(fragment: str) -> BeautifulSoup:
    return BeautifulSoup(fragment or "", "html.parser")


def clean_external_content(content: str) -> str:
    """Reduce pushed content to an editable body fragment."""
    fragment = extract_body_fragment(content)
    soup = _parse(fragment)
    for tag in soup.select(ADD_ROW_SELECTOR):
        tag.decompose()
    return soup.decode(formatter="html5").strip()


def _style_map(tag: Tag) -> dict:
    styles = {}
    for declaration in (tag.get("style") or "").split(";"):
        if ":" not in declaration:
            continue
        prop, value = declaration.split(":", 1)
        styles[prop.strip().lower()] = value.strip()
    return styles


def _set_style(tag: Tag, prop: str, value: str | None) -> None:
    styles = _style_map(tag)
    if value is None:
        styles.pop(prop, None)
    else:
        styles[prop] = value
    if styles:
        tag["style"] = " ".join(f"{k}: {v};" for k, v in styles.items())
    elif "style" in tag.attrs:
        del tag["style"]


def _next_tag(tag: Tag):
    sibling = tag.next_sibling
    while sibling is not None:
        if isinstance(sibling, Tag):
            return sibling
        if isinstance(sibling, NavigableString) and str(sibling).strip():
            return None
        sibling = sibling.next_sibling
    return None


def _own_rows(table: Tag) -> list:
    return [tr for tr in table.find_all("tr") if tr.find_parent("table") is table]


class EditorSession:
    def __init__(
        self,
        content: str = "",
        title: str = "Untitled Document",
        on_change=None,
        sync_state: SyncState = SyncState.IDLE,
        load_state: LoadState | None = None,
    ) -> None:
        self.title = title
        self.on_change = on_change
        self.sync_state = sync_state
        if load_state is None:
            load_state = LoadState.LOADED if content else LoadState.UNINITIALIZED
        self.load_state = load_state
        self._soup = _parse(clean_external_content(content) if content else "")
        self._undo: list[str] = []
        self._redo: list[str] = []
        self._anchors: list[RowAnchor] | None = None

    # -- content ---------------------------------------------------------
    @property
    def html(self) -> str:
        return self._soup.decode(formatter="html5").strip()

    def should_autosave(self) -> bool:
        return self.load_state is LoadState.LOADED

    def sync(self, content: str) -> bool:
        """Accept content pushed by the caller.

        Returns ``True`` when the tree was re-rendered from ``content``.
        """
        if self.sync_state is SyncState.APPLYING_PROGRAMMATIC_UPDATE:
            self.sync_state = SyncState.IDLE
            return False
        fragment = clean_external_content(content)
        if self.load_state is LoadState.LOADED and fragment == self.html:
            return False
        self._soup = _parse(fragment)
        self._undo.clear()
        self._redo.clear()
        self._anchors = None
        self.load_state = LoadState.LOADED
        return True

    def import_document(self, html: str, title: str | None = None) -> str:
        """Load a standalone HTML document (or fragment) as external content."""
        if title is None:
            match = re.search(r"<title[^>]*>([\s\S]*?)</title>", html or "", re.IGNORECASE)
            if match and match.group(1).strip():
                title = BeautifulSoup(match.group(1), "html.parser").get_text().strip()
        if title:
            self.title = title
        self.sync_state = SyncState.IDLE
        self.sync(html)
        return self.html

    def import_docx(self, data: bytes, filename: str | None = None) -> str:
        from text_extract import docx_to_html

        title = re.sub(r"\.docx$", "", filename or "", flags=re.IGNORECASE) or None
        return self.import_document(docx_to_html(data), title=title)

    def export_html(self) -> str:
        return generate_download_html(self.title, self.html)

    # -- change plumbing -------------------------------------------------
    def _snapshot(self) -> None:
        self._undo.append(self.html)
        if len(self._undo) > HISTORY_LIMIT:
            del self._undo[0]
        self._redo.clear()

    def _changed(self) -> None:
        self._anchors = None
        self.load_state = LoadState.LOADED
        self.sync_state = SyncState.APPLYING_PROGRAMMATIC_UPDATE
        if self.on_change is not None:
            self.on_change(self.html)

    def _target(self, selector: str | None):
        if selector:
            try:
                return self._soup.select_one(selector)
            except Exception:
                logger.debug("invalid target selector %r", selector)
                return None
        blocks = [node for node in self._soup.contents if isinstance(node, Tag)]
        return blocks[-1] if blocks else None

    def _insert_html(self, html: str, target: Tag | None) -> None:
        fragment = _parse(html)
        nodes = [node.extract() for node in list(fragment.contents)]
        anchor = target
        for node in nodes:
            if anchor is None:
                self._soup.append(node)
            else:
                anchor.insert_after(node)
            anchor = node

    # -- commands ----------------------------------------------------------
    def apply_command(self, command: str, value: str | None = None, target: str | None = None) -> bool:
        """Apply a formatting command; unknown or inapplicable commands are no-ops.

        ``target`` is a CSS selector naming the element to act on; without it
        the last block of the document is used.  Returns ``True`` when the
        document changed.
        """
        if command == "undo":
            return self.undo()
        if command == "redo":
            return self.redo()

        handler = self._handlers().get(command)
        if handler is None:
            logger.debug("ignoring unknown editor command %r", command)
            return False

        before = self.html
        node = self._target(target)
        if node is None and command not in ("insertHTML", "insertHorizontalRule"):
            logger.debug("editor command %r has no target", command)
            return False
        try:
            applied = handler(node, value)
        except Exception:
            logger.warning("editor command %r failed", command, exc_info=True)
            self._soup = _parse(before)
            return False
        if not applied:
            return False
        self._undo.append(before)
        if len(self._undo) > HISTORY_LIMIT:
            del self._undo[0]
        self._redo.clear()
        self._changed()
        return True

    def _handlers(self) -> dict:
        handlers = {name: self._inline(tag) for name, tag in _INLINE_WRAPPERS.items()}
        handlers.update({name: self._align(value) for name, value in _ALIGNMENTS.items()})
        handlers.update(
            insertUnorderedList=self._list("ul"),
            insertOrderedList=self._list("ol"),
            indent=self._indent(INDENT_PX),
            outdent=self._indent(-INDENT_PX),
            createLink=self._create_link,
            unlink=self._unlink,
            formatBlock=self._format_block,
            insertHorizontalRule=lambda node, value: self._insert_fragment(node, HORIZONTAL_RULE_HTML),
            insertHTML=self._insert_fragment,
            fontName=self._font_name,
            fontSize=self._font_size,
            foreColor=self._color("color"),
            hiliteColor=self._color("background-color"),
        )
        return handlers

    def _wrap(self, node: Tag, name: str, style: str | None = None) -> bool:
        if node.name in ("hr", "img", "br", "table"):
            return False
        wrapper = self._soup.new_tag(name)
        if style:
            wrapper["style"] = style
        for child in list(node.contents):
            wrapper.append(child.extract())
        node.append(wrapper)
        return True

    def _inline(self, name: str):
        def handler(node, value):
            children = [c for c in node.contents if not (isinstance(c, NavigableString) and not str(c).strip())]
            if len(children) == 1 and isinstance(children[0], Tag) and children[0].name == name:
                children[0].unwrap()
                return True
            return self._wrap(node, name)
        return handler

    def _align(self, alignment: str):
        def handler(node, value):
            _set_style(node, "text-align", alignment)
            return True
        return handler

    def _list(self, kind: str):
        def handler(node, value):
            if node.name == "li" and node.parent is not None and node.parent.name in ("ul", "ol"):
                parent = node.parent
                if parent.name == kind:
                    # Toggling the same list type turns the items back into paragraphs.
                    for item in parent.find_all("li", recursive=False):
                        item.name = "p"
                    parent.unwrap()
                else:
                    parent.name = kind
                return True
            if node.name in ("ul", "ol"):
                node.name = kind
                return True
            lst = self._soup.new_tag(kind)
            node.replace_with(lst)
            node.name = "li"
            lst.append(node)
            return True
        return handler

    def _indent(self, delta: int):
        def handler(node, value):
            current = _style_map(node).get("margin-left", "0px")
            match = re.match(r"(-?\d+(?:\.\d+)?)px", current)
            amount = (float(match.group(1)) if match else 0) + delta
            if amount <= 0:
                if "margin-left" not in _style_map(node):
                    return False
                _set_style(node, "margin-left", None)
            else:
                _set_style(node, "margin-left", f"{int(amount)}px")
            return True
        return handler

    def _create_link(self, node, value):
        url = (value or "").strip()
        if not url or not re.match(r"^(https?:|mailto:|/|#)", url, re.IGNORECASE):
            return False
        if self._wrap(node, "a"):
            node.find("a", recursive=False)["href"] = url
            return True
        return False

    def _unlink(self, node, value):
        links = [node] if node.name == "a" else node.find_all("a")
        for link in links:
            link.unwrap()
        return bool(links)

    def _format_block(self, node, value):
        name = (value or "").strip().strip("<>").lower()
        if name not in BLOCK_FORMATS:
            return False
        if node.name not in BLOCK_FORMATS | {"div", "li"}:
            return False
        if node.name == "li":
            wrapper = self._soup.new_tag(name)
            for child in list(node.contents):
                wrapper.append(child.extract())
            node.append(wrapper)
            return True
        node.name = name
        return True

    def _insert_fragment(self, node, value):
        if not value:
            return False
        self._insert_html(value, node)
        return True

    def _font_name(self, node, value):
        if value not in FONT_NAMES:
            return False
        return self._wrap(node, "span", f"font-family: {value};")

    def _font_size(self, node, value):
        try:
            size = FONT_SIZES_PT[int(value)]
        except (TypeError, ValueError, KeyError):
            return False
        return self._wrap(node, "span", f"font-size: {size}pt;")

    def _color(self, prop: str):
        def handler(node, value):
            color = (value or "").strip()
            if not _COLOR_RE.match(color):
                return False
            return self._wrap(node, "span", f"{prop}: {color};")
        return handler

    # -- history -----------------------------------------------------------
    def undo(self) -> bool:
        if not self._undo:
            return False
        self._redo.append(self.html)
        self._soup = _parse(self._undo.pop())
        self._changed()
        return True

    def redo(self) -> bool:
        if not self._redo:
            return False
        self._undo.append(self.html)
        self._soup = _parse(self._redo.pop())
        self._changed()
        return True

    # -- tables ------------------------------------------------------------
    def insert_table(
        self,
        template: str = "grid",
        rows: int | None = None,
        cols: int | None = None,
        has_header: bool = True,
        target: str | None = None,
    ) -> bool:
        """Insert a grid or one of the named brief tables after ``target``."""
        if template == "grid":
            html = grid_table_html(int(rows or 2), int(cols or 4), has_header)
        else:
            html = table_template_html(template)
        node = self._target(target)
        self._snapshot()
        self._insert_html(html, node)
        self._changed()
        return True

    def row_anchors(self) -> list[RowAnchor]:
        """Headings directly followed by a table, in document order.

        The scan runs at most once per change; repeated calls between
        changes reuse the previous result.
        """
        if self._anchors is None:
            tables = self._soup.find_all("table")
            anchors = []
            for index, heading in enumerate(self._soup.find_all(HEADINGS)):
                following = _next_tag(heading)
                if following is None or following.name != "table":
                    continue
                anchors.append(
                    RowAnchor(
                        heading_index=index,
                        heading_text=heading.get_text(" ", strip=True),
                        table_index=next(i for i, t in enumerate(tables) if t is following),
                    )
                )
            self._anchors = anchors
        return list(self._anchors)

    def append_row(self, table_index: int) -> bool:
        """Append a copy of the table's last row with bold styling stripped."""
        tables = self._soup.find_all("table")
        if not 0 <= table_index < len(tables):
            logger.debug("no table at index %s", table_index)
            return False
        rows = _own_rows(tables[table_index])
        if not rows:
            return False
        last = rows[-1]
        row = copy.copy(last)
        for cell in row.find_all(["td", "th"]):
            if cell.name == "th":
                cell.name = "td"
                _set_style(cell, "background-color", None)
                _set_style(cell, "text-align", None)
            for node in [cell, *cell.find_all(True)]:
                _set_style(node, "font-weight", None)
            for bold in cell.find_all(["b", "strong"]):
                bold.unwrap()
        self._snapshot()
        last.insert_after(row)
        self._changed()
        return True
