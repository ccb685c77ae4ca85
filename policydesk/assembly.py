"""Structured document templates: weekly briefs and project intake forms.

Everything here is a pure function of its inputs; rendering the same data
twice produces byte-identical HTML.  Dates are always supplied by the caller.
"""

import re
from dataclasses import dataclass, field

from jinja2 import Environment, FileSystemLoader, select_autoescape

from page_template import TEMPLATE_DIRS


HEADER_BG_COLOR = "#B4C6E7"
ALT_HEADER_BG_COLOR = "#D9E2F3"
GREEN_BG_COLOR = "#E2EFDA"
YELLOW_BG_COLOR = "#FFF2CC"
RED_BG_COLOR = "#FCE4D6"
INTAKE_HEADER_BG = "#D9D9D9"

TEXT_COLORS = {
    "Black": "#000000",
    "Dark Red": "#C00000",
    "Red": "#FF0000",
    "Orange": "#ED7D31",
    "Dark Yellow": "#C09100",
    "Green": "#00B050",
    "Dark Green": "#375623",
    "Teal": "#00B0F0",
    "Blue": "#0070C0",
    "Dark Blue": "#002060",
    "Purple": "#7030A0",
}
HIGHLIGHT_COLORS = {
    "Yellow": "#FFFF00",
    "Bright Green": "#00FF00",
    "Cyan": "#00FFFF",
    "Pink": "#FF00FF",
    "Light Blue": "#ADD8E6",
    "Light Green": "#90EE90",
    "Light Yellow": "#FFFACD",
    "None": "transparent",
}

TABLE_STYLE = "width: 100%; border-collapse: collapse; margin: 16px 0;"
TH_STYLE = "border: 1px solid #000; padding: 8px; font-weight: bold; text-align: center;"
TD_STYLE = "border: 1px solid #000; padding: 8px; vertical-align: top;"
HEADING_STYLES = {
    "h1": "font-weight: bold; font-size: 24px; margin-bottom: 16px;",
    "h2": "font-weight: bold; font-size: 18px; margin: 24px 0 16px 0;",
}

CENTER = " text-align: center;"
BOLD = " font-weight: bold;"


@dataclass(frozen=True)
class Column:
    label: str
    width: int
    background: str = HEADER_BG_COLOR
    cell_style: str = ""


@dataclass(frozen=True)
class TableTemplate:
    key: str
    heading: str
    columns: tuple
    rows: tuple = ()
    heading_tag: str = "h2"


def _blank_row(n: int) -> tuple:
    return ("",) * n


TABLE_TEMPLATES = {
    t.key: t
    for t in (
        TableTemplate(
            key="executive_summary",
            heading="Executive Summary",
            heading_tag="h1",
            columns=(
                Column("Project/Initiative", 20, cell_style=BOLD),
                Column("Lead", 10, cell_style=CENTER),
                Column("Summary", 40),
                Column("Status/Next Steps", 30),
            ),
            rows=(("Project Name", "Name", "Enter project summary here...", "Enter status and next steps..."),),
        ),
        TableTemplate(
            key="status_summary",
            heading="Status Summary",
            columns=(
                Column("Item", 30),
                Column("On Track", 15, GREEN_BG_COLOR, CENTER),
                Column("At Risk", 15, YELLOW_BG_COLOR, CENTER),
                Column("Off Track", 15, RED_BG_COLOR, CENTER),
                Column("Notes", 25),
            ),
            rows=(("Item 1", "✓", "", "", ""),),
        ),
        TableTemplate(
            key="key_dates",
            heading="Key Dates",
            columns=(
                Column("Milestone", 25),
                Column("Target Date", 25, cell_style=CENTER),
                Column("Status", 25),
                Column("Notes", 25),
            ),
            rows=(_blank_row(4),),
        ),
        TableTemplate(
            key="risks_issues",
            heading="Risks and Issues",
            columns=(
                Column("Risk/Issue", 30),
                Column("Impact", 15, cell_style=CENTER),
                Column("Likelihood", 15, cell_style=CENTER),
                Column("Mitigation", 40),
            ),
            rows=(_blank_row(4),),
        ),
        TableTemplate(
            key="decisions",
            heading="Decisions Required",
            columns=(
                Column("Decision", 35),
                Column("Owner", 20, cell_style=CENTER),
                Column("Due Date", 20, cell_style=CENTER),
                Column("Status", 25),
            ),
            rows=(_blank_row(4),),
        ),
        TableTemplate(
            key="action_items",
            heading="Action Items",
            columns=(
                Column("#", 10, cell_style=CENTER),
                Column("Action", 40),
                Column("Owner", 20, cell_style=CENTER),
                Column("Due Date", 15, cell_style=CENTER),
                Column("Status", 15, cell_style=CENTER),
            ),
            rows=(("1", "", "", "", ""),),
        ),
    )
}

BRIEF_HEADING = "PPDU Weekly Brief"
DATE_PLACEHOLDER = "[Date Range]"

COMMUNICATIONS_HEADING = "PPDU Change Management & Communications Process"
COMMUNICATIONS_PLAN = (
    ("Early Engagement", "Involve staff in the drafting of new policies or initiatives through toolkits, focus groups, or project teams."),
    ("Director Feedback", "Present proposed changes at <em>Decisions and More</em> meetings for Director-level input."),
    ("Manager Feedback", "Share updates at <em>Leadership Exchange</em> meetings to gather feedback from Managers."),
    ("Supervisor/Coach Feedback", "Communicate changes at <em>Provincial Coaching Calls</em> to engage Supervisors and Peer Coaches."),
    ("Formal Publication", "Issue finalized changes through memos and/or highlight them during <strong>Policy Week</strong> (three times annually)."),
    ("Staff Engagement", "Host <strong>Town Halls</strong> to inform all CCB staff, ensuring recordings are available on SharePoint for later access."),
    ("Deeper Dialogue", "Provide <strong>virtual open houses</strong> for Leadership and staff on key topics to allow time for discussion, reflection, and addressing emerging questions."),
)

_env = Environment(
    loader=FileSystemLoader(TEMPLATE_DIRS),
    autoescape=select_autoescape(["html"]),
    keep_trailing_newline=True,
)
_env.globals.update(
    heading_styles=HEADING_STYLES,
    table_style=TABLE_STYLE,
    th_style=TH_STYLE,
    td_style=TD_STYLE,
)


# -- tables ------------------------------------------------------------------
def table_template_html(key: str) -> str:
    """HTML for one of the named brief tables, with its heading."""
    try:
        table = TABLE_TEMPLATES[key]
    except KeyError:
        raise ValueError(f"Unknown table template: {key}") from None
    return _env.get_template("table_insert.html").render(table=table, heading_tag=table.heading_tag).strip()


def grid_table_html(rows: int, cols: int, has_header: bool = True, header_color: str = HEADER_BG_COLOR) -> str:
    """HTML for a plain ``rows`` x ``cols`` grid, the first row a header row."""
    if rows < 1 or cols < 1:
        raise ValueError("rows and cols must be positive")
    if has_header:
        width = round(100 / cols)
        table = TableTemplate(
            key="grid",
            heading="",
            columns=tuple(Column("Header", width, header_color) for _ in range(cols)),
            rows=tuple(_blank_row(cols) for _ in range(rows - 1)),
        )
        return _env.get_template("table_insert.html").render(table=table, heading_tag="h2").strip()
    cells = "".join(f'<td style="{TD_STYLE}">&nbsp;</td>' for _ in range(cols))
    body = "".join(f"<tr>{cells}</tr>" for _ in range(rows))
    return f'<table style="{TABLE_STYLE}">{body}</table>\n<p><br></p>'


# -- weekly brief --------------------------------------------------------------
_BRIEF_TABLES = ("executive_summary", "executive_queue", "key_dates", "risks_issues", "action_items")


def _brief_tables() -> list[TableTemplate]:
    summary = TABLE_TEMPLATES["executive_summary"]
    tables = []
    for key in _BRIEF_TABLES:
        if key == "executive_queue":
            tables.append(TableTemplate(key=key, heading="Executive Queue", columns=summary.columns, rows=summary.rows))
        else:
            tables.append(TABLE_TEMPLATES[key])
    return tables


def brief_template(date_label: str | None = None) -> str:
    """Starting content for a new weekly brief.

    ``date_label`` replaces the week placeholder; without it the placeholder
    is kept for the author to fill in.
    """
    return _env.get_template("brief_template.html").render(
        heading=BRIEF_HEADING,
        date_label=date_label or DATE_PLACEHOLDER,
        tables=_brief_tables(),
        table_blank_rows={"executive_summary": 1, "executive_queue": 1},
    ).strip()


BRIEF_TEMPLATE = brief_template()


def generate_download_html(title: str, content: str) -> str:
    """Wrap editor ``content`` in a standalone, styled HTML document."""
    return _env.get_template("brief_download.html").render(
        title=title,
        content=content,
        header_bg=HEADER_BG_COLOR,
    )


def generate_brief_html(title: str, content: str | None = None, date_label: str | None = None) -> str:
    """Standalone brief document; an empty ``content`` starts from the weekly skeleton."""
    return generate_download_html(title, content or brief_template(date_label))


_BODY_RE = re.compile(r"<body[^>]*>([\s\S]*)</body>", re.IGNORECASE)
_STYLE_RE = re.compile(r"<style[^>]*>[\s\S]*?</style>", re.IGNORECASE)


def extract_body_fragment(html: str) -> str:
    """Return the editable fragment of a standalone document.

    Full documents are reduced to the inner HTML of their ``<body>``; style
    blocks are dropped so they cannot leak into the editing surface.
    """
    html = html or ""
    match = _BODY_RE.search(html)
    if match:
        html = match.group(1)
    return _STYLE_RE.sub("", html).strip()


# -- intake form ---------------------------------------------------------------
@dataclass(frozen=True)
class KeyDates:
    person_requesting: str = ""
    request_received_date: str = ""
    target_estimated_time: str = ""
    target_completion_date: str = ""


@dataclass(frozen=True)
class Contributor:
    name: str = ""
    role: str = ""


@dataclass(frozen=True)
class EvaluationRow:
    col1: str = ""
    col2: str = ""


@dataclass(frozen=True)
class IntakeFormData:
    project_name: str = ""
    overview_background: str = ""
    objectives: tuple = ("", "")
    key_dates: KeyDates = field(default_factory=KeyDates)
    lead_contributors: tuple = (Contributor(), Contributor())
    planner_bucket: str = ""
    dependencies_text: str = ""
    evaluation_rows: tuple = (EvaluationRow(), EvaluationRow())

    @classmethod
    def from_dict(cls, data: dict | None) -> "IntakeFormData":
        """Build the form from posted JSON; wrongly shaped fields raise ``ValueError``."""
        data = data or {}
        if not isinstance(data, dict):
            raise ValueError("form data must be an object")

        def text(value) -> str:
            return "" if value is None else str(value)

        def mapping(name: str) -> dict:
            value = data.get(name) or {}
            if not isinstance(value, dict):
                raise ValueError(f"{name} must be an object")
            return value

        def items(name: str, of_type=None) -> list:
            value = data.get(name) or []
            if not isinstance(value, (list, tuple)):
                raise ValueError(f"{name} must be a list")
            if of_type is not None and not all(isinstance(item, of_type) for item in value):
                raise ValueError(f"{name} entries must be objects")
            return list(value)

        key_dates = mapping("key_dates")
        return cls(
            project_name=text(data.get("project_name")),
            overview_background=text(data.get("overview_background")),
            objectives=tuple(text(o) for o in items("objectives")),
            key_dates=KeyDates(**{k: text(key_dates.get(k)) for k in KeyDates.__dataclass_fields__}),
            lead_contributors=tuple(
                Contributor(name=text(c.get("name")), role=text(c.get("role")))
                for c in items("lead_contributors", dict)
            ),
            planner_bucket=text(data.get("planner_bucket")),
            dependencies_text=text(data.get("dependencies_text")),
            evaluation_rows=tuple(
                EvaluationRow(col1=text(r.get("col1")), col2=text(r.get("col2")))
                for r in items("evaluation_rows", dict)
            ),
        )

    def to_dict(self) -> dict:
        return {
            "project_name": self.project_name,
            "overview_background": self.overview_background,
            "objectives": list(self.objectives),
            "key_dates": {k: getattr(self.key_dates, k) for k in KeyDates.__dataclass_fields__},
            "lead_contributors": [{"name": c.name, "role": c.role} for c in self.lead_contributors],
            "planner_bucket": self.planner_bucket,
            "dependencies_text": self.dependencies_text,
            "evaluation_rows": [{"col1": r.col1, "col2": r.col2} for r in self.evaluation_rows],
        }


EMPTY_INTAKE_FORM = IntakeFormData()


def generate_intake_form_html(data: IntakeFormData) -> str:
    return _env.get_template("intake_form.html").render(
        form=data,
        header_bg=INTAKE_HEADER_BG,
        communications_heading=COMMUNICATIONS_HEADING,
        communications_plan=COMMUNICATIONS_PLAN,
    )


def intake_form_filename(project_name: str | None) -> str:
    name = re.sub(r"[^\w\s-]+", "", (project_name or "").strip())
    name = re.sub(r"\s+", "_", name)
    return f"Intake_Form_{name}.docx" if name else "Project_Intake_Form.docx"
