"""Pull the SECTION / NUMBER / SUBJECT header values out of policy text."""

import re
from dataclasses import dataclass, asdict

META_LABELS = ("section", "number", "subject")


@dataclass(frozen=True)
class PolicyMeta:
    section: str = ""
    number: str = ""
    subject: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


def _label_pattern(label: str) -> re.Pattern:
    # The value is the rest of the label line, or the next non-blank line.
    return re.compile(
        rf"^[ \t]*{label}\b[ \t]*:?[ \t]*(?:\n\s*)?(\S.*?)\s*$",
        re.IGNORECASE | re.MULTILINE,
    )


_PATTERNS = {label: _label_pattern(label.upper()) for label in META_LABELS}


def extract_field(raw_text: str, label: str) -> str:
    """Return the value following ``label`` in ``raw_text`` or ``""``."""
    pattern = _PATTERNS.get(label.lower()) or _label_pattern(re.escape(label))
    match = pattern.search(raw_text or "")
    return match.group(1).strip() if match else ""


def extract_policy_meta(raw_text: str) -> PolicyMeta:
    """Return the section, number and subject found in ``raw_text``.

    Labels are matched case-insensitively at the start of a line; the first
    occurrence wins and missing labels yield empty strings.
    """
    return PolicyMeta(**{label: extract_field(raw_text, label) for label in META_LABELS})
