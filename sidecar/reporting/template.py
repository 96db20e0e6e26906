"""
Single definition of the uroflowmetry report structure.

Both composition strategies depend on this module: the fallback renderer
builds its text through ReportBuilder, and the remote prompt lists the same
REPORT_SECTIONS and checkbox glyphs. section_order() reads the headers back
out of any text so remote output can be checked against the same structure.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Iterable, Optional

REPORT_TITLE = "# Uroflowmetry Report"

CHECKED = "\u2611"    # ☑
UNCHECKED = "\u2610"  # ☐

# Fixed-width placeholder for unset free text
BLANK = "_" * 10


class Section(str, Enum):
    PATIENT_DETAILS = "Patient Details"
    INDICATION = "Indication"
    METHOD = "Method"
    FLOW_PARAMETERS = "Flow Parameters"
    FLOW_CURVE_PATTERN = "Flow Curve Pattern"
    VIDEO_STREAM_ASSESSMENT = "Video Stream Assessment"
    COMBINED_INTERPRETATION = "Combined Interpretation"
    IMPRESSION = "Impression"
    RECOMMENDATIONS = "Recommendations"

    @property
    def header(self) -> str:
        return f"## {self.value}"


REPORT_SECTIONS: tuple[Section, ...] = tuple(Section)

METHOD_TEXT = (
    "Uroflowmetry was performed with video recording of the voiding event "
    "from top and bottom views. Flow parameters were derived by automated "
    "analysis of the recording and reviewed by the reporting clinician."
)

_HEADER_RE = re.compile(r"^[ \t]*#{2,3}[ \t]*(?:\d+[.)][ \t]*)?(.+?)[ \t#]*$", re.MULTILINE)
_BY_TITLE = {s.value.lower(): s for s in Section}


def checkbox(checked: bool) -> str:
    return CHECKED if checked else UNCHECKED


def checkbox_lines(options: Iterable[tuple[str, bool]]) -> list[str]:
    """One ``- ☑ Label`` / ``- ☐ Label`` line per enumeration value."""
    return [f"- {checkbox(selected)} {text}" for text, selected in options]


def text_or_blank(value: Optional[str]) -> str:
    value = (value or "").strip()
    return value if value else BLANK


def footer_line(generated_at: str, clinician: str) -> str:
    return f"_Report generated on {generated_at} by {clinician}_"


class ReportBuilder:
    """Accumulates sections in REPORT_SECTIONS order and renders markdown.

    Adding a section out of order, twice, or rendering with a section
    missing raises ValueError.
    """

    def __init__(self) -> None:
        self._bodies: list[tuple[Section, list[str]]] = []

    def add(self, section: Section, lines: Iterable[str]) -> "ReportBuilder":
        position = len(self._bodies)
        if position >= len(REPORT_SECTIONS) or REPORT_SECTIONS[position] is not section:
            expected = REPORT_SECTIONS[position].value if position < len(REPORT_SECTIONS) else None
            raise ValueError(
                f"Section '{section.value}' added out of order (expected {expected!r})"
            )
        self._bodies.append((section, list(lines)))
        return self

    def render(self, footer: str) -> str:
        if len(self._bodies) != len(REPORT_SECTIONS):
            missing = [s.value for s in REPORT_SECTIONS[len(self._bodies):]]
            raise ValueError(f"Report is missing sections: {', '.join(missing)}")
        parts = [REPORT_TITLE, ""]
        for section, lines in self._bodies:
            parts.append(section.header)
            parts.extend(lines)
            parts.append("")
        parts.append("---")
        parts.append(footer)
        return "\n".join(parts) + "\n"


def section_order(text: str) -> list[Section]:
    """Known section headers in the order they appear in ``text``."""
    found: list[Section] = []
    for match in _HEADER_RE.finditer(text):
        title = match.group(1).strip().strip("*").strip().lower()
        section = _BY_TITLE.get(title)
        if section is not None:
            found.append(section)
    return found


def structure_issues(text: str) -> list[str]:
    """Describe how ``text`` deviates from REPORT_SECTIONS; empty if it matches."""
    order = section_order(text)
    issues = []
    missing = [s.value for s in REPORT_SECTIONS if s not in order]
    if missing:
        issues.append(f"missing sections: {', '.join(missing)}")
    elif order != list(REPORT_SECTIONS):
        issues.append("sections out of order")
    return issues
