"""
Prompt construction for uroflowmetry report narration.

The system prompt fixes the report contract: section headers and their
order come from reporting.template, as do the checkbox glyphs and the blank
placeholder, so the remote output has the same structure as the
deterministic template. The user prompt carries the normalized clinical
payload as JSON.
"""

from __future__ import annotations

import json

from reporting.template import (
    BLANK,
    CHECKED,
    METHOD_TEXT,
    REPORT_SECTIONS,
    REPORT_TITLE,
    UNCHECKED,
    Section,
    footer_line,
)

# What each section must contain, in addition to its header.
_SECTION_GUIDANCE: dict[Section, str] = {
    Section.PATIENT_DETAILS: (
        "Name, Age, Sex, UHID and Report date, one per line as '- Label: value'."
    ),
    Section.INDICATION: (
        "Every indication option from `indication.options` as a checkbox line, "
        "then '- Other: ...' with `indication.other`."
    ),
    Section.METHOD: f"Exactly this sentence: \"{METHOD_TEXT}\"",
    Section.FLOW_PARAMETERS: (
        "Each parameter of `flow_parameters` as '- Label: value unit'. "
        "Values marked 'Not available' are written exactly as 'Not available'."
    ),
    Section.FLOW_CURVE_PATTERN: (
        "Every option of `observations.flow_curve_pattern_options` as a checkbox line."
    ),
    Section.VIDEO_STREAM_ASSESSMENT: (
        "Four labelled groups in this order: Stream pattern, Initiation, "
        "Straining (options Yes and No), Meatal abnormality. Each group lists "
        "every option of its enumeration as a checkbox line."
    ),
    Section.COMBINED_INTERPRETATION: (
        "A concise clinical interpretation that integrates the flow parameters "
        "with the video observations. Build on `interpretation` when it is given."
    ),
    Section.IMPRESSION: (
        "Every impression option from `observations.impression_options` as a checkbox line."
    ),
    Section.RECOMMENDATIONS: (
        "The clinician's `recommendations`; if empty, write the blank placeholder."
    ),
}


class PromptEngine:
    """Builds the fixed system instruction and the payload prompt."""

    def build_system_prompt(self) -> str:
        section_lines = []
        for index, section in enumerate(REPORT_SECTIONS, start=1):
            section_lines.append(
                f"{index}. `{section.header}`: {_SECTION_GUIDANCE[section]}"
            )
        sections = "\n".join(section_lines)
        example_footer = footer_line("<generated_at>", "<clinician>")

        return f"""\
You are a urology reporting assistant writing a uroflowmetry report for the
reporting clinician. You are given STRUCTURED DATA only.

## Output Format
Return markdown only, no preamble and no code fences. Start with the title
line `{REPORT_TITLE}`. Then write these sections, with these exact headers,
in this exact order, and no other `##` headers:

{sections}

After the last section write a line containing `---`, then the line
`{example_footer}` using the `generated_at` and `clinician` values.

## Checkbox Notation
For every enumerated choice, list ALL options of the enumeration, one per
line, as `- {CHECKED} Label` when the option is selected and
`- {UNCHECKED} Label` when it is not. Use the labels exactly as given.

## Rules
1. ONLY use data from the payload. NEVER invent measurements or findings.
2. Copy numeric values exactly; do not round or convert units.
3. Write 'Not available' for any parameter marked as not available.
4. For empty free-text fields write the placeholder `{BLANK}`.
5. Never write the words "null", "None" or "undefined" as values.
6. Keep clinical terminology appropriate for a physician audience.
"""

    def build_user_prompt(self, payload: dict) -> str:
        return (
            "Write the uroflowmetry report for the following clinical data.\n\n"
            "```json\n"
            f"{json.dumps(payload, indent=2, ensure_ascii=False)}\n"
            "```"
        )
