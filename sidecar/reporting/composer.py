"""
Compose the uroflowmetry report text from a ClinicalForm snapshot.

Two strategies produce the same section structure (reporting.template):

- remote: the narrative-generation service writes the report from the
  normalized payload under a fixed instruction (llm.prompt_engine);
- fallback: deterministic rendering straight from the form fields.

The remote strategy is tried first. Any failure (no API key, network error,
timeout, empty text, structure mismatch) falls through to the fallback and
adds a soft warning; it is never surfaced as a hard error. Composition has
no side effects besides the one outbound request.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from api.models import DiagnosticEntry
from llm.client import LLMClient
from llm.prompt_engine import PromptEngine
from llm.retry import LLMRetryError, with_retry
from reporting.analysis_parser import (
    FLOW_METRIC_FIELDS,
    FLOW_METRIC_LABELS,
    FLOW_METRIC_UNITS,
    NOT_AVAILABLE,
)
from reporting.clinical_form import (
    ClinicalForm,
    FlowCurvePattern,
    Impression,
    Indication,
    Initiation,
    MeatalAbnormality,
    StreamPattern,
    label,
)
from reporting.errors import ReportValidationError
from reporting.template import (
    METHOD_TEXT,
    ReportBuilder,
    Section,
    checkbox_lines,
    footer_line,
    structure_issues,
    text_or_blank,
)

logger = logging.getLogger(__name__)

NARRATIVE_TIMEOUT_SECONDS = float(os.getenv("NARRATIVE_TIMEOUT_SECONDS", "30"))
NARRATIVE_MAX_ATTEMPTS = int(os.getenv("NARRATIVE_MAX_ATTEMPTS", "2"))

REPORT_KIND = "Uroflowmetry"
DOCUMENT_EXTENSION = ".md"

REMOTE_UNAVAILABLE_WARNING = (
    "AI generation was unavailable; the report was generated from the standard template."
)


class ReportSource(str, Enum):
    REMOTE = "remote"
    FALLBACK = "fallback"


@dataclass
class ReportContext:
    """Entry and authoring details the form itself does not carry."""

    entry: DiagnosticEntry
    clinician_name: str
    generated_at: datetime = field(default_factory=datetime.now)

    @property
    def generated_at_text(self) -> str:
        return self.generated_at.strftime("%Y-%m-%d %H:%M")


@dataclass
class ComposedReport:
    text: str
    file_name: str
    source: ReportSource
    generated_at: datetime
    warnings: list[str] = field(default_factory=list)


def sanitize_name(name: str) -> str:
    return re.sub(r"\s+", "_", name.strip())


def derive_file_name(patient_name: str, report_date) -> str:
    """``<ReportKind>_<SanitizedPatientName>_<ISODate>.md``"""
    return f"{REPORT_KIND}_{sanitize_name(patient_name)}_{report_date.isoformat()}{DOCUMENT_EXTENSION}"


def _joined(values) -> str:
    return ", ".join(label(v) for v in values)


def _metric_text(form: ClinicalForm, name: str) -> str:
    value = getattr(form, name).strip()
    if not value:
        return NOT_AVAILABLE
    return f"{value} {FLOW_METRIC_UNITS[name]}"


def build_payload(form: ClinicalForm, context: ReportContext) -> dict:
    """Normalized request payload: identity, flow and observation blocks."""
    entry = context.entry
    return {
        "patient": {
            "name": form.effective_patient_name(entry.patient_name),
            "age": form.age.strip(),
            "sex": label(form.sex) if form.sex else "",
            "uhid": form.uhid.strip(),
            "report_date": form.report_date.isoformat(),
        },
        "indication": {
            "selected": _joined(form.indications),
            "options": [label(i) for i in Indication],
            "other": form.indication_other.strip(),
        },
        "flow_parameters": [
            {"label": FLOW_METRIC_LABELS[name], "value": _metric_text(form, name)}
            for name in FLOW_METRIC_FIELDS
        ],
        "observations": {
            "flow_curve_pattern": label(form.flow_curve_pattern) if form.flow_curve_pattern else "",
            "flow_curve_pattern_options": [label(p) for p in FlowCurvePattern],
            "stream_pattern": label(form.stream_pattern) if form.stream_pattern else "",
            "stream_pattern_options": [label(p) for p in StreamPattern],
            "initiation": label(form.initiation) if form.initiation else "",
            "initiation_options": [label(i) for i in Initiation],
            "straining": "Yes" if form.straining else "No",
            "meatal_abnormality": label(form.meatal_abnormality) if form.meatal_abnormality else "",
            "meatal_abnormality_options": [label(m) for m in MeatalAbnormality],
            "impression": _joined(form.impressions),
            "impression_options": [label(i) for i in Impression],
        },
        "interpretation": form.interpretation.strip(),
        "recommendations": form.recommendations.strip(),
        "entry": {
            "id": entry.id,
            "recorded_at": entry.recorded_at.isoformat(),
            "notes": (entry.notes or "").strip(),
        },
        "clinician": context.clinician_name,
        "generated_at": context.generated_at_text,
    }


def _choice_lines(enum_cls, selected) -> list[str]:
    return checkbox_lines((label(member), member == selected) for member in enum_cls)


def _set_lines(enum_cls, selected: list) -> list[str]:
    return checkbox_lines((label(member), member in selected) for member in enum_cls)


def render_fallback(form: ClinicalForm, context: ReportContext) -> str:
    """Deterministic template rendering of the form."""
    entry = context.entry
    builder = ReportBuilder()

    builder.add(Section.PATIENT_DETAILS, [
        f"- Name: {text_or_blank(form.effective_patient_name(entry.patient_name))}",
        f"- Age: {text_or_blank(form.age)}",
        f"- Sex: {label(form.sex) if form.sex else text_or_blank(None)}",
        f"- UHID: {text_or_blank(form.uhid)}",
        f"- Report date: {form.report_date.isoformat()}",
    ])
    builder.add(Section.INDICATION, [
        *_set_lines(Indication, form.indications),
        f"- Other: {text_or_blank(form.indication_other)}",
    ])
    builder.add(Section.METHOD, [METHOD_TEXT])
    builder.add(Section.FLOW_PARAMETERS, [
        f"- {FLOW_METRIC_LABELS[name]}: {_metric_text(form, name)}"
        for name in FLOW_METRIC_FIELDS
    ])
    builder.add(Section.FLOW_CURVE_PATTERN, _choice_lines(FlowCurvePattern, form.flow_curve_pattern))
    builder.add(Section.VIDEO_STREAM_ASSESSMENT, [
        "**Stream pattern**",
        *_choice_lines(StreamPattern, form.stream_pattern),
        "**Initiation**",
        *_choice_lines(Initiation, form.initiation),
        "**Straining**",
        *checkbox_lines([("Yes", form.straining), ("No", not form.straining)]),
        "**Meatal abnormality**",
        *_choice_lines(MeatalAbnormality, form.meatal_abnormality),
    ])
    builder.add(Section.COMBINED_INTERPRETATION, [text_or_blank(form.interpretation)])
    builder.add(Section.IMPRESSION, _set_lines(Impression, form.impressions))
    builder.add(Section.RECOMMENDATIONS, [text_or_blank(form.recommendations)])

    return builder.render(footer_line(context.generated_at_text, context.clinician_name))


class ReportComposer:
    """Remote-first report composition with deterministic fallback."""

    def __init__(
        self,
        llm_client: Optional[LLMClient],
        prompt_engine: Optional[PromptEngine] = None,
        timeout_seconds: float = NARRATIVE_TIMEOUT_SECONDS,
        max_attempts: int = NARRATIVE_MAX_ATTEMPTS,
    ) -> None:
        self.llm_client = llm_client
        self.prompt_engine = prompt_engine or PromptEngine()
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max_attempts

    async def compose(self, form: ClinicalForm, context: ReportContext) -> ComposedReport:
        missing = form.missing_required(context.entry.patient_name)
        if missing:
            raise ReportValidationError(missing)

        patient_name = form.effective_patient_name(context.entry.patient_name)
        file_name = derive_file_name(patient_name, form.report_date)
        payload = build_payload(form, context)

        text = await self._compose_remote(payload, context.entry.id)
        if text is not None:
            return ComposedReport(
                text=text,
                file_name=file_name,
                source=ReportSource.REMOTE,
                generated_at=context.generated_at,
            )

        return ComposedReport(
            text=render_fallback(form, context),
            file_name=file_name,
            source=ReportSource.FALLBACK,
            generated_at=context.generated_at,
            warnings=[REMOTE_UNAVAILABLE_WARNING],
        )

    async def _compose_remote(self, payload: dict, entry_id: int) -> Optional[str]:
        """Return the generated report text, or None if the remote strategy failed."""
        if self.llm_client is None:
            logger.warning("No narrative service configured; using template for entry %s", entry_id)
            return None

        try:
            response = await with_retry(
                self.llm_client.call,
                system_prompt=self.prompt_engine.build_system_prompt(),
                user_prompt=self.prompt_engine.build_user_prompt(payload),
                max_attempts=self.max_attempts,
                timeout_seconds=self.timeout_seconds,
            )
        except LLMRetryError:
            logger.warning("Narrative generation failed for entry %s; using template", entry_id)
            return None

        text = _strip_code_fence(response.text_content or "")
        if not text:
            logger.warning("Narrative service returned no text for entry %s; using template", entry_id)
            return None

        issues = structure_issues(text)
        if issues:
            logger.warning(
                "Narrative report for entry %s does not match the template (%s); using template",
                entry_id, "; ".join(issues),
            )
            return None
        return text


_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*\n(.*?)\n?```\s*$", re.DOTALL)


def _strip_code_fence(text: str) -> str:
    text = text.strip()
    match = _FENCE_RE.match(text)
    if match:
        text = match.group(1).strip()
    return text + "\n" if text else ""
