"""
Structured representation of a uroflowmetry report in progress.

The form is owned by the active editing session for one entry. Flow metric
fields are pre-filled from the analysis result (once per successful fetch or
run) and are otherwise plain editable text. Indication and impression are
sets kept in enumeration order; the four observational fields hold at most
one value of their enumeration.
"""

from __future__ import annotations

from datetime import date
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from reporting.analysis_parser import FLOW_METRIC_FIELDS, FlowMetrics


class Sex(str, Enum):
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"


class Indication(str, Enum):
    LUTS = "luts"
    SUSPECTED_BOO = "suspected_boo"
    BPE = "bpe"
    STRICTURE_FOLLOW_UP = "stricture_follow_up"
    POST_OPERATIVE = "post_operative"
    NEUROGENIC_BLADDER = "neurogenic_bladder"
    RECURRENT_UTI = "recurrent_uti"


class FlowCurvePattern(str, Enum):
    BELL = "bell"
    PLATEAU = "plateau"
    INTERMITTENT = "intermittent"
    STACCATO = "staccato"
    TOWER = "tower"
    PROLONGED = "prolonged"


class StreamPattern(str, Enum):
    CONTINUOUS = "continuous"
    INTERMITTENT = "intermittent"
    SPRAYING = "spraying"
    THIN = "thin"
    TERMINAL_DRIBBLING = "terminal_dribbling"


class Initiation(str, Enum):
    PROMPT = "prompt"
    HESITANCY = "hesitancy"
    DELAYED_STRAINING = "delayed_straining"


class MeatalAbnormality(str, Enum):
    NONE_OBSERVED = "none_observed"
    MEATAL_STENOSIS = "meatal_stenosis"
    STREAM_DEVIATION = "stream_deviation"
    NOT_ASSESSABLE = "not_assessable"


class Impression(str, Enum):
    NORMAL = "normal"
    OBSTRUCTIVE = "obstructive"
    REDUCED_QMAX = "reduced_qmax"
    DETRUSOR_UNDERACTIVITY = "detrusor_underactivity"
    DYSFUNCTIONAL_VOIDING = "dysfunctional_voiding"
    INADEQUATE_VOLUME = "inadequate_volume"


LABELS: dict[type[Enum], dict[str, str]] = {
    Sex: {
        "male": "Male",
        "female": "Female",
        "other": "Other",
    },
    Indication: {
        "luts": "Lower urinary tract symptoms (LUTS)",
        "suspected_boo": "Suspected bladder outlet obstruction",
        "bpe": "Benign prostatic enlargement",
        "stricture_follow_up": "Urethral stricture follow-up",
        "post_operative": "Post-operative assessment",
        "neurogenic_bladder": "Neurogenic bladder evaluation",
        "recurrent_uti": "Recurrent urinary tract infection",
    },
    FlowCurvePattern: {
        "bell": "Bell-shaped",
        "plateau": "Plateau-shaped",
        "intermittent": "Intermittent",
        "staccato": "Staccato",
        "tower": "Tower-shaped",
        "prolonged": "Prolonged / flattened",
    },
    StreamPattern: {
        "continuous": "Continuous",
        "intermittent": "Intermittent",
        "spraying": "Spraying",
        "thin": "Thin / weak",
        "terminal_dribbling": "Terminal dribbling",
    },
    Initiation: {
        "prompt": "Prompt",
        "hesitancy": "Hesitancy",
        "delayed_straining": "Delayed with straining",
    },
    MeatalAbnormality: {
        "none_observed": "None observed",
        "meatal_stenosis": "Suspected meatal stenosis",
        "stream_deviation": "Stream deviation",
        "not_assessable": "Not assessable",
    },
    Impression: {
        "normal": "Normal uroflowmetry",
        "obstructive": "Obstructive flow pattern",
        "reduced_qmax": "Reduced maximum flow rate",
        "detrusor_underactivity": "Suspected detrusor underactivity",
        "dysfunctional_voiding": "Dysfunctional voiding",
        "inadequate_volume": "Inadequate voided volume (non-diagnostic)",
    },
}


def label(value: Enum) -> str:
    # Keyed per enum class: str-valued members of different enums compare equal
    return LABELS[type(value)][value.value]


SET_FIELDS: dict[str, type[Enum]] = {
    "indications": Indication,
    "impressions": Impression,
}

CHOICE_FIELDS: dict[str, type[Enum]] = {
    "flow_curve_pattern": FlowCurvePattern,
    "stream_pattern": StreamPattern,
    "initiation": Initiation,
    "meatal_abnormality": MeatalAbnormality,
}


_TEXT_FIELDS = FLOW_METRIC_FIELDS + (
    "patient_name", "age", "uhid", "indication_other", "interpretation", "recommendations",
)


class FormUpdate(BaseModel):
    """Partial update of the scalar and free-text fields."""

    patient_name: Optional[str] = None
    age: Optional[str] = None
    sex: Optional[Sex] = None
    uhid: Optional[str] = None
    report_date: Optional[date] = None
    indication_other: Optional[str] = None
    voided_volume: Optional[str] = None
    qmax: Optional[str] = None
    qavg: Optional[str] = None
    voiding_time: Optional[str] = None
    time_to_qmax: Optional[str] = None
    straining: Optional[bool] = None
    interpretation: Optional[str] = None
    recommendations: Optional[str] = None


class ClinicalForm(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    # Identity
    patient_name: str = ""
    age: str = ""
    sex: Optional[Sex] = None
    uhid: str = ""
    report_date: date = Field(default_factory=date.today)

    # Indication
    indications: list[Indication] = Field(default_factory=list)
    indication_other: str = ""

    # Flow metrics, editable text; empty means not available
    voided_volume: str = ""
    qmax: str = ""
    qavg: str = ""
    voiding_time: str = ""
    time_to_qmax: str = ""

    # Observations
    flow_curve_pattern: Optional[FlowCurvePattern] = None
    stream_pattern: Optional[StreamPattern] = None
    initiation: Optional[Initiation] = None
    meatal_abnormality: Optional[MeatalAbnormality] = None
    straining: bool = False
    impressions: list[Impression] = Field(default_factory=list)

    # Free text
    interpretation: str = ""
    recommendations: str = ""

    # Metric values as last pre-filled from an analysis
    _prefilled: dict[str, str] = PrivateAttr(default_factory=dict)

    @classmethod
    def create(cls, today: Optional[date] = None) -> "ClinicalForm":
        """Blank form dated today (local calendar) unless ``today`` is given."""
        return cls(report_date=today or date.today())

    def edited_flow_metrics(self) -> list[str]:
        """Metric fields whose value differs from what was last pre-filled."""
        return [
            name for name in FLOW_METRIC_FIELDS
            if getattr(self, name) != self._prefilled.get(name, "")
        ]

    def merge_flow_metrics(self, metrics: FlowMetrics) -> list[str]:
        """Pre-fill the five flow metric fields; absent metrics become empty.

        Fields the user has edited since the last pre-fill are left alone and
        returned.
        """
        kept = self.edited_flow_metrics()
        for name in FLOW_METRIC_FIELDS:
            value = getattr(metrics, name) or ""
            self._prefilled[name] = value
            if name not in kept:
                setattr(self, name, value)
        return kept

    def clear_flow_metrics(self) -> list[str]:
        return self.merge_flow_metrics(FlowMetrics())

    def toggle(self, field: str, value: str | Enum) -> None:
        """Add ``value`` to the set field if absent, remove it if present."""
        enum_cls = SET_FIELDS.get(field)
        if enum_cls is None:
            raise ValueError(f"Not a multi-choice field: {field}")
        member = enum_cls(value)
        current = set(getattr(self, field))
        current.symmetric_difference_update({member})
        setattr(self, field, [m for m in enum_cls if m in current])

    def set_choice(self, field: str, value: str | Enum | None) -> None:
        """Replace a single-choice value; None clears it."""
        enum_cls = CHOICE_FIELDS.get(field)
        if enum_cls is None:
            raise ValueError(f"Not a single-choice field: {field}")
        setattr(self, field, None if value is None else enum_cls(value))

    def apply(self, update: FormUpdate) -> None:
        """Apply the fields explicitly set on ``update``; null clears text fields."""
        for key, val in update.model_dump(exclude_unset=True).items():
            if val is None:
                if key in _TEXT_FIELDS:
                    val = ""
                elif key == "straining":
                    val = False
                elif key == "report_date":
                    continue
            setattr(self, key, val)

    def effective_patient_name(self, fallback: Optional[str] = None) -> str:
        return self.patient_name.strip() or (fallback or "").strip()

    def missing_required(self, fallback_name: Optional[str] = None) -> list[str]:
        """Names of the required patient-detail fields that are still empty."""
        missing = []
        if not self.effective_patient_name(fallback_name):
            missing.append("name")
        if not self.age.strip():
            missing.append("age")
        if self.sex is None:
            missing.append("sex")
        return missing
