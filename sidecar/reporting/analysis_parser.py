"""
Parse the numeric payload of an analysis result into FlowMetrics.

The analysis service returns its metrics as a JSON object whose keys vary
between model versions. Every field is read on its own: a missing or
non-numeric value leaves that field absent without affecting the others.
Present values are formatted to two decimals (half-up) and are never
defaulted to zero.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

logger = logging.getLogger(__name__)

NOT_AVAILABLE = "Not available"

FLOW_METRIC_FIELDS = ("voided_volume", "qmax", "qavg", "voiding_time", "time_to_qmax")

# Accepted payload keys per field, compared case-insensitively; first match wins.
_FIELD_KEYS: dict[str, tuple[str, ...]] = {
    "voided_volume": ("Voided_Volume", "VoidedVolume", "Volume"),
    "qmax": ("Qmax", "Q_max", "Max_Flow_Rate"),
    "qavg": ("Qavg", "Q_avg", "Average_Flow_Rate"),
    "voiding_time": ("Voiding_Time", "Flow_Time", "Total_Time"),
    "time_to_qmax": ("Time_to_Qmax", "TQmax", "Time_To_Max_Flow"),
}

FLOW_METRIC_UNITS = {
    "voided_volume": "mL",
    "qmax": "mL/s",
    "qavg": "mL/s",
    "voiding_time": "s",
    "time_to_qmax": "s",
}

FLOW_METRIC_LABELS = {
    "voided_volume": "Voided volume",
    "qmax": "Maximum flow rate (Qmax)",
    "qavg": "Average flow rate (Qavg)",
    "voiding_time": "Voiding time",
    "time_to_qmax": "Time to Qmax",
}

_TWO_PLACES = Decimal("0.01")


@dataclass(frozen=True)
class FlowMetrics:
    """Flow metrics as two-decimal text; None means not available."""

    voided_volume: Optional[str] = None
    qmax: Optional[str] = None
    qavg: Optional[str] = None
    voiding_time: Optional[str] = None
    time_to_qmax: Optional[str] = None

    def as_dict(self) -> dict[str, Optional[str]]:
        return asdict(self)

    @property
    def absent_fields(self) -> list[str]:
        return [name for name in FLOW_METRIC_FIELDS if getattr(self, name) is None]


def format_metric(value: Any) -> Optional[str]:
    """Return ``value`` as two-decimal text, or None if it is not a finite number."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        number = Decimal(str(value))
    elif isinstance(value, str):
        try:
            number = Decimal(value.strip())
        except InvalidOperation:
            return None
        if not number.is_finite():
            return None
    else:
        return None
    try:
        return str(number.quantize(_TWO_PLACES, rounding=ROUND_HALF_UP))
    except InvalidOperation:
        # Exceeds the decimal context precision.
        logger.debug("Metric value out of range: %s", value)
        return None


def _lookup(payload: dict, keys: tuple[str, ...]) -> Any:
    lowered = {str(k).lower(): v for k, v in payload.items()}
    for key in keys:
        if key.lower() in lowered:
            return lowered[key.lower()]
    return None


def parse_flow_metrics(raw: Any) -> Optional[FlowMetrics]:
    """Parse an analysis payload (JSON text or decoded object).

    Returns None when the payload is missing, malformed, or not a JSON
    object. Never raises.
    """
    if raw is None:
        return None
    payload = raw
    if isinstance(raw, (str, bytes, bytearray)):
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError, TypeError):
            logger.debug("Analysis payload is not valid JSON")
            return None
    if not isinstance(payload, dict):
        logger.debug("Analysis payload is not an object: %s", type(payload).__name__)
        return None

    values = {
        name: format_metric(_lookup(payload, keys))
        for name, keys in _FIELD_KEYS.items()
    }
    return FlowMetrics(**values)
