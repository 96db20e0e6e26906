from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel


class DiagnosticEntry(BaseModel):
    """One recorded uroflowmetry session, as served by the entry service."""

    id: int
    patient_id: int
    patient_name: Optional[str] = None
    recorded_at: datetime
    voided_volume: Optional[float] = None
    notes: Optional[str] = None
    top_view_url: Optional[str] = None
    bottom_view_url: Optional[str] = None

    @property
    def has_video(self) -> bool:
        return bool(self.top_view_url or self.bottom_view_url)


class AnalysisResult(BaseModel):
    id: int
    entry_id: int
    metrics: Optional[Any] = None          # JSON text or decoded object
    annotated_video_url: Optional[str] = None
    chart_url: Optional[str] = None
    timeseries_url: Optional[str] = None


class PersistedReport(BaseModel):
    id: int
    entry_id: int
    kind: str
    title: str
    description: Optional[str] = None
    document_ref: str
    created_at: datetime


class DoctorProfile(BaseModel):
    username: str
    email: Optional[str] = None
    hospital: Optional[str] = None
    specialization: Optional[str] = None
    qualification: Optional[str] = None


# --- Sidecar requests ---


class SigninRequest(BaseModel):
    email: str
    password: str


class SessionResponse(BaseModel):
    authenticated: bool
    role: Optional[str] = None
    user_id: Optional[str] = None
    display_name: Optional[str] = None


class SelectEntryRequest(BaseModel):
    entry_id: int


class ToggleRequest(BaseModel):
    field: str
    value: str


class ChoiceRequest(BaseModel):
    field: str
    value: Optional[str] = None


class NoticeResponse(BaseModel):
    id: str
    level: str
    message: str
    created_at: datetime
