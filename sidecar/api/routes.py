import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Body, HTTPException, Query, Request
from pydantic import BaseModel, Field

from api.models import (
    AnalysisResult,
    ChoiceRequest,
    DiagnosticEntry,
    NoticeResponse,
    PersistedReport,
    SelectEntryRequest,
    SessionResponse,
    SigninRequest,
    ToggleRequest,
)
from api.workspace import Workspace
from reporting.clinical_form import ClinicalForm, FormUpdate
from reporting.errors import (
    AnalysisUnavailableError,
    ConfirmationRequiredError,
    NoEntrySelectedError,
    NothingToSaveError,
    OperationInProgressError,
    PersistenceError,
    ReportValidationError,
    WorkspaceError,
)
from reporting.persistence import decode_document
from services.backend import BackendError

_logger = logging.getLogger(__name__)

router = APIRouter()


# --- Response models ---


class ComposedReportResponse(BaseModel):
    text: str
    file_name: str
    source: str
    generated_at: datetime
    warnings: list[str] = Field(default_factory=list)


class WorkspaceStateResponse(BaseModel):
    state: str
    entry: Optional[DiagnosticEntry] = None
    form: ClinicalForm
    reports: list[PersistedReport] = Field(default_factory=list)
    reports_status: str
    analysis: Optional[AnalysisResult] = None
    analysis_status: str
    can_run_analysis: bool = False
    analysis_running: bool = False
    composed: Optional[ComposedReportResponse] = None
    composing: bool = False
    saving: bool = False
    notices: list[NoticeResponse] = Field(default_factory=list)


class ReportDocumentResponse(BaseModel):
    id: int
    title: str
    text: str


# --- Helpers ---


def _workspace(request: Request) -> Workspace:
    return request.app.state.workspace


def _http_error(exc: Exception) -> HTTPException:
    """Map a workspace or backend failure onto an HTTP status."""
    if isinstance(exc, ReportValidationError):
        return HTTPException(status_code=422, detail={"error": str(exc), "fields": exc.missing})
    if isinstance(exc, (OperationInProgressError, AnalysisUnavailableError,
                        NoEntrySelectedError, NothingToSaveError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ConfirmationRequiredError):
        return HTTPException(status_code=428, detail=str(exc))
    if isinstance(exc, (PersistenceError, BackendError)):
        return HTTPException(status_code=502, detail=str(exc))
    if isinstance(exc, ValueError):
        return HTTPException(status_code=422, detail=str(exc))
    _logger.error("Unmapped workspace error: %s", type(exc).__name__)
    return HTTPException(status_code=400, detail=str(exc))


def _state(ws: Workspace) -> WorkspaceStateResponse:
    orch = ws.orchestrator
    composed = None
    if orch.composed is not None:
        composed = ComposedReportResponse(
            text=orch.composed.text,
            file_name=orch.composed.file_name,
            source=orch.composed.source.value,
            generated_at=orch.composed.generated_at,
            warnings=orch.composed.warnings,
        )
    return WorkspaceStateResponse(
        state=orch.state.value,
        entry=orch.entry,
        form=orch.form,
        reports=orch.reports,
        reports_status=orch.reports_status.value,
        analysis=orch.analysis,
        analysis_status=orch.analysis_status.value,
        can_run_analysis=orch.can_run_analysis,
        analysis_running=orch.analysis_running,
        composed=composed,
        composing=ws.composing,
        saving=ws.gateway.saving,
        notices=[
            NoticeResponse(id=n.id, level=n.level, message=n.message, created_at=n.created_at)
            for n in ws.notices.active()
        ],
    )


def _session(ws: Workspace) -> SessionResponse:
    auth = ws.auth
    return SessionResponse(
        authenticated=auth.is_authenticated,
        role=auth.role,
        user_id=auth.user_id,
        display_name=auth.display_name,
    )


# --- Health and session ---


@router.get("/health")
async def health_check():
    return {"status": "ok"}


@router.get("/session", response_model=SessionResponse)
async def get_session(request: Request):
    return _session(_workspace(request))


@router.post("/session/signin", response_model=SessionResponse)
async def signin(request: Request, body: SigninRequest = Body(...)):
    ws = _workspace(request)
    try:
        await ws.signin(body.email, body.password)
    except BackendError as exc:
        if exc.status_code in (400, 401, 403):
            raise HTTPException(status_code=401, detail="Invalid email or password.") from exc
        raise _http_error(exc) from exc
    return _session(ws)


@router.post("/session/signout", response_model=SessionResponse)
async def signout(request: Request):
    ws = _workspace(request)
    ws.signout()
    return _session(ws)


# --- Entries and selection ---


@router.get("/entries", response_model=list[DiagnosticEntry])
async def list_entries(request: Request):
    """Diagnostic entries visible to the signed-in doctor."""
    try:
        return await _workspace(request).load_entries()
    except BackendError as exc:
        _logger.warning("Entry list fetch failed: %s", exc)
        raise _http_error(exc) from exc


@router.get("/workspace", response_model=WorkspaceStateResponse)
async def get_workspace(request: Request):
    return _state(_workspace(request))


@router.post("/workspace/select", response_model=WorkspaceStateResponse)
async def select_entry(request: Request, body: SelectEntryRequest = Body(...)):
    ws = _workspace(request)
    try:
        entry = await ws.find_entry(body.entry_id)
    except BackendError as exc:
        raise _http_error(exc) from exc
    if entry is None:
        raise HTTPException(status_code=404, detail="Entry not found.")
    await ws.orchestrator.select_entry(entry)
    return _state(ws)


# --- Analysis ---


@router.post("/workspace/analysis/run", response_model=WorkspaceStateResponse)
async def run_analysis(request: Request):
    """Start a fresh analysis run. A failed run is reported as a notice."""
    ws = _workspace(request)
    try:
        await ws.orchestrator.run_analysis()
    except WorkspaceError as exc:
        raise _http_error(exc) from exc
    return _state(ws)


@router.post("/workspace/analysis/refresh", response_model=WorkspaceStateResponse)
async def refresh_analysis(request: Request):
    ws = _workspace(request)
    try:
        await ws.orchestrator.refresh_analysis()
    except WorkspaceError as exc:
        raise _http_error(exc) from exc
    return _state(ws)


# --- Form ---


@router.patch("/workspace/form", response_model=WorkspaceStateResponse)
async def update_form(request: Request, update: FormUpdate = Body(...)):
    """Partial update of the form's scalar and free-text fields."""
    ws = _workspace(request)
    try:
        ws.orchestrator.require_entry()
        ws.orchestrator.form.apply(update)
    except (WorkspaceError, ValueError) as exc:
        raise _http_error(exc) from exc
    return _state(ws)


@router.post("/workspace/form/toggle", response_model=WorkspaceStateResponse)
async def toggle_form_option(request: Request, body: ToggleRequest = Body(...)):
    ws = _workspace(request)
    try:
        ws.orchestrator.require_entry()
        ws.orchestrator.form.toggle(body.field, body.value)
    except (WorkspaceError, ValueError) as exc:
        raise _http_error(exc) from exc
    return _state(ws)


@router.post("/workspace/form/choice", response_model=WorkspaceStateResponse)
async def set_form_choice(request: Request, body: ChoiceRequest = Body(...)):
    ws = _workspace(request)
    try:
        ws.orchestrator.require_entry()
        ws.orchestrator.form.set_choice(body.field, body.value)
    except (WorkspaceError, ValueError) as exc:
        raise _http_error(exc) from exc
    return _state(ws)


@router.post("/workspace/form/reset", response_model=WorkspaceStateResponse)
async def reset_form(request: Request):
    ws = _workspace(request)
    ws.orchestrator.reset_form()
    return _state(ws)


# --- Compose, save, delete ---


@router.post("/workspace/compose", response_model=WorkspaceStateResponse)
async def compose_report(request: Request):
    """Generate the report text for the current form (remote, else template)."""
    ws = _workspace(request)
    try:
        await ws.compose()
    except WorkspaceError as exc:
        raise _http_error(exc) from exc
    return _state(ws)


@router.post("/workspace/save", response_model=WorkspaceStateResponse)
async def save_report(request: Request):
    ws = _workspace(request)
    try:
        await ws.save()
    except WorkspaceError as exc:
        raise _http_error(exc) from exc
    return _state(ws)


@router.get("/workspace/reports/{report_id}/document", response_model=ReportDocumentResponse)
async def get_report_document(request: Request, report_id: int):
    """Decoded text of a stored report from the selected entry's list."""
    ws = _workspace(request)
    report = next((r for r in ws.orchestrator.reports if r.id == report_id), None)
    if report is None:
        raise HTTPException(status_code=404, detail="Report not found.")
    try:
        text = decode_document(report.document_ref)
    except ValueError as exc:
        _logger.warning("Report %s has an unreadable document reference", report_id)
        raise HTTPException(status_code=502, detail="Stored report could not be read.") from exc
    return ReportDocumentResponse(id=report.id, title=report.title, text=text)


@router.delete("/workspace/reports/{report_id}", response_model=WorkspaceStateResponse)
async def delete_report(request: Request, report_id: int, confirm: bool = Query(False)):
    """Delete a stored report. Requires ``?confirm=true``."""
    ws = _workspace(request)
    try:
        await ws.gateway.delete(report_id, confirmed=confirm)
    except WorkspaceError as exc:
        raise _http_error(exc) from exc
    return _state(ws)


# --- Notices ---


@router.delete("/workspace/notices/{notice_id}", response_model=WorkspaceStateResponse)
async def dismiss_notice(request: Request, notice_id: str):
    ws = _workspace(request)
    if not ws.notices.dismiss(notice_id):
        raise HTTPException(status_code=404, detail="Notice not found.")
    return _state(ws)
