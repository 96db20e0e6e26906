"""
Entry selection and analysis orchestration for the report workspace.

Selecting an entry starts a new editing session: a fresh ClinicalForm, and
two concurrent fetches (persisted reports and the current analysis). Each
fetch degrades on its own: a report-list failure leaves an empty list, an
analysis failure or a missing analysis leaves the session without analysis.

Every selection gets a token. A response is applied only while its token is
still current, so a late response for a previous selection never touches
the active form. Analysis results are cached per entry for the session.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Optional

from api.models import AnalysisResult, DiagnosticEntry, PersistedReport
from reporting.analysis_parser import FLOW_METRIC_LABELS, parse_flow_metrics
from reporting.clinical_form import ClinicalForm
from reporting.composer import ComposedReport
from reporting.errors import AnalysisUnavailableError, NoEntrySelectedError, OperationInProgressError
from reporting.notices import NoticeBoard
from services.backend import BackendClient, BackendError

logger = logging.getLogger(__name__)


class SelectionState(str, Enum):
    IDLE = "idle"
    ENTRY_SELECTED = "entry_selected"


class ReportsStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    LOADED = "loaded"


class AnalysisStatus(str, Enum):
    UNKNOWN = "unknown"
    LOADING = "loading"
    LOADED = "loaded"
    ABSENT = "absent"


class AnalysisOrchestrator:
    def __init__(self, backend: BackendClient, notices: Optional[NoticeBoard] = None) -> None:
        self.backend = backend
        self.notices = notices or NoticeBoard()

        self.state = SelectionState.IDLE
        self.entry: Optional[DiagnosticEntry] = None
        self.form = ClinicalForm.create()
        self.composed: Optional[ComposedReport] = None
        self.reports: list[PersistedReport] = []
        self.reports_status = ReportsStatus.IDLE
        self.analysis: Optional[AnalysisResult] = None
        self.analysis_status = AnalysisStatus.UNKNOWN

        self._analysis_cache: dict[int, AnalysisResult] = {}
        self._runs_in_flight: set[int] = set()
        self._token = 0

    # --- Selection token ---

    @property
    def token(self) -> int:
        return self._token

    def is_current(self, token: int) -> bool:
        return token == self._token

    def require_entry(self) -> DiagnosticEntry:
        if self.entry is None:
            raise NoEntrySelectedError("No entry is selected")
        return self.entry

    # --- Analysis run gating ---

    @property
    def analysis_running(self) -> bool:
        return self.entry is not None and self.entry.id in self._runs_in_flight

    @property
    def can_run_analysis(self) -> bool:
        """Offered only for entries with a video reference and no run in flight."""
        return (
            self.entry is not None
            and self.entry.has_video
            and self.entry.id not in self._runs_in_flight
        )

    # --- Selection ---

    async def select_entry(self, entry: DiagnosticEntry) -> None:
        self._token += 1
        token = self._token

        self.state = SelectionState.ENTRY_SELECTED
        self.entry = entry
        self.form = ClinicalForm.create()
        self.composed = None
        self.reports = []
        self.reports_status = ReportsStatus.LOADING
        self.analysis = None
        self.analysis_status = AnalysisStatus.UNKNOWN

        cached = self._analysis_cache.get(entry.id)
        if cached is not None:
            self._apply_analysis(cached)
            await self._load_reports(token, entry.id)
            return

        self.analysis_status = AnalysisStatus.LOADING
        results = await asyncio.gather(
            self._load_reports(token, entry.id),
            self._load_analysis(token, entry),
            return_exceptions=True,
        )
        failed = False
        for result in results:
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                logger.error("Unexpected failure loading entry %s", entry.id, exc_info=result)
                failed = True
        if failed and self.is_current(token):
            if self.reports_status == ReportsStatus.LOADING:
                self.reports_status = ReportsStatus.LOADED
            if self.analysis_status == AnalysisStatus.LOADING:
                self.analysis_status = AnalysisStatus.ABSENT
            self.notices.warning("Some data for this entry could not be loaded.")

    async def refresh_analysis(self) -> None:
        """Re-fetch the analysis for the selected entry, bypassing the cache."""
        entry = self.require_entry()
        self.analysis_status = AnalysisStatus.LOADING
        await self._load_analysis(self._token, entry)

    async def refresh_reports(self, entry_id: int) -> None:
        """Authoritative reload of the report list for ``entry_id``."""
        await self._load_reports(self._token, entry_id)

    async def _load_reports(self, token: int, entry_id: int) -> None:
        try:
            reports = await self.backend.list_reports(entry_id)
        except BackendError as exc:
            logger.warning("Report list fetch failed for entry %s: %s", entry_id, exc)
            if self.is_current(token):
                self.reports_status = ReportsStatus.LOADED
                self.notices.warning("Could not load saved reports for this entry.")
            return

        if not self.is_current(token):
            logger.debug("Discarding stale report list for entry %s", entry_id)
            return
        self.reports = reports
        self.reports_status = ReportsStatus.LOADED

    async def _load_analysis(self, token: int, entry: DiagnosticEntry) -> None:
        try:
            result = await self.backend.get_analysis(entry.id)
        except BackendError as exc:
            logger.warning("Analysis fetch failed for entry %s: %s", entry.id, exc)
            if self.is_current(token):
                self.analysis_status = (
                    AnalysisStatus.LOADED if self.analysis is not None else AnalysisStatus.ABSENT
                )
                self.notices.warning("Could not load the analysis for this entry.")
            return

        if result is None:
            self._analysis_cache.pop(entry.id, None)
        else:
            self._analysis_cache[entry.id] = result

        if not self.is_current(token):
            logger.debug("Discarding stale analysis for entry %s", entry.id)
            return
        if result is None:
            self.analysis = None
            self.analysis_status = AnalysisStatus.ABSENT
            self.form.clear_flow_metrics()
            return
        self._apply_analysis(result)

    def _apply_analysis(self, result: AnalysisResult) -> None:
        """Bind the result and pre-fill the form once from its metrics."""
        self.analysis = result
        self.analysis_status = AnalysisStatus.LOADED

        metrics = parse_flow_metrics(result.metrics)
        if metrics is None:
            logger.debug("Analysis %s has no parseable metrics; clearing pre-fill", result.id)
            kept = self.form.clear_flow_metrics()
        else:
            kept = self.form.merge_flow_metrics(metrics)
        if kept:
            names = ", ".join(FLOW_METRIC_LABELS[name] for name in kept)
            self.notices.warning(f"Kept your edited values for: {names}.")

        if self.entry is not None and not self.form.patient_name.strip() and self.entry.patient_name:
            self.form.patient_name = self.entry.patient_name

    # --- Analysis run ---

    async def run_analysis(self) -> Optional[AnalysisResult]:
        """Trigger a fresh analysis run for the selected entry.

        Returns the new result, or None if the run failed; a failure posts an
        error notice and keeps any previously loaded analysis.
        """
        entry = self.require_entry()
        if not entry.has_video:
            raise AnalysisUnavailableError("This entry has no video to analyse")
        if entry.id in self._runs_in_flight:
            raise OperationInProgressError("Analysis is already running for this entry")

        token = self._token
        self._runs_in_flight.add(entry.id)
        try:
            result = await self.backend.run_analysis(entry.id)
        except BackendError as exc:
            logger.warning("Analysis run failed for entry %s: %s", entry.id, exc)
            if self.is_current(token):
                self.notices.error("Analysis failed. Please try again.")
            return None
        finally:
            self._runs_in_flight.discard(entry.id)

        self._analysis_cache[entry.id] = result
        if not self.is_current(token):
            logger.debug("Analysis run for entry %s finished after selection changed", entry.id)
            return result
        self._apply_analysis(result)
        self.notices.success("Analysis complete.")
        return result

    # --- Session helpers ---

    def reset_form(self) -> None:
        """Discard the in-progress form and composed report (save or dismissal)."""
        self.form = ClinicalForm.create()
        self.composed = None

    def remove_report(self, report_id: int) -> None:
        self.reports = [r for r in self.reports if r.id != report_id]
