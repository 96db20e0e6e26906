"""
Persist composed reports to the backend report store.

The report text is stored as an opaque document reference: a base64 data
URL of the UTF-8 bytes, which survives storage as a URL-embeddable string
and decodes back to the exact original text.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re

from api.models import DiagnosticEntry, PersistedReport
from reporting.composer import ComposedReport
from reporting.errors import ConfirmationRequiredError, OperationInProgressError, PersistenceError
from reporting.orchestrator import AnalysisOrchestrator
from services.backend import BackendClient, BackendError

logger = logging.getLogger(__name__)

REPORT_KIND_TAG = "uroflowmetry"
DOCUMENT_MEDIA_TYPE = "text/markdown"

_DATA_URL_RE = re.compile(r"^data:(?P<media>[^;,]*)(?P<params>(?:;[^;,]+)*),(?P<data>.*)$", re.DOTALL)


def encode_document(text: str) -> str:
    encoded = base64.b64encode(text.encode("utf-8")).decode("ascii")
    return f"data:{DOCUMENT_MEDIA_TYPE};charset=utf-8;base64,{encoded}"


def decode_document(document_ref: str) -> str:
    """Inverse of encode_document. Raises ValueError on a malformed reference."""
    match = _DATA_URL_RE.match(document_ref)
    if not match or ";base64" not in match.group("params"):
        raise ValueError("Not a base64 data URL")
    try:
        raw = base64.b64decode(match.group("data"), validate=True)
        return raw.decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise ValueError("Document reference is not valid base64 UTF-8") from exc


class ReportPersistenceGateway:
    def __init__(self, backend: BackendClient, orchestrator: AnalysisOrchestrator) -> None:
        self.backend = backend
        self.orchestrator = orchestrator
        self._saving = False

    @property
    def saving(self) -> bool:
        return self._saving

    async def save(self, entry: DiagnosticEntry, composed: ComposedReport) -> PersistedReport:
        """Store the report, then reload the entry's list and reset the form.

        On failure the form and the composed report are left untouched so the
        user can retry.
        """
        if self._saving:
            raise OperationInProgressError("A report is already being saved")

        self._saving = True
        try:
            report = await self.backend.create_report(
                entry_id=entry.id,
                kind=REPORT_KIND_TAG,
                title=composed.file_name,
                description=(
                    f"Uroflowmetry report generated on "
                    f"{composed.generated_at:%Y-%m-%d %H:%M} ({composed.source.value})"
                ),
                document_ref=encode_document(composed.text),
            )
        except BackendError as exc:
            logger.warning("Saving report for entry %s failed: %s", entry.id, exc)
            self.orchestrator.notices.error("Could not save the report. Please try again.")
            raise PersistenceError("Could not save the report") from exc
        finally:
            self._saving = False

        logger.info("Saved report %s for entry %s", report.id, entry.id)
        if self.orchestrator.entry is not None and self.orchestrator.entry.id == entry.id:
            await self.orchestrator.refresh_reports(entry.id)
            self.orchestrator.reset_form()
        self.orchestrator.notices.success("Report saved.")
        return report

    async def delete(self, report_id: int, confirmed: bool = False) -> None:
        """Delete a stored report; requires explicit confirmation."""
        if not confirmed:
            raise ConfirmationRequiredError("Deleting a report must be confirmed")
        try:
            await self.backend.delete_report(report_id)
        except BackendError as exc:
            logger.warning("Deleting report %s failed: %s", report_id, exc)
            self.orchestrator.notices.error("Could not delete the report.")
            raise PersistenceError("Could not delete the report") from exc
        self.orchestrator.remove_report(report_id)
        self.orchestrator.notices.success("Report deleted.")
