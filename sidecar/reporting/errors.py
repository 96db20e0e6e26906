"""Errors raised by the report workspace."""

from __future__ import annotations


class WorkspaceError(Exception):
    """Base class for recoverable workspace errors."""


class ReportValidationError(WorkspaceError):
    """Required form fields are missing for the requested action."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__(f"Patient details missing: {', '.join(missing)}")


class OperationInProgressError(WorkspaceError):
    """The same action is already pending; re-submission is rejected."""


class AnalysisUnavailableError(WorkspaceError):
    """Analysis cannot be run for this entry (no video reference)."""


class NoEntrySelectedError(WorkspaceError):
    pass


class ConfirmationRequiredError(WorkspaceError):
    """Destructive call attempted without explicit user confirmation."""


class PersistenceError(WorkspaceError):
    """The report store rejected or failed to store the report."""


class NothingToSaveError(WorkspaceError):
    """Save requested before a report was composed."""
