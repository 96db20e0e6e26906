"""
The doctor workspace held by the sidecar process.

Wires the auth context, backend client, orchestrator, composer and
persistence gateway together, and adds the single-flight guard around
composition.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from api.auth import AuthContext
from api.models import DiagnosticEntry, PersistedReport
from api.settings_store import build_narrative_client
from reporting.composer import ComposedReport, ReportComposer, ReportContext
from reporting.errors import NothingToSaveError, OperationInProgressError
from reporting.notices import NoticeBoard
from reporting.orchestrator import AnalysisOrchestrator
from reporting.persistence import ReportPersistenceGateway
from services.backend import BackendClient, BackendError
from storage.keychain import KeychainManager, get_keychain

logger = logging.getLogger(__name__)

DEFAULT_CLINICIAN_NAME = "Reporting clinician"


@dataclass
class Workspace:
    auth: AuthContext
    backend: BackendClient
    composer: ReportComposer
    notices: NoticeBoard = field(default_factory=NoticeBoard)
    orchestrator: AnalysisOrchestrator = field(init=False)
    gateway: ReportPersistenceGateway = field(init=False)
    entries: list[DiagnosticEntry] = field(default_factory=list)
    _composing: bool = False

    def __post_init__(self) -> None:
        self.reset_session()

    @classmethod
    def build(cls, keychain: Optional[KeychainManager] = None) -> "Workspace":
        keychain = keychain or get_keychain()
        auth = AuthContext.from_keychain(keychain)
        backend = BackendClient(auth)
        composer = ReportComposer(build_narrative_client(keychain))
        return cls(auth=auth, backend=backend, composer=composer)

    def reset_session(self) -> None:
        """Drop all per-session state (selection, caches, entries)."""
        self.notices.clear()
        self.orchestrator = AnalysisOrchestrator(self.backend, self.notices)
        self.gateway = ReportPersistenceGateway(self.backend, self.orchestrator)
        self.entries = []

    @property
    def composing(self) -> bool:
        return self._composing

    async def signin(self, email: str, password: str) -> None:
        await self.auth.signin(self.backend, email, password)
        self.reset_session()

    def signout(self) -> None:
        self.auth.signout()
        self.reset_session()

    async def load_entries(self) -> list[DiagnosticEntry]:
        self.entries = await self.backend.get_entries()
        return self.entries

    async def find_entry(self, entry_id: int) -> Optional[DiagnosticEntry]:
        for entry in self.entries:
            if entry.id == entry_id:
                return entry
        for entry in await self.load_entries():
            if entry.id == entry_id:
                return entry
        return None

    async def clinician_name(self) -> str:
        """``Dr. <username>`` from the doctor profile, fetched once per session."""
        if self.auth.display_name:
            return self.auth.display_name
        try:
            profile = await self.backend.get_doctor_profile()
        except BackendError as exc:
            logger.warning("Doctor profile unavailable: %s", exc)
            return DEFAULT_CLINICIAN_NAME
        if not profile.username:
            return DEFAULT_CLINICIAN_NAME
        name = f"Dr. {profile.username}"
        self.auth.set_display_name(name)
        return name

    async def compose(self) -> ComposedReport:
        orchestrator = self.orchestrator
        entry = orchestrator.require_entry()
        if self._composing:
            raise OperationInProgressError("A report is already being generated")

        token = orchestrator.token
        snapshot = orchestrator.form.model_copy(deep=True)
        self._composing = True
        try:
            context = ReportContext(entry=entry, clinician_name=await self.clinician_name())
            composed = await self.composer.compose(snapshot, context)
        finally:
            self._composing = False

        if not orchestrator.is_current(token):
            logger.debug("Discarding report composed for entry %s after selection changed", entry.id)
            return composed
        orchestrator.composed = composed
        for warning in composed.warnings:
            self.notices.warning(warning)
        return composed

    async def save(self) -> PersistedReport:
        orchestrator = self.orchestrator
        entry = orchestrator.require_entry()
        if orchestrator.composed is None:
            raise NothingToSaveError("Generate the report before saving it")
        return await self.gateway.save(entry, orchestrator.composed)
