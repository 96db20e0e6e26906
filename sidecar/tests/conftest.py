"""Shared fixtures: an in-memory backend and entry/analysis factories."""

import asyncio
from datetime import datetime

import pytest

from api.models import AnalysisResult, DiagnosticEntry, DoctorProfile, PersistedReport
from services.backend import BackendError


class FakeBackend:
    """In-memory stand-in for BackendClient.

    ``failures`` holds method names that raise BackendError. ``gates`` maps
    ``(method, key)`` to an asyncio.Event the call waits on before answering,
    which lets a test hold one response back while others complete.
    """

    def __init__(self) -> None:
        self.entries: list[DiagnosticEntry] = []
        self.reports: dict[int, list[PersistedReport]] = {}
        self.analyses: dict[int, AnalysisResult] = {}
        self.run_results: dict[int, AnalysisResult] = {}
        self.profile = DoctorProfile(username="Mehta")
        self.signin_response = {"access_token": "tok", "role": "doctor", "user_id": 7}
        self.failures: set[str] = set()
        self.gates: dict[tuple, asyncio.Event] = {}
        self.calls: list[tuple] = []
        self._next_report_id = 100

    async def _enter(self, method: str, key=None) -> None:
        self.calls.append((method, key))
        gate = self.gates.get((method, key))
        if gate is not None:
            await gate.wait()
        if method in self.failures:
            raise BackendError(f"{method} failed", status_code=500)

    async def signin(self, email, password):
        await self._enter("signin", email)
        return dict(self.signin_response)

    async def get_doctor_profile(self):
        await self._enter("get_doctor_profile")
        return self.profile

    async def get_entries(self):
        await self._enter("get_entries")
        return list(self.entries)

    async def list_reports(self, entry_id):
        await self._enter("list_reports", entry_id)
        return list(self.reports.get(entry_id, []))

    async def create_report(self, entry_id, kind, title, description, document_ref):
        await self._enter("create_report", entry_id)
        self._next_report_id += 1
        report = PersistedReport(
            id=self._next_report_id,
            entry_id=entry_id,
            kind=kind,
            title=title,
            description=description,
            document_ref=document_ref,
            created_at=datetime(2024, 5, 2, 10, 0),
        )
        self.reports.setdefault(entry_id, []).append(report)
        return report

    async def delete_report(self, report_id):
        await self._enter("delete_report", report_id)
        for entry_id, reports in self.reports.items():
            self.reports[entry_id] = [r for r in reports if r.id != report_id]

    async def get_analysis(self, entry_id):
        await self._enter("get_analysis", entry_id)
        return self.analyses.get(entry_id)

    async def run_analysis(self, entry_id):
        await self._enter("run_analysis", entry_id)
        result = self.run_results[entry_id]
        self.analyses[entry_id] = result
        return result


def make_entry(entry_id=1, patient_name="Arjun Rao", video=True, **overrides) -> DiagnosticEntry:
    data = {
        "id": entry_id,
        "patient_id": 500 + entry_id,
        "patient_name": patient_name,
        "recorded_at": datetime(2024, 5, 1, 9, 30),
        "voided_volume": 310.0,
        "notes": "Morning void",
        "top_view_url": f"https://cdn.example.org/{entry_id}/top.mp4" if video else None,
        "bottom_view_url": None,
    }
    data.update(overrides)
    return DiagnosticEntry(**data)


def make_analysis(entry_id=1, analysis_id=None, metrics=None) -> AnalysisResult:
    if metrics is None:
        metrics = {
            "Voided_Volume": 310.4,
            "Qmax": 18.256,
            "Qavg": 9.1,
            "Voiding_Time": 34,
            "Time_to_Qmax": 7.005,
        }
    return AnalysisResult(
        id=analysis_id or entry_id * 10,
        entry_id=entry_id,
        metrics=metrics,
        chart_url=f"https://cdn.example.org/{entry_id}/chart.png",
    )


def make_report(report_id, entry_id=1, title="Uroflowmetry_Arjun_Rao_2024-05-01.md") -> PersistedReport:
    return PersistedReport(
        id=report_id,
        entry_id=entry_id,
        kind="uroflowmetry",
        title=title,
        description="Uroflowmetry report",
        document_ref="data:text/markdown;charset=utf-8;base64,IyBSZXBvcnQK",
        created_at=datetime(2024, 5, 1, 12, 0),
    )


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def entry_factory():
    return make_entry


@pytest.fixture
def analysis_factory():
    return make_analysis


@pytest.fixture
def report_factory():
    return make_report
