"""
HTTP client for the platform backend: auth, doctor profile, entries,
analysis and report store.

Calls are blocking ``requests`` calls run in the event loop's default
executor, so concurrent fetches for one selection do not block each other.
The bearer token is read from the AuthContext on every request.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import os
from typing import TYPE_CHECKING, Any, Callable, Optional, TypeVar

import requests
from pydantic import ValidationError

from api.models import AnalysisResult, DiagnosticEntry, DoctorProfile, PersistedReport

if TYPE_CHECKING:
    from api.auth import AuthContext

logger = logging.getLogger(__name__)

T = TypeVar("T")

BACKEND_URL = os.getenv("BACKEND_URL", "http://localhost:8000")
BACKEND_TIMEOUT_SECONDS = float(os.getenv("BACKEND_TIMEOUT_SECONDS", "30"))
# Analysis runs process the videos server-side and can take minutes
ANALYSIS_RUN_TIMEOUT_SECONDS = float(os.getenv("ANALYSIS_RUN_TIMEOUT_SECONDS", "600"))


class BackendError(Exception):
    """Network failure or non-success response from the backend."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class BackendClient:
    def __init__(
        self,
        auth: "AuthContext",
        base_url: str = BACKEND_URL,
        timeout: float = BACKEND_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.auth = auth
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _send(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict] = None,
        timeout: Any = None,
        allow_not_found: bool = False,
    ) -> Any:
        headers = {"Content-Type": "application/json", **self.auth.headers()}
        try:
            response = self.session.request(
                method,
                f"{self.base_url}{path}",
                json=json,
                headers=headers,
                timeout=timeout or self.timeout,
            )
        except requests.RequestException as exc:
            raise BackendError(f"{method} {path} failed: {type(exc).__name__}") from exc

        if response.status_code == 404 and allow_not_found:
            return None
        if not response.ok:
            raise BackendError(
                f"{method} {path} returned {response.status_code}: {_detail(response)}",
                status_code=response.status_code,
            )
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise BackendError(f"{method} {path} returned invalid JSON") from exc

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        call = functools.partial(self._send, method, path, **kwargs)
        return await asyncio.get_event_loop().run_in_executor(None, call)

    # Auth and profile

    async def signin(self, email: str, password: str) -> dict:
        data = await self._request(
            "POST", "/auth/signin", json={"email": email, "password": password},
        )
        return _decode("/auth/signin", _session_fields, data)

    async def get_doctor_profile(self) -> DoctorProfile:
        data = await self._request("GET", "/doctor/me")
        return _decode("/doctor/me", _doctor_profile, data)

    # Entries

    async def get_entries(self) -> list[DiagnosticEntry]:
        data = await self._request("GET", "/entries/")
        return _decode(
            "/entries/", lambda d: [DiagnosticEntry.model_validate(item) for item in d or []], data,
        )

    # Report store

    async def list_reports(self, entry_id: int) -> list[PersistedReport]:
        path = f"/reports/entry/{entry_id}"
        data = await self._request("GET", path)
        return _decode(
            path, lambda d: [PersistedReport.model_validate(item) for item in d or []], data,
        )

    async def create_report(
        self,
        entry_id: int,
        kind: str,
        title: str,
        description: str,
        document_ref: str,
    ) -> PersistedReport:
        data = await self._request(
            "POST",
            "/reports/",
            json={
                "entry_id": entry_id,
                "kind": kind,
                "title": title,
                "description": description,
                "document_ref": document_ref,
            },
        )
        return _decode("/reports/", PersistedReport.model_validate, data)

    async def delete_report(self, report_id: int) -> None:
        await self._request("DELETE", f"/reports/{report_id}")

    # Analysis

    async def get_analysis(self, entry_id: int) -> Optional[AnalysisResult]:
        """Current analysis for the entry, or None if it was never analysed."""
        data = await self._request(
            "GET", f"/analysis/entry/{entry_id}", allow_not_found=True,
        )
        if data is None:
            return None
        return _decode(f"/analysis/entry/{entry_id}", AnalysisResult.model_validate, data)

    async def run_analysis(self, entry_id: int) -> AnalysisResult:
        data = await self._request(
            "POST",
            f"/analysis/entry/{entry_id}/run",
            timeout=(self.timeout, ANALYSIS_RUN_TIMEOUT_SECONDS),
        )
        return _decode(f"/analysis/entry/{entry_id}/run", AnalysisResult.model_validate, data)


def _detail(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict) and "detail" in body:
        return str(body["detail"])[:200]
    return str(body)[:200]


def _decode(path: str, build: Callable[[Any], T], data: Any) -> T:
    """Apply ``build`` to a response body; a body of the wrong shape is a BackendError."""
    try:
        return build(data)
    except (ValidationError, TypeError, AttributeError, KeyError) as exc:
        raise BackendError(f"{path} returned an unexpected body: {type(exc).__name__}") from exc


def _session_fields(data: Any) -> dict:
    return {
        "access_token": str(data["access_token"]),
        "role": str(data["role"]),
        "user_id": data["user_id"],
    }


def _doctor_profile(data: Any) -> DoctorProfile:
    user = data.get("user") or {}
    return DoctorProfile(
        username=user.get("username", ""),
        email=user.get("email"),
        hospital=data.get("hospital"),
        specialization=data.get("specialization"),
        qualification=data.get("qualification"),
    )
