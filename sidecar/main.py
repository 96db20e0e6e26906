import logging
import os
import re
from contextlib import asynccontextmanager
from typing import Optional

import sentry_sdk
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from api.auth import AuthMiddleware
from api.middleware import add_cors_middleware
from api.routes import router
from api.workspace import Workspace
from server import configure_logging, find_free_port, start_server

_logger = logging.getLogger(__name__)

_SENTRY_DSN = os.getenv("SENTRY_DSN", "")

# Patient identifiers scrubbed from error reports
_PATIENT_PATTERNS = [
    re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),      # email
    re.compile(r"\b\d{4}-\d{2}-\d{2}\b"),                                     # ISO dates
    re.compile(r"\b\d{1,2}[/-]\d{1,2}[/-]\d{2,4}\b"),                          # dates
    re.compile(r"(?i)\b(?:uhid|mrn)\s*[:=#]?\s*[A-Za-z0-9-]{3,}"),             # hospital ids
    re.compile(r"(?i)(?:patient(?:_name)?|name)\s*[:=]\s*[^\n,;]{2,40}"),     # labelled names
    re.compile(r"Uroflowmetry_[^\s/]+?\.md"),                                  # report file names
    re.compile(r"data:[^,\s]+,[A-Za-z0-9+/=]+"),                               # document refs
    re.compile(r"(?i)bearer\s+[A-Za-z0-9._~+/-]+=*"),                          # tokens
]


def _scrub(text: str) -> str:
    for pattern in _PATIENT_PATTERNS:
        text = pattern.sub("[REDACTED]", text)
    return text


def _before_send(event, hint):
    if "exception" in event:
        for exc_info in event["exception"].get("values", []):
            if exc_info.get("value"):
                exc_info["value"] = _scrub(exc_info["value"])
    for bc in event.get("breadcrumbs", {}).get("values", []):
        if bc.get("message"):
            bc["message"] = _scrub(bc["message"])
    if "request" in event:
        event["request"].pop("data", None)
    return event


def _init_sentry() -> None:
    if not _SENTRY_DSN:
        return
    sentry_sdk.init(
        dsn=_SENTRY_DSN,
        environment=os.getenv("SENTRY_ENVIRONMENT", "development"),
        integrations=[FastApiIntegration(), StarletteIntegration()],
        before_send=_before_send,
        send_default_pii=False,
    )


def create_app(workspace: Optional[Workspace] = None) -> FastAPI:
    """Build the sidecar app. Tests pass a prebuilt ``workspace``."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "workspace", None) is None:
            app.state.workspace = Workspace.build()
        yield
        _logger.info("Sidecar shutting down")

    _init_sentry()
    app = FastAPI(title="Uroflowmetry Report Workspace", version="1.0.0", lifespan=lifespan)
    app.state.workspace = workspace
    # Middleware order (inner to outer): Auth, then CORS
    app.add_middleware(AuthMiddleware)
    add_cors_middleware(app)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        _logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error."},
        )

    app.include_router(router)
    return app


if __name__ == "__main__":
    configure_logging()
    port = find_free_port()
    app = create_app()
    start_server(app, port)
