import os

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.types import ASGIApp, Receive, Scope, Send
from fastapi.middleware.cors import CORSMiddleware


def allowed_origins() -> list[str]:
    """Origins from ALLOWED_ORIGINS (comma-separated); all when unset."""
    env = os.getenv("ALLOWED_ORIGINS", "")
    origins = [o.strip() for o in env.split(",") if o.strip()]
    return origins or ["*"]


class NoCacheMiddleware(BaseHTTPMiddleware):
    """Workspace state changes on every call; never let the webview cache it."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
        response.headers["Pragma"] = "no-cache"
        return response


class CORSErrorWrapper:
    """Raw ASGI wrapper adding CORS headers to responses that lack them.

    Bare 500s produced inside BaseHTTPMiddleware bypass CORSMiddleware; this
    sits outermost so the UI can still read the error body.
    """

    def __init__(self, app: ASGIApp, allowed_origins: list[str]) -> None:
        self.app = app
        self.allowed_origins = allowed_origins

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        origin = None
        for name, value in scope.get("headers", []):
            if name == b"origin":
                origin = value.decode("latin-1")
                break

        if not origin or ("*" not in self.allowed_origins and origin not in self.allowed_origins):
            await self.app(scope, receive, send)
            return

        async def send_with_cors(message):
            if message["type"] == "http.response.start":
                headers = list(message.get("headers", []))
                if not any(k == b"access-control-allow-origin" for k, _ in headers):
                    headers += [
                        (b"access-control-allow-origin", origin.encode()),
                        (b"access-control-allow-credentials", b"true"),
                    ]
                    message["headers"] = headers
            await send(message)

        await self.app(scope, receive, send_with_cors)


def add_cors_middleware(app) -> None:
    origins = allowed_origins()
    app.add_middleware(NoCacheMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(CORSErrorWrapper, allowed_origins=origins)
