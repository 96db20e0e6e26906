"""Authentication context and middleware for the workspace sidecar.

The AuthContext is created once at process start from the credentials
persisted in the OS keychain, passed explicitly to the backend client, and
torn down on sign-out. Workspace routes require a signed-in doctor; the
health check and the /session endpoints are open.
"""

import logging
import time
from typing import TYPE_CHECKING, Optional

import jwt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from storage.keychain import KeychainManager

if TYPE_CHECKING:
    from services.backend import BackendClient

_logger = logging.getLogger(__name__)

_OPEN_PATHS = ("/health", "/session")


def _token_expired(token: str) -> bool:
    """True if the token is a JWT whose ``exp`` has passed.

    The signature is not verified here: the backend does that on every call.
    Opaque (non-JWT) tokens are treated as unexpired.
    """
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.InvalidTokenError:
        return False
    exp = claims.get("exp")
    return isinstance(exp, (int, float)) and exp <= time.time()


class AuthContext:
    def __init__(
        self,
        keychain: Optional[KeychainManager] = None,
        token: Optional[str] = None,
        role: Optional[str] = None,
        user_id: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> None:
        self.keychain = keychain
        self.token = token
        self.role = role
        self.user_id = user_id
        self.display_name = display_name

    @classmethod
    def from_keychain(cls, keychain: KeychainManager) -> "AuthContext":
        """Restore the persisted session; expired or partial sessions are discarded."""
        stored = keychain.get_session()
        token, role, user_id = stored["token"], stored["role"], stored["user_id"]
        if not (token and role and user_id):
            return cls(keychain=keychain)
        if _token_expired(token):
            _logger.info("Stored session token has expired; signing out")
            keychain.clear_session()
            return cls(keychain=keychain)
        return cls(
            keychain=keychain,
            token=token,
            role=role,
            user_id=user_id,
            display_name=stored["display_name"],
        )

    @property
    def is_authenticated(self) -> bool:
        return bool(self.token)

    @property
    def is_doctor(self) -> bool:
        return self.role == "doctor"

    @property
    def is_patient(self) -> bool:
        return self.role == "patient"

    def headers(self) -> dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    async def signin(self, backend: "BackendClient", email: str, password: str) -> None:
        data = await backend.signin(email, password)
        self.token = data["access_token"]
        self.role = data["role"]
        self.user_id = str(data["user_id"])
        self.display_name = None
        if self.keychain is not None:
            self.keychain.clear_session()
            self.keychain.set_session(self.token, self.role, self.user_id)
        _logger.info("Signed in as user %s (%s)", self.user_id, self.role)

    def set_display_name(self, name: str) -> None:
        self.display_name = name
        if self.keychain is not None:
            self.keychain.set_display_name(name)

    def signout(self) -> None:
        if self.keychain is not None:
            self.keychain.clear_session()
        self.token = None
        self.role = None
        self.user_id = None
        self.display_name = None
        _logger.info("Signed out")


class AuthMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if request.method == "OPTIONS" or any(
            path == p or path.startswith(p + "/") for p in _OPEN_PATHS
        ):
            return await call_next(request)

        auth: AuthContext = request.app.state.workspace.auth
        if not auth.is_authenticated:
            return JSONResponse({"detail": "Not signed in"}, status_code=401)
        if not auth.is_doctor:
            return JSONResponse(
                {"detail": "The report workspace is available to doctors only"},
                status_code=403,
            )

        try:
            return await call_next(request)
        except Exception:
            _logger.exception("Unhandled error on %s %s", request.method, path)
            return JSONResponse(
                {"detail": "Internal server error"},
                status_code=500,
            )
