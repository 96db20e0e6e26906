"""OS keychain integration for the session credentials and narrative API keys."""

from __future__ import annotations

import logging
import os

import keyring as _keyring_module
from keyring.errors import PasswordDeleteError

logger = logging.getLogger(__name__)

_SERVICE_NAME = "uroflow-workspace"

_REQUIRE_KEYCHAIN = os.getenv("REQUIRE_KEYCHAIN", "").lower() == "true"

# Session credentials written on sign-in and removed on sign-out
_SESSION_KEYS = ("session_token", "session_role", "session_user_id", "session_display_name")


class KeychainManager:
    """Store and retrieve secrets via OS keychain, with in-memory fallback.

    With REQUIRE_KEYCHAIN=true the in-memory fallback is NOT allowed
    because it provides no persistence or encryption for secrets.
    """

    def __init__(self) -> None:
        self._available = False
        self._fallback: dict[str, str] = {}
        try:
            _keyring_module.get_credential(_SERVICE_NAME, None)
            self._available = True
            logger.info("OS keychain is available")
        except Exception:
            if _REQUIRE_KEYCHAIN:
                raise RuntimeError(
                    "OS keychain is required (REQUIRE_KEYCHAIN=true) "
                    "but is unavailable. Refusing to start with in-memory fallback."
                )
            logger.warning(
                "OS keychain unavailable; credentials will be stored in memory only"
            )

    def get_key(self, name: str) -> str | None:
        if self._available:
            try:
                return _keyring_module.get_password(_SERVICE_NAME, name)
            except Exception:
                logger.debug("Keychain read failed for %s", name, exc_info=True)
        return self._fallback.get(name)

    def set_key(self, name: str, value: str) -> None:
        if self._available:
            try:
                _keyring_module.set_password(_SERVICE_NAME, name, value)
                return
            except Exception:
                logger.warning("Failed to write to keychain; using fallback")
        self._fallback[name] = value

    def delete_key(self, name: str) -> None:
        if self._available:
            try:
                _keyring_module.delete_password(_SERVICE_NAME, name)
                return
            except PasswordDeleteError:
                # Nothing stored under this name
                return
            except Exception:
                logger.debug("Keychain delete failed for %s", name, exc_info=True)
        self._fallback.pop(name, None)

    # Session credentials

    def get_session(self) -> dict[str, str | None]:
        return {
            "token": self.get_key("session_token"),
            "role": self.get_key("session_role"),
            "user_id": self.get_key("session_user_id"),
            "display_name": self.get_key("session_display_name"),
        }

    def set_session(self, token: str, role: str, user_id: str) -> None:
        self.set_key("session_token", token)
        self.set_key("session_role", role)
        self.set_key("session_user_id", user_id)

    def set_display_name(self, value: str) -> None:
        self.set_key("session_display_name", value)

    def clear_session(self) -> None:
        for name in _SESSION_KEYS:
            self.delete_key(name)

    # Narrative service keys

    def get_claude_key(self) -> str | None:
        return self.get_key("claude_api_key")

    def set_claude_key(self, value: str) -> None:
        self.set_key("claude_api_key", value)

    def get_openai_key(self) -> str | None:
        return self.get_key("openai_api_key")

    def set_openai_key(self, value: str) -> None:
        self.set_key("openai_api_key", value)


_keychain_instance: KeychainManager | None = None


def get_keychain() -> KeychainManager:
    """Return the module-level KeychainManager singleton."""
    global _keychain_instance
    if _keychain_instance is None:
        _keychain_instance = KeychainManager()
    return _keychain_instance
