"""Persistent storage: OS keychain integration for credentials and API keys."""

from storage.keychain import KeychainManager, get_keychain

__all__ = [
    "KeychainManager",
    "get_keychain",
]
