"""Clients for the platform backend services."""

from services.backend import BackendClient, BackendError

__all__ = [
    "BackendClient",
    "BackendError",
]
