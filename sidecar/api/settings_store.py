"""
Narrative-service settings: provider, model, gateway URL and API key.

Non-secret settings come from environment variables. API keys come from the
environment first and the OS keychain second.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from llm.client import LLMClient, LLMProvider
from storage.keychain import KeychainManager, get_keychain

logger = logging.getLogger(__name__)

NARRATIVE_PROVIDER = os.getenv("NARRATIVE_PROVIDER", "openai").lower()
NARRATIVE_MODEL = os.getenv("NARRATIVE_MODEL") or None
NARRATIVE_BASE_URL = os.getenv("NARRATIVE_BASE_URL") or None


def get_api_key_for_provider(
    provider: str, keychain: Optional[KeychainManager] = None,
) -> str | None:
    """Get the API key for the given provider (env var, then keychain)."""
    keychain = keychain or get_keychain()
    if provider == "claude":
        return os.getenv("ANTHROPIC_API_KEY") or keychain.get_claude_key()
    if provider == "openai":
        return os.getenv("OPENAI_API_KEY") or keychain.get_openai_key()
    return None


def build_narrative_client(keychain: Optional[KeychainManager] = None) -> LLMClient | None:
    """LLM client for report narration, or None when no key is configured."""
    try:
        provider = LLMProvider(NARRATIVE_PROVIDER)
    except ValueError:
        logger.warning("Unknown NARRATIVE_PROVIDER %r; narrative generation disabled", NARRATIVE_PROVIDER)
        return None
    api_key = get_api_key_for_provider(provider.value, keychain)
    if not api_key:
        logger.warning("No API key for %s; reports will use the standard template", provider.value)
        return None
    return LLMClient(
        provider=provider,
        api_key=api_key,
        model=NARRATIVE_MODEL,
        base_url=NARRATIVE_BASE_URL if provider == LLMProvider.OPENAI else None,
    )
