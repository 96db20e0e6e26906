"""
LLM client abstraction for the narrative-generation service.

Supports OpenAI (primary, bearer-token authenticated, optionally through an
OpenAI-compatible gateway via NARRATIVE_BASE_URL) and Claude (secondary).
Only plain-text completions are needed: the report is returned as markdown.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class LLMProvider(str, Enum):
    CLAUDE = "claude"
    OPENAI = "openai"


DEFAULT_MODELS = {
    LLMProvider.CLAUDE: "claude-sonnet-4-6",
    LLMProvider.OPENAI: "gpt-4.1-mini",
}


@dataclass
class LLMResponse:
    """Completion text plus the usage the provider reported."""

    provider: LLMProvider
    raw_content: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def text_content(self) -> str:
        return self.raw_content


class LLMClient:
    """Narrative-service client. Built once per workspace from resolved settings."""

    def __init__(
        self,
        provider: LLMProvider,
        api_key: str,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
    ):
        self.provider = provider
        self.api_key = api_key
        self.model = model or DEFAULT_MODELS[provider]
        self.base_url = base_url

    async def call(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int = 4096,
        temperature: float = 0.2,
    ) -> LLMResponse:
        """One completion for ``user_prompt`` under ``system_prompt``."""
        logger.debug("Narrative request to %s (%s)", self.provider.value, self.model)
        if self.provider == LLMProvider.CLAUDE:
            return await self._complete_claude(system_prompt, user_prompt, max_tokens, temperature)
        return await self._complete_openai(system_prompt, user_prompt, max_tokens, temperature)

    async def _complete_claude(
        self, system_prompt: str, user_prompt: str, max_tokens: int, temperature: float,
    ) -> LLMResponse:
        import anthropic

        client = anthropic.AsyncAnthropic(api_key=self.api_key)
        message = await client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system_prompt,
            messages=[{"role": "user", "content": user_prompt}],
        )
        text = "".join(block.text for block in message.content if block.type == "text")
        return LLMResponse(
            provider=LLMProvider.CLAUDE,
            raw_content=text,
            model=message.model,
            input_tokens=message.usage.input_tokens,
            output_tokens=message.usage.output_tokens,
        )

    async def _complete_openai(
        self, system_prompt: str, user_prompt: str, max_tokens: int, temperature: float,
    ) -> LLMResponse:
        import openai

        client = openai.AsyncOpenAI(api_key=self.api_key, base_url=self.base_url)
        completion = await client.chat.completions.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        )
        usage = completion.usage
        return LLMResponse(
            provider=LLMProvider.OPENAI,
            raw_content=completion.choices[0].message.content or "",
            model=completion.model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )
