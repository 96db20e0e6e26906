"""Tests for the LLM pipeline: prompt engine and provider client."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from llm.client import LLMClient, LLMProvider
from llm.prompt_engine import PromptEngine
from reporting.template import BLANK, CHECKED, METHOD_TEXT, REPORT_SECTIONS, UNCHECKED


class TestPromptEngine:
    @pytest.fixture
    def system_prompt(self):
        return PromptEngine().build_system_prompt()

    def test_lists_sections_in_order(self, system_prompt):
        positions = [system_prompt.index(f"`{s.header}`") for s in REPORT_SECTIONS]
        assert positions == sorted(positions)

    def test_carries_notation(self, system_prompt):
        assert CHECKED in system_prompt
        assert UNCHECKED in system_prompt
        assert BLANK in system_prompt
        assert METHOD_TEXT in system_prompt
        assert "Not available" in system_prompt

    def test_user_prompt_is_json_block(self):
        prompt = PromptEngine().build_user_prompt({"clinician": "Dr. Mehta"})
        assert '```json\n{\n  "clinician": "Dr. Mehta"\n}\n```' in prompt


class TestLLMClient:
    def test_default_models(self):
        assert LLMClient(LLMProvider.OPENAI, "k").model
        assert LLMClient(LLMProvider.CLAUDE, "k").model != LLMClient(LLMProvider.OPENAI, "k").model

    def test_openai_call(self):
        completion = SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content="# Uroflowmetry Report"))],
            model="gpt-4.1-mini",
            usage=SimpleNamespace(prompt_tokens=11, completion_tokens=22),
        )
        fake_client = MagicMock()
        fake_client.chat.completions.create = AsyncMock(return_value=completion)

        with patch("openai.AsyncOpenAI", return_value=fake_client) as ctor:
            client = LLMClient(LLMProvider.OPENAI, "sk-test", model="gpt-4.1-mini",
                               base_url="https://gateway.example.org/v1")
            response = asyncio.run(client.call("system", "user"))

        ctor.assert_called_once_with(api_key="sk-test", base_url="https://gateway.example.org/v1")
        messages = fake_client.chat.completions.create.call_args.kwargs["messages"]
        assert messages[0] == {"role": "system", "content": "system"}
        assert response.text_content == "# Uroflowmetry Report"
        assert (response.input_tokens, response.output_tokens) == (11, 22)

    def test_claude_call(self):
        message = SimpleNamespace(
            content=[SimpleNamespace(type="text", text="# Uroflowmetry "),
                     SimpleNamespace(type="text", text="Report")],
            model="claude-sonnet-4-6",
            usage=SimpleNamespace(input_tokens=5, output_tokens=6),
        )
        fake_client = MagicMock()
        fake_client.messages.create = AsyncMock(return_value=message)

        with patch("anthropic.AsyncAnthropic", return_value=fake_client):
            response = asyncio.run(LLMClient(LLMProvider.CLAUDE, "sk-ant").call("system", "user"))

        assert response.provider == LLMProvider.CLAUDE
        assert response.text_content == "# Uroflowmetry Report"
        assert fake_client.messages.create.call_args.kwargs["system"] == "system"
