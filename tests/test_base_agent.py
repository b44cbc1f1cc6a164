# =============================================================================
# Unit Tests — Agent Execution Contract
# =============================================================================
#
# Retry counting, linear backoff, input validation, result wrapping and the
# shared JSON helpers. The model client is a scripted fake; sleeps are
# recorded, never awaited for real.
# =============================================================================

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from app.agents.base import (
    BaseAgent,
    FallbackResult,
    InvalidInputError,
    ParsedResult,
    ensure_list,
    extract_json_block,
    parse_json_object,
)
from app.services.llm import ModelInvocationError


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


class ScriptedClient:
    """Returns or raises the scripted outcomes in order."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.prompts: list[str] = []

    async def invoke(self, prompt: str) -> str:
        self.prompts.append(prompt)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def stream(self, prompt: str, on_chunk) -> str:
        self.prompts.append(prompt)
        for piece in ("{", "}"):
            on_chunk(piece)
        return "{}"


def _agent(client, attempts: int = 3):
    sleep = AsyncMock()
    agent = BaseAgent(client, retry_attempts=attempts, retry_base_delay=1.0, sleep=sleep)
    return agent, sleep


# ---------------------------------------------------------------------------
# Test: execute() retry behaviour
# ---------------------------------------------------------------------------


class TestExecuteRetry:

    def test_success_first_attempt(self):
        client = ScriptedClient('{"answer": 42, "confidence": 0.9}')
        agent, sleep = _agent(client)

        result = _run(agent.execute("input"))

        assert isinstance(result, ParsedResult)
        assert result.data["answer"] == 42
        assert result.confidence == 0.9
        assert len(client.prompts) == 1
        sleep.assert_not_called()

    def test_raises_after_exactly_retry_attempts(self):
        client = ScriptedClient(*(ModelInvocationError("boom") for _ in range(3)))
        agent, sleep = _agent(client, attempts=3)

        with pytest.raises(ModelInvocationError):
            _run(agent.execute("input"))

        assert len(client.prompts) == 3
        assert client.outcomes == []
        # Linear backoff between attempts, none after the last
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0]

    def test_recovers_on_second_attempt(self):
        client = ScriptedClient(ModelInvocationError("timeout"), '{"ok": true}')
        agent, sleep = _agent(client)

        result = _run(agent.execute("input"))

        assert result.data == {"ok": True}
        assert len(client.prompts) == 2
        sleep.assert_awaited_once_with(1.0)

    def test_single_attempt_configuration(self):
        client = ScriptedClient(ModelInvocationError("down"))
        agent, sleep = _agent(client, attempts=1)

        with pytest.raises(ModelInvocationError):
            _run(agent.execute("input"))
        sleep.assert_not_called()

    def test_zero_attempts_rejected(self):
        with pytest.raises(ValueError):
            BaseAgent(ScriptedClient(), retry_attempts=0)

    def test_cancellation_aborts_retry_loop(self):
        async def scenario():
            client = ScriptedClient(ModelInvocationError("slow"), '{"ok": true}')
            agent = BaseAgent(client, retry_attempts=3, retry_base_delay=10.0)
            task = asyncio.create_task(agent.execute("input"))
            await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            return client

        client = _run(scenario())
        assert len(client.prompts) == 1


# ---------------------------------------------------------------------------
# Test: input validation and default processing
# ---------------------------------------------------------------------------


class TestValidationAndProcessing:

    @pytest.mark.parametrize("bad_input", ["", None, 123, ["text"]])
    def test_invalid_input_not_invoked(self, bad_input):
        client = ScriptedClient()
        agent, _ = _agent(client)

        with pytest.raises(InvalidInputError):
            _run(agent.execute(bad_input))
        assert client.prompts == []

    def test_non_json_reply_wrapped_as_fallback(self):
        agent, _ = _agent(ScriptedClient("plain prose reply"))

        result = _run(agent.execute("input"))

        assert isinstance(result, FallbackResult)
        assert result.fallback is True
        assert result.data["content"] == "plain prose reply"
        assert result.confidence == 0.0

    def test_previous_results_rendered_into_prompt(self):
        client = ScriptedClient("{}")
        agent, _ = _agent(client)

        _run(agent.execute("current", {"previous_results": {"ingestion": {"title": "RFP"}}}))

        prompt = client.prompts[0]
        assert "Previous Analysis Results:" in prompt
        assert '"title": "RFP"' in prompt
        assert prompt.endswith("Current Input:\ncurrent")

    def test_streaming_delivers_chunks(self):
        client = ScriptedClient()
        agent, _ = _agent(client)
        chunks: list[str] = []

        text = _run(agent.execute_streaming("input", on_chunk=chunks.append))

        assert text == "{}"
        assert chunks == ["{", "}"]


# ---------------------------------------------------------------------------
# Test: JSON helpers
# ---------------------------------------------------------------------------


class TestJsonHelpers:

    def test_fenced_block_preferred(self):
        text = 'Here you go:\n```json\n{"a": 1}\n```\n{"b": 2}'
        assert extract_json_block(text) == '{"a": 1}'

    def test_balanced_object_with_braces_in_strings(self):
        text = 'Result: {"note": "use {curly} braces", "n": {"x": 1}} trailing'
        assert parse_json_object(text) == {"note": "use {curly} braces", "n": {"x": 1}}

    def test_no_object_raises(self):
        with pytest.raises(ValueError):
            parse_json_object("no json here")

    def test_array_rejected(self):
        with pytest.raises(ValueError):
            parse_json_object("```json\n[1, 2]\n```")

    def test_ensure_list(self):
        data = {"scalar": "one", "empty": "", "listed": [1]}
        assert ensure_list(data, "scalar") == ["one"]
        assert ensure_list(data, "empty") == []
        assert ensure_list(data, "missing") == []
        assert ensure_list(data, "listed") == [1]
