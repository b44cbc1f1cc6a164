# =============================================================================
# Agent Execution Contract — Prompt, Invoke, Retry, Recover
# =============================================================================
#
# Every pipeline agent is a BaseAgent subclass that supplies:
#   - `name` and `system_prompt`
#   - optionally `process_result()` to turn raw model text into a record
#
# FLOW (execute):
#
#   validate_input ──invalid──▶ InvalidInputError (no retry)
#        │
#        ▼
#   build_prompt(input, context)
#        │
#        ▼
#   ┌─▶ client.invoke(prompt) ──ok──▶ process_result(raw, context) ──▶ record
#   │        │ error
#   │        ▼
#   └── sleep(base_delay × attempt)   (until retry_attempts invocations made,
#                                      then the last error is re-raised)
#
# PROMPT LAYOUT:
#   {system_prompt}\n\n
#   Previous Analysis Results:\n         ┐ only when context carries
#   {key}: {json, indent=2}\n  ...       │ "previous_results"
#   \n                                   ┘
#   Current Input:\n{input}
#
# Results are a tagged union: ParsedResult when the reply parsed into the
# agent's structure, FallbackResult when a lower-confidence recovery path
# produced the record. Callers check `result.fallback`.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from app.services.llm import ChunkCallback, ModelClient

logger = logging.getLogger(__name__)

AgentContext = Mapping[str, Any]


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class AgentError(Exception):
    """Base class for agent failures."""


class InvalidInputError(AgentError, ValueError):
    """Agent input failed validation; never retried."""


# ---------------------------------------------------------------------------
# Result Types
# ---------------------------------------------------------------------------


@dataclass
class ParsedResult:
    """The model reply parsed into the agent's expected structure."""

    data: dict[str, Any]
    confidence: float
    agent: str
    fallback: bool = field(default=False, init=False)


@dataclass
class FallbackResult:
    """A record recovered by pattern extraction or raw-text wrapping."""

    data: dict[str, Any]
    confidence: float
    agent: str
    reason: str
    fallback: bool = field(default=True, init=False)


AgentResult = ParsedResult | FallbackResult


# ---------------------------------------------------------------------------
# Base Agent
# ---------------------------------------------------------------------------


class BaseAgent:
    """
    Shared execution contract for all pipeline agents.

    Args:
        client: Model invocation client used for every call.
        retry_attempts: Total invocations before giving up (>= 1).
        retry_base_delay: Seconds; the wait after attempt n is base × n.
        sleep: Awaitable sleep, replaceable in tests.
    """

    name: str = "BaseAgent"
    system_prompt: str = ""

    def __init__(
        self,
        client: ModelClient,
        retry_attempts: int = 3,
        retry_base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")
        self.client = client
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self._sleep = sleep

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def execute(self, input: Any, context: AgentContext | None = None) -> AgentResult:
        """
        Run the agent with retry.

        Raises:
            InvalidInputError: If input is not a non-empty string.
            Exception: The last invocation or processing error once
                `retry_attempts` invocations have failed.
        """
        self.validate_input(input)
        context = context or {}
        prompt = self.build_prompt(input, context)

        logger.info("Executing agent %s (prompt=%d chars)", self.name, len(prompt))

        for attempt in range(1, self.retry_attempts + 1):
            try:
                raw = await self.client.invoke(prompt)
                result = self.process_result(raw, context)
            except Exception as e:
                if attempt == self.retry_attempts:
                    logger.error(
                        "Agent %s failed after %d attempts: %s",
                        self.name, self.retry_attempts, e,
                    )
                    raise
                logger.warning("Agent %s attempt %d failed: %s", self.name, attempt, e)
                await self._sleep(self.retry_base_delay * attempt)
                continue

            logger.info(
                "Agent %s completed (attempt=%d, reply=%d chars, fallback=%s)",
                self.name, attempt, len(raw), result.fallback,
            )
            return result

        raise AssertionError("unreachable")

    async def execute_streaming(
        self,
        input: Any,
        context: AgentContext | None = None,
        on_chunk: ChunkCallback | None = None,
    ) -> str:
        """Stream the model reply to `on_chunk`. Single attempt, no processing."""
        self.validate_input(input)
        prompt = self.build_prompt(input, context or {})
        logger.info("Executing streaming agent %s", self.name)
        return await self.client.stream(prompt, on_chunk or (lambda _chunk: None))

    # -----------------------------------------------------------------------
    # Overridable Hooks
    # -----------------------------------------------------------------------

    def build_prompt(self, input: str, context: AgentContext) -> str:
        prompt = self.system_prompt + "\n\n"

        previous = context.get("previous_results")
        if previous:
            prompt += "Previous Analysis Results:\n"
            for key, value in previous.items():
                prompt += f"{key}: {json.dumps(value, indent=2, default=str)}\n"
            prompt += "\n"

        return prompt + "Current Input:\n" + input

    def process_result(self, raw: str, context: AgentContext) -> AgentResult:
        """Strict JSON parse; anything else is wrapped as raw content."""
        try:
            data = json.loads(raw)
        except ValueError:
            return FallbackResult(
                data={"content": raw, "timestamp": now_iso(), "agent": self.name},
                confidence=0.0,
                agent=self.name,
                reason="reply is not valid JSON",
            )
        if not isinstance(data, dict):
            data = {"content": data}
        return ParsedResult(
            data=data,
            confidence=_as_confidence(data.get("confidence"), 0.0),
            agent=self.name,
        )

    @staticmethod
    def validate_input(input: Any) -> None:
        if not isinstance(input, str) or not input:
            raise InvalidInputError("Input must be a non-empty string")

    # -----------------------------------------------------------------------
    # Helpers for subclasses
    # -----------------------------------------------------------------------

    def parsed(self, data: dict[str, Any], default_confidence: float = 0.0) -> ParsedResult:
        """Stamp processedAt/agent and wrap as a ParsedResult."""
        data["processedAt"] = now_iso()
        data["agent"] = self.name
        return ParsedResult(
            data=data,
            confidence=_as_confidence(data.get("confidence"), default_confidence),
            agent=self.name,
        )

    def fallback(self, data: dict[str, Any], reason: str) -> FallbackResult:
        """Stamp fallback markers and wrap as a FallbackResult."""
        data.setdefault("processedAt", now_iso())
        data["agent"] = self.name
        data["fallbackExtraction"] = True
        logger.warning("Agent %s using fallback extraction: %s", self.name, reason)
        return FallbackResult(
            data=data,
            confidence=_as_confidence(data.get("confidence"), 0.0),
            agent=self.name,
            reason=reason,
        )


# ---------------------------------------------------------------------------
# Shared Parsing Helpers
# ---------------------------------------------------------------------------

_FENCED_JSON = re.compile(r"```json\s*([\s\S]*?)\s*```")


def extract_json_block(text: str) -> str | None:
    """
    Locate the JSON payload inside a model reply.

    Prefers the first ```json fenced block; otherwise returns the first
    balanced top-level {...} object (string-literal aware).
    """
    fenced = _FENCED_JSON.search(text)
    if fenced:
        return fenced.group(1)

    start = text.find("{")
    while start != -1:
        end = _balanced_end(text, start)
        if end is not None:
            return text[start:end + 1]
        start = text.find("{", start + 1)
    return None


def parse_json_object(text: str) -> dict[str, Any]:
    """
    Extract and parse the embedded JSON object.

    Raises:
        ValueError: If no object is found or it does not parse to a dict.
    """
    block = extract_json_block(text)
    if block is None:
        raise ValueError("no JSON object found in reply")
    data = json.loads(block)
    if not isinstance(data, dict):
        raise ValueError("embedded JSON is not an object")
    return data


def ensure_list(data: dict[str, Any], field_name: str) -> list:
    """Coerce data[field_name] to a list: missing → [], scalar → [scalar]."""
    value = data.get(field_name)
    if value is None or value == "":
        value = []
    elif not isinstance(value, list):
        value = [value]
    data[field_name] = value
    return value



def as_dict(value: Any) -> dict[str, Any]:
    """value itself when it is a dict, otherwise an empty dict."""
    return value if isinstance(value, dict) else {}


def dict_items(value: Any) -> list[dict[str, Any]]:
    """The dict entries of a list; non-lists yield []."""
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _balanced_end(text: str, start: int) -> int | None:
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return index
    return None


def _as_confidence(value: Any, default: float) -> float:
    try:
        return max(0.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return default
