"""
Answer Generator
-----------------
Sends one chat turn to Claude: the system prompt carries the assistant
instructions, recent conversation and retrieved context; the user turn
is the student's question.

Citations are not produced here.  They come from the ranked results
that built the context, so each one maps to a real chunk.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from langsmith import traceable
from loguru import logger

from chronos_rag.sessions.costs import DEFAULT_CHAT_MODEL, calculate_chat_cost


@dataclass
class GenerationResult:
    answer: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: str | None = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def estimated_cost_usd(self) -> float:
        return calculate_chat_cost(self.input_tokens, self.output_tokens, self.model).total_cost


class Generator(Protocol):
    model: str

    def generate(self, system_prompt: str, user_prompt: str) -> GenerationResult: ...


class AnthropicGenerator:
    """Claude-backed Generator (Messages API, system prompt passed separately)."""

    def __init__(
        self,
        model: str = DEFAULT_CHAT_MODEL,
        max_tokens: int = 1024,
        temperature: float = 0.1,
        client=None,
    ) -> None:
        if client is None:
            from anthropic import Anthropic  # lazy import
            client = Anthropic()
        self._client = client
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature

    @traceable(name="generate_answer", run_type="llm")
    def generate(self, system_prompt: str, user_prompt: str) -> GenerationResult:
        logger.debug(
            f"[Generator] {self.model} | system prompt {len(system_prompt)} chars | "
            f"question={user_prompt[:60]!r}"
        )
        response = self._client.messages.create(
            model=self.model,
            system=system_prompt,
            messages=[{"role": "user", "content": user_prompt}],
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )

        text = "".join(
            block.text for block in (response.content or []) if getattr(block, "type", "text") == "text"
        )
        result = GenerationResult(
            answer=text.strip(),
            model=self.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            stop_reason=getattr(response, "stop_reason", None),
        )
        if result.stop_reason == "max_tokens":
            logger.warning(f"[Generator] Answer cut off at max_tokens={self.max_tokens}")

        logger.info(
            f"[Generator] {result.input_tokens} in / {result.output_tokens} out "
            f"| ~${result.estimated_cost_usd:.5f}"
        )
        return result
