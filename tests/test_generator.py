from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from chronos_rag.generation.generator import AnthropicGenerator, GenerationResult


def _message(*texts, stop_reason="end_turn", input_tokens=900, output_tokens=120):
    return SimpleNamespace(
        content=[SimpleNamespace(type="text", text=t) for t in texts],
        usage=SimpleNamespace(input_tokens=input_tokens, output_tokens=output_tokens),
        stop_reason=stop_reason,
    )


class TestAnthropicGenerator:
    def test_system_prompt_is_passed_separately(self):
        client = MagicMock()
        client.messages.create.return_value = _message("A closure keeps its scope.")
        generator = AnthropicGenerator(model="claude-sonnet-4-6", max_tokens=256, client=client)

        result = generator.generate("SYSTEM + CONTEXT", "What is a closure?")

        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["system"] == "SYSTEM + CONTEXT"
        assert kwargs["messages"] == [{"role": "user", "content": "What is a closure?"}]
        assert kwargs["max_tokens"] == 256
        assert result.answer == "A closure keeps its scope."
        assert (result.input_tokens, result.output_tokens) == (900, 120)

    def test_text_blocks_are_joined(self):
        client = MagicMock()
        client.messages.create.return_value = _message("Part one. ", "Part two.", stop_reason="max_tokens")

        result = AnthropicGenerator(client=client).generate("s", "q")

        assert result.answer == "Part one. Part two."
        assert result.stop_reason == "max_tokens"

    def test_empty_content(self):
        client = MagicMock()
        client.messages.create.return_value = _message()

        assert AnthropicGenerator(client=client).generate("s", "q").answer == ""


def test_generation_cost_uses_model_rates():
    result = GenerationResult(answer="x", model="claude-sonnet-4-6", input_tokens=1_000_000, output_tokens=100_000)

    assert result.total_tokens == 1_100_000
    assert result.estimated_cost_usd == pytest.approx(3.0 + 1.5)
