"""Tests for the Claude answer generator's streaming path and message shaping."""

import asyncio
from types import SimpleNamespace

import pytest

from app.services.llm import AnswerGenerator, build_messages, parse_suggested_questions
from app.shared.errors import AnswerGenerationError, ErrorCode


class TrickleStream:
    """Stands in for the SDK's MessageStream: yields deltas with a delay between each."""

    def __init__(self, deltas, delay):
        self.deltas = deltas
        self.delay = delay

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    @property
    def text_stream(self):
        async def generate():
            for delta in self.deltas:
                await asyncio.sleep(self.delay)
                yield delta

        return generate()

    async def get_final_message(self):
        return SimpleNamespace(usage=SimpleNamespace(input_tokens=12, output_tokens=len(self.deltas)))


def _generator(stream, timeout):
    generator = AnswerGenerator(api_key="test-key", model="claude-test", timeout=timeout)
    generator.client = SimpleNamespace(messages=SimpleNamespace(stream=lambda **kwargs: stream))
    return generator


def _drain(generator, received):
    async def scenario():
        async for delta in generator.stream("Be helpful.", "Open 9 to 5.", [], "When are you open?"):
            received.append(delta)

    asyncio.run(scenario())


def test_stream_yields_every_delta():
    received = []
    _drain(_generator(TrickleStream(["We ", "are ", "open."], delay=0), timeout=1.0), received)
    assert "".join(received) == "We are open."


def test_slow_trickle_hits_total_deadline():
    # Each delta arrives well inside the budget; together they overrun it
    received = []
    generator = _generator(TrickleStream(["tok "] * 20, delay=0.05), timeout=0.2)

    with pytest.raises(AnswerGenerationError) as excinfo:
        _drain(generator, received)

    assert excinfo.value.code == ErrorCode.TIMEOUT
    assert 0 < len(received) < 20


def test_build_messages_merges_and_drops_leading_assistant():
    history = [
        {"role": "assistant", "content": "Hi there!"},
        {"role": "user", "content": "Hello"},
        {"role": "user", "content": "Anyone?"},
        {"role": "system", "content": "ignored"},
        {"role": "assistant", "content": "Yes."},
    ]

    messages = build_messages(history, "When are you open?")

    assert [m["role"] for m in messages] == ["user", "assistant", "user"]
    assert messages[0]["content"] == "Hello\n\nAnyone?"
    assert messages[-1]["content"] == "When are you open?"


def test_parse_suggested_questions():
    text = "1. Do you deliver?\n- Are you open Sunday?\n\n\"Do you deliver?\"\n" + "x" * 120
    assert parse_suggested_questions(text) == ["Do you deliver?", "Are you open Sunday?"]
