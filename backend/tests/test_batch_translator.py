"""Tests for the concurrent batch translator."""

import asyncio
import random

import pytest

from pubpipe.services.translation import BatchTranslationError, BatchTranslator, partition
from pubpipe.services.translation.batch import SENTENCE_BREAK, align_count

from conftest import FakeLLM


def _echo(prefix="T:"):
    def handler(prompt, system_prompt):
        lines = [line.strip() for line in prompt.split(SENTENCE_BREAK)]
        return f"\n{SENTENCE_BREAK}\n".join(prefix + line for line in lines)
    return handler


class DelayedLLM(FakeLLM):
    """Echoes each group after a random delay, tracking peak concurrency."""

    def __init__(self, seed=7):
        super().__init__(_echo())
        self.rng = random.Random(seed)
        self.active = 0
        self.peak = 0

    async def complete(self, prompt, *, system_prompt=None, temperature=None, max_tokens=None):
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.rng.uniform(0, 0.02))
            return await super().complete(prompt, system_prompt=system_prompt)
        finally:
            self.active -= 1


def test_partition_sizes():
    groups = partition([str(i) for i in range(53)], 25)

    assert [len(g.texts) for g in groups] == [25, 25, 3]
    assert [g.start for g in groups] == [0, 25, 50]


def test_partition_rejects_zero_group_size():
    with pytest.raises(ValueError):
        partition(["a"], 0)


def test_align_count_pads_and_truncates():
    assert align_count(["a", "b"], 2, "?") == (["a", "b"], False)
    assert align_count(["a"], 3, "?") == (["a", "?", "?"], True)
    assert align_count(["a", "b", "c"], 2, "?") == (["a", "b"], True)


@pytest.mark.asyncio
async def test_output_order_matches_input_despite_random_delays():
    llm = DelayedLLM()
    translator = BatchTranslator(llm, group_size=25, max_workers=3)
    texts = [f"line {i}" for i in range(53)]

    result = await translator.translate(texts)

    assert result == [f"T:line {i}" for i in range(53)]
    assert len(llm.calls) == 3
    assert llm.peak <= 3


@pytest.mark.asyncio
async def test_worker_count_bounded_by_group_count():
    llm = DelayedLLM()
    translator = BatchTranslator(llm, group_size=10, max_workers=8)

    await translator.translate([f"s{i}" for i in range(25)])

    assert llm.peak <= 3


@pytest.mark.asyncio
async def test_short_reply_padded_with_placeholder():
    llm = FakeLLM(lambda prompt, system: f"one\n{SENTENCE_BREAK}\ntwo")
    translator = BatchTranslator(llm, group_size=5, placeholder="[missing]")

    result = await translator.translate(["a", "b", "c", "d"])

    assert result == ["one", "two", "[missing]", "[missing]"]


@pytest.mark.asyncio
async def test_long_reply_truncated():
    llm = FakeLLM(lambda prompt, system: SENTENCE_BREAK.join(["x", "y", "z", "w"]))
    translator = BatchTranslator(llm, group_size=5)

    result = await translator.translate(["a", "b"])

    assert result == ["x", "y"]


@pytest.mark.asyncio
async def test_count_invariant_holds_for_every_reply_shape():
    rng = random.Random(3)

    def handler(prompt, system):
        return SENTENCE_BREAK.join(["t"] * rng.randint(0, 6))

    translator = BatchTranslator(FakeLLM(handler), group_size=3, max_workers=2)
    for size in (1, 3, 4, 10):
        assert len(await translator.translate(["s"] * size)) == size


@pytest.mark.asyncio
async def test_group_failure_fails_whole_batch():
    def handler(prompt, system):
        if "bad" in prompt:
            raise RuntimeError("provider exploded")
        return _echo()(prompt, system)

    translator = BatchTranslator(FakeLLM(handler), group_size=2, max_workers=2)

    with pytest.raises(BatchTranslationError) as exc_info:
        await translator.translate(["a", "b", "bad", "c", "d"])

    assert exc_info.value.group_index == 1
    assert isinstance(exc_info.value.__cause__, RuntimeError)


@pytest.mark.asyncio
async def test_empty_input_makes_no_calls():
    llm = FakeLLM()
    translator = BatchTranslator(llm)

    assert await translator.translate([]) == []
    assert llm.calls == []


@pytest.mark.asyncio
async def test_system_prompt_states_exact_count():
    seen = []

    def handler(prompt, system):
        seen.append(system)
        return _echo()(prompt, system)

    translator = BatchTranslator(FakeLLM(handler), group_size=4, target_language="zh")
    await translator.translate(["a", "b", "c"])

    assert "exactly 3 translations" in seen[0]
    assert "Simplified Chinese" in seen[0]
