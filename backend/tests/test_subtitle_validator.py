"""Tests for translated subtitle validation, repair and error descriptions."""

import httpx
import pytest

from pubpipe.services.llm.base import ProviderAuthError, ProviderRateLimited
from pubpipe.services.subtitles import SubtitleCue
from pubpipe.services.translation import BatchTranslationError, describe_translation_error
from pubpipe.services.translation.batch import BatchTranslator, SENTENCE_BREAK
from pubpipe.services.translation.validator import EntryStatus, SubtitleValidator, repair_summary

from conftest import FakeLLM


def _cues(*texts):
    return [
        SubtitleCue(i + 1, f"00:00:0{i},000", f"00:00:0{i},900", text)
        for i, text in enumerate(texts)
    ]


class SleepRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def _validator(llm=None, sleep=None, **kwargs):
    translator = BatchTranslator(llm or FakeLLM(), group_size=5, max_workers=1)
    return SubtitleValidator(translator, sleep=sleep or SleepRecorder(), **kwargs)


@pytest.mark.parametrize("text, status", [
    ("你好", EntryStatus.OK),
    ("", EntryStatus.MISSING),
    ("   ", EntryStatus.MISSING),
    ("[translation missing]", EntryStatus.MISSING),
    ("Translation Missing", EntryStatus.MISSING),
    ("你好...", EntryStatus.INCOMPLETE),
    ("这是[注]", EntryStatus.INCOMPLETE),
    ("still plain English here", EntryStatus.INCOMPLETE),
    ("好", EntryStatus.INCOMPLETE),
    ("OK", EntryStatus.OK),
])
def test_classify(text, status):
    assert _validator().classify(text) is status


def test_non_chinese_target_skips_han_check():
    translator = BatchTranslator(FakeLLM(), target_language="fr")
    validator = SubtitleValidator(translator)
    assert validator.classify("Bonjour tout le monde") is EntryStatus.OK


def test_check_pairs_by_position_and_treats_absent_entries_as_missing():
    checks = _validator().check(_cues("one", "two", "three"), _cues("一个"))

    assert [c.status for c in checks] == [EntryStatus.OK, EntryStatus.MISSING, EntryStatus.MISSING]
    assert checks[2].source_text == "three"


@pytest.mark.asyncio
async def test_repair_fixes_problem_entries_in_batches():
    sleep = SleepRecorder()
    llm = FakeLLM()
    validator = _validator(llm, sleep, repair_batch_size=1, repair_interval=2.0)

    report = await validator.validate_and_repair(
        _cues("Hello", "How are you", "Goodbye"),
        _cues("你好", "[translation missing]", ""),
    )

    assert (report.total, report.valid, report.missing) == (3, 1, 2)
    assert (report.fixed, report.unresolved) == (2, 0)
    assert [c.text for c in report.cues] == ["你好", "译文How are you", "译文Goodbye"]
    assert [c.start for c in report.cues] == ["00:00:00,000", "00:00:01,000", "00:00:02,000"]
    assert llm.calls == ["How are you", "Goodbye"]
    assert sleep.calls == [2.0]


@pytest.mark.asyncio
async def test_repair_that_stays_bad_is_unresolved():
    def echo(prompt, system):
        return f"\n{SENTENCE_BREAK}\n".join(
            f"{line.strip()} untranslated" for line in prompt.split(SENTENCE_BREAK)
        )

    report = await _validator(FakeLLM(echo)).validate_and_repair(
        _cues("Hello there", "Goodbye"),
        _cues("你好", ""),
    )

    assert report.fixed == 0
    assert report.unresolved == 1
    # An empty translation falls back to the source text
    assert report.cues[1].text == "Goodbye"
    assert repair_summary(report) == "1/2 ok, 0 fixed, 1 unresolved"


@pytest.mark.asyncio
async def test_failed_repair_batch_keeps_entries():
    def refuse(prompt, system):
        raise RuntimeError("provider down")

    report = await _validator(FakeLLM(refuse)).validate_and_repair(
        _cues("Hello"), _cues("[translation missing]")
    )

    assert report.unresolved == 1
    assert report.cues[0].text == "[translation missing]"


@pytest.mark.asyncio
async def test_clean_translation_needs_no_repair():
    llm = FakeLLM()
    report = await _validator(llm).validate_and_repair(_cues("Hello"), _cues("你好"))

    assert report.as_dict()["valid"] == 1
    assert llm.calls == []


def test_repair_summary_without_report():
    assert repair_summary(None) == "not validated"


def _wrapped(cause):
    try:
        try:
            raise cause
        except Exception as e:
            raise BatchTranslationError("group 0 failed", group_index=0) from e
    except BatchTranslationError as outer:
        return outer


@pytest.mark.parametrize("cause, message", [
    (ProviderAuthError("HTTP 401: bad key", 401), "translation failed: provider API key is invalid or expired"),
    (ProviderRateLimited("HTTP 429", 429), "translation failed: provider rate limit hit, retry later"),
    (httpx.ReadTimeout("read timed out"), "translation failed: provider request timed out"),
    (httpx.ConnectError("refused"), "translation failed: could not connect to provider"),
    (RuntimeError("insufficient_quota"), "translation failed: provider account quota exhausted"),
    (RuntimeError("something odd"), "translation failed: something odd"),
])
def test_describe_translation_error(cause, message):
    assert describe_translation_error(_wrapped(cause)) == message
