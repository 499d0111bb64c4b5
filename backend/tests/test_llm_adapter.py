"""Tests for the LLM adapters, adapter routing and the publish client."""

import json
import threading
from pathlib import Path
from types import SimpleNamespace

import httpx
import pytest
from ollama import ResponseError
from pydantic import ValidationError

from pubpipe.config import LLMConfig
from pubpipe.schemas.metadata import VideoMetadata
from pubpipe.services.llm import get_adapter
from pubpipe.services.llm.base import (
    ProviderAuthError,
    ProviderError,
    ProviderServerError,
    strip_code_fences,
)
from pubpipe.services.llm.ollama_adapter import OllamaAdapter
from pubpipe.services.llm.openai_adapter import OpenAICompatibleAdapter
from pubpipe.services.publisher import HttpPublishClient, PublishError


def _reply(content):
    return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": content}}]})


class ScriptedTransport:
    """Serves queued responses in order and records the requests it saw."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request):
        self.requests.append(request)
        return self.responses.pop(0)


def _adapter(script, max_retries=2):
    return OpenAICompatibleAdapter(
        model="deepseek-chat",
        base_url="http://llm.test/v1/",
        api_key="sk-test",
        max_retries=max_retries,
        retry_delay=0,
        transport=script.transport,
    )


@pytest.mark.asyncio
async def test_complete_sends_chat_request():
    script = ScriptedTransport(_reply("你好"))
    adapter = _adapter(script)

    text = await adapter.complete("Hello", system_prompt="Translate", temperature=0.1)
    await adapter.aclose()

    assert text == "你好"
    request = script.requests[0]
    assert request.url == "http://llm.test/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer sk-test"
    body = json.loads(request.content)
    assert body["model"] == "deepseek-chat"
    assert body["temperature"] == 0.1
    assert body["messages"] == [
        {"role": "system", "content": "Translate"},
        {"role": "user", "content": "Hello"},
    ]


@pytest.mark.asyncio
async def test_rate_limit_is_retried():
    script = ScriptedTransport(httpx.Response(429, text="slow down"), _reply("ok"))
    adapter = _adapter(script)

    assert await adapter.complete("Hello") == "ok"
    assert len(script.requests) == 2


@pytest.mark.asyncio
async def test_server_errors_exhaust_retries():
    script = ScriptedTransport(*[httpx.Response(503, text="busy") for _ in range(3)])
    adapter = _adapter(script, max_retries=2)

    with pytest.raises(ProviderServerError):
        await adapter.complete("Hello")
    assert len(script.requests) == 3


@pytest.mark.asyncio
async def test_client_error_is_not_retried():
    script = ScriptedTransport(httpx.Response(400, text="bad request"), _reply("never"))
    adapter = _adapter(script)

    with pytest.raises(ProviderError) as exc_info:
        await adapter.complete("Hello")
    assert exc_info.value.status_code == 400
    assert len(script.requests) == 1


@pytest.mark.asyncio
async def test_auth_error():
    script = ScriptedTransport(httpx.Response(401, text="invalid key"))
    with pytest.raises(ProviderAuthError):
        await _adapter(script).complete("Hello")


@pytest.mark.asyncio
async def test_error_body_and_empty_choices_fail():
    script = ScriptedTransport(
        httpx.Response(200, json={"error": {"message": "model overloaded"}}),
        httpx.Response(200, json={"choices": []}),
    )
    adapter = _adapter(script, max_retries=0)

    with pytest.raises(ProviderError, match="model overloaded"):
        await adapter.complete("Hello")
    with pytest.raises(ProviderError, match="no choices"):
        await adapter.complete("Hello")


@pytest.mark.asyncio
async def test_generate_structured_strips_fences():
    raw = '```json\n{"title": "  A title  ", "tags": ["#one", "one", "two"]}\n```'
    script = ScriptedTransport(_reply(raw))

    meta = await _adapter(script).generate_structured("Describe", VideoMetadata, system_prompt="Be brief")

    assert meta.title == "A title"
    assert meta.tags == ["one", "two"]
    system = json.loads(script.requests[0].content)["messages"][0]["content"]
    assert system.startswith("Be brief")
    assert "JSON" in system


@pytest.mark.asyncio
async def test_generate_structured_rejects_invalid_reply():
    script = ScriptedTransport(_reply('{"description": "no title"}'))
    with pytest.raises(ValidationError):
        await _adapter(script).generate_structured("Describe", VideoMetadata)


def test_strip_code_fences():
    assert strip_code_fences('```\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences('  {"a": 1}  ') == '{"a": 1}'


@pytest.mark.asyncio
async def test_get_adapter_routing():
    assert get_adapter(LLMConfig(enabled=False)) is None

    ollama = get_adapter(LLMConfig(model="ollama/qwen2.5", base_url="http://localhost:11434"))
    assert isinstance(ollama, OllamaAdapter)

    openai = get_adapter(LLMConfig())
    assert isinstance(openai, OpenAICompatibleAdapter)
    await openai.aclose()


@pytest.mark.asyncio
async def test_publish_client_uploads_video_and_captions(tmp_path):
    video = tmp_path / "video.mp4"
    video.write_bytes(b"mp4")
    captions = tmp_path / "zh.srt"
    captions.write_text("1\n00:00:00,000 --> 00:00:01,000\n你好\n", encoding="utf-8")
    script = ScriptedTransport(httpx.Response(201, json={"id": "v42"}), httpx.Response(204))
    client = HttpPublishClient("http://dest.test", "token", max_retries=0, transport=script.transport)

    platform_id = await client.publish_video(video, VideoMetadata(title="T", tags=["a", "b"]))
    await client.publish_captions(platform_id, captions, "zh-Hans")
    await client.aclose()

    assert platform_id == "v42"
    upload, attach = script.requests
    assert upload.url.path == "/videos"
    assert upload.headers["Authorization"] == "Bearer token"
    assert b'name="tags"' in upload.content and b"a,b" in upload.content
    assert attach.url.path == "/videos/v42/captions"
    assert b"zh-Hans" in attach.content


@pytest.mark.asyncio
async def test_publish_client_rejections(tmp_path):
    video = tmp_path / "video.mp4"
    video.write_bytes(b"mp4")
    script = ScriptedTransport(
        httpx.Response(400, text="bad title"),
        httpx.Response(200, json={}),
    )
    client = HttpPublishClient("http://dest.test", max_retries=0, transport=script.transport)

    with pytest.raises(PublishError, match="HTTP 400: bad title"):
        await client.publish_video(video, VideoMetadata(title="T"))
    with pytest.raises(PublishError, match="no video id"):
        await client.publish_video(video, VideoMetadata(title="T"))


@pytest.mark.asyncio
async def test_publish_reads_files_once_off_the_event_loop(tmp_path, monkeypatch):
    video = tmp_path / "video.mp4"
    video.write_bytes(b"mp4")
    reads = []
    original = Path.read_bytes

    def recording_read(self):
        reads.append((self.name, threading.current_thread() is threading.main_thread()))
        return original(self)

    monkeypatch.setattr(Path, "read_bytes", recording_read)
    script = ScriptedTransport(httpx.Response(503, text="busy"), httpx.Response(201, json={"id": "v7"}))
    client = HttpPublishClient("http://dest.test", max_retries=1, retry_delay=0, transport=script.transport)

    assert await client.publish_video(video, VideoMetadata(title="T")) == "v7"
    assert len(script.requests) == 2
    assert reads == [("video.mp4", False)]


@pytest.mark.asyncio
async def test_publish_client_non_object_body_is_publish_error(tmp_path):
    video = tmp_path / "video.mp4"
    video.write_bytes(b"mp4")
    script = ScriptedTransport(httpx.Response(200, json=["v1"]))
    client = HttpPublishClient("http://dest.test", max_retries=0, transport=script.transport)

    with pytest.raises(PublishError, match="no video id"):
        await client.publish_video(video, VideoMetadata(title="T"))


class FakeOllamaClient:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def chat(self, **kwargs):
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return SimpleNamespace(message=SimpleNamespace(content=outcome))


def _ollama(client):
    adapter = OllamaAdapter("ollama/qwen2.5", max_retries=2, retry_delay=0)
    adapter._client = client
    return adapter


@pytest.mark.asyncio
async def test_ollama_retries_server_errors_and_rate_limits():
    client = FakeOllamaClient(ResponseError("overloaded", 503), ResponseError("slow down", 429), "你好")

    assert await _ollama(client).complete("Hello") == "你好"
    assert client.calls == 3


@pytest.mark.asyncio
async def test_ollama_client_error_is_not_retried():
    client = FakeOllamaClient(ResponseError("model not found", 404), "never")

    with pytest.raises(ResponseError):
        await _ollama(client).complete("Hello")
    assert client.calls == 1
