import json

import httpx
import pytest

from hati_core.domain.exceptions import ApiError, NetworkError, RateLimitError, UpstreamError
from hati_core.domain.models import ChatMessage, ChatRequest, ImageRequest, SpeechRequest
from hati_core.providers.openai_client import OpenAIClient


class SettingsStub:
    openai_api_key = "sk-test-key"
    openai_base_url = "https://api.test/v1"
    http_timeout = 5.0


def _sse(*payloads) -> bytes:
    out = []
    for p in payloads:
        out.append("data: " + (p if isinstance(p, str) else json.dumps(p)) + "\n\n")
    return "".join(out).encode("utf-8")


def _chunked(raw: bytes, size: int):
    async def gen():
        for i in range(0, len(raw), size):
            yield raw[i:i + size]

    return gen()


async def _collect(aiter):
    return [x async for x in aiter]


def _chat_request():
    return ChatRequest(model="chat", messages=[ChatMessage(role="user", content="hi")])


async def test_chat_stream_parses_deltas_and_usage():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        raw = _sse(
            {"choices": [{"delta": {"role": "assistant"}}]},
            {"choices": [{"delta": {"content": "Hel"}}]},
            {"choices": [{"delta": {"content": "lo"}, "finish_reason": "stop"}]},
            {"choices": [], "usage": {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5}},
            "[DONE]",
        )
        # 故意用很小的块返回，覆盖跨块拼行
        return httpx.Response(200, content=_chunked(raw, 7))

    client = OpenAIClient(SettingsStub(), transport=httpx.MockTransport(handler))
    chunks = await _collect(client.chat_stream(_chat_request()))

    assert "".join(c.content for c in chunks) == "Hello"
    assert chunks[-1].usage.total_tokens == 5
    assert seen["url"] == "https://api.test/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test-key"
    assert seen["body"]["model"] == "gpt-5.2"
    assert seen["body"]["stream"] is True
    assert seen["body"]["max_completion_tokens"] == 4096
    assert seen["body"]["messages"] == [{"role": "user", "content": "hi"}]


async def test_chat_stream_rate_limit():
    client = OpenAIClient(SettingsStub(), transport=httpx.MockTransport(lambda r: httpx.Response(429, text="slow down")))
    with pytest.raises(RateLimitError) as exc:
        await _collect(client.chat_stream(_chat_request()))
    assert exc.value.http_status == 429


async def test_chat_stream_api_error_status():
    client = OpenAIClient(SettingsStub(), transport=httpx.MockTransport(lambda r: httpx.Response(500, text="boom")))
    with pytest.raises(ApiError) as exc:
        await _collect(client.chat_stream(_chat_request()))
    assert exc.value.message == "boom"
    assert exc.value.extra["upstream_status"] == 500


async def test_chat_stream_error_object_in_stream():
    raw = _sse({"choices": [{"delta": {"content": "a"}}]}, {"error": {"message": "overloaded"}})
    client = OpenAIClient(SettingsStub(), transport=httpx.MockTransport(lambda r: httpx.Response(200, content=raw)))
    stream = client.chat_stream(_chat_request())
    first = await stream.__anext__()
    assert first.content == "a"
    with pytest.raises(ApiError) as exc:
        await stream.__anext__()
    assert exc.value.message == "overloaded"


async def test_chat_stream_network_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    client = OpenAIClient(SettingsStub(), transport=httpx.MockTransport(handler))
    with pytest.raises(NetworkError):
        await _collect(client.chat_stream(_chat_request()))


async def test_missing_api_key():
    class NoKey(SettingsStub):
        openai_api_key = None

    client = OpenAIClient(NoKey(), transport=httpx.MockTransport(lambda r: httpx.Response(200)))
    with pytest.raises(UpstreamError) as exc:
        await _collect(client.chat_stream(_chat_request()))
    assert exc.value.code == "MISSING_API_KEY"
    assert exc.value.http_status == 503


async def test_speech_stream_yields_audio_chunks():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        raw = _sse(
            {"choices": [{"delta": {"audio": {"transcript": "hi"}}}]},
            {"choices": [{"delta": {"audio": {"data": "AAAB"}}}]},
            {"choices": [{"delta": {"audio": {"data": "AAAC"}}}]},
            "[DONE]",
        )
        return httpx.Response(200, content=raw)

    client = OpenAIClient(SettingsStub(), transport=httpx.MockTransport(handler))
    chunks = await _collect(client.speech_stream(SpeechRequest(model="speech", text="hi there", voice="nova")))

    assert [c.audio for c in chunks] == ["AAAB", "AAAC"]
    assert seen["body"]["model"] == "gpt-audio"
    assert seen["body"]["audio"] == {"voice": "nova", "format": "pcm16"}
    assert seen["body"]["messages"][1]["content"].endswith("hi there")


async def test_generate_image():
    def handler(request):
        assert request.url.path == "/v1/images/generations"
        assert json.loads(request.content)["size"] == "512x512"
        return httpx.Response(200, json={"data": [{"b64_json": "iVBOR"}]})

    client = OpenAIClient(SettingsStub(), transport=httpx.MockTransport(handler))
    result = await client.generate_image(ImageRequest(model="image", prompt="a cat", size="512x512"))
    assert result.b64_json == "iVBOR"
