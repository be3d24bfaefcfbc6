"""OpenAI 兼容接口的 Provider 适配器。

本模块负责：

1. 接收统一的 ChatRequest / SpeechRequest / ImageRequest。
2. 将其转换为 OpenAI 兼容的 HTTP API 请求格式。
3. 调用 HTTP 接口并处理网络/API 异常。
4. 把 SSE 响应逐行解析为 ChatStreamChunk / SpeechChunk。

流式响应不做整体超时：只限制建立连接的时间，读取阶段可以无限等待。
"""

import json
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from hati_core.domain.exceptions import ApiError, NetworkError, RateLimitError, UpstreamError
from hati_core.domain.models import (
    ChatMessage,
    ChatRequest,
    ChatStreamChunk,
    ChatUsage,
    ImageRequest,
    ImageResult,
    SpeechChunk,
    SpeechRequest,
)
from hati_core.providers.registry import get_provider_config
from hati_core.streaming.framer import SSELineFramer

TTS_SYSTEM_PROMPT = "You are an assistant that performs text-to-speech."


class OpenAIClient:
    """OpenAI 兼容服务的客户端实现。

    - name: Provider 名称（供日志/调试使用）。
    - transport: 可选的 httpx 传输层，测试时传入 httpx.MockTransport。
    """

    name = "openai"

    def __init__(self, settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._settings = settings
        self._transport = transport
        self._config = get_provider_config(self.name)

    # ---- 流式对话 ----

    async def chat_stream(self, req: ChatRequest) -> AsyncIterator[ChatStreamChunk]:
        """执行一次流式对话调用，逐步 yield ChatStreamChunk。"""

        model_cfg = self._config.resolve(req.model)
        payload: Dict[str, Any] = {
            "model": model_cfg.provider_model,
            "messages": [self._message_to_payload(m) for m in req.messages],
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        max_tokens = req.max_tokens or model_cfg.max_tokens
        if max_tokens:
            payload["max_completion_tokens"] = max_tokens
        temperature = req.temperature if req.temperature is not None else model_cfg.default_temperature
        if temperature is not None:
            payload["temperature"] = temperature

        async for data in self._stream_json("/chat/completions", payload):
            yield self._parse_stream_chunk(data, req)

    # ---- 流式语音合成 ----

    async def speech_stream(self, req: SpeechRequest) -> AsyncIterator[SpeechChunk]:
        """借助音频模态的对话接口做 TTS，逐块产出 PCM16 音频。"""

        model_cfg = self._config.resolve(req.model)
        payload = {
            "model": model_cfg.provider_model,
            "modalities": ["text", "audio"],
            "audio": {"voice": req.voice, "format": "pcm16"},
            "messages": [
                {"role": "system", "content": TTS_SYSTEM_PROMPT},
                {"role": "user", "content": f"Repeat the following text verbatim: {req.text}"},
            ],
            "stream": True,
        }
        async for data in self._stream_json("/chat/completions", payload):
            for ch in data.get("choices") or []:
                audio = (ch.get("delta") or {}).get("audio") or {}
                if audio.get("data"):
                    yield SpeechChunk(audio=audio["data"], transcript=audio.get("transcript") or "")

    # ---- 图片生成 ----

    async def generate_image(self, req: ImageRequest) -> ImageResult:
        model_cfg = self._config.resolve(req.model)
        payload = {
            "model": model_cfg.provider_model,
            "prompt": req.prompt,
            "n": 1,
            "size": req.size,
        }
        try:
            async with self._client() as client:
                resp = await client.post("/images/generations", json=payload)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        self._raise_for_status(resp.status_code, resp.text)
        data = resp.json()
        items = data.get("data") or [{}]
        first = items[0] or {}
        return ImageResult(b64_json=first.get("b64_json"), revised_prompt=first.get("revised_prompt"))

    # ---- 内部工具 ----

    def _client(self) -> httpx.AsyncClient:
        api_key = getattr(self._settings, "openai_api_key", None)
        if not api_key:
            # 配置缺失视为上游不可用
            raise UpstreamError(code="MISSING_API_KEY", message="OPENAI_API_KEY not set", http_status=503)
        base = getattr(self._settings, "openai_base_url", None) or self._config.base_url
        return httpx.AsyncClient(
            base_url=base.rstrip("/"),
            timeout=httpx.Timeout(self._settings.http_timeout, read=None),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            transport=self._transport,
            trust_env=False,
        )

    async def _stream_json(self, path: str, payload: Dict[str, Any]) -> AsyncIterator[Dict[str, Any]]:
        """发送流式请求，把每一条 `data:` 记录解析为 dict 逐个产出。"""

        try:
            async with self._client() as client:
                async with client.stream("POST", path, json=payload) as resp:
                    if resp.status_code >= 400:
                        body = await resp.aread()
                        self._raise_for_status(resp.status_code, body.decode("utf-8", errors="replace"))
                    framer = SSELineFramer()
                    async for raw in resp.aiter_bytes():
                        for line in framer.feed(raw):
                            data = self._parse_data_line(line)
                            if data is not None:
                                yield data
                    for line in framer.flush():
                        data = self._parse_data_line(line)
                        if data is not None:
                            yield data
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))

    @staticmethod
    def _parse_data_line(line: str) -> Optional[Dict[str, Any]]:
        if not line.startswith("data:"):
            return None
        data_str = line[5:].strip()
        if not data_str or data_str == "[DONE]":
            return None
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            return None
        if isinstance(data, dict) and data.get("error"):
            err = data["error"]
            message = err.get("message") if isinstance(err, dict) else str(err)
            raise ApiError(code="API_ERROR", message=message or "upstream stream error")
        return data if isinstance(data, dict) else None

    @staticmethod
    def _raise_for_status(status_code: int, text: str) -> None:
        if status_code == 429:
            # 限流错误交给调用方决定是否重发
            raise RateLimitError(code="RATE_LIMIT", message="Upstream rate limit")
        if status_code >= 400:
            raise ApiError(code="API_ERROR", message=text, upstream_status=status_code)

    def _parse_stream_chunk(self, data: dict, req: ChatRequest) -> ChatStreamChunk:
        """解析流式响应中的单条增量，只取第一个候选。"""

        content = ""
        finish_reason = None
        choices = data.get("choices") or []
        if choices:
            delta = choices[0].get("delta") or {}
            content = delta.get("content") or ""
            finish_reason = choices[0].get("finish_reason")
        usage_raw = data.get("usage") or {}
        usage = None
        if usage_raw:
            usage = ChatUsage(
                prompt_tokens=usage_raw.get("prompt_tokens", 0),
                completion_tokens=usage_raw.get("completion_tokens", 0),
                total_tokens=usage_raw.get("total_tokens", 0),
            )
        return ChatStreamChunk(
            provider=self.name,
            model=req.model,
            content=content,
            finish_reason=finish_reason,
            usage=usage,
            raw=data,
        )

    @staticmethod
    def _message_to_payload(message: ChatMessage) -> Dict[str, Any]:
        return {"role": message.role, "content": message.content}
