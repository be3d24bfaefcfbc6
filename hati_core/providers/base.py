"""Provider 抽象接口。

relay 不直接依赖具体厂商的 HTTP 协议，而是依赖此协议：

- 每个厂商实现一个 ProviderClient（如 OpenAIClient）。
- 负责：把统一请求模型转成具体 API 请求，并把流式响应解析为统一的增量模型。

流式方法都是异步生成器：调用方关闭生成器（aclose）即中止上游请求。
"""

from typing import AsyncIterator, Protocol
from hati_core.domain.models import (
    ChatRequest,
    ChatStreamChunk,
    ImageRequest,
    ImageResult,
    SpeechChunk,
    SpeechRequest,
)


class ProviderClient(Protocol):
    """上游模型服务客户端协议。"""

    name: str

    def chat_stream(self, req: ChatRequest) -> AsyncIterator[ChatStreamChunk]:
        """执行一次流式对话调用，逐步产出文本增量。"""

        ...

    def speech_stream(self, req: SpeechRequest) -> AsyncIterator[SpeechChunk]:
        """执行一次流式语音合成，逐步产出 base64 PCM16 音频块。"""

        ...

    async def generate_image(self, req: ImageRequest) -> ImageResult:
        ...
