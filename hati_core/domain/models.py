"""统一的上游请求与结果数据模型。

本模块定义了 relay 与 Provider 之间共享的标准数据结构：

- ChatMessage: 一条对话消息（system/user/assistant）。
- ChatRequest: 发给上游 Provider 的完整对话请求。
- ChatStreamChunk: 流式对话中的一次增量。
- SpeechRequest / SpeechChunk: 语音合成请求与 PCM16 音频增量。
- ImageRequest / ImageResult: 图片生成请求与结果。

Provider 适配器（如 OpenAIClient）只依赖这些模型，
负责在各自的 API JSON 和这些模型之间做转换。
"""

from dataclasses import dataclass, field
from typing import Literal, Optional, Any, Dict, List


# LLM 消息角色类型（与 OpenAI 兼容接口的 role 字段对应）
Role = Literal["system", "user", "assistant"]

# 会话中可以持久化的角色
MessageRole = Literal["user", "assistant"]

ImageSize = Literal["256x256", "512x512", "1024x1024"]
IMAGE_SIZES: tuple = ("256x256", "512x512", "1024x1024")


@dataclass
class ChatMessage:
    """一条对话消息。

    - role: 消息角色，如 system/user/assistant。
    - content: 纯文本内容。
    - meta: 附加元数据，不发给 Provider，只用于日志。
    """

    role: Role
    content: str
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ChatRequest:
    """一次完整的对话请求。

    relay 把系统人设与会话历史拼成 ChatRequest，再交给 ProviderClient。
    """

    model: str  # 逻辑模型名，如 "chat"（再由 registry 映射为真实模型名）
    messages: List[ChatMessage]
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


@dataclass
class ChatUsage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class ChatStreamChunk:
    """流式对话的一次增量。

    content 为本次新增的文本，可能为空（例如只携带 finish_reason 或 usage 的尾包）。
    """

    provider: str
    model: str
    content: str = ""
    finish_reason: Optional[str] = None
    usage: Optional[ChatUsage] = None
    raw: Optional[dict] = None


@dataclass
class SpeechRequest:
    model: str
    text: str
    voice: str


@dataclass
class SpeechChunk:
    """一段 base64 编码的 PCM16 小端音频，原样转发给客户端。"""

    audio: str
    transcript: str = ""


@dataclass
class ImageRequest:
    model: str
    prompt: str
    size: ImageSize = "1024x1024"


@dataclass
class ImageResult:
    b64_json: Optional[str]
    revised_prompt: Optional[str] = None
