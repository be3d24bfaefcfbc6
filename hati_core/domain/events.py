"""relay 与客户端之间的流式事件。

线上格式是一行 `data: <json>\\n\\n`，JSON 只会是以下几种形状之一：

- {"content": "..."}   一段增量文本
- {"audio": "..."}     一段 base64 PCM16 音频
- {"done": true}       正常结束
- {"error": "..."}     异常结束

代码内部不去探测可选字段，而是使用带标签的联合类型 StreamEvent，
编码/解码集中在本模块。
"""

import json
from dataclasses import dataclass
from typing import Any, Literal, Optional, Union

DATA_PREFIX = "data: "


@dataclass(frozen=True)
class ContentEvent:
    content: str
    kind: Literal["content"] = "content"

    def to_payload(self) -> dict:
        return {"content": self.content}


@dataclass(frozen=True)
class AudioEvent:
    audio: str
    kind: Literal["audio"] = "audio"

    def to_payload(self) -> dict:
        return {"audio": self.audio}


@dataclass(frozen=True)
class DoneEvent:
    kind: Literal["done"] = "done"

    def to_payload(self) -> dict:
        return {"done": True}


@dataclass(frozen=True)
class ErrorEvent:
    error: str
    kind: Literal["error"] = "error"

    def to_payload(self) -> dict:
        return {"error": self.error}


StreamEvent = Union[ContentEvent, AudioEvent, DoneEvent, ErrorEvent]


def encode_event(event: StreamEvent) -> str:
    """把事件编码成一条完整的 SSE 记录。"""

    return f"{DATA_PREFIX}{json.dumps(event.to_payload(), ensure_ascii=False)}\n\n"


def event_from_payload(payload: Any) -> Optional[StreamEvent]:
    """把已解析的 JSON 对象转换为 StreamEvent，无法识别的形状返回 None。

    终止类事件优先：同时带 error 和 content 的对象按 error 处理。
    """

    if not isinstance(payload, dict):
        return None
    if isinstance(payload.get("error"), str):
        return ErrorEvent(payload["error"])
    if payload.get("done") is True:
        return DoneEvent()
    if isinstance(payload.get("content"), str):
        return ContentEvent(payload["content"])
    if isinstance(payload.get("audio"), str):
        return AudioEvent(payload["audio"])
    return None


def parse_event_line(line: str) -> Optional[StreamEvent]:
    """解析一行 SSE 文本。

    只有以 `data: ` 开头的行才是事件；JSON 非法时返回 None，而不是抛异常，
    保证一行坏数据不会中断整个流。
    """

    if not line.startswith(DATA_PREFIX):
        return None
    try:
        payload = json.loads(line[len(DATA_PREFIX):])
    except json.JSONDecodeError:
        return None
    return event_from_payload(payload)
