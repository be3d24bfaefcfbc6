"""文本事件流消费者。

把 relay 返回的 text/event-stream 原始字节增量地还原成对话记录（Transcript）：

- 字节先经过 SSELineFramer（处理 UTF-8 跨包与半行）。
- 每一行交给 parse_event_line，坏行直接丢弃，不影响后续事件。
- ContentEvent 追加到正在生成的助手消息；DoneEvent / ErrorEvent 结束流式状态。

回调都是同步函数，在调用 feed() 的同一个任务里触发，适合直接刷新 UI 状态。
"""

from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

from hati_core.domain.events import ContentEvent, DoneEvent, ErrorEvent, StreamEvent, parse_event_line
from hati_core.infrastructure.logging.logger import logger
from hati_core.streaming.framer import SSELineFramer

STREAM_CLOSED_MESSAGE = "stream closed unexpectedly"


@dataclass
class TranscriptMessage:
    role: str
    content: str


@dataclass
class Transcript:
    messages: List[TranscriptMessage] = field(default_factory=list)
    is_streaming: bool = False
    error: Optional[str] = None

    def reconcile(self, messages: Iterable[dict]) -> None:
        """用服务端持久化的历史替换本地记录。"""

        self.messages = [TranscriptMessage(role=m["role"], content=m["content"]) for m in messages]


class ChatStreamConsumer:
    def __init__(
        self,
        transcript: Optional[Transcript] = None,
        on_update: Optional[Callable[[Transcript], None]] = None,
        on_done: Optional[Callable[[Transcript], None]] = None,
        on_error: Optional[Callable[[Transcript], None]] = None,
    ):
        self.transcript = transcript or Transcript()
        self._on_update = on_update
        self._on_done = on_done
        self._on_error = on_error
        self._framer = SSELineFramer()
        self._assistant: Optional[TranscriptMessage] = None
        self._terminated = False
        self.completed = False

    def begin(self, user_text: str) -> None:
        """乐观地追加用户消息和一条空的助手消息，进入流式状态。"""

        self._framer = SSELineFramer()
        self._terminated = False
        self.completed = False
        self.transcript.error = None
        self.transcript.messages.append(TranscriptMessage(role="user", content=user_text))
        self._assistant = TranscriptMessage(role="assistant", content="")
        self.transcript.messages.append(self._assistant)
        self.transcript.is_streaming = True
        self._notify(self._on_update)

    def feed(self, chunk: bytes | str) -> List[StreamEvent]:
        """送入一次网络读取的数据，返回其中解析出的事件。"""

        return self._dispatch_lines(self._framer.feed(chunk))

    def finish(self) -> List[StreamEvent]:
        """连接关闭时调用；没有收到终止事件视为异常结束。"""

        events = self._dispatch_lines(self._framer.flush())
        if not self._terminated:
            self.fail(STREAM_CLOSED_MESSAGE)
        return events

    def fail(self, message: str) -> None:
        """传输层失败（HTTP 错误、断网）同样以错误状态结束。"""

        if self._terminated:
            return
        self._terminated = True
        self.transcript.is_streaming = False
        self.transcript.error = message
        self._notify(self._on_error)

    def _dispatch_lines(self, lines: List[str]) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        for line in lines:
            event = parse_event_line(line)
            if event is None:
                if line.startswith("data: "):
                    logger.debug("Discarded malformed event line", extra={"extra": {"line": line[:120]}})
                continue
            if self._terminated:
                continue
            events.append(event)
            self._apply(event)
        return events

    def _apply(self, event: StreamEvent) -> None:
        if isinstance(event, ContentEvent):
            if not event.content:
                return
            if self._assistant is None:
                self._assistant = TranscriptMessage(role="assistant", content="")
                self.transcript.messages.append(self._assistant)
            self._assistant.content += event.content
            self._notify(self._on_update)
        elif isinstance(event, DoneEvent):
            self._terminated = True
            self.completed = True
            self.transcript.is_streaming = False
            self._notify(self._on_done)
        elif isinstance(event, ErrorEvent):
            self._terminated = True
            self.transcript.is_streaming = False
            self.transcript.error = event.error
            self._notify(self._on_error)

    def _notify(self, callback: Optional[Callable[[Transcript], None]]) -> None:
        if callback is not None:
            callback(self.transcript)
