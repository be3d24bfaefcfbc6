"""流式对话 relay。

一次“发送消息”调用分两段：

1. ChatRelay.open_session(): 校验输入、持久化用户消息、拼装上下文、打开上游流并
   拉取第一段有效输出。这一段的任何错误都让整个调用失败（API 层映射为 HTTP 状态码）。
2. StreamSession.events(): 逐段转发上游增量并累积全文；上游结束后持久化一条助手消息，
   再发出 DoneEvent。这一段的错误只能以 ErrorEvent 的形式出现在流里。

客户端中途断开时，生成器被关闭或取消：relay 立即关闭上游请求，并把已经累积的
部分文本以 status="interrupted" 持久化。
"""

import logging
import time
from typing import Any, AsyncGenerator, AsyncIterator, Dict, List, Optional
from uuid import uuid4

import anyio
from fastapi.concurrency import run_in_threadpool

from hati_core.config.settings import settings
from hati_core.domain.conversation import ConversationStore, MessageRecord
from hati_core.domain.events import ContentEvent, DoneEvent, ErrorEvent, StreamEvent
from hati_core.domain.exceptions import BusinessError, ValidationError
from hati_core.domain.models import ChatMessage, ChatRequest, ChatStreamChunk, ChatUsage
from hati_core.infrastructure.logging.logger import logger
from hati_core.prompts import load_persona_prompt
from hati_core.providers.base import ProviderClient
from hati_core.relay.base import ConversationLocks, close_upstream, next_or_none, prime

STREAM_FAILED_MESSAGE = "Failed to send message"


class ChatRelay:
    def __init__(
        self,
        store: ConversationStore,
        provider_client: ProviderClient,
        locks: Optional[ConversationLocks] = None,
        persona_prompt: Optional[str] = None,
        model: Optional[str] = None,
        max_context_messages: Optional[int] = None,
        max_completion_tokens: Optional[int] = None,
        persona_prompt_file: Optional[str] = None,
    ):
        self._store = store
        self._provider_client = provider_client
        self._locks = locks or ConversationLocks()
        self._persona_prompt = persona_prompt
        self._model = model or settings.chat_model
        self._max_context = max_context_messages or settings.max_context_messages
        self._max_tokens = max_completion_tokens or settings.max_completion_tokens
        self._persona_prompt_file = persona_prompt_file or settings.persona_prompt_file

    @property
    def locks(self) -> ConversationLocks:
        return self._locks

    def system_prompt(self) -> str:
        if self._persona_prompt is None:
            self._persona_prompt = load_persona_prompt(self._persona_prompt_file)
        return self._persona_prompt

    async def open_session(self, conversation_id: int, user_text: str) -> "StreamSession":
        """开始一次发送消息调用，返回可迭代的 StreamSession。

        Raises:
            ValidationError: 消息为空。
            NotFoundError: 会话不存在。
            ConflictError: 该会话已有进行中的回答。
            UpstreamError: 上游在产生任何输出之前失败。
            StoreError: 用户消息写入失败。
        """
        if not user_text or not user_text.strip():
            raise ValidationError(code="EMPTY_MESSAGE", message="Message content is required")

        log_ctx: Dict[str, Any] = {
            "trace_id": f"tr-{uuid4().hex}",
            "conversation_id": conversation_id,
        }
        await run_in_threadpool(self._store.get_conversation, conversation_id)
        self._locks.acquire(conversation_id)

        upstream: Optional[AsyncIterator[ChatStreamChunk]] = None
        try:
            # 用户消息先落库，即使后续补全失败也不会丢
            user_rec = await run_in_threadpool(self._store.add_message, conversation_id, "user", user_text)
            self._log(logging.INFO, "Stored user message", log_ctx, message_id=user_rec.id)

            history = await run_in_threadpool(self._store.list_messages, conversation_id)
            req = self._build_request(history, log_ctx)
            self._log(
                logging.INFO,
                "Calling provider (stream)",
                log_ctx,
                provider=self._provider_client.name,
                model=req.model,
                message_count=len(req.messages),
            )
            upstream = self._provider_client.chat_stream(req)
            first = await prime(upstream, lambda c: bool(c.content))
        except BaseException as e:
            if upstream is not None:
                with anyio.CancelScope(shield=True):
                    await close_upstream(upstream)
            self._locks.release(conversation_id)
            if isinstance(e, BusinessError):
                self._log(logging.ERROR, "Send message failed before streaming", log_ctx, code=e.code, error=e.message)
            raise

        return StreamSession(
            store=self._store,
            locks=self._locks,
            conversation_id=conversation_id,
            user_message=user_rec,
            upstream=upstream,
            first_chunk=first,
            provider=self._provider_client.name,
            log_ctx=log_ctx,
        )

    def _build_request(self, history: List[MessageRecord], log_ctx: Dict[str, Any]) -> ChatRequest:
        """系统人设 + 会话历史（已包含刚写入的用户消息）。"""

        if len(history) > self._max_context:
            self._log(
                logging.INFO,
                "Truncated context",
                log_ctx,
                max_context=self._max_context,
                trimmed=len(history) - self._max_context,
            )
            history = history[-self._max_context:]
        messages = [ChatMessage(role="system", content=self.system_prompt())]
        messages.extend(ChatMessage(role=m.role, content=m.content) for m in history)
        return ChatRequest(model=self._model, messages=messages, max_tokens=self._max_tokens)

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})


class StreamSession:
    """一次进行中的发送消息调用。

    持有累积缓冲、上游迭代器以及会话锁；events() 只能迭代一次，
    结束时（成功、失败或客户端断开）释放所有资源。
    """

    def __init__(
        self,
        store: ConversationStore,
        locks: ConversationLocks,
        conversation_id: int,
        user_message: MessageRecord,
        upstream: AsyncIterator[ChatStreamChunk],
        first_chunk: Optional[ChatStreamChunk],
        provider: str,
        log_ctx: Dict[str, Any],
    ):
        self.conversation_id = conversation_id
        self.user_message = user_message
        self.assistant_message: Optional[MessageRecord] = None
        self._store = store
        self._locks = locks
        self._upstream = upstream
        self._first = first_chunk
        self._provider = provider
        self._log_ctx = log_ctx
        self._buffer: List[str] = []
        self._usage: Optional[ChatUsage] = None
        self._started_at = time.time()
        self._events: Optional[AsyncGenerator[StreamEvent, None]] = None
        self._released = False

    @property
    def text(self) -> str:
        return "".join(self._buffer)

    def events(self) -> AsyncIterator[StreamEvent]:
        if self._events is None:
            self._events = self._run()
        return self._events

    async def aclose(self) -> None:
        """释放会话资源，可重复调用。

        events() 已开始时关闭该生成器（触发断开处理）；从未开始时直接关闭上游、释放锁。
        """
        if self._events is not None:
            await self._events.aclose()
        if not self._released:
            await close_upstream(self._upstream)
            self._release()

    def _release(self) -> None:
        self._released = True
        self._locks.release(self.conversation_id)

    async def _run(self) -> AsyncGenerator[StreamEvent, None]:
        finished = False
        try:
            try:
                chunk = self._first
                while chunk is not None:
                    if chunk.usage:
                        self._usage = chunk.usage
                    if chunk.content:
                        self._buffer.append(chunk.content)
                        yield ContentEvent(chunk.content)
                    chunk = await next_or_none(self._upstream)
            except Exception as e:
                finished = True
                self._log_failure("Upstream stream failed", e)
                yield ErrorEvent(self._error_message(e))
                return

            # 完整写入一旦开始，即使随后被取消也不再补写 interrupted 副本
            finished = True
            failure: Optional[Exception] = None
            with anyio.CancelScope(shield=True):
                try:
                    self.assistant_message = await run_in_threadpool(
                        self._store.add_message,
                        self.conversation_id,
                        "assistant",
                        self.text,
                        self._meta("complete"),
                    )
                except Exception as e:
                    failure = e
            if failure is not None:
                self._log_failure("Failed to store assistant message", failure)
                yield ErrorEvent(self._error_message(failure))
                return

            ChatRelay._log(
                logging.INFO,
                "Stored assistant message",
                self._log_ctx,
                message_id=self.assistant_message.id,
                elapsed_seconds=round(time.time() - self._started_at, 2),
            )
            yield DoneEvent()
        finally:
            # 客户端断开时这里处于取消状态，收尾操作需要屏蔽取消
            with anyio.CancelScope(shield=True):
                await close_upstream(self._upstream)
                if not finished:
                    await self._persist_interrupted()
            self._release()

    async def _persist_interrupted(self) -> None:
        text = self.text
        ChatRelay._log(logging.WARNING, "Client disconnected mid-stream", self._log_ctx, chars=len(text))
        if not text:
            return
        try:
            self.assistant_message = await run_in_threadpool(
                self._store.add_message,
                self.conversation_id,
                "assistant",
                text,
                self._meta("interrupted"),
            )
        except BusinessError as e:
            ChatRelay._log(logging.ERROR, "Failed to store interrupted message", self._log_ctx, error=e.message)

    def _meta(self, status: str) -> Dict[str, Any]:
        meta: Dict[str, Any] = {"status": status, "provider": self._provider}
        if self._usage:
            meta["usage"] = {
                "prompt_tokens": self._usage.prompt_tokens,
                "completion_tokens": self._usage.completion_tokens,
                "total_tokens": self._usage.total_tokens,
            }
        return meta

    def _log_failure(self, message: str, error: Exception) -> None:
        if isinstance(error, BusinessError):
            ChatRelay._log(logging.ERROR, message, self._log_ctx, code=error.code, error=error.message)
        else:
            logger.exception(message, extra={"extra": dict(self._log_ctx)})

    @staticmethod
    def _error_message(error: Exception) -> str:
        if isinstance(error, BusinessError):
            return error.message or STREAM_FAILED_MESSAGE
        return STREAM_FAILED_MESSAGE
