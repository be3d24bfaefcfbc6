"""语音合成 relay：与对话 relay 相同的两段式结构，没有持久化步骤。

上游音频块（base64 PCM16 小端）原样转发，不重组也不解码。
"""

import logging
from typing import Any, AsyncGenerator, AsyncIterator, Dict, Optional
from uuid import uuid4

import anyio

from hati_core.config.settings import settings
from hati_core.domain.events import AudioEvent, DoneEvent, ErrorEvent, StreamEvent
from hati_core.domain.exceptions import BusinessError, ValidationError
from hati_core.domain.models import SpeechChunk, SpeechRequest
from hati_core.infrastructure.logging.logger import logger
from hati_core.providers.base import ProviderClient
from hati_core.relay.base import close_upstream, next_or_none, prime

SPEECH_FAILED_MESSAGE = "TTS failed"


class SpeechRelay:
    def __init__(self, provider_client: ProviderClient, model: Optional[str] = None):
        self._provider_client = provider_client
        self._model = model or settings.tts_model

    async def open_session(self, text: str, voice: Optional[str] = None) -> "SpeechSession":
        if not text or not text.strip():
            raise ValidationError(code="EMPTY_TEXT", message="Text is required")
        log_ctx: Dict[str, Any] = {"trace_id": f"tr-{uuid4().hex}", "voice": voice or settings.tts_voice}
        req = SpeechRequest(model=self._model, text=text, voice=voice or settings.tts_voice)
        upstream = self._provider_client.speech_stream(req)
        try:
            first = await prime(upstream, lambda c: bool(c.audio))
        except BaseException as e:
            with anyio.CancelScope(shield=True):
                await close_upstream(upstream)
            if isinstance(e, BusinessError):
                logger.error("Speech stream failed before output", extra={"extra": {**log_ctx, "error": e.message}})
            raise
        logger.info("Speech stream opened", extra={"extra": {**log_ctx, "chars": len(text)}})
        return SpeechSession(upstream, first, log_ctx)


class SpeechSession:
    def __init__(self, upstream: AsyncIterator[SpeechChunk], first_chunk: Optional[SpeechChunk], log_ctx: Dict[str, Any]):
        self._upstream = upstream
        self._first = first_chunk
        self._log_ctx = log_ctx
        self._events: Optional[AsyncGenerator[StreamEvent, None]] = None
        self.chunk_count = 0

    def events(self) -> AsyncIterator[StreamEvent]:
        if self._events is None:
            self._events = self._run()
        return self._events

    async def aclose(self) -> None:
        if self._events is not None:
            await self._events.aclose()
        await close_upstream(self._upstream)

    async def _run(self) -> AsyncGenerator[StreamEvent, None]:
        try:
            try:
                chunk = self._first
                while chunk is not None:
                    if chunk.audio:
                        self.chunk_count += 1
                        yield AudioEvent(chunk.audio)
                    chunk = await next_or_none(self._upstream)
            except Exception as e:
                if isinstance(e, BusinessError):
                    logger.error("Speech stream failed", extra={"extra": {**self._log_ctx, "error": e.message}})
                else:
                    logger.exception("Speech stream failed", extra={"extra": dict(self._log_ctx)})
                yield ErrorEvent(SPEECH_FAILED_MESSAGE)
                return
            logger.log(
                logging.INFO,
                "Speech stream finished",
                extra={"extra": {**self._log_ctx, "chunks": self.chunk_count}},
            )
            yield DoneEvent()
        finally:
            with anyio.CancelScope(shield=True):
                await close_upstream(self._upstream)
