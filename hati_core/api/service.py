"""对外 API 服务模块。

把存储、Provider 与 relay 组装在一起，为路由层提供返回 dict 的简化接口。
同步的存储调用统一放进线程池执行，避免阻塞事件循环。
"""

from typing import Any, Dict, List, Optional

from fastapi.concurrency import run_in_threadpool

from hati_core.domain.conversation import (
    DEFAULT_CONVERSATION_TITLE,
    Conversation,
    MessageRecord,
    Project,
    Song,
)
from hati_core.domain.exceptions import ValidationError
from hati_core.domain.models import IMAGE_SIZES, ImageRequest
from hati_core.infrastructure.logging.logger import logger
from hati_core.infrastructure.storage import create_store
from hati_core.providers import create_provider
from hati_core.relay import ChatRelay, ConversationLocks, SpeechRelay, StreamSession, SpeechSession


def conversation_to_dict(c: Conversation) -> Dict[str, Any]:
    return {"id": c.id, "title": c.title, "created_at": c.created_at.isoformat()}


def message_to_dict(m: MessageRecord) -> Dict[str, Any]:
    return {
        "id": m.id,
        "role": m.role,
        "content": m.content,
        "created_at": m.created_at.isoformat(),
    }


def project_to_dict(p: Project) -> Dict[str, Any]:
    return {
        "id": p.id,
        "title": p.title,
        "description": p.description,
        "code": p.code,
        "language": p.language,
        "created_at": p.created_at.isoformat(),
    }


def song_to_dict(s: Song) -> Dict[str, Any]:
    return {
        "id": s.id,
        "title": s.title,
        "lyrics": s.lyrics,
        "genre": s.genre,
        "created_at": s.created_at.isoformat(),
    }


class HatiService:
    def __init__(self, settings, store=None, provider_client=None, persona_prompt: Optional[str] = None):
        self.settings = settings
        self.store = store if store is not None else create_store(settings)
        self.provider_client = provider_client if provider_client is not None else create_provider(cfg=settings)
        self.locks = ConversationLocks()
        self.chat_relay = ChatRelay(
            store=self.store,
            provider_client=self.provider_client,
            locks=self.locks,
            persona_prompt=persona_prompt,
            model=settings.chat_model,
            max_context_messages=settings.max_context_messages,
            max_completion_tokens=settings.max_completion_tokens,
            persona_prompt_file=settings.persona_prompt_file,
        )
        self.speech_relay = SpeechRelay(self.provider_client, model=settings.tts_model)

    # ---- 会话 ----

    async def create_conversation(self, title: Optional[str]) -> Dict[str, Any]:
        title = (title or "").strip() or DEFAULT_CONVERSATION_TITLE
        conv = await run_in_threadpool(self.store.create_conversation, title)
        logger.info("Created conversation", extra={"extra": {"conversation_id": conv.id}})
        return conversation_to_dict(conv)

    async def list_conversations(self) -> List[Dict[str, Any]]:
        convs = await run_in_threadpool(self.store.list_conversations)
        return [conversation_to_dict(c) for c in convs]

    async def get_conversation(self, conversation_id: int) -> Dict[str, Any]:
        conv = await run_in_threadpool(self.store.get_conversation, conversation_id)
        msgs = await run_in_threadpool(self.store.list_messages, conversation_id)
        data = conversation_to_dict(conv)
        data["messages"] = [message_to_dict(m) for m in msgs]
        return data

    async def delete_conversation(self, conversation_id: int) -> None:
        await run_in_threadpool(self.store.delete_conversation, conversation_id)
        logger.info("Deleted conversation", extra={"extra": {"conversation_id": conversation_id}})

    async def send_message(self, conversation_id: int, content: str) -> StreamSession:
        return await self.chat_relay.open_session(conversation_id, content)

    # ---- 语音与图片 ----

    async def speak(self, text: str, voice: Optional[str]) -> SpeechSession:
        return await self.speech_relay.open_session(text, voice)

    async def generate_image(self, prompt: str, size: str) -> Dict[str, Any]:
        if not prompt or not prompt.strip():
            raise ValidationError(code="EMPTY_PROMPT", message="Prompt is required")
        if size not in IMAGE_SIZES:
            raise ValidationError(code="INVALID_SIZE", message=f"Size must be one of {', '.join(IMAGE_SIZES)}")
        result = await self.provider_client.generate_image(
            ImageRequest(model=self.settings.image_model, prompt=prompt, size=size)  # type: ignore[arg-type]
        )
        return {"b64_json": result.b64_json}

    # ---- 项目与歌曲 ----

    async def list_projects(self) -> List[Dict[str, Any]]:
        return [project_to_dict(p) for p in await run_in_threadpool(self.store.list_projects)]

    async def create_project(self, **fields: Any) -> Dict[str, Any]:
        return project_to_dict(await run_in_threadpool(self.store.create_project, **fields))

    async def get_project(self, project_id: int) -> Dict[str, Any]:
        return project_to_dict(await run_in_threadpool(self.store.get_project, project_id))

    async def list_songs(self) -> List[Dict[str, Any]]:
        return [song_to_dict(s) for s in await run_in_threadpool(self.store.list_songs)]

    async def create_song(self, **fields: Any) -> Dict[str, Any]:
        return song_to_dict(await run_in_threadpool(self.store.create_song, **fields))

    async def get_song(self, song_id: int) -> Dict[str, Any]:
        return song_to_dict(await run_in_threadpool(self.store.get_song, song_id))
