"""FastAPI 应用与路由。

非流式接口直接返回 JSON；发送消息与语音合成返回 text/event-stream。
流式响应一旦发出响应头，后续错误只会以 {"error": ...} 事件出现，不再改变状态码。
"""

from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from hati_core.api.auth import check_password, issue_token, require_session
from hati_core.api.schemas import (
    ConversationCreate,
    ImageBody,
    LoginBody,
    MessageCreate,
    ProjectCreate,
    SongCreate,
    SpeechBody,
)
from hati_core.api.service import HatiService
from hati_core.domain.events import StreamEvent, encode_event
from hati_core.domain.exceptions import BusinessError
from hati_core.infrastructure.logging.logger import logger

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def get_service(request: Request) -> HatiService:
    return request.app.state.service


def event_stream_response(session) -> StreamingResponse:
    """把 relay 会话包装成 SSE 响应；响应结束后无论成败都会调用 session.aclose()。"""

    async def body() -> AsyncIterator[str]:
        event: StreamEvent
        async for event in session.events():
            yield encode_event(event)

    return StreamingResponse(
        body(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
        background=BackgroundTask(session.aclose),
    )


public = APIRouter()
router = APIRouter(dependencies=[Depends(require_session)])


@public.get("/health")
async def health():
    return {"status": "ok"}


@public.post("/auth/login")
async def login(body: LoginBody, request: Request):
    cfg = request.app.state.settings
    check_password(body.password, cfg.app_password)
    session = issue_token(cfg.session_secret, cfg.session_ttl_seconds)
    return {"token": session.token, "expires_at": session.expires_at}


# ---- 会话 ----

@router.get("/conversations")
async def list_conversations(service: HatiService = Depends(get_service)):
    return await service.list_conversations()


@router.post("/conversations", status_code=201)
async def create_conversation(body: Optional[ConversationCreate] = None, service: HatiService = Depends(get_service)):
    return await service.create_conversation(body.title if body else None)


@router.get("/conversations/{conversation_id}")
async def get_conversation(conversation_id: int, service: HatiService = Depends(get_service)):
    return await service.get_conversation(conversation_id)


@router.delete("/conversations/{conversation_id}", status_code=204)
async def delete_conversation(conversation_id: int, service: HatiService = Depends(get_service)):
    await service.delete_conversation(conversation_id)
    return Response(status_code=204)


@router.post("/conversations/{conversation_id}/messages")
async def send_message(conversation_id: int, body: MessageCreate, service: HatiService = Depends(get_service)):
    session = await service.send_message(conversation_id, body.content)
    return event_stream_response(session)


# ---- 语音与图片 ----

@router.post("/tts")
async def text_to_speech(body: SpeechBody, service: HatiService = Depends(get_service)):
    session = await service.speak(body.text, body.voice)
    return event_stream_response(session)


@router.post("/generate-image")
async def generate_image(body: ImageBody, service: HatiService = Depends(get_service)):
    return await service.generate_image(body.prompt, body.size)


# ---- 项目与歌曲 ----

@router.get("/projects")
async def list_projects(service: HatiService = Depends(get_service)):
    return await service.list_projects()


@router.post("/projects", status_code=201)
async def create_project(body: ProjectCreate, service: HatiService = Depends(get_service)):
    return await service.create_project(**body.model_dump())


@router.get("/projects/{project_id}")
async def get_project(project_id: int, service: HatiService = Depends(get_service)):
    return await service.get_project(project_id)


@router.get("/songs")
async def list_songs(service: HatiService = Depends(get_service)):
    return await service.list_songs()


@router.post("/songs", status_code=201)
async def create_song(body: SongCreate, service: HatiService = Depends(get_service)):
    return await service.create_song(**body.model_dump())


@router.get("/songs/{song_id}")
async def get_song(song_id: int, service: HatiService = Depends(get_service)):
    return await service.get_song(song_id)


async def business_error_handler(request: Request, exc: BusinessError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error(
            "Request failed",
            extra={"extra": {"path": request.url.path, "code": exc.code, "error": exc.message}},
        )
    return JSONResponse(
        status_code=exc.http_status,
        content={"error": {"code": exc.code, "message": exc.message}},
    )


def create_app(cfg=None, store=None, provider_client=None, persona_prompt: Optional[str] = None) -> FastAPI:
    """创建应用实例；测试时可注入存储、Provider 与配置。"""

    from hati_core.config.settings import settings

    cfg = cfg or settings
    app = FastAPI(title="Hati", version="1.0.0")
    app.state.settings = cfg
    app.state.service = HatiService(cfg, store=store, provider_client=provider_client, persona_prompt=persona_prompt)
    app.add_exception_handler(BusinessError, business_error_handler)
    app.include_router(public)
    app.include_router(router)
    return app
