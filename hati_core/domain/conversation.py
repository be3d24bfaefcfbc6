from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Protocol
from datetime import datetime
from .models import MessageRole


DEFAULT_CONVERSATION_TITLE = "New Chat"


@dataclass
class Conversation:
    id: int
    title: str
    created_at: datetime


@dataclass
class MessageRecord:
    id: int
    conversation_id: int
    role: MessageRole
    content: str
    created_at: datetime
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Project:
    id: int
    title: str
    created_at: datetime
    description: Optional[str] = None
    code: Optional[str] = None
    language: Optional[str] = "javascript"


@dataclass
class Song:
    id: int
    title: str
    lyrics: str
    created_at: datetime
    genre: Optional[str] = None


class ConversationStore(Protocol):
    """会话与消息的持久化协议。

    id 由存储分配（自增整数）；消息按创建顺序排列。
    找不到会话时抛出 NotFoundError，读写失败抛出 StoreError。
    """

    def create_conversation(self, title: str) -> Conversation:
        ...

    def get_conversation(self, conversation_id: int) -> Conversation:
        ...

    def list_conversations(self) -> List[Conversation]:
        ...

    def delete_conversation(self, conversation_id: int) -> None:
        ...

    def add_message(
        self,
        conversation_id: int,
        role: MessageRole,
        content: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> MessageRecord:
        ...

    def list_messages(self, conversation_id: int) -> List[MessageRecord]:
        ...


class LibraryStore(Protocol):
    """项目与歌曲的持久化协议。"""

    def create_project(
        self,
        title: str,
        description: Optional[str] = None,
        code: Optional[str] = None,
        language: Optional[str] = "javascript",
    ) -> Project:
        ...

    def get_project(self, project_id: int) -> Project:
        ...

    def list_projects(self) -> List[Project]:
        ...

    def create_song(self, title: str, lyrics: str, genre: Optional[str] = None) -> Song:
        ...

    def get_song(self, song_id: int) -> Song:
        ...

    def list_songs(self) -> List[Song]:
        ...
