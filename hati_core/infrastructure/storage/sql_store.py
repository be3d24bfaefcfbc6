"""SQLAlchemy 存储实现（Postgres / SQLite）。

表结构与 JSON 存储一一对应：conversations、messages、projects、songs。
删除会话时通过 ORM 级联删除其消息。
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, DateTime, ForeignKey, String, Text, create_engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, relationship, sessionmaker

from hati_core.config.settings import settings
from hati_core.domain.conversation import (
    ConversationStore,
    LibraryStore,
    Conversation,
    MessageRecord,
    Project,
    Song,
)
from hati_core.domain.exceptions import NotFoundError, StoreError
from hati_core.domain.models import MessageRole


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(dt: datetime) -> datetime:
    # SQLite 不保存时区信息
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class Base(DeclarativeBase):
    pass


class ConversationRow(Base):
    __tablename__ = "conversations"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    messages: Mapped[list["MessageRow"]] = relationship(
        "MessageRow",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="MessageRow.id",
    )


class MessageRow(Base):
    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    conversation_id: Mapped[int] = mapped_column(ForeignKey("conversations.id", ondelete="CASCADE"), index=True)
    role: Mapped[str] = mapped_column(String(32))
    content: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    meta: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)

    conversation: Mapped[ConversationRow] = relationship("ConversationRow", back_populates="messages")


class ProjectRow(Base):
    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(Text)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    code: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    language: Mapped[Optional[str]] = mapped_column(Text, nullable=True, default="javascript")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class SongRow(Base):
    __tablename__ = "songs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(Text)
    lyrics: Mapped[str] = mapped_column(Text)
    genre: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class SqlConversationStore(ConversationStore, LibraryStore):
    def __init__(self, url: str | None = None, **engine_kwargs):
        url = url or settings.database_url
        if url.startswith("sqlite"):
            engine_kwargs.setdefault("connect_args", {"check_same_thread": False})
        self._engine = create_engine(url, **engine_kwargs)
        Base.metadata.create_all(self._engine)
        self._sessions = sessionmaker(self._engine, expire_on_commit=False)

    def dispose(self) -> None:
        self._engine.dispose()

    # ---- 会话 ----

    def create_conversation(self, title: str) -> Conversation:
        with self._write() as s:
            row = ConversationRow(title=title, created_at=_utcnow())
            s.add(row)
            s.flush()
            return self._to_conversation(row)

    def get_conversation(self, conversation_id: int) -> Conversation:
        with self._read() as s:
            return self._to_conversation(self._conversation_row(s, conversation_id))

    def list_conversations(self) -> List[Conversation]:
        with self._read() as s:
            rows = s.scalars(
                select(ConversationRow).order_by(ConversationRow.created_at.desc(), ConversationRow.id.desc())
            ).all()
            return [self._to_conversation(r) for r in rows]

    def delete_conversation(self, conversation_id: int) -> None:
        with self._write() as s:
            s.delete(self._conversation_row(s, conversation_id))

    def add_message(
        self,
        conversation_id: int,
        role: MessageRole,
        content: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> MessageRecord:
        with self._write() as s:
            self._conversation_row(s, conversation_id)
            row = MessageRow(
                conversation_id=conversation_id,
                role=role,
                content=content,
                created_at=_utcnow(),
                meta=dict(meta or {}),
            )
            s.add(row)
            s.flush()
            return self._to_message(row)

    def list_messages(self, conversation_id: int) -> List[MessageRecord]:
        with self._read() as s:
            self._conversation_row(s, conversation_id)
            rows = s.scalars(
                select(MessageRow)
                .where(MessageRow.conversation_id == conversation_id)
                .order_by(MessageRow.created_at, MessageRow.id)
            ).all()
            return [self._to_message(r) for r in rows]

    # ---- 项目与歌曲 ----

    def create_project(
        self,
        title: str,
        description: Optional[str] = None,
        code: Optional[str] = None,
        language: Optional[str] = "javascript",
    ) -> Project:
        with self._write() as s:
            row = ProjectRow(title=title, description=description, code=code, language=language, created_at=_utcnow())
            s.add(row)
            s.flush()
            return self._to_project(row)

    def get_project(self, project_id: int) -> Project:
        with self._read() as s:
            row = s.get(ProjectRow, project_id)
            if row is None:
                raise NotFoundError(code="PROJECT_NOT_FOUND", message=f"Project {project_id} not found")
            return self._to_project(row)

    def list_projects(self) -> List[Project]:
        with self._read() as s:
            rows = s.scalars(select(ProjectRow).order_by(ProjectRow.id.desc())).all()
            return [self._to_project(r) for r in rows]

    def create_song(self, title: str, lyrics: str, genre: Optional[str] = None) -> Song:
        with self._write() as s:
            row = SongRow(title=title, lyrics=lyrics, genre=genre, created_at=_utcnow())
            s.add(row)
            s.flush()
            return self._to_song(row)

    def get_song(self, song_id: int) -> Song:
        with self._read() as s:
            row = s.get(SongRow, song_id)
            if row is None:
                raise NotFoundError(code="SONG_NOT_FOUND", message=f"Song {song_id} not found")
            return self._to_song(row)

    def list_songs(self) -> List[Song]:
        with self._read() as s:
            rows = s.scalars(select(SongRow).order_by(SongRow.id.desc())).all()
            return [self._to_song(r) for r in rows]

    # ---- 内部工具 ----

    def _write(self) -> "_SessionScope":
        return _SessionScope(self._sessions, commit=True)

    def _read(self) -> "_SessionScope":
        return _SessionScope(self._sessions, commit=False)

    @staticmethod
    def _conversation_row(s: Session, conversation_id: int) -> ConversationRow:
        row = s.get(ConversationRow, conversation_id)
        if row is None:
            raise NotFoundError(code="CONVERSATION_NOT_FOUND", message=f"Conversation {conversation_id} not found")
        return row

    @staticmethod
    def _to_conversation(row: ConversationRow) -> Conversation:
        return Conversation(id=row.id, title=row.title, created_at=_aware(row.created_at))

    @staticmethod
    def _to_message(row: MessageRow) -> MessageRecord:
        return MessageRecord(
            id=row.id,
            conversation_id=row.conversation_id,
            role=row.role,  # type: ignore[arg-type]
            content=row.content,
            created_at=_aware(row.created_at),
            meta=dict(row.meta or {}),
        )

    @staticmethod
    def _to_project(row: ProjectRow) -> Project:
        return Project(
            id=row.id,
            title=row.title,
            created_at=_aware(row.created_at),
            description=row.description,
            code=row.code,
            language=row.language,
        )

    @staticmethod
    def _to_song(row: SongRow) -> Song:
        return Song(id=row.id, title=row.title, lyrics=row.lyrics, created_at=_aware(row.created_at), genre=row.genre)


class _SessionScope:
    """一次数据库会话：写操作提交，SQLAlchemy 异常统一包装成 StoreError。"""

    def __init__(self, factory: sessionmaker, commit: bool):
        self._factory = factory
        self._commit = commit
        self._session: Optional[Session] = None

    def __enter__(self) -> Session:
        self._session = self._factory()
        return self._session

    def __exit__(self, exc_type, exc, tb) -> bool:
        session = self._session
        assert session is not None
        try:
            if exc_type is None and self._commit:
                session.commit()
            elif exc_type is not None:
                session.rollback()
        except SQLAlchemyError as e:
            session.rollback()
            raise StoreError(code="STORE_WRITE_ERROR", message=str(e)) from e
        finally:
            session.close()
        if exc_type is not None and issubclass(exc_type, SQLAlchemyError):
            code = "STORE_WRITE_ERROR" if self._commit else "STORE_READ_ERROR"
            raise StoreError(code=code, message=str(exc)) from exc
        return False
