import json
import os
import shutil
import threading
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, List, Optional
from uuid import uuid4

from hati_core.config.settings import settings
from hati_core.domain.conversation import (
    ConversationStore,
    LibraryStore,
    Conversation,
    MessageRecord,
    Project,
    Song,
)
from hati_core.domain.exceptions import BusinessError, NotFoundError, StoreError
from hati_core.domain.models import MessageRole


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_dt(value: str) -> datetime:
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class JsonConversationStore(ConversationStore, LibraryStore):
    """基于本地文件的存储实现。

    目录结构：

        <root>/sequences.json                 各类 id 的自增计数
        <root>/conversations/<id>/meta.json   会话元信息
        <root>/conversations/<id>/messages.jsonl
        <root>/projects/<id>.json
        <root>/songs/<id>.json

    所有写操作都经过同一把线程锁，API 层在线程池里调用这里的方法。
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._conv_root = self._root / "conversations"
        self._project_root = self._root / "projects"
        self._song_root = self._root / "songs"
        for d in (self._conv_root, self._project_root, self._song_root):
            d.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    # ---- 会话 ----

    def create_conversation(self, title: str) -> Conversation:
        with self._lock:
            cid = self._next_id("conversation")
            cdir = self._conv_root / str(cid)
            try:
                cdir.mkdir(parents=True, exist_ok=False)
            except OSError as e:
                raise StoreError(code="STORE_WRITE_ERROR", message=str(e))
            conv = Conversation(id=cid, title=title, created_at=datetime.now(timezone.utc))
            self._write_json(cdir / "meta.json", {
                "id": conv.id,
                "title": conv.title,
                "created_at": _iso(conv.created_at),
            })
            return conv

    def get_conversation(self, conversation_id: int) -> Conversation:
        meta_path = self._conv_root / str(conversation_id) / "meta.json"
        if not meta_path.exists():
            raise NotFoundError(code="CONVERSATION_NOT_FOUND", message=f"Conversation {conversation_id} not found")
        data = self._read_json(meta_path)
        return self._to_conversation(data)

    def list_conversations(self) -> List[Conversation]:
        items: List[Conversation] = []
        for cdir in self._conv_root.glob("*/"):
            meta_path = cdir / "meta.json"
            if not meta_path.exists():
                continue
            try:
                items.append(self._to_conversation(self._read_json(meta_path)))
            except (BusinessError, KeyError, ValueError):
                continue
        items.sort(key=lambda c: (c.created_at, c.id), reverse=True)
        return items

    def delete_conversation(self, conversation_id: int) -> None:
        cdir = self._conv_root / str(conversation_id)
        with self._lock:
            if not cdir.exists():
                raise NotFoundError(code="CONVERSATION_NOT_FOUND", message=f"Conversation {conversation_id} not found")
            try:
                shutil.rmtree(cdir)
            except OSError as e:
                raise StoreError(code="STORE_DELETE_ERROR", message=str(e))

    def add_message(
        self,
        conversation_id: int,
        role: MessageRole,
        content: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> MessageRecord:
        with self._lock:
            cdir = self._conv_root / str(conversation_id)
            if not (cdir / "meta.json").exists():
                raise NotFoundError(code="CONVERSATION_NOT_FOUND", message=f"Conversation {conversation_id} not found")
            record = MessageRecord(
                id=self._next_id("message"),
                conversation_id=conversation_id,
                role=role,
                content=content,
                created_at=datetime.now(timezone.utc),
                meta=dict(meta or {}),
            )
            payload = asdict(record)
            payload["created_at"] = _iso(record.created_at)
            try:
                with (cdir / "messages.jsonl").open("a", encoding="utf-8") as f:
                    f.write(json.dumps(payload, ensure_ascii=False) + "\n")
            except OSError as e:
                raise StoreError(code="STORE_WRITE_ERROR", message=str(e))
            return record

    def list_messages(self, conversation_id: int) -> List[MessageRecord]:
        cdir = self._conv_root / str(conversation_id)
        if not (cdir / "meta.json").exists():
            raise NotFoundError(code="CONVERSATION_NOT_FOUND", message=f"Conversation {conversation_id} not found")
        msgs_path = cdir / "messages.jsonl"
        items: List[MessageRecord] = []
        if not msgs_path.exists():
            return items
        try:
            lines = msgs_path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            raise StoreError(code="STORE_READ_ERROR", message=str(e))
        for line in lines:
            try:
                items.append(self._to_message(json.loads(line)))
            except (json.JSONDecodeError, KeyError, ValueError):
                # 写入中途崩溃可能留下半行，跳过即可
                continue
        items.sort(key=lambda m: (m.created_at, m.id))
        return items

    # ---- 项目与歌曲 ----

    def create_project(
        self,
        title: str,
        description: Optional[str] = None,
        code: Optional[str] = None,
        language: Optional[str] = "javascript",
    ) -> Project:
        with self._lock:
            project = Project(
                id=self._next_id("project"),
                title=title,
                created_at=datetime.now(timezone.utc),
                description=description,
                code=code,
                language=language,
            )
            payload = asdict(project)
            payload["created_at"] = _iso(project.created_at)
            self._write_json(self._project_root / f"{project.id}.json", payload)
            return project

    def get_project(self, project_id: int) -> Project:
        path = self._project_root / f"{project_id}.json"
        if not path.exists():
            raise NotFoundError(code="PROJECT_NOT_FOUND", message=f"Project {project_id} not found")
        data = self._read_json(path)
        data["created_at"] = _parse_dt(data["created_at"])
        return Project(**data)

    def list_projects(self) -> List[Project]:
        items = [self.get_project(int(p.stem)) for p in self._project_root.glob("*.json") if p.stem.isdigit()]
        items.sort(key=lambda p: p.id, reverse=True)
        return items

    def create_song(self, title: str, lyrics: str, genre: Optional[str] = None) -> Song:
        with self._lock:
            song = Song(
                id=self._next_id("song"),
                title=title,
                lyrics=lyrics,
                created_at=datetime.now(timezone.utc),
                genre=genre,
            )
            payload = asdict(song)
            payload["created_at"] = _iso(song.created_at)
            self._write_json(self._song_root / f"{song.id}.json", payload)
            return song

    def get_song(self, song_id: int) -> Song:
        path = self._song_root / f"{song_id}.json"
        if not path.exists():
            raise NotFoundError(code="SONG_NOT_FOUND", message=f"Song {song_id} not found")
        data = self._read_json(path)
        data["created_at"] = _parse_dt(data["created_at"])
        return Song(**data)

    def list_songs(self) -> List[Song]:
        items = [self.get_song(int(p.stem)) for p in self._song_root.glob("*.json") if p.stem.isdigit()]
        items.sort(key=lambda s: s.id, reverse=True)
        return items

    # ---- 内部工具 ----

    def _next_id(self, kind: str) -> int:
        seq_path = self._root / "sequences.json"
        seqs: Dict[str, int] = self._read_json(seq_path) if seq_path.exists() else {}
        value = int(seqs.get(kind, 0)) + 1
        seqs[kind] = value
        self._write_json(seq_path, seqs)
        return value

    def _read_json(self, path: Path) -> Dict[str, Any]:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(code="STORE_READ_ERROR", message=str(e))

    def _write_json(self, path: Path, obj: Dict[str, Any]) -> None:
        tmp_path = path.with_name(f"{path.stem}.{uuid4().hex}.tmp")
        try:
            tmp_path.write_text(json.dumps(obj, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            raise StoreError(code="STORE_WRITE_ERROR", message=str(e))

    @staticmethod
    def _to_conversation(data: Dict[str, Any]) -> Conversation:
        return Conversation(
            id=int(data["id"]),
            title=data.get("title") or "",
            created_at=_parse_dt(data["created_at"]),
        )

    @staticmethod
    def _to_message(data: Dict[str, Any]) -> MessageRecord:
        return MessageRecord(
            id=int(data["id"]),
            conversation_id=int(data["conversation_id"]),
            role=data["role"],
            content=data.get("content") or "",
            created_at=_parse_dt(data["created_at"]),
            meta=data.get("meta") or {},
        )
