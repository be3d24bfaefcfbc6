import tempfile
from pathlib import Path

import pytest

from hati_core.domain.exceptions import NotFoundError
from hati_core.infrastructure.storage.sql_store import SqlConversationStore


@pytest.fixture
def store():
    with tempfile.TemporaryDirectory() as d:
        s = SqlConversationStore(f"sqlite:///{Path(d) / 'hati.db'}")
        yield s
        s.dispose()


def test_sql_store_conversation_roundtrip(store):
    conv = store.create_conversation("Hello")
    assert isinstance(conv.id, int)
    assert conv.created_at.tzinfo is not None

    store.add_message(conv.id, "user", "hi")
    store.add_message(conv.id, "assistant", "hey", {"status": "complete", "provider": "fake"})
    msgs = store.list_messages(conv.id)
    assert [(m.role, m.content) for m in msgs] == [("user", "hi"), ("assistant", "hey")]
    assert msgs[1].meta == {"status": "complete", "provider": "fake"}


def test_sql_store_delete_cascades(store):
    conv = store.create_conversation("temp")
    store.add_message(conv.id, "user", "hi")
    other = store.create_conversation("keep")
    store.add_message(other.id, "user", "stay")

    store.delete_conversation(conv.id)
    with pytest.raises(NotFoundError):
        store.get_conversation(conv.id)
    with pytest.raises(NotFoundError):
        store.list_messages(conv.id)
    assert [m.content for m in store.list_messages(other.id)] == ["stay"]
    assert [c.id for c in store.list_conversations()] == [other.id]


def test_sql_store_missing_conversation(store):
    with pytest.raises(NotFoundError):
        store.add_message(7, "user", "hi")
    with pytest.raises(NotFoundError):
        store.delete_conversation(7)


def test_sql_store_projects_and_songs(store):
    p = store.create_project(title="Snake", description="game")
    s = store.create_song(title="Moon", lyrics="la la")
    assert store.get_project(p.id).language == "javascript"
    assert store.get_song(s.id).lyrics == "la la"
    assert [x.title for x in store.list_projects()] == ["Snake"]
    assert [x.title for x in store.list_songs()] == ["Moon"]
    with pytest.raises(NotFoundError):
        store.get_song(s.id + 1)
