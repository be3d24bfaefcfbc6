from hati_core.client.consumer import STREAM_CLOSED_MESSAGE, ChatStreamConsumer, Transcript
from hati_core.domain.events import ContentEvent, DoneEvent


def _recorder():
    calls = []

    def make(name):
        return lambda t: calls.append((name, [m.content for m in t.messages], t.is_streaming))

    return calls, make


def test_consumer_builds_transcript_from_split_chunks():
    calls, make = _recorder()
    consumer = ChatStreamConsumer(on_update=make("update"), on_done=make("done"), on_error=make("error"))
    consumer.begin("hi")
    assert calls[-1] == ("update", ["hi", ""], True)

    assert consumer.feed(b'data: {"content":"He') == []
    assert consumer.feed(b'l"}\n\ndata: {"content":"lo"}\n\n') == [ContentEvent("Hel"), ContentEvent("lo")]
    consumer.feed(b'data: {"done":true}\n\n')
    consumer.finish()

    t = consumer.transcript
    assert [(m.role, m.content) for m in t.messages] == [("user", "hi"), ("assistant", "Hello")]
    assert not t.is_streaming
    assert t.error is None
    assert consumer.completed
    assert calls[-1] == ("done", ["hi", "Hello"], False)
    assert [c[0] for c in calls].count("done") == 1


def test_consumer_error_event():
    errors = []
    consumer = ChatStreamConsumer(on_error=lambda t: errors.append(t.error))
    consumer.begin("hi")
    consumer.feed('data: {"content":"par"}\n\ndata: {"error":"Failed to send message"}\n\n')
    consumer.finish()

    assert errors == ["Failed to send message"]
    assert consumer.transcript.error == "Failed to send message"
    assert consumer.transcript.messages[-1].content == "par"
    assert not consumer.completed


def test_consumer_ignores_events_after_terminal():
    consumer = ChatStreamConsumer()
    consumer.begin("hi")
    events = consumer.feed('data: {"content":"a"}\n\ndata: {"done":true}\n\ndata: {"content":"late"}\n\n')
    assert events == [ContentEvent("a"), DoneEvent()]
    assert consumer.transcript.messages[-1].content == "a"


def test_consumer_skips_malformed_lines():
    consumer = ChatStreamConsumer()
    consumer.begin("hi")
    consumer.feed('data: {oops\n\n: comment\n\ndata: {"content":"ok"}\n\ndata: {"done":true}\n\n')
    assert consumer.transcript.messages[-1].content == "ok"
    assert consumer.completed


def test_consumer_stream_closed_without_done():
    consumer = ChatStreamConsumer()
    consumer.begin("hi")
    consumer.feed('data: {"content":"half"}\n\n')
    consumer.finish()
    assert consumer.transcript.error == STREAM_CLOSED_MESSAGE
    assert not consumer.transcript.is_streaming


def test_transcript_reconcile():
    t = Transcript()
    t.reconcile([{"id": 1, "role": "user", "content": "a"}, {"id": 2, "role": "assistant", "content": "b"}])
    assert [(m.role, m.content) for m in t.messages] == [("user", "a"), ("assistant", "b")]
