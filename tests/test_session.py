"""
End-to-end tests for chat turns against a mocked upstream API.
"""

import asyncio
import json

import httpx
import pytest

from backboard_chat.models import Attachment
from backboard_chat.session import ChatSession
from backboard_chat.storage import TitleCache


def sse(payload, event: str | None = None) -> str:
    body = payload if isinstance(payload, str) else json.dumps(payload)
    prefix = f"event: {event}\n" if event else ""
    return f"{prefix}data: {body}\n\n"


class FakeBackboard:
    """Routes mock requests; the message reply is swapped per test."""

    def __init__(self, reply, thread=None, statuses=None):
        self.reply = reply
        self.thread = thread or {"thread_id": "t1", "assistant_id": "a1", "messages": []}
        self.statuses = statuses or {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "GET" and path.startswith("/threads/"):
            return httpx.Response(200, json=self.thread)
        if request.method == "PATCH":
            return httpx.Response(200, json={"title": json.loads(request.content)["title"]})
        if request.method == "POST" and path.endswith("/messages"):
            return self.reply() if callable(self.reply) else self.reply
        if path.startswith("/documents/"):
            doc_id = path.split("/")[2]
            return httpx.Response(200, json={"document_id": doc_id, "status": self.statuses[doc_id]})
        return httpx.Response(404)


@pytest.fixture
def notifications():
    return []


@pytest.fixture
async def make_session(make_client, notifications):
    sessions = []

    def factory(backend, **kwargs):
        snapshots = []
        session = ChatSession(
            make_client(backend),
            titles=TitleCache(None),
            notify=lambda level, text: notifications.append((level, text)),
            on_content=snapshots.append,
            **kwargs,
        )
        session.snapshots = snapshots
        sessions.append(session)
        return session

    yield factory
    for session in sessions:
        session.close()


async def test_streamed_turn(make_session, sse_response):
    backend = FakeBackboard(lambda: sse_response(
        sse({"content": "Hi"}, event="content"),
        sse({"role": "user", "content": "Hello there"}),
        'data: {"content": " the',
        're", "message_id": "msg_9"}\n\n',
        sse({"content": "Hi there", "retrieved_files": [{"document_id": "d1", "filename": "a.pdf"}]},
            event="done"),
        sse("[DONE]"),
    ))
    session = make_session(backend)
    await session.open_thread("t1")

    reply = await session.send("Hello there")

    assert reply.content == "Hi there"
    assert reply.message_id == "msg_9"
    assert [f.filename for f in reply.retrieved_files] == ["a.pdf"]
    assert [m.role for m in session.messages] == ["user", "assistant"]
    assert session.messages[-1] is reply
    assert [s.content for s in session.snapshots] == ["Hi", "Hi there"]
    assert session.streaming_message is None
    assert not session.is_sending


async def test_first_message_titles_the_thread(make_session, sse_response):
    backend = FakeBackboard(lambda: sse_response(sse({"content": "Sure"})))
    session = make_session(backend)
    await session.open_thread("t1")

    await session.send("Hi! Can you explain vector databases?")

    assert session.thread.title == "Explain vector databases"
    assert session.titles.get("t1") == "Explain vector databases"
    patch = next(r for r in backend.requests if r.method == "PATCH")
    assert json.loads(patch.content) == {"title": "Explain vector databases"}


async def test_titled_thread_is_not_retitled(make_session, sse_response):
    thread = {"thread_id": "t1", "title": "Existing", "messages": []}
    backend = FakeBackboard(lambda: sse_response(sse({"content": "ok"})), thread=thread)
    session = make_session(backend)
    await session.open_thread("t1")

    await session.send("Something new")

    assert session.thread.title == "Existing"
    assert not any(r.method == "PATCH" for r in backend.requests)


async def test_open_thread_falls_back_to_cached_title(make_session):
    session = make_session(FakeBackboard(None))
    session.titles.save("t1", "Saved locally")

    thread = await session.open_thread("t1")

    assert thread.title == "Saved locally"


async def test_stream_without_terminal_signal_completes(make_session, sse_response):
    backend = FakeBackboard(lambda: sse_response("data: plain ", "text\ndata: tail"))
    session = make_session(backend)
    await session.open_thread("t1", fetch=False)

    reply = await session.send("go")

    assert reply.content == "plain texttail"


async def test_non_streaming_reply_and_indexing(make_session, notifications):
    backend = FakeBackboard(
        httpx.Response(200, json={
            "message_id": "msg_1",
            "content": "Got your file",
            "attachments": [{"document_id": "d1", "filename": "report.pdf", "status": "pending"}],
        }),
        statuses={"d1": "indexed"},
    )
    session = make_session(backend, poll_interval=0.01)
    await session.open_thread("t1", fetch=False)

    reply = await session.send("Read this", stream=False)

    assert reply.message_id == "msg_1"
    assert reply.content == "Got your file"
    assert [a.filename for a in reply.attachments] == ["report.pdf"]
    assert session.poller.is_indexing

    await asyncio.wait_for(session.wait_for_indexing(), timeout=2)

    assert not session.poller.is_indexing
    assert notifications == [("success", 'Document "report.pdf" indexed successfully')]


async def test_streamed_attachments_start_polling(make_session, sse_response):
    backend = FakeBackboard(lambda: sse_response(
        sse({"content": "Indexing"}),
        sse({"attachments": [{"document_id": "d7", "filename": "x.csv", "status": "processing"}]},
            event="done"),
    ))
    session = make_session(backend)
    await session.open_thread("t1", fetch=False)

    await session.send("here")

    assert session.poller.pending_ids == {"d7"}
    assert session.poller.running


async def test_send_refused_while_indexing(make_session, notifications, sse_response):
    backend = FakeBackboard(lambda: sse_response(sse({"content": "x"})))
    session = make_session(backend)
    await session.open_thread("t1", fetch=False)
    session.poller.track(Attachment(document_id="d1", filename="big.pdf"))

    assert await session.send("too soon") is None

    assert notifications == [("error", "Please wait for documents to finish indexing")]
    assert session.messages == []


async def test_transport_error_keeps_partial_reply(make_session, notifications):
    async def dropped():
        yield sse({"content": "Half an ans"}).encode()
        raise httpx.ReadError("connection reset")

    backend = FakeBackboard(lambda: httpx.Response(
        200, headers={"content-type": "text/event-stream"}, content=dropped()
    ))
    session = make_session(backend)
    await session.open_thread("t1", fetch=False)

    assert await session.send("question") is None

    assert notifications == [("error", "Failed to send message")]
    assert session.streaming_message.content == "Half an ans"
    assert [m.role for m in session.messages] == ["user"]
    assert not session.is_sending


async def test_upstream_error_status(make_session, notifications):
    backend = FakeBackboard(httpx.Response(502, text="bad gateway"))
    session = make_session(backend)
    await session.open_thread("t1", fetch=False)

    assert await session.send("question") is None
    assert notifications == [("error", "Failed to send message")]


async def test_late_stream_for_previous_thread_is_discarded(make_session, notifications):
    session = None

    async def slow_stream():
        yield sse({"content": "for t1"}).encode()
        await session.open_thread("t2", fetch=False)
        yield sse({"content": " still t1"}).encode()
        yield sse("[DONE]").encode()

    backend = FakeBackboard(lambda: httpx.Response(
        200, headers={"content-type": "text/event-stream"}, content=slow_stream()
    ))
    session = make_session(backend)
    await session.open_thread("t1", fetch=False)

    assert await session.send("hello") is None

    assert session.thread_id == "t2"
    assert session.messages == []
    assert session.streaming_message is None
    assert notifications == []


async def test_switching_threads_stops_indexing(make_session):
    session = make_session(FakeBackboard(None))
    await session.open_thread("t1", fetch=False)
    session.poller.track(Attachment(document_id="d1", filename="a.pdf"))

    await session.open_thread("t2", fetch=False)

    assert not session.poller.running
    assert session.poller.documents == []


async def test_send_requires_open_thread(make_session):
    session = make_session(FakeBackboard(None))
    with pytest.raises(RuntimeError):
        await session.send("hello")


async def test_thread_switch_during_request_keeps_new_thread_clean(
    make_session, sse_response, notifications
):
    session = None

    async def switch_then_reply():
        await session.open_thread("t2", fetch=False)
        return sse_response(sse({"content": "for t1"}), sse("[DONE]"))

    session = make_session(FakeBackboard(switch_then_reply))
    await session.open_thread("t1", fetch=False)

    assert await session.send("hi") is None

    assert session.thread_id == "t2"
    assert session.streaming_message is None
    assert session.snapshots == []
    assert session.messages == []
    assert notifications == []


@pytest.mark.parametrize("reply", [
    httpx.Response(200, headers={"content-type": "text/plain"}, text="just text"),
    httpx.Response(200, json=["not", "an", "object"]),
])
async def test_unusable_non_streaming_body_is_reported(make_session, notifications, reply):
    session = make_session(FakeBackboard(reply))
    await session.open_thread("t1", fetch=False)

    assert await session.send("hi", stream=False) is None

    assert notifications == [("error", "Failed to send message")]
    assert [m.role for m in session.messages] == ["user"]
    assert not session.is_sending


async def test_open_thread_keeps_messages_without_ids(make_session):
    thread = {"messages": [
        {"role": "assistant", "content": "kept"},
        {"content": "no role, dropped"},
    ]}
    session = make_session(FakeBackboard(None, thread=thread))

    loaded = await session.open_thread("t1")

    assert loaded.thread_id == "t1"
    assert [m.content for m in session.messages] == ["kept"]


async def test_open_thread_with_malformed_body_notifies(make_session, notifications):
    session = make_session(FakeBackboard(None, thread=["unexpected"]))

    assert await session.open_thread("t1") is None

    assert notifications == [("error", "Failed to load conversation")]
    assert session.thread_id == "t1"
    assert session.messages == []
