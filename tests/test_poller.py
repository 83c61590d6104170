"""
Tests for the document indexing poller.
"""

import asyncio

import pytest

from backboard_chat.models import Attachment, DocumentStatusResponse
from backboard_chat.poller import IndexingPoller


class FakeStatusEndpoint:
    """Serves scripted statuses per document; exceptions in the script are raised."""

    def __init__(self, **scripts):
        self.scripts = {doc_id: list(statuses) for doc_id, statuses in scripts.items()}
        self.calls: list[str] = []

    async def __call__(self, document_id: str) -> DocumentStatusResponse:
        self.calls.append(document_id)
        script = self.scripts[document_id]
        step = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(step, Exception):
            raise step
        return DocumentStatusResponse(
            document_id=document_id,
            status=step,
            status_message="bad PDF" if step == "failed" else None,
        )


@pytest.fixture
def notifications():
    return []


def make_poller(endpoint, notifications, interval=10.0):
    return IndexingPoller(
        endpoint,
        on_terminal=lambda doc, resp: notifications.append((doc.document_id, resp.status)),
        interval=interval,
    )


async def test_indexed_document_removed_with_single_notification(notifications):
    endpoint = FakeStatusEndpoint(d1=["indexed"])
    poller = make_poller(endpoint, notifications)
    poller.track(Attachment(document_id="d1", filename="a.pdf", status="pending"))

    await poller.poll_once()
    await poller.poll_once()

    assert notifications == [("d1", "indexed")]
    assert poller.pending_ids == set()
    assert endpoint.calls == ["d1"]
    poller.stop()


async def test_failed_document_notifies_once(notifications):
    poller = make_poller(FakeStatusEndpoint(d1=["failed"]), notifications)
    poller.track(Attachment(document_id="d1", filename="a.pdf"))

    await poller.poll_once()

    assert notifications == [("d1", "failed")]
    assert poller.documents[0].status == "failed"
    poller.stop()


async def test_processing_updates_status_without_notification(notifications):
    poller = make_poller(FakeStatusEndpoint(d1=["processing", "indexed"]), notifications)
    poller.track(Attachment(document_id="d1", filename="a.pdf"))

    await poller.poll_once()
    assert poller.documents[0].status == "processing"
    assert notifications == []
    assert poller.is_indexing

    await poller.poll_once()
    assert notifications == [("d1", "indexed")]
    assert not poller.is_indexing
    poller.stop()


async def test_failed_status_check_is_retried_next_tick(notifications):
    endpoint = FakeStatusEndpoint(d1=[RuntimeError("503"), "indexed"])
    poller = make_poller(endpoint, notifications)
    poller.track(Attachment(document_id="d1", filename="a.pdf"))

    await poller.poll_once()
    assert poller.is_indexing
    assert notifications == []

    await poller.poll_once()
    assert notifications == [("d1", "indexed")]
    poller.stop()


async def test_one_failure_does_not_block_other_documents(notifications):
    endpoint = FakeStatusEndpoint(d1=[RuntimeError("boom"), "indexed"], d2=["indexed"])
    poller = make_poller(endpoint, notifications)
    poller.track(Attachment(document_id="d1", filename="a.pdf"))
    poller.track(Attachment(document_id="d2", filename="b.pdf"))

    await poller.poll_once()

    assert notifications == [("d2", "indexed")]
    assert poller.pending_ids == {"d1"}
    poller.stop()


async def test_terminal_documents_are_not_tracked(notifications):
    poller = make_poller(FakeStatusEndpoint(), notifications)
    poller.track(Attachment(document_id="d1", filename="a.pdf", status="indexed"))
    poller.track(Attachment(document_id="d2", filename="b.pdf", status="failed"))

    assert poller.documents == []
    assert not poller.running


async def test_timer_stops_itself_when_everything_settles(notifications):
    endpoint = FakeStatusEndpoint(d1=["processing", "indexed"])
    poller = make_poller(endpoint, notifications, interval=0.01)
    poller.track(Attachment(document_id="d1", filename="a.pdf"))
    assert poller.running

    await asyncio.wait_for(poller.wait(), timeout=2)

    assert not poller.running
    assert notifications == [("d1", "indexed")]
    assert endpoint.calls == ["d1", "d1"]


async def test_stop_cancels_timer_and_forgets_documents(notifications):
    endpoint = FakeStatusEndpoint(d1=["indexed"])
    poller = make_poller(endpoint, notifications, interval=10.0)
    poller.track(Attachment(document_id="d1", filename="a.pdf"))

    poller.stop()
    await asyncio.sleep(0)

    assert not poller.running
    assert poller.documents == []
    assert endpoint.calls == []
    await poller.wait()


async def test_track_while_running_reuses_timer(notifications):
    poller = make_poller(FakeStatusEndpoint(d1=["pending"], d2=["pending"]), notifications)
    poller.track(Attachment(document_id="d1", filename="a.pdf"))
    task = poller._task
    poller.track(Attachment(document_id="d2", filename="b.pdf"))

    assert poller._task is task
    assert poller.pending_ids == {"d1", "d2"}
    poller.stop()


async def test_retracking_pending_document_keeps_polled_status(notifications):
    poller = make_poller(FakeStatusEndpoint(d1=["processing"]), notifications)
    poller.track(Attachment(document_id="d1", filename="a.pdf", status="pending"))
    await poller.poll_once()

    poller.track(Attachment(document_id="d1", filename="a.pdf", status="pending"))

    assert [d.status for d in poller.documents] == ["processing"]
    assert poller.pending_ids == {"d1"}
    poller.stop()
