"""One user's chat session: the active thread, its messages and side effects."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Sequence

import httpx

from .accumulator import MessageAccumulator
from .client import (
    BackboardClient,
    BackboardError,
    TransportError,
    is_event_stream,
    json_object,
)
from .config import POLL_INTERVAL
from .interpreter import EventInterpreter
from .models import (
    Attachment,
    ChatMessage,
    DocumentStatusResponse,
    Memory,
    MemoryMode,
    MessageSendRequest,
    ModelConfig,
    RetrievedFile,
    Thread,
    parse_list,
    temp_id,
    utc_now_iso,
)
from .poller import IndexingPoller
from .sse import read_lines
from .storage import TitleCache
from .titles import generate_smart_title

logger = logging.getLogger(__name__)

# notify(level, text) with level one of "info", "success", "error"
Notifier = Callable[[str, str], None]
ContentListener = Callable[[ChatMessage], None]

_LOG_LEVELS = {"info": logging.INFO, "success": logging.INFO, "error": logging.ERROR}


def log_notification(level: str, text: str):
    logger.log(_LOG_LEVELS.get(level, logging.INFO), text)


class ChatSession:
    """Drives chat turns against the upstream API for a single active thread.

    Results of a turn are keyed by the thread they were sent from; anything
    that arrives after the user moved to another thread is dropped.
    """

    def __init__(
        self,
        client: BackboardClient,
        titles: TitleCache | None = None,
        model: ModelConfig | None = None,
        memory: MemoryMode = "auto",
        notify: Notifier = log_notification,
        on_content: ContentListener | None = None,
        poll_interval: float | None = None,
    ):
        self.client = client
        self.titles = titles or TitleCache(None)
        self.model = model or ModelConfig()
        self.memory = memory
        self.notify = notify
        self.on_content = on_content

        self.thread_id: str | None = None
        self.thread: Thread | None = None
        self.messages: list[ChatMessage] = []
        self.streaming_message: ChatMessage | None = None
        self.is_sending = False

        self.poller = IndexingPoller(
            client.get_document_status,
            on_terminal=self._on_indexed,
            interval=POLL_INTERVAL if poll_interval is None else poll_interval,
        )

    def _is_current(self, thread_id: str) -> bool:
        return self.thread_id == thread_id

    async def open_thread(self, thread_id: str, fetch: bool = True) -> Thread | None:
        """Switch to a thread, abandoning indexing and streaming state of the old one."""
        if self.thread_id != thread_id:
            self.poller.stop()
        self.thread_id = thread_id
        self.thread = None
        self.messages = []
        self.streaming_message = None

        if not fetch:
            return None
        try:
            thread = await self.client.get_thread(thread_id)
        except (BackboardError, httpx.HTTPError) as e:
            logger.error("Failed to load thread %s: %s", thread_id, e)
            self.notify("error", "Failed to load conversation")
            return None

        if not self._is_current(thread_id):
            return None
        if not thread.title:
            thread.title = self.titles.get(thread_id)
        self.thread = thread
        self.messages = list(thread.messages)
        return thread

    async def send(
        self,
        content: str,
        files: Sequence[Path] = (),
        stream: bool = True,
    ) -> ChatMessage | None:
        """Send a user message and return the assistant's final reply.

        Returns None when the turn was refused, failed, or was abandoned
        because the active thread changed.
        """
        if self.thread_id is None:
            raise RuntimeError("No thread is open")
        if self.poller.is_indexing:
            self.notify("error", "Please wait for documents to finish indexing")
            return None

        thread_id = self.thread_id
        is_first_message = not self.messages
        has_no_title = self.thread is None or not self.thread.title

        self.is_sending = True
        self.streaming_message = None
        try:
            self.messages.append(
                ChatMessage(
                    message_id=temp_id(),
                    thread_id=thread_id,
                    role="user",
                    content=content,
                    attachments=[
                        Attachment(document_id=f"temp-{i}", filename=Path(f).name)
                        for i, f in enumerate(files)
                    ],
                    created_at=utc_now_iso(),
                )
            )
            if is_first_message and has_no_title and content:
                await self.generate_title(thread_id, content)

            request = MessageSendRequest(
                content=content,
                stream=stream,
                memory=self.memory,
                llm_provider=self.model.llm_provider,
                model_name=self.model.model_name,
            )
            reply = await self._exchange(thread_id, request, files)
        except (BackboardError, httpx.HTTPError) as e:
            logger.error("Error sending message to thread %s: %s", thread_id, e)
            if self._is_current(thread_id):
                self.notify("error", "Failed to send message")
            return None
        finally:
            self.is_sending = False

        if reply is None or not self._is_current(thread_id):
            return None
        self.messages.append(reply)
        return reply

    async def _exchange(
        self, thread_id: str, request: MessageSendRequest, files: Sequence[Path]
    ) -> ChatMessage | None:
        async with self.client.send_message(thread_id, request, files) as response:
            if is_event_stream(response):
                return await self._consume_stream(thread_id, response)
            await response.aread()
            return self._consume_json(thread_id, json_object(response))

    async def _consume_stream(
        self, thread_id: str, response: httpx.Response
    ) -> ChatMessage | None:
        accumulator = MessageAccumulator(thread_id)
        interpreter = EventInterpreter(
            accumulator, on_attachments=lambda docs: self._track(thread_id, docs)
        )
        if self._is_current(thread_id):
            self.streaming_message = accumulator.snapshot()

        try:
            async for line in read_lines(response.aiter_bytes()):
                if not self._is_current(thread_id):
                    logger.info("Thread changed, abandoning stream for %s", thread_id)
                    return None
                outcome = interpreter.feed_line(line)
                if outcome.content_changed:
                    self._publish(accumulator.snapshot())
                if outcome.completed:
                    logger.debug("Stream for %s completed", thread_id)
        except httpx.HTTPError as e:
            raise TransportError(
                f"Stream interrupted: {e}", partial=accumulator.snapshot()
            ) from e

        interpreter.finish()
        if not self._is_current(thread_id):
            return None
        self.streaming_message = None
        return accumulator.finalize()

    def _consume_json(self, thread_id: str, data: dict) -> ChatMessage | None:
        attachments = parse_list(Attachment, data.get("attachments")) or []
        self._track(thread_id, [a for a in attachments if a.status != "indexed"])

        content = data.get("content")
        if not isinstance(content, str) or not content:
            return None
        message_id = data.get("message_id")
        return ChatMessage(
            message_id=message_id if isinstance(message_id, str) and message_id else temp_id("resp"),
            thread_id=thread_id,
            role="assistant",
            content=content,
            attachments=attachments,
            retrieved_memories=parse_list(Memory, data.get("retrieved_memories")) or [],
            retrieved_files=parse_list(RetrievedFile, data.get("retrieved_files")) or [],
            created_at=utc_now_iso(),
        )

    def _publish(self, snapshot: ChatMessage):
        self.streaming_message = snapshot
        if self.on_content is not None:
            self.on_content(snapshot)

    def _track(self, thread_id: str, documents: list[Attachment]):
        if not self._is_current(thread_id):
            return
        for document in documents:
            self.poller.track(document)

    def _on_indexed(self, document: Attachment, response: DocumentStatusResponse):
        if response.status == "indexed":
            self.notify("success", f'Document "{document.filename}" indexed successfully')
        else:
            reason = response.status_message or "Unknown error"
            self.notify("error", f'Document "{document.filename}" failed to index: {reason}')

    async def generate_title(self, thread_id: str, first_message: str) -> str:
        """Title a new thread and persist it upstream and locally, best-effort."""
        title = generate_smart_title(first_message)
        if self.thread is not None and self.thread.thread_id == thread_id:
            self.thread.title = title

        try:
            await self.client.update_thread(thread_id, title=title)
        except (BackboardError, httpx.HTTPError) as e:
            logger.warning("Could not save title upstream for %s: %s", thread_id, e)

        self.titles.save(thread_id, title)
        return title

    async def wait_for_indexing(self):
        """Block until the poller has nothing left to check."""
        await self.poller.wait()

    def close(self):
        self.poller.stop()
