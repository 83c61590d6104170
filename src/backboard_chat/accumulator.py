"""In-progress assistant message built up from streamed deltas."""

from __future__ import annotations

import logging

from .models import Attachment, ChatMessage, Memory, RetrievedFile, temp_id, utc_now_iso

logger = logging.getLogger(__name__)


class MessageAccumulator:
    """Holds one assistant reply while it streams in.

    Content only grows until finalize(); after that every mutation is ignored
    and finalize() keeps returning the same frozen snapshot.
    """

    def __init__(self, thread_id: str, message_id: str | None = None):
        self.thread_id = thread_id
        self.message_id = message_id or temp_id("resp")
        self.content = ""
        self.retrieved_memories: list[Memory] = []
        self.retrieved_files: list[RetrievedFile] = []
        self.attachments: list[Attachment] = []
        self.created_at = utc_now_iso()
        self._final: ChatMessage | None = None

    @property
    def finalized(self) -> bool:
        return self._final is not None

    def _frozen(self, what: str) -> bool:
        if self._final is not None:
            logger.debug("Ignoring %s on finalized message %s", what, self.message_id)
            return True
        return False

    def apply_delta(self, text: str) -> ChatMessage:
        """Append a content fragment and return the new snapshot."""
        if self._frozen("delta"):
            return self._final
        if text:
            self.content += text
        return self.snapshot()

    def adopt_content(self, text: str) -> bool:
        """Take a full reply as the content, only if nothing has streamed yet."""
        if self._frozen("full content") or self.content or not text:
            return False
        self.content = text
        return True

    def set_message_id(self, message_id: str):
        if not self._frozen("message id") and message_id:
            self.message_id = message_id

    def overwrite_metadata(
        self,
        memories: list[Memory] | None = None,
        files: list[RetrievedFile] | None = None,
    ):
        """Replace citation lists; these arrive as full snapshots, not deltas."""
        if self._frozen("metadata"):
            return
        if memories is not None:
            self.retrieved_memories = list(memories)
        if files is not None:
            self.retrieved_files = list(files)

    def set_attachments(self, attachments: list[Attachment]):
        if not self._frozen("attachments"):
            self.attachments = list(attachments)

    def snapshot(self) -> ChatMessage:
        if self._final is not None:
            return self._final
        return ChatMessage(
            message_id=self.message_id,
            thread_id=self.thread_id,
            role="assistant",
            content=self.content,
            attachments=list(self.attachments),
            retrieved_memories=list(self.retrieved_memories),
            retrieved_files=list(self.retrieved_files),
            created_at=self.created_at,
        )

    def finalize(self) -> ChatMessage:
        if self._final is None:
            self._final = self.snapshot()
        return self._final
