"""Interpret SSE lines from the chat-send endpoint into message updates."""

from __future__ import annotations

import json
import logging
from typing import Callable, NamedTuple

from .accumulator import MessageAccumulator
from .models import Attachment, Memory, RetrievedFile, parse_list
from .sse import parse_sse_line

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
TERMINAL_EVENTS = frozenset({"done", "end", "complete", "message_stop", "message_complete"})
# Checked in order; the first non-empty string wins
DELTA_FIELDS = ("content", "delta", "text", "chunk")


class LineOutcome(NamedTuple):
    content_changed: bool = False
    completed: bool = False


NO_CHANGE = LineOutcome()


class EventInterpreter:
    """Line-by-line state machine for one streamed assistant turn.

    Tracks the current event name (reset by a blank line or replaced by a new
    event: line) and whether the stream has logically completed. Every call
    reports whether the accumulated content changed and whether this call was
    the one that completed the stream.
    """

    def __init__(
        self,
        accumulator: MessageAccumulator,
        on_attachments: Callable[[list[Attachment]], None] | None = None,
    ):
        self.accumulator = accumulator
        self.current_event = ""
        self.stream_completed = False
        self._on_attachments = on_attachments

    def feed_line(self, line: str) -> LineOutcome:
        if not line:
            self.current_event = ""
            return NO_CHANGE

        parsed = parse_sse_line(line)
        if parsed is None:
            return NO_CHANGE
        if parsed.field == "event":
            self.current_event = parsed.value
            return NO_CHANGE
        return self.feed_data(parsed.value)

    def feed_data(self, payload: str) -> LineOutcome:
        acc = self.accumulator
        before = acc.content
        was_completed = self.stream_completed

        self._interpret(payload)

        return LineOutcome(
            content_changed=acc.content != before,
            completed=self.stream_completed and not was_completed,
        )

    def finish(self) -> LineOutcome:
        """The byte stream ended; treat a missing terminal signal as normal completion."""
        if self.stream_completed:
            return NO_CHANGE
        logger.debug("Stream ended without a terminal event, completing")
        self.stream_completed = True
        return LineOutcome(completed=True)

    def _interpret(self, payload: str):
        if payload == DONE_SENTINEL:
            self.stream_completed = True
            return
        if self.stream_completed:
            logger.debug("Ignoring data after completion: %.80s", payload)
            return
        if not payload:
            return

        try:
            data = json.loads(payload)
        except ValueError:
            data = None
        if not isinstance(data, dict):
            # Plain-text payloads carry no role, always the assistant's
            self.accumulator.apply_delta(payload)
            return

        role = data.get("role")
        if role == "user":
            logger.debug("Dropping echoed user message")
            return

        message_id = data.get("message_id")
        if isinstance(message_id, str) and message_id:
            self.accumulator.set_message_id(message_id)

        self.accumulator.overwrite_metadata(
            memories=parse_list(Memory, data.get("retrieved_memories")),
            files=parse_list(RetrievedFile, data.get("retrieved_files")),
        )

        attachments = parse_list(Attachment, data.get("attachments"))
        if attachments is not None:
            self._handle_attachments(attachments)

        if self.current_event in TERMINAL_EVENTS:
            self.stream_completed = True
            content = data.get("content")
            if isinstance(content, str) and self.accumulator.adopt_content(content):
                logger.debug("Adopted full content from terminal %r event", self.current_event)
            return

        delta = next(
            (data[f] for f in DELTA_FIELDS if isinstance(data.get(f), str) and data[f]),
            None,
        )
        if delta is None:
            return
        if role is None or role == "assistant":
            self.accumulator.apply_delta(delta)
        else:
            logger.debug("Not appending delta with role %r", role)

    def _handle_attachments(self, attachments: list[Attachment]):
        self.accumulator.set_attachments(attachments)
        pending = [a for a in attachments if a.status != "indexed"]
        if pending and self._on_attachments is not None:
            self._on_attachments(pending)
