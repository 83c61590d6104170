"""Server-sent event framing: byte stream → lines → classified fields."""

from __future__ import annotations

import codecs
import logging
from typing import AsyncIterable, AsyncIterator, NamedTuple

logger = logging.getLogger(__name__)


class SSELine(NamedTuple):
    field: str  # "event" or "data"
    value: str


def parse_sse_line(line: str) -> SSELine | None:
    """Classify a single SSE line.

    Comments (leading ':'), blank lines and unknown fields return None.
    Resetting the current event on blank lines is left to the caller.
    """
    if not line or line.startswith(":"):
        return None
    if line.startswith("event:"):
        return SSELine("event", line[6:].strip())
    if line.startswith("data:"):
        return SSELine("data", line[5:].strip())
    return None


async def read_lines(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Decode a chunked byte stream into text lines.

    Multi-byte characters split across chunks are handled by an incremental
    decoder. An unterminated trailing line is held until the next chunk, and
    yielded as a final line when the source ends.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""

    async for chunk in chunks:
        buffer += decoder.decode(chunk)
        *lines, buffer = buffer.split("\n")
        for line in lines:
            yield line.removesuffix("\r")

    buffer += decoder.decode(b"", final=True)
    if buffer:
        logger.debug("Flushing unterminated trailing line (%d chars)", len(buffer))
        yield buffer.removesuffix("\r")
