"""Poll document indexing status until every tracked document settles."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from .config import POLL_INTERVAL
from .models import TERMINAL_STATUSES, Attachment, DocumentStatusResponse

logger = logging.getLogger(__name__)

StatusFetcher = Callable[[str], Awaitable[DocumentStatusResponse]]
TerminalCallback = Callable[[Attachment, DocumentStatusResponse], None]


class IndexingPoller:
    """Constant-interval poller for documents attached to a chat turn.

    A background task runs while anything is pending and exits on its own
    once every document reached indexed or failed.
    """

    def __init__(
        self,
        fetch_status: StatusFetcher,
        on_terminal: TerminalCallback | None = None,
        interval: float = POLL_INTERVAL,
    ):
        self._fetch_status = fetch_status
        self._on_terminal = on_terminal
        self.interval = interval
        self._documents: dict[str, Attachment] = {}
        self._pending: set[str] = set()
        self._task: asyncio.Task | None = None

    @property
    def documents(self) -> list[Attachment]:
        return list(self._documents.values())

    @property
    def pending_ids(self) -> set[str]:
        return set(self._pending)

    @property
    def is_indexing(self) -> bool:
        return bool(self._pending)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def track(self, document: Attachment):
        """Start watching a document; terminal or already pending documents are ignored."""
        if document.status in TERMINAL_STATUSES or document.document_id in self._pending:
            return
        self._documents[document.document_id] = document.model_copy()
        self._pending.add(document.document_id)
        if not self.running:
            self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self):
        """Cancel polling and forget every tracked document."""
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self._documents.clear()
        self._pending.clear()

    async def wait(self):
        """Wait for the polling task to exit on its own (or be stopped)."""
        task = self._task
        if task is None or task.done():
            return
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise

    async def _run(self):
        while self._pending:
            await asyncio.sleep(self.interval)
            await self.poll_once()
        logger.debug("No documents pending, polling stopped")

    async def poll_once(self):
        """Check every pending document once, concurrently."""
        doc_ids = sorted(self._pending)
        results = await asyncio.gather(
            *(self._fetch_status(doc_id) for doc_id in doc_ids),
            return_exceptions=True,
        )
        for doc_id, result in zip(doc_ids, results):
            if isinstance(result, BaseException):
                logger.warning("Status check for document %s failed: %s", doc_id, result)
                continue
            self._apply(doc_id, result)

    def _apply(self, doc_id: str, response: DocumentStatusResponse):
        document = self._documents.get(doc_id)
        if document is None or doc_id not in self._pending:
            # stop() ran while the request was in flight
            return

        document.status = response.status
        if response.status not in TERMINAL_STATUSES:
            return

        self._pending.discard(doc_id)
        logger.info("Document %s (%s) is %s", doc_id, document.filename, response.status)
        if self._on_terminal is not None:
            self._on_terminal(document, response)
