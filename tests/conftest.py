"""
Shared pytest fixtures for backboard-chat tests.

Provides:
- SSE response builders for httpx.MockTransport handlers
- A BackboardClient factory wired to a mock transport
- An isolated data directory
"""

import httpx
import pytest

from backboard_chat.client import BackboardClient

BASE_URL = "https://api.test"


async def _chunks(parts):
    for part in parts:
        yield part.encode("utf-8") if isinstance(part, str) else part


def event_stream(*parts, status_code: int = 200) -> httpx.Response:
    """Build a text/event-stream response delivered in the given chunks."""
    return httpx.Response(
        status_code,
        headers={"content-type": "text/event-stream"},
        content=_chunks(parts),
    )


@pytest.fixture
def sse_response():
    return event_stream


@pytest.fixture
def make_client():
    """Factory: handler -> BackboardClient talking to httpx.MockTransport."""

    def factory(handler) -> BackboardClient:
        return BackboardClient(
            "test-key",
            base_url=BASE_URL,
            transport=httpx.MockTransport(handler),
        )

    return factory


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    """Point every on-disk path at a temporary directory."""
    import backboard_chat.cli as cli_module

    monkeypatch.setattr(cli_module, "DATA_DIR", tmp_path)
    monkeypatch.setattr(cli_module, "TITLES_DB_PATH", tmp_path / "titles.db")
    return tmp_path
