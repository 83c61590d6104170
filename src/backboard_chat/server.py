"""FastMCP server exposing chat turns, threads, models, memories and titles."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import httpx
from mcp.server.fastmcp import FastMCP

from .client import BackboardClient, BackboardError, resolve_api_key
from .config import MODEL_SEARCH_LIMIT, THREAD_LIST_LIMIT, TITLES_DB_PATH
from .models import ChatMessage, MemoryMode, ModelConfig
from .session import ChatSession
from .storage import TitleCache, TitleStore

# Logging to stderr only; stdout is the MCP JSON-RPC transport
logging.basicConfig(
    level=logging.WARNING,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
)

mcp = FastMCP(
    "backboard-chat",
    instructions=(
        "Talk to hosted Backboard assistants. "
        "Use send_message to post a message to a thread and read the reply. "
        "Use get_document_status to check whether an attached document is indexed. "
        "Use list_thread_titles and rename_thread to manage saved thread titles. "
        "Use list_threads and create_thread to find or start threads, "
        "list_memories to see what an assistant remembers, and "
        "list_model_providers or search_models to pick a model."
    ),
)

# Singleton title cache, reused across tool calls
_titles: TitleCache | None = None


def _get_titles() -> TitleCache:
    global _titles
    if _titles is None:
        _titles = TitleCache(TitleStore(TITLES_DB_PATH))
    return _titles


def format_reply(message: ChatMessage) -> str:
    lines = [message.content or "(empty reply)"]

    if message.retrieved_files:
        lines.append("")
        lines.append("Sources:")
        for f in message.retrieved_files:
            lines.append(f"- {f.filename} (relevance {f.relevance_score:.2f})")

    if message.retrieved_memories:
        lines.append("")
        lines.append("Memories used:")
        for m in message.retrieved_memories:
            preview = m.content[:120] + ("..." if len(m.content) > 120 else "")
            lines.append(f"- {preview}")

    return "\n".join(lines)


@mcp.tool()
async def send_message(
    thread_id: str,
    content: str,
    memory: MemoryMode = "auto",
    llm_provider: str | None = None,
    model_name: str | None = None,
    files: list[str] | None = None,
) -> str:
    """Send a message to an assistant thread and return the assistant's reply.

    Args:
        thread_id: The Backboard thread id
        content: Message text
        memory: Memory mode: off, readonly or auto (default auto)
        llm_provider: Optional provider override (e.g. openai)
        model_name: Optional model override (e.g. gpt-4o)
        files: Optional local file paths to attach
    """
    try:
        api_key = resolve_api_key()
    except BackboardError as e:
        return str(e)

    model = ModelConfig()
    if llm_provider:
        model.llm_provider = llm_provider
    if model_name:
        model.model_name = model_name

    errors: list[str] = []

    def collect(level: str, text: str):
        if level == "error":
            errors.append(text)

    async with BackboardClient(api_key) as client:
        session = ChatSession(
            client,
            titles=_get_titles(),
            model=model,
            memory=memory,
            notify=collect,
        )
        await session.open_thread(thread_id)
        reply = await session.send(content, files=[Path(p) for p in files or []])
        pending_ids = session.poller.pending_ids
        pending = [d.filename for d in session.poller.documents if d.document_id in pending_ids]
        session.close()

    if reply is None:
        partial = session.streaming_message
        text = "; ".join(errors) or "No reply received."
        if partial is not None and partial.content:
            text += f"\n\nPartial reply:\n{partial.content}"
        return text

    result = format_reply(reply)
    if pending:
        result += "\n\nStill indexing: " + ", ".join(pending)
    return result


@mcp.tool()
async def get_document_status(document_id: str) -> str:
    """Check the indexing status of an uploaded document.

    Args:
        document_id: The Backboard document id
    """
    try:
        async with BackboardClient(resolve_api_key()) as client:
            status = await client.get_document_status(document_id)
    except (BackboardError, httpx.HTTPError) as e:
        return f"Could not fetch status for {document_id}: {e}"

    text = f"{status.document_id}: {status.status}"
    if status.status_message:
        text += f" ({status.status_message})"
    return text


@mcp.tool()
def list_thread_titles() -> str:
    """List locally saved thread titles."""
    titles = _get_titles().all()
    if not titles:
        return "No saved thread titles."
    return "\n".join(f"- `{thread_id}`: {title}" for thread_id, title in sorted(titles.items()))


@mcp.tool()
def rename_thread(thread_id: str, title: str) -> str:
    """Save a local title for a thread.

    Args:
        thread_id: The Backboard thread id
        title: New title
    """
    _get_titles().save(thread_id, title)
    return f"Saved title for {thread_id}: {title}"


async def _with_client(call, failure: str) -> tuple[object | None, str | None]:
    try:
        async with BackboardClient(resolve_api_key()) as client:
            return await call(client), None
    except (BackboardError, httpx.HTTPError) as e:
        return None, f"{failure}: {e}"


@mcp.tool()
async def list_threads(assistant_id: str, limit: int = THREAD_LIST_LIMIT) -> str:
    """List the threads of an assistant.

    Args:
        assistant_id: The Backboard assistant id
        limit: Max threads to return (default 100)
    """
    threads, error = await _with_client(
        lambda client: client.list_threads(assistant_id, limit=limit), "Could not list threads"
    )
    if error:
        return error
    if not threads:
        return "No threads."
    saved = _get_titles().all()
    return "\n".join(
        f"- `{t.thread_id}`: {t.title or saved.get(t.thread_id) or '(untitled)'}" for t in threads
    )


@mcp.tool()
async def create_thread(assistant_id: str, title: str | None = None) -> str:
    """Start a new thread with an assistant.

    Args:
        assistant_id: The Backboard assistant id
        title: Optional title, also saved locally
    """
    thread, error = await _with_client(
        lambda client: client.create_thread(assistant_id, title=title), "Could not create thread"
    )
    if error:
        return error
    if title:
        _get_titles().save(thread.thread_id, title)
    return f"Created thread `{thread.thread_id}`"


@mcp.tool()
async def list_memories(assistant_id: str) -> str:
    """List the memories an assistant has stored.

    Args:
        assistant_id: The Backboard assistant id
    """
    memories, error = await _with_client(
        lambda client: client.list_memories(assistant_id), "Could not list memories"
    )
    if error:
        return error
    if not memories:
        return "No memories."
    return "\n".join(f"- {m.content}" for m in memories)


@mcp.tool()
async def list_model_providers() -> str:
    """List the LLM providers available upstream."""
    providers, error = await _with_client(
        lambda client: client.list_providers(), "Could not list providers"
    )
    if error:
        return error
    return ", ".join(providers) if providers else "No providers."


@mcp.tool()
async def search_models(query: str, limit: int = MODEL_SEARCH_LIMIT) -> str:
    """Search models by name across all providers.

    Args:
        query: Part of a model or provider name (e.g. gpt-4o)
        limit: Max results (default 50)
    """
    page, error = await _with_client(
        lambda client: client.search_models(query, limit=limit), "Could not search models"
    )
    if error:
        return error
    if not page.models:
        return f"No models match '{query}'."
    lines = [f"- {m.provider}/{m.name} (context {m.context_limit})" for m in page.models]
    if page.total > len(page.models):
        lines.append(f"({len(page.models)} of {page.total} matches shown)")
    return "\n".join(lines)
