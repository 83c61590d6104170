"""CLI interface for backboard-chat."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click
import httpx

from . import __version__
from .client import BackboardClient, BackboardError, resolve_api_key
from .config import (
    DATA_DIR,
    DEFAULT_LLM_PROVIDER,
    DEFAULT_MODEL_NAME,
    MODEL_SEARCH_LIMIT,
    THREAD_LIST_LIMIT,
    TITLES_DB_PATH,
)
from .models import ChatMessage, ModelConfig
from .session import ChatSession
from .storage import TitleCache, TitleStore

_STYLES = {"success": {"fg": "green"}, "error": {"fg": "red"}, "info": {}}


def _open_titles() -> TitleCache:
    return TitleCache(TitleStore(TITLES_DB_PATH))


def _api_key(explicit: str | None) -> str:
    try:
        return resolve_api_key(explicit)
    except BackboardError as e:
        raise click.ClickException(str(e))


def _call_api(api_key: str | None, call):
    """Run one client coroutine, turning upstream failures into CLI errors."""
    key = _api_key(api_key)

    async def run():
        async with BackboardClient(key) as client:
            return await call(client)

    try:
        return asyncio.run(run())
    except (BackboardError, httpx.HTTPError) as e:
        raise click.ClickException(str(e))


def _notify(level: str, text: str):
    click.echo(click.style(text, **_STYLES.get(level, {})), err=True)


class _LivePrinter:
    """Echo only the newly streamed suffix of each snapshot."""

    def __init__(self):
        self.printed = 0

    def __call__(self, snapshot: ChatMessage):
        click.echo(snapshot.content[self.printed:], nl=False)
        self.printed = len(snapshot.content)


@click.group()
@click.version_option(version=__version__, prog_name="backboard-chat")
@click.option("-v", "--verbose", is_flag=True, help="Log debug output to stderr")
def cli(verbose: bool):
    """backboard-chat: chat with hosted Backboard assistants from the terminal.

    Set BACKBOARD_API_KEY (or pass --api-key) before sending messages.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


@cli.command()
@click.argument("thread_id")
@click.argument("message")
@click.option("-f", "--file", "files", multiple=True, type=click.Path(exists=True, dir_okay=False),
              help="Attach a document (repeatable)")
@click.option("--memory", type=click.Choice(["off", "readonly", "auto"], case_sensitive=False),
              default="auto", show_default=True)
@click.option("--provider", default=DEFAULT_LLM_PROVIDER, show_default=True)
@click.option("--model", "model_name", default=DEFAULT_MODEL_NAME, show_default=True)
@click.option("--no-stream", is_flag=True, help="Wait for the whole reply instead of streaming")
@click.option("--wait-indexing", is_flag=True, help="Keep polling until attachments are indexed")
@click.option("--api-key", help="API key (BACKBOARD_API_KEY takes precedence)")
def send(
    thread_id: str,
    message: str,
    files: tuple[str, ...],
    memory: str,
    provider: str,
    model_name: str,
    no_stream: bool,
    wait_indexing: bool,
    api_key: str | None,
):
    """Send MESSAGE to THREAD_ID and print the assistant's reply.

    Example:
        backboard-chat send 3f1c... "Summarize the attached report" -f report.pdf
    """
    key = _api_key(api_key)
    printer = _LivePrinter()

    async def run() -> ChatMessage | None:
        async with BackboardClient(key) as client:
            session = ChatSession(
                client,
                titles=_open_titles(),
                model=ModelConfig(llm_provider=provider, model_name=model_name),
                memory=memory.lower(),
                notify=_notify,
                on_content=printer,
            )
            await session.open_thread(thread_id)
            reply = await session.send(message, files=[Path(f) for f in files], stream=not no_stream)
            if reply is not None and wait_indexing and session.poller.is_indexing:
                click.echo()
                click.echo("Waiting for documents to finish indexing...", err=True)
                await session.wait_for_indexing()
            session.close()
            return reply

    reply = asyncio.run(run())
    if reply is None:
        sys.exit(1)

    # Non-streamed (or fully recovered) replies were never echoed live
    click.echo(reply.content[printer.printed:])

    if reply.retrieved_files:
        click.echo()
        click.echo(click.style("Sources", bold=True))
        for f in reply.retrieved_files:
            click.echo(f"  {f.filename} ({f.relevance_score:.2f})")
    if reply.retrieved_memories:
        click.echo(click.style(f"  {len(reply.retrieved_memories)} memories used", dim=True))


@cli.command()
@click.argument("document_id")
@click.option("--api-key", help="API key (BACKBOARD_API_KEY takes precedence)")
def status(document_id: str, api_key: str | None):
    """Show the indexing status of a document."""
    result = _call_api(api_key, lambda client: client.get_document_status(document_id))

    click.echo(f"{result.document_id}: {result.status}")
    if result.status_message:
        click.echo(f"  {result.status_message}")


@cli.command()
@click.argument("assistant_id")
@click.option("--limit", default=THREAD_LIST_LIMIT, show_default=True, help="Max threads to list")
@click.option("--api-key", help="API key (BACKBOARD_API_KEY takes precedence)")
def threads(assistant_id: str, limit: int, api_key: str | None):
    """List the threads of an assistant."""
    found = _call_api(api_key, lambda client: client.list_threads(assistant_id, limit=limit))
    if not found:
        click.echo("No threads.")
        return
    saved = _open_titles().all()
    for thread in found:
        title = thread.title or saved.get(thread.thread_id) or "(untitled)"
        click.echo(f"{thread.thread_id}  {title}  {thread.created_at}".rstrip())


@cli.command("new-thread")
@click.argument("assistant_id")
@click.option("--title", help="Title for the new thread (also saved locally)")
@click.option("--api-key", help="API key (BACKBOARD_API_KEY takes precedence)")
def new_thread(assistant_id: str, title: str | None, api_key: str | None):
    """Create a thread for ASSISTANT_ID and print its id."""
    thread = _call_api(api_key, lambda client: client.create_thread(assistant_id, title=title))
    if title:
        _open_titles().save(thread.thread_id, title)
    click.echo(thread.thread_id)


@cli.command()
@click.argument("assistant_id")
@click.option("--api-key", help="API key (BACKBOARD_API_KEY takes precedence)")
def memories(assistant_id: str, api_key: str | None):
    """List what an assistant remembers."""
    found = _call_api(api_key, lambda client: client.list_memories(assistant_id))
    if not found:
        click.echo("No memories.")
        return
    for memory in found:
        click.echo(f"{memory.memory_id}  {memory.content}")


@cli.command()
@click.option("--api-key", help="API key (BACKBOARD_API_KEY takes precedence)")
def providers(api_key: str | None):
    """List model providers."""
    for name in _call_api(api_key, lambda client: client.list_providers()):
        click.echo(name)


@cli.command()
@click.argument("query", required=False)
@click.option("--provider", help="List this provider's models instead of searching")
@click.option("--limit", default=MODEL_SEARCH_LIMIT, show_default=True)
@click.option("--api-key", help="API key (BACKBOARD_API_KEY takes precedence)")
def models(query: str | None, provider: str | None, limit: int, api_key: str | None):
    """Search models by name, or list one provider's models.

    Example:
        backboard-chat models gpt-4o
        backboard-chat models --provider anthropic
    """
    if provider:
        page = _call_api(api_key, lambda client: client.list_provider_models(provider, limit=limit))
    elif query and query.strip():
        page = _call_api(api_key, lambda client: client.search_models(query, limit=limit))
    else:
        raise click.UsageError("Give a QUERY or --provider.")

    if not page.models:
        click.echo("No models found.")
        return
    for model in page.models:
        click.echo(f"{model.provider}/{model.name}  context {model.context_limit}")
    if page.total > len(page.models):
        click.echo(click.style(f"  showing {len(page.models)} of {page.total}", dim=True))


@cli.command()
def titles():
    """List saved thread titles."""
    saved = _open_titles().all()
    if not saved:
        click.echo("No saved titles.")
        return
    for thread_id, title in sorted(saved.items()):
        click.echo(f"{thread_id}  {title}")


@cli.command()
@click.argument("thread_id")
@click.argument("title")
def rename(thread_id: str, title: str):
    """Save a local title for THREAD_ID."""
    _open_titles().save(thread_id, title)
    click.echo(f"Saved: {thread_id} → {title}")


@cli.command()
@click.argument("thread_id")
def forget(thread_id: str):
    """Delete the saved title for THREAD_ID."""
    _open_titles().delete(thread_id)
    click.echo(f"Forgot title for {thread_id}")


@cli.command()
def serve():
    """Start the MCP server (stdio transport)."""
    from .server import mcp

    mcp.run(transport="stdio")


@cli.command()
def where():
    """Print where local data is stored."""
    click.echo(f"Data directory: {DATA_DIR}")
    click.echo(f"Titles:         {TITLES_DB_PATH}")
