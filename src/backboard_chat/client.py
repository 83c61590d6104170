"""Async HTTP client for the hosted Backboard assistant API."""

from __future__ import annotations

import asyncio
import logging
import math
import mimetypes
import os
import re
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Sequence, TypeVar
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError

from .config import (
    API_BASE,
    API_KEY_ENV,
    API_KEY_HEADER,
    API_KEY_PLACEHOLDER,
    MODEL_SEARCH_BATCH_SIZE,
    MODEL_SEARCH_LIMIT,
    MODEL_SEARCH_MAX_EXTRA_BATCHES,
    REQUEST_TIMEOUT,
    STREAM_READ_TIMEOUT,
    THREAD_LIST_LIMIT,
)
from .models import (
    ChatMessage,
    DocumentStatusResponse,
    Memory,
    MessageSendRequest,
    ModelInfo,
    ModelPage,
    Thread,
    parse_list,
)

logger = logging.getLogger(__name__)

_NON_PRINTABLE = re.compile(r"[^\x20-\x7E]")

M = TypeVar("M", bound=BaseModel)


class BackboardError(Exception):
    """Base class for errors talking to the upstream API."""


class ApiKeyNotConfiguredError(BackboardError):
    def __init__(self):
        super().__init__(
            f"API key not configured. Set {API_KEY_ENV} or pass --api-key."
        )


class BackboardAPIError(BackboardError):
    """The upstream answered with a non-2xx status."""

    def __init__(self, status_code: int, detail: str = ""):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Backboard API error: {status_code} - {detail}".rstrip(" -"))


class TransportError(BackboardError):
    """The connection failed or dropped, possibly mid-stream."""

    def __init__(self, message: str, partial=None):
        super().__init__(message)
        # Last snapshot delivered before the failure, if streaming had begun
        self.partial = partial


class InvalidResponseError(BackboardError):
    """The upstream answered 2xx with a body that cannot be used."""


def sanitize_api_key(key: str) -> str:
    """Drop zero-width spaces and other non-printable characters."""
    return _NON_PRINTABLE.sub("", key).strip()


def resolve_api_key(explicit: str | None = None) -> str:
    """Environment key first (unless left as the placeholder), then the explicit one."""
    for candidate in (os.environ.get(API_KEY_ENV), explicit):
        if not candidate or candidate == API_KEY_PLACEHOLDER:
            continue
        cleaned = sanitize_api_key(candidate)
        if cleaned:
            return cleaned
    raise ApiKeyNotConfiguredError()


async def _raise_for_status(response: httpx.Response):
    if response.is_success:
        return
    try:
        await response.aread()
        detail = response.text
    except httpx.HTTPError:
        detail = "Unable to read error response"
    logger.error("Backboard API error: %s %s", response.status_code, detail[:500])
    raise BackboardAPIError(response.status_code, detail)


def json_object(response: httpx.Response) -> dict:
    """Decode a response body that must be a JSON object."""
    try:
        data = response.json()
    except ValueError as e:
        raise InvalidResponseError(f"Expected a JSON body: {e}") from e
    if not isinstance(data, dict):
        raise InvalidResponseError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def _validate(model: type[M], data: Any) -> M:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        logger.error("Unusable %s payload: %s", model.__name__, e)
        raise InvalidResponseError(f"Malformed {model.__name__} in response") from e


def _prepare_thread(data: dict, thread_id: str | None = None) -> dict:
    """Fill ids the endpoint leaves implicit and drop malformed messages."""
    if thread_id is not None:
        data.setdefault("thread_id", thread_id)
    messages = data.get("messages")
    if isinstance(messages, list):
        for message in messages:
            if isinstance(message, dict):
                message.setdefault("thread_id", data.get("thread_id"))
    data["messages"] = parse_list(ChatMessage, messages) or []
    return data


def _model_rank(model: ModelInfo, needle: str) -> tuple:
    # exact name, then prefix, then alphabetical
    name = model.name.lower()
    return (name != needle, not name.startswith(needle), name)


class BackboardClient:
    """Thin async wrapper around the upstream REST endpoints."""

    def __init__(
        self,
        api_key: str,
        base_url: str = API_BASE,
        transport: httpx.AsyncBaseTransport | None = None,
        stream_timeout: float = STREAM_READ_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.stream_timeout = stream_timeout
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            headers={API_KEY_HEADER: api_key},
            timeout=httpx.Timeout(REQUEST_TIMEOUT),
            transport=transport,
        )

    async def __aenter__(self) -> BackboardClient:
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self):
        await self._http.aclose()

    async def _get(self, path: str, params: dict | None = None) -> httpx.Response:
        response = await self._http.get(path, params=params)
        await _raise_for_status(response)
        return response

    @asynccontextmanager
    async def send_message(
        self,
        thread_id: str,
        request: MessageSendRequest,
        files: Sequence[Path] = (),
    ) -> AsyncIterator[httpx.Response]:
        """Post a message and yield the open response.

        The body is either an SSE stream (``text/event-stream``) or a single
        JSON message; the caller decides by the content type.
        """
        path = f"/threads/{thread_id}/messages"
        # A stalled stream is aborted after stream_timeout seconds without data
        timeout = httpx.Timeout(REQUEST_TIMEOUT, read=self.stream_timeout)

        if files:
            uploads = [
                (
                    "files",
                    (
                        file.name,
                        file.read_bytes(),
                        mimetypes.guess_type(file.name)[0] or "application/octet-stream",
                    ),
                )
                for file in files
            ]
            stream = self._http.stream(
                "POST", path, data=request.to_form(), files=uploads, timeout=timeout
            )
        else:
            stream = self._http.stream(
                "POST", path, json=request.model_dump(exclude_none=True), timeout=timeout
            )

        logger.debug("POST %s (stream=%s, files=%d)", path, request.stream, len(files))
        async with stream as response:
            await _raise_for_status(response)
            yield response

    async def get_document_status(self, document_id: str) -> DocumentStatusResponse:
        data = json_object(await self._get(f"/documents/{document_id}/status"))
        data.setdefault("document_id", document_id)
        return _validate(DocumentStatusResponse, data)

    async def get_thread(self, thread_id: str) -> Thread:
        data = json_object(await self._get(f"/threads/{thread_id}"))
        return _validate(Thread, _prepare_thread(data, thread_id))

    async def update_thread(self, thread_id: str, title: str) -> dict:
        response = await self._http.patch(f"/threads/{thread_id}", json={"title": title})
        await _raise_for_status(response)
        return json_object(response) if response.content else {}

    async def list_threads(
        self, assistant_id: str, skip: int = 0, limit: int = THREAD_LIST_LIMIT
    ) -> list[Thread]:
        response = await self._get(
            f"/assistants/{assistant_id}/threads", params={"skip": skip, "limit": limit}
        )
        items = self._json_list(response, "threads")
        return parse_list(Thread, [_prepare_thread(t) for t in items if isinstance(t, dict)])

    async def create_thread(self, assistant_id: str, title: str | None = None) -> Thread:
        body = {"title": title} if title else {}
        response = await self._http.post(f"/assistants/{assistant_id}/threads", json=body)
        await _raise_for_status(response)
        data = json_object(response)
        data.setdefault("assistant_id", assistant_id)
        return _validate(Thread, _prepare_thread(data))

    async def list_memories(self, assistant_id: str) -> list[Memory]:
        response = await self._get(f"/assistants/{assistant_id}/memories")
        return parse_list(Memory, self._json_list(response, "memories"))

    async def list_providers(self) -> list[str]:
        data = json_object(await self._get("/models/providers"))
        providers = data.get("providers")
        if not isinstance(providers, list):
            return []
        return [p for p in providers if isinstance(p, str)]

    async def list_provider_models(
        self, provider: str, skip: int = 0, limit: int = MODEL_SEARCH_BATCH_SIZE
    ) -> ModelPage:
        response = await self._get(
            f"/models/provider/{quote(provider, safe='')}",
            params={"skip": skip, "limit": limit},
        )
        data = json_object(response)
        models = parse_list(ModelInfo, data.get("models")) or []
        total = data.get("total")
        return ModelPage(models=models, total=total if isinstance(total, int) else len(models))

    async def search_models(self, query: str, limit: int = MODEL_SEARCH_LIMIT) -> ModelPage:
        """Search model names across every provider's catalog.

        Each provider is fetched in pages of MODEL_SEARCH_BATCH_SIZE. Later
        pages are only fetched when the first one (or the provider name)
        matches. A provider that fails is skipped.
        """
        needle = query.strip().lower()
        if not needle:
            return ModelPage()

        providers = await self.list_providers()
        logger.debug("Searching %d providers for %r", len(providers), needle)
        batches = await asyncio.gather(
            *(self._provider_catalog(provider, needle) for provider in providers)
        )

        matches = [
            m
            for batch in batches
            for m in batch
            if needle in m.name.lower() or needle in m.provider.lower()
        ]
        matches.sort(key=lambda m: _model_rank(m, needle))
        return ModelPage(models=matches[:limit], total=len(matches))

    async def _provider_catalog(self, provider: str, needle: str) -> list[ModelInfo]:
        try:
            first = await self.list_provider_models(provider)
            models = list(first.models)
            worth_paging = needle in provider.lower() or any(
                needle in m.name.lower() for m in models
            )
            if first.total > MODEL_SEARCH_BATCH_SIZE and worth_paging:
                extra = math.ceil((first.total - MODEL_SEARCH_BATCH_SIZE) / MODEL_SEARCH_BATCH_SIZE)
                pages = await asyncio.gather(
                    *(
                        self.list_provider_models(provider, skip=i * MODEL_SEARCH_BATCH_SIZE)
                        for i in range(1, min(extra, MODEL_SEARCH_MAX_EXTRA_BATCHES) + 1)
                    )
                )
                for page in pages:
                    models.extend(page.models)
            return models
        except (BackboardError, httpx.HTTPError) as e:
            logger.warning("Skipping provider %s in model search: %s", provider, e)
            return []

    @staticmethod
    def _json_list(response: httpx.Response, what: str) -> list:
        try:
            data = response.json()
        except ValueError as e:
            raise InvalidResponseError(f"Expected a JSON list of {what}: {e}") from e
        if not isinstance(data, list):
            raise InvalidResponseError(f"Expected a JSON list of {what}, got {type(data).__name__}")
        return data


def is_event_stream(response: httpx.Response) -> bool:
    return "text/event-stream" in response.headers.get("content-type", "")
