"""Data models for threads, messages and documents."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from .config import DEFAULT_LLM_PROVIDER, DEFAULT_MEMORY_MODE, DEFAULT_MODEL_NAME

logger = logging.getLogger(__name__)

Role = Literal["user", "assistant", "system"]
DocumentStatus = Literal["pending", "processing", "indexed", "failed"]
MemoryMode = Literal["off", "readonly", "auto"]

TERMINAL_STATUSES = frozenset({"indexed", "failed"})

M = TypeVar("M", bound=BaseModel)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def temp_id(prefix: str = "temp") -> str:
    """Placeholder id used until the server supplies a real one."""
    return f"{prefix}-{int(time.time() * 1000)}"


class Attachment(BaseModel):
    document_id: str
    filename: str = ""
    status: DocumentStatus = "pending"


class Memory(BaseModel):
    memory_id: str = ""
    content: str = ""
    created_at: str | None = None
    assistant_id: str | None = None
    updated_at: str | None = None


class RetrievedFile(BaseModel):
    document_id: str = ""
    filename: str = ""
    chunk_content: str = ""
    relevance_score: float = 0.0


class ChatMessage(BaseModel):
    # Completed messages are shared with thread history; never edit in place
    model_config = ConfigDict(frozen=True)

    message_id: str = ""
    thread_id: str
    role: Role
    content: str = ""
    attachments: list[Attachment] = []
    retrieved_memories: list[Memory] = []
    retrieved_files: list[RetrievedFile] = []
    created_at: str = ""


class Thread(BaseModel):
    thread_id: str
    assistant_id: str = ""
    title: str | None = None
    created_at: str = ""
    updated_at: str | None = None
    messages: list[ChatMessage] = []


class DocumentStatusResponse(BaseModel):
    document_id: str
    status: DocumentStatus
    status_message: str | None = None


class ModelConfig(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    llm_provider: str = DEFAULT_LLM_PROVIDER
    model_name: str = DEFAULT_MODEL_NAME


class ModelInfo(BaseModel):
    """One entry of the upstream model catalog."""

    model_config = ConfigDict(protected_namespaces=())

    name: str
    provider: str = ""
    model_type: str = ""
    context_limit: int = 0
    max_output_tokens: int | None = None
    supports_vision: bool | None = None
    supports_tools: bool | None = None
    supports_json_mode: bool | None = None


class ModelPage(BaseModel):
    models: list[ModelInfo] = []
    total: int = 0


class MessageSendRequest(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    content: str = ""
    stream: bool = True
    memory: MemoryMode = DEFAULT_MEMORY_MODE
    llm_provider: str = DEFAULT_LLM_PROVIDER
    model_name: str = DEFAULT_MODEL_NAME
    send_to_llm: bool = True
    web_search: bool | None = None

    @field_validator("memory", mode="before")
    @classmethod
    def _lower_memory(cls, value):
        return value.lower() if isinstance(value, str) else value

    def to_form(self) -> dict[str, str]:
        """Flatten into multipart form fields (booleans as "true"/"false")."""
        form: dict[str, str] = {}
        for key, value in self.model_dump(exclude_none=True).items():
            if key == "content" and not value:
                continue
            if isinstance(value, bool):
                form[key] = "true" if value else "false"
            else:
                form[key] = str(value)
        return form


def parse_list(model: type[M], items: Any) -> list[M] | None:
    """Validate a list payload permissively, dropping malformed entries.

    Returns None when the payload is not a list at all (field absent).
    """
    if not isinstance(items, list):
        return None
    parsed: list[M] = []
    for item in items:
        try:
            parsed.append(model.model_validate(item))
        except ValidationError:
            logger.debug("Dropping malformed %s entry: %r", model.__name__, item)
    return parsed
