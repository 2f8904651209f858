"""Core types and DTOs for the media generation gateway."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Modality(str, Enum):
    """Kind of artifact a model produces."""

    IMAGE = "image"
    VIDEO = "video"


class Orientation(str, Enum):
    LANDSCAPE = "landscape"
    PORTRAIT = "portrait"


class TaskStatus(str, Enum):
    """Lifecycle of a generation task. Only moves forward."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


# Allowed forward transitions (terminal states have none)
TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.PROCESSING, TaskStatus.FAILED}),
    TaskStatus.PROCESSING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
}


class UpstreamErrorKind(str, Enum):
    """Failure classes surfaced by the upstream client."""

    TIMEOUT = "timeout"
    UNAUTHORIZED = "unauthorized"
    RATE_LIMITED = "rate_limited"
    INVALID_RESPONSE = "invalid_response"
    TRANSPORT = "transport"


# ---------------------------------------------------------------------------
# Credentials & proxies
# ---------------------------------------------------------------------------


@dataclass
class Credential:
    """An upstream account token. Identity is ``id``."""

    id: int
    label: str
    secret: str
    enabled: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def masked(self) -> str:
        """Secret with everything but the last 4 chars hidden (for logs/API)."""
        if len(self.secret) <= 4:
            return "****"
        return f"****{self.secret[-4:]}"


@dataclass
class ProxyConfig:
    """Outbound proxy used for upstream calls."""

    id: int
    host: str
    port: int
    scheme: str = "http"  # http | socks5
    enabled: bool = True
    username: str | None = None
    password: str | None = None


@dataclass(frozen=True)
class AdmissionSlot:
    """Read-only view of one credential's admission counters."""

    in_use: int
    budget: int

    @property
    def available(self) -> bool:
        return self.in_use < self.budget


# ---------------------------------------------------------------------------
# Model catalog entries
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelSpec:
    """Shape parameters of a catalog model."""

    name: str
    modality: Modality
    width: int | None = None
    height: int | None = None
    orientation: Orientation = Orientation.LANDSCAPE
    n_frames: int | None = None


# ---------------------------------------------------------------------------
# Parsed request
# ---------------------------------------------------------------------------


@dataclass
class ParsedPrompt:
    """Prompt text and optional seed media pulled from the last chat message."""

    prompt: str = ""
    image: str | None = None
    video: str | None = None

    @property
    def seed_media(self) -> str | None:
        return self.image or self.video


# ---------------------------------------------------------------------------
# Persistence records
# ---------------------------------------------------------------------------


@dataclass
class TaskRecord:
    """A generation task as stored through the persistence port."""

    modality: Modality
    request_id: str
    model: str
    prompt: str
    credential_id: int | None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: TaskStatus = TaskStatus.PENDING
    source_media: str | None = None
    result_url: str | None = None
    error: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    processing_time_ms: int | None = None


@dataclass
class RequestLogEntry:
    """Exactly one of these is appended per inbound request."""

    request_id: str
    model: str
    status: str  # completed | failed
    processing_time_ms: int
    request_size: int
    response_size: int
    credential_id: int | None = None
    error: str | None = None
    timestamp: datetime = field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Cache entry
# ---------------------------------------------------------------------------


@dataclass
class CacheEntry:
    """Index entry of a cached artifact on disk."""

    key: str
    path: str
    source_url: str
    created_at: float = field(default_factory=time.time)
    last_accessed_at: float = field(default_factory=time.time)
    access_count: int = 1

    def is_expired(self, now: float, ttl: float) -> bool:
        return now - self.created_at > ttl


# ---------------------------------------------------------------------------
# Stream frames
# ---------------------------------------------------------------------------


@dataclass
class Frame:
    """One progress frame of a chat completion.

    Success and error frames share this shape; only ``content`` and
    ``finish_reason`` differ.
    """

    id: str
    model: str
    content: str
    role: str | None = None
    finish_reason: str | None = None
    created: int = field(default_factory=lambda: int(time.time()))

    @property
    def is_terminal(self) -> bool:
        return self.finish_reason is not None

    def to_chunk(self) -> dict[str, Any]:
        """Serialize as an OpenAI ``chat.completion.chunk``."""
        delta: dict[str, Any] = {"content": self.content}
        if self.role:
            delta = {"role": self.role, **delta}
        return {
            "id": self.id,
            "object": "chat.completion.chunk",
            "created": self.created,
            "model": self.model,
            "choices": [
                {
                    "index": 0,
                    "delta": delta,
                    "finish_reason": self.finish_reason,
                }
            ],
        }
