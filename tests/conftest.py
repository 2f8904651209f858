import asyncio
import os
from typing import Any

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("API_KEY", "test-api-key")

import pytest  # noqa: E402

from app.gateway.admission import AdmissionController  # noqa: E402
from app.gateway.artifact_cache import ArtifactCache  # noqa: E402
from app.gateway.credential_pool import CredentialPool  # noqa: E402
from app.gateway.dispatcher import Dispatcher  # noqa: E402
from app.gateway.errors import InvalidTransitionError  # noqa: E402
from app.gateway.types import (  # noqa: E402
    TASK_TRANSITIONS,
    Credential,
    Orientation,
    ProxyConfig,
    RequestLogEntry,
    TaskRecord,
    TaskStatus,
    utcnow,
)

TEST_API_KEY = os.environ["API_KEY"]


# ---------------------------------------------------------------------------
# In-memory persistence
# ---------------------------------------------------------------------------


class MemoryPersistence:
    """Dict-backed ``PersistencePort`` with the same transition rules as SQL."""

    def __init__(self, credentials: list[Credential] | None = None, proxies: list[ProxyConfig] | None = None):
        self.credentials: dict[int, Credential] = {c.id: c for c in credentials or []}
        self.proxies = list(proxies or [])
        self.tasks: dict[str, TaskRecord] = {}
        self.history: dict[str, list[TaskStatus]] = {}
        self.logs: list[RequestLogEntry] = []
        self._next_id = max(self.credentials, default=0) + 1

    async def create_task(self, task: TaskRecord) -> TaskRecord:
        self.tasks[task.id] = TaskRecord(**task.__dict__)
        self.history[task.id] = [task.status]
        return task

    async def update_task_status(self, task_id, status, result_url=None, error=None, processing_time_ms=None):
        task = self.tasks.get(task_id)
        if task is None:
            raise InvalidTransitionError(f"Task {task_id} not found")
        if status not in TASK_TRANSITIONS[task.status]:
            raise InvalidTransitionError(f"{task.status.value} -> {status.value}")
        task.status = status
        if result_url is not None:
            task.result_url = result_url
        if error is not None:
            task.error = error
        if status.is_terminal:
            task.completed_at = utcnow()
            task.processing_time_ms = processing_time_ms
        self.history[task_id].append(status)
        return task

    async def append_log(self, entry: RequestLogEntry) -> None:
        self.logs.append(entry)

    async def list_tasks(self, limit: int = 100) -> list[TaskRecord]:
        return list(self.tasks.values())[:limit]

    async def list_logs(self, limit: int = 100) -> list[RequestLogEntry]:
        return self.logs[-limit:]

    async def aggregate_stats(self) -> dict[str, Any]:
        ok = sum(1 for log in self.logs if log.status == "completed")
        avg = sum(log.processing_time_ms for log in self.logs) / len(self.logs) if self.logs else 0.0
        return {
            "total_requests": len(self.logs),
            "successful_requests": ok,
            "failed_requests": len(self.logs) - ok,
            "average_processing_time_ms": avg,
        }

    async def list_credentials(self) -> list[Credential]:
        return list(self.credentials.values())

    async def add_credential(self, label: str, secret: str) -> Credential:
        credential = Credential(id=self._next_id, label=label, secret=secret)
        self.credentials[credential.id] = credential
        self._next_id += 1
        return credential

    async def update_credential(self, credential_id: int, patch: dict[str, Any]) -> Credential | None:
        credential = self.credentials.get(credential_id)
        if credential is None:
            return None
        for name in ("label", "secret", "enabled"):
            if name in patch:
                setattr(credential, name, patch[name])
        credential.updated_at = utcnow()
        return credential

    async def delete_credential(self, credential_id: int) -> bool:
        return self.credentials.pop(credential_id, None) is not None

    async def list_proxies(self) -> list[ProxyConfig]:
        return list(self.proxies)


# ---------------------------------------------------------------------------
# Upstream double
# ---------------------------------------------------------------------------


class FakeUpstream:
    """Records calls; optionally blocks each call on ``gate`` or raises ``error``."""

    def __init__(self, url: str = "https://cdn.example.com/result.png"):
        self.url = url
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.calls: list[tuple[str, tuple]] = []
        self.started = asyncio.Event()
        self.artifact = b"artifact-bytes"
        self.fetches: list[str] = []

    async def _call(self, name: str, *args) -> str:
        self.calls.append((name, args))
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.url

    async def generate_image(self, prompt, credential, width=None, height=None):
        return await self._call("generate_image", prompt, credential.id, width, height)

    async def generate_image_from_image(self, prompt, image, credential, width=None, height=None):
        return await self._call("generate_image_from_image", prompt, image, credential.id, width, height)

    async def generate_video(self, prompt, credential, n_frames=None, orientation: Orientation | None = None):
        return await self._call("generate_video", prompt, credential.id, n_frames, orientation)

    async def generate_video_from_image(self, prompt, image, credential, n_frames=None, orientation=None):
        return await self._call("generate_video_from_image", prompt, image, credential.id, n_frames, orientation)

    async def generate_character(self, video, credential):
        await self._call("generate_character", video, credential.id)
        return "char_123"

    async def generate_with_character(self, character_id, prompt, credential):
        return await self._call("generate_with_character", character_id, prompt, credential.id)

    async def remix_video(self, remix_id, prompt, credential):
        return await self._call("remix_video", remix_id, prompt, credential.id)

    async def fetch_artifact(self, url: str) -> bytes:
        self.fetches.append(url)
        return self.artifact

    @property
    def operations(self) -> list[str]:
        return [name for name, _ in self.calls]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def make_credentials(n: int) -> list[Credential]:
    return [Credential(id=i, label=f"token-{i}", secret=f"secret-{i}-abcdef") for i in range(1, n + 1)]


@pytest.fixture
def persistence() -> MemoryPersistence:
    return MemoryPersistence(credentials=make_credentials(3))


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
async def dispatcher(persistence) -> Dispatcher:
    d = Dispatcher(CredentialPool(persistence), AdmissionController(default_budget=1))
    await d.refresh()
    return d


@pytest.fixture
def cache(tmp_path) -> ArtifactCache:
    return ArtifactCache(cache_dir=tmp_path / "cache", ttl_seconds=60, enabled=True)
