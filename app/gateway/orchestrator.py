"""Request Orchestrator: one chat completion request, end to end.

Admission → parse → task record → upstream call → optional cache → frames.

Every run, whatever happens, ends with:
  - at most one credential released (exactly one if one was admitted)
  - exactly one terminal frame (``finish_reason="stop"``)
  - exactly one RequestLog row

Frames go through a bounded ``FrameChannel``. The producer runs as its own
asyncio task, so a client that disconnects mid-stream does not abort the
upstream call; the remaining frames are dropped and the finalizer still runs.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
import uuid
from collections.abc import AsyncIterator
from typing import Any

from app.core.logging import bind_request_id
from app.core.metrics import GENERATION_DURATION, GENERATION_REQUESTS
from app.gateway.artifact_cache import ArtifactCache
from app.gateway.catalog import resolve_model
from app.gateway.dispatcher import Dispatcher
from app.gateway.errors import (
    NO_CAPACITY,
    NO_CAPACITY_MESSAGE,
    ClientError,
    GatewayError,
    InternalError,
)
from app.gateway.persistence import PersistencePort
from app.gateway.types import (
    Credential,
    Frame,
    Modality,
    ModelSpec,
    ParsedPrompt,
    RequestLogEntry,
    TaskRecord,
    TaskStatus,
)
from app.gateway.upstream import UpstreamClient

logger = logging.getLogger(__name__)

PROCESSING_MESSAGE = "Processing your request..."
DEFAULT_QUEUE_SIZE = 16

_REMIX_ID_RE = re.compile(r"s_[a-f0-9]{32}")


def new_request_id() -> str:
    return f"req_{int(time.time() * 1000)}_{uuid.uuid4().hex[:7]}"


def extract_remix_id(text: str) -> str | None:
    """Share id of an existing video (``s_`` + 32 hex chars), if present."""
    if not text:
        return None
    match = _REMIX_ID_RE.search(text)
    return match.group(0) if match else None


def _part_url(part: dict[str, Any], key: str) -> str | None:
    value = part.get(key)
    if isinstance(value, dict):
        return value.get("url") or None
    if isinstance(value, str):
        return value or None
    return None


def parse_request(body: dict[str, Any]) -> ParsedPrompt:
    """Pull prompt text and seed media out of the last message.

    Text parts are concatenated in order; for image/video parts the last one
    wins.
    """
    messages = body.get("messages") or []
    if not messages:
        raise ClientError("Request contains no messages")

    content = messages[-1].get("content")
    parsed = ParsedPrompt()
    if isinstance(content, str):
        parsed.prompt = content
    elif isinstance(content, list):
        texts = []
        for part in content:
            if not isinstance(part, dict):
                continue
            kind = part.get("type")
            if kind == "text":
                texts.append(part.get("text") or "")
            elif kind == "image_url":
                parsed.image = _part_url(part, "image_url") or parsed.image
            elif kind == "video_url":
                parsed.video = _part_url(part, "video_url") or parsed.video
        parsed.prompt = "".join(texts)
    return parsed


# ---------------------------------------------------------------------------
# Frame channel
# ---------------------------------------------------------------------------


class FrameChannel:
    """Bounded single-producer / single-consumer frame queue.

    Once the consumer calls ``close()`` further frames are discarded, so the
    producer never blocks on a reader that has gone away.
    """

    _END = None

    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE):
        self._queue: asyncio.Queue[Frame | None] = asyncio.Queue(maxsize=maxsize)
        self.closed = False
        self.dropped = 0

    async def put(self, frame: Frame) -> None:
        if self.closed:
            self.dropped += 1
            return
        await self._queue.put(frame)

    async def finish(self) -> None:
        if not self.closed:
            await self._queue.put(self._END)

    def close(self) -> None:
        self.closed = True
        while not self._queue.empty():
            if self._queue.get_nowait() is not self._END:
                self.dropped += 1

    async def __aiter__(self) -> AsyncIterator[Frame]:
        while True:
            frame = await self._queue.get()
            if frame is self._END:
                return
            yield frame


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class RequestOrchestrator:
    """Runs chat completion requests against the upstream.

    Usage:
        orchestrator = RequestOrchestrator(dispatcher, upstream, persistence, cache)

        async for frame in orchestrator.stream(body):
            ...  # frame.to_chunk()

        completion = await orchestrator.collect(body)
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        upstream: UpstreamClient,
        persistence: PersistencePort,
        cache: ArtifactCache | None = None,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ):
        self.dispatcher = dispatcher
        self.upstream = upstream
        self.persistence = persistence
        self.cache = cache
        self.queue_size = queue_size
        self._running: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._running)

    async def stream(self, body: dict[str, Any], request_id: str | None = None) -> AsyncIterator[Frame]:
        """Start a run in the background and yield its frames in order."""
        channel = FrameChannel(self.queue_size)
        task = asyncio.create_task(self.run(body, channel, request_id or new_request_id()))
        self._running.add(task)
        task.add_done_callback(self._running.discard)

        drained = False
        try:
            async for frame in channel:
                yield frame
            drained = True
        finally:
            if not drained:
                logger.info("Client went away; generation continues in background")
            channel.close()

    async def collect(self, body: dict[str, Any], request_id: str | None = None) -> dict[str, Any]:
        """Run to completion and fold the frames into one ``chat.completion``."""
        model = str(body.get("model") or "")
        frames = [frame async for frame in self.stream(body, request_id)]
        last = frames[-1]
        return {
            "id": last.id,
            "object": "chat.completion",
            "created": last.created,
            "model": model,
            "choices": [
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": "".join(f.content for f in frames)},
                    "finish_reason": last.finish_reason or "stop",
                }
            ],
            "usage": {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0},
        }

    async def shutdown(self, timeout: float | None = None) -> None:
        """Wait for background runs so their finalizers can finish."""
        if not self._running:
            return
        logger.info("Waiting for %d in-flight generations", len(self._running))
        await asyncio.wait(set(self._running), timeout=timeout)

    # -- one run -------------------------------------------------------------

    async def run(self, body: dict[str, Any], channel: FrameChannel, request_id: str) -> None:
        bind_request_id(request_id)
        model_name = str(body.get("model") or "")
        started = time.perf_counter()
        credential: Credential | None = None
        spec: ModelSpec | None = None
        task: TaskRecord | None = None
        result_url: str | None = None
        error: str | None = None

        try:
            admitted = await self.dispatcher.acquire_any()
            if admitted is NO_CAPACITY:
                error = NO_CAPACITY_MESSAGE
                await channel.put(self._error_frame(request_id, model_name, error))
                return
            credential = admitted

            spec = resolve_model(model_name)
            if spec is None:
                raise ClientError(f"Unknown model: {model_name}")
            parsed = parse_request(body)

            task = TaskRecord(
                modality=spec.modality,
                request_id=request_id,
                model=model_name,
                prompt=parsed.prompt,
                credential_id=credential.id,
                source_media=parsed.seed_media,
            )
            await self.persistence.create_task(task)
            await self.persistence.update_task_status(task.id, TaskStatus.PROCESSING)
            task.status = TaskStatus.PROCESSING
            await channel.put(Frame(id=task.id, model=model_name, content=PROCESSING_MESSAGE, role="assistant"))

            upstream_url = await self._generate(spec, parsed, credential)
            result_url = await self._deliver(upstream_url)

            await self.persistence.update_task_status(
                task.id,
                TaskStatus.COMPLETED,
                result_url=result_url,
                processing_time_ms=self._elapsed_ms(started),
            )
            task.status = TaskStatus.COMPLETED
            await channel.put(
                Frame(
                    id=task.id,
                    model=model_name,
                    content=f"Generation complete! [View result]({result_url})",
                    finish_reason="stop",
                )
            )
            logger.info("Request %s completed: %s -> %s", request_id, model_name, result_url)
        except GatewayError as e:
            error = str(e)
            level = logging.INFO if isinstance(e, ClientError) else logging.WARNING
            logger.log(level, "Request %s failed: %s", request_id, error)
            await self._fail(task, channel, request_id, model_name, error, started)
        except Exception as e:
            logger.exception("Unexpected error handling request %s", request_id)
            error = str(InternalError(f"Internal error: {e}"))
            await self._fail(task, channel, request_id, model_name, error, started)
        except asyncio.CancelledError:
            logger.warning("Request %s cancelled", request_id)
            error = "Request cancelled"
            await self._fail(task, channel, request_id, model_name, error, started)
            raise
        finally:
            if credential is not None:
                try:
                    await self.dispatcher.release(credential.id)
                except GatewayError:
                    logger.exception("Failed to release credential %d", credential.id)
            await self._finalize(body, request_id, model_name, spec, credential, result_url, error, started)
            await channel.finish()

    # -- operation selection -------------------------------------------------

    async def _generate(self, spec: ModelSpec, parsed: ParsedPrompt, credential: Credential) -> str:
        upstream = self.upstream

        if spec.modality is Modality.IMAGE:
            if parsed.video:
                raise ClientError("Image models do not accept video input")
            if parsed.image:
                return await upstream.generate_image_from_image(
                    parsed.prompt, parsed.image, credential, spec.width, spec.height
                )
            return await upstream.generate_image(parsed.prompt, credential, spec.width, spec.height)

        remix_id = extract_remix_id(parsed.prompt)
        if remix_id:
            return await upstream.remix_video(remix_id, parsed.prompt, credential)
        if parsed.video:
            character_id = await upstream.generate_character(parsed.video, credential)
            return await upstream.generate_with_character(character_id, parsed.prompt, credential)
        if parsed.image:
            return await upstream.generate_video_from_image(
                parsed.prompt, parsed.image, credential, spec.n_frames, spec.orientation
            )
        return await upstream.generate_video(parsed.prompt, credential, spec.n_frames, spec.orientation)

    async def _deliver(self, upstream_url: str) -> str:
        """Route an artifact through the cache. Falls back to the upstream URL."""
        cache = self.cache
        if cache is None or not cache.enabled:
            return upstream_url

        try:
            path = await cache.get(upstream_url)
            if path is None:
                data = await self.upstream.fetch_artifact(upstream_url)
                path = await cache.set(upstream_url, upstream_url, data)
        except Exception:
            logger.warning("Caching %s failed, serving upstream URL", upstream_url, exc_info=True)
            return upstream_url

        return cache.public_url(path) or upstream_url

    # -- failure / finalizer -------------------------------------------------

    async def _fail(
        self,
        task: TaskRecord | None,
        channel: FrameChannel,
        request_id: str,
        model_name: str,
        error: str,
        started: float,
    ) -> None:
        if task is not None and not task.status.is_terminal:
            try:
                await self.persistence.update_task_status(
                    task.id, TaskStatus.FAILED, error=error, processing_time_ms=self._elapsed_ms(started)
                )
                task.status = TaskStatus.FAILED
            except Exception:
                logger.exception("Failed to mark task %s as failed", task.id)
        frame_id = task.id if task is not None else request_id
        await channel.put(self._error_frame(frame_id, model_name, error))

    async def _finalize(
        self,
        body: dict[str, Any],
        request_id: str,
        model_name: str,
        spec: ModelSpec | None,
        credential: Credential | None,
        result_url: str | None,
        error: str | None,
        started: float,
    ) -> None:
        elapsed_ms = self._elapsed_ms(started)
        status = TaskStatus.FAILED.value if error else TaskStatus.COMPLETED.value

        GENERATION_REQUESTS.labels(model=model_name or "unknown", status=status).inc()
        if spec is not None:
            GENERATION_DURATION.labels(modality=spec.modality.value).observe(elapsed_ms / 1000)

        entry = RequestLogEntry(
            request_id=request_id,
            model=model_name,
            status=status,
            processing_time_ms=elapsed_ms,
            request_size=len(json.dumps(body, default=str)),
            response_size=len(result_url) if result_url else 0,
            credential_id=credential.id if credential else None,
            error=error,
        )
        try:
            await self.persistence.append_log(entry)
        except Exception:
            logger.exception("Failed to write request log for %s", request_id)

    @staticmethod
    def _error_frame(frame_id: str, model_name: str, error: str) -> Frame:
        return Frame(id=frame_id, model=model_name, content=f"Error: {error}", finish_reason="stop")

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.perf_counter() - started) * 1000)
