"""OpenAI-compatible endpoints: chat completions, model list, gateway stats."""

import json
import logging
import time
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse

from app.core.config import settings
from app.core.dependencies import get_runtime, verify_api_key
from app.core.rate_limit import limiter
from app.gateway.catalog import list_models
from app.gateway.orchestrator import new_request_id
from app.gateway.runtime import GatewayRuntime
from app.gateway.types import Frame
from app.schemas.chat import ChatCompletionRequest, ModelCard, ModelList

logger = logging.getLogger(__name__)

router = APIRouter(tags=["openai"], dependencies=[Depends(verify_api_key)])


async def _sse(frames: AsyncIterator[Frame]) -> AsyncIterator[str]:
    """Frame sequence → ``text/event-stream`` body."""
    async for frame in frames:
        yield f"data: {json.dumps(frame.to_chunk(), ensure_ascii=False)}\n\n"
    yield "data: [DONE]\n\n"


@router.post("/chat/completions")
@limiter.limit(settings.chat_rate_limit)
async def chat_completions(
    request: Request,
    payload: ChatCompletionRequest,
    runtime: GatewayRuntime = Depends(get_runtime),
):
    """Generate an image or video. Streams progress frames unless ``stream`` is false."""
    body = payload.model_dump(exclude_none=True)
    request_id = new_request_id()
    logger.info("Chat completion %s: model=%s stream=%s", request_id, payload.model, payload.stream)

    if payload.stream:
        return StreamingResponse(
            _sse(runtime.orchestrator.stream(body, request_id)),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
        )

    return JSONResponse(await runtime.orchestrator.collect(body, request_id))


@router.get("/models", response_model=ModelList)
async def models():
    created = int(time.time())
    return ModelList(data=[ModelCard(id=name, created=created) for name in list_models()])


@router.get("/stats")
async def stats(runtime: GatewayRuntime = Depends(get_runtime)):
    """Request totals, cache state, credential availability and admission counters."""
    return await runtime.stats()
