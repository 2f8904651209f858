"""Credential management and runtime settings."""

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.core.dependencies import get_runtime, verify_api_key
from app.gateway.runtime import GatewayRuntime
from app.gateway.types import Credential
from app.schemas.admin import (
    CredentialCreate,
    CredentialResponse,
    CredentialUpdate,
    GatewaySettingsResponse,
    GatewaySettingsUpdate,
    RequestLogResponse,
    TaskResponse,
)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(verify_api_key)])


def _to_response(credential: Credential, runtime: GatewayRuntime) -> CredentialResponse:
    slot = runtime.admission.snapshot().get(credential.id)
    return CredentialResponse(
        id=credential.id,
        label=credential.label,
        secret=credential.masked(),
        enabled=credential.enabled,
        in_use=slot.in_use if slot else 0,
        budget=slot.budget if slot else runtime.admission.budget,
        created_at=credential.created_at,
        updated_at=credential.updated_at,
    )


@router.get("/credentials", response_model=list[CredentialResponse])
async def list_credentials(runtime: GatewayRuntime = Depends(get_runtime)):
    return [_to_response(c, runtime) for c in runtime.pool.all()]


@router.post("/credentials", response_model=CredentialResponse, status_code=status.HTTP_201_CREATED)
async def add_credential(body: CredentialCreate, runtime: GatewayRuntime = Depends(get_runtime)):
    credential = await runtime.pool.add(body.label, body.secret)
    runtime.dispatcher.resync()
    return _to_response(credential, runtime)


@router.patch("/credentials/{credential_id}", response_model=CredentialResponse)
async def update_credential(
    credential_id: int,
    body: CredentialUpdate,
    runtime: GatewayRuntime = Depends(get_runtime),
):
    credential = await runtime.pool.update(credential_id, body.model_dump(exclude_none=True))
    if credential is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Credential not found")
    runtime.dispatcher.resync()
    return _to_response(credential, runtime)


@router.delete("/credentials/{credential_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_credential(credential_id: int, runtime: GatewayRuntime = Depends(get_runtime)):
    if not await runtime.pool.remove(credential_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Credential not found")
    runtime.dispatcher.resync()


def _settings_response(runtime: GatewayRuntime) -> GatewaySettingsResponse:
    return GatewaySettingsResponse(
        max_concurrent_per_credential=runtime.admission.budget,
        cache_enabled=runtime.cache.enabled,
        cache_ttl_seconds=runtime.cache.ttl_seconds,
    )


@router.get("/settings", response_model=GatewaySettingsResponse)
async def get_settings(runtime: GatewayRuntime = Depends(get_runtime)):
    return _settings_response(runtime)


@router.patch("/settings", response_model=GatewaySettingsResponse)
async def update_settings(body: GatewaySettingsUpdate, runtime: GatewayRuntime = Depends(get_runtime)):
    """Apply budget / cache changes to the running gateway (not persisted)."""
    if body.max_concurrent_per_credential is not None:
        runtime.set_concurrency_budget(body.max_concurrent_per_credential)
    if body.cache_ttl_seconds is not None:
        runtime.set_cache_ttl(body.cache_ttl_seconds)
    if body.cache_enabled is not None:
        runtime.set_cache_enabled(body.cache_enabled)
    return _settings_response(runtime)


@router.get("/tasks", response_model=list[TaskResponse])
async def list_tasks(
    limit: int = Query(100, ge=1, le=1000),
    runtime: GatewayRuntime = Depends(get_runtime),
):
    """Most recent generation tasks first."""
    return [TaskResponse.model_validate(t) for t in await runtime.persistence.list_tasks(limit)]


@router.get("/logs", response_model=list[RequestLogResponse])
async def list_logs(
    limit: int = Query(100, ge=1, le=1000),
    runtime: GatewayRuntime = Depends(get_runtime),
):
    return [RequestLogResponse.model_validate(e) for e in await runtime.persistence.list_logs(limit)]
