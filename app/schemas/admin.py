from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from app.gateway.types import Modality, TaskStatus


class CredentialCreate(BaseModel):
    label: str = Field(min_length=1, max_length=100)
    secret: str = Field(min_length=1)


class CredentialUpdate(BaseModel):
    label: str | None = Field(None, min_length=1, max_length=100)
    secret: str | None = Field(None, min_length=1)
    enabled: bool | None = None


class CredentialResponse(BaseModel):
    id: int
    label: str
    secret: str  # masked
    enabled: bool
    in_use: int
    budget: int
    created_at: datetime
    updated_at: datetime


class GatewaySettingsUpdate(BaseModel):
    max_concurrent_per_credential: int | None = Field(None, ge=1)
    cache_enabled: bool | None = None
    cache_ttl_seconds: int | None = Field(None, ge=1)


class GatewaySettingsResponse(BaseModel):
    max_concurrent_per_credential: int
    cache_enabled: bool
    cache_ttl_seconds: float


class TaskResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    modality: Modality
    status: TaskStatus
    request_id: str
    model: str
    prompt: str
    credential_id: int | None
    source_media: str | None
    result_url: str | None
    error: str | None
    created_at: datetime
    completed_at: datetime | None
    processing_time_ms: int | None


class RequestLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    request_id: str
    model: str
    status: str
    processing_time_ms: int
    request_size: int
    response_size: int
    credential_id: int | None
    error: str | None
    timestamp: datetime
