"""Persistence port and its SQLAlchemy implementation.

The orchestrator and the credential/proxy pools only see ``PersistencePort``
and the plain dataclasses from ``app.gateway.types``. ORM rows never leave
this module.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from sqlalchemy import case, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.gateway.errors import InvalidTransitionError
from app.gateway.types import (
    TASK_TRANSITIONS,
    Credential,
    Modality,
    ProxyConfig,
    RequestLogEntry,
    TaskRecord,
    TaskStatus,
    utcnow,
)
from app.models import GenerationTask, OutboundProxy, RequestLog, UpstreamCredential

logger = logging.getLogger(__name__)

_CREDENTIAL_FIELDS = ("label", "secret", "enabled")


class PersistencePort(Protocol):
    async def create_task(self, task: TaskRecord) -> TaskRecord: ...

    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        result_url: str | None = None,
        error: str | None = None,
        processing_time_ms: int | None = None,
    ) -> TaskRecord: ...

    async def append_log(self, entry: RequestLogEntry) -> None: ...

    async def list_tasks(self, limit: int = 100) -> list[TaskRecord]: ...

    async def list_logs(self, limit: int = 100) -> list[RequestLogEntry]: ...

    async def aggregate_stats(self) -> dict[str, Any]: ...

    async def list_credentials(self) -> list[Credential]: ...

    async def add_credential(self, label: str, secret: str) -> Credential: ...

    async def update_credential(self, credential_id: int, patch: dict[str, Any]) -> Credential | None: ...

    async def delete_credential(self, credential_id: int) -> bool: ...

    async def list_proxies(self) -> list[ProxyConfig]: ...


# ---------------------------------------------------------------------------
# Row <-> record conversion
# ---------------------------------------------------------------------------


def _task_record(row: GenerationTask) -> TaskRecord:
    return TaskRecord(
        id=row.id,
        modality=Modality(row.modality),
        status=TaskStatus(row.status),
        request_id=row.request_id,
        model=row.model,
        prompt=row.prompt or "",
        credential_id=row.credential_id,
        source_media=row.source_media,
        result_url=row.result_url,
        error=row.error,
        created_at=row.created_at,
        completed_at=row.completed_at,
        processing_time_ms=row.processing_time_ms,
    )


def _log_entry(row: RequestLog) -> RequestLogEntry:
    return RequestLogEntry(
        request_id=row.request_id,
        model=row.model,
        status=row.status,
        processing_time_ms=row.processing_time_ms,
        request_size=row.request_size,
        response_size=row.response_size,
        credential_id=row.credential_id,
        error=row.error,
        timestamp=row.timestamp,
    )


def _credential(row: UpstreamCredential) -> Credential:
    return Credential(
        id=row.id,
        label=row.label,
        secret=row.secret,
        enabled=row.enabled,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _proxy(row: OutboundProxy) -> ProxyConfig:
    return ProxyConfig(
        id=row.id,
        host=row.host,
        port=row.port,
        scheme=row.scheme,
        enabled=row.enabled,
        username=row.username,
        password=row.password,
    )


class SqlPersistence:
    """``PersistencePort`` over an async SQLAlchemy session factory.

    Usage:
        engine = create_engine(settings.database_url)
        persistence = SqlPersistence(create_session_factory(engine))

        task = await persistence.create_task(TaskRecord(...))
        await persistence.update_task_status(task.id, TaskStatus.PROCESSING)
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # -- tasks ---------------------------------------------------------------

    async def create_task(self, task: TaskRecord) -> TaskRecord:
        async with self._session_factory() as db:
            row = GenerationTask(
                id=task.id,
                modality=task.modality.value,
                status=task.status.value,
                request_id=task.request_id,
                model=task.model,
                prompt=task.prompt,
                credential_id=task.credential_id,
                source_media=task.source_media,
                created_at=task.created_at,
            )
            db.add(row)
            await db.commit()
        return task

    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        result_url: str | None = None,
        error: str | None = None,
        processing_time_ms: int | None = None,
    ) -> TaskRecord:
        """Move a task forward. Raises InvalidTransitionError otherwise."""
        async with self._session_factory() as db:
            row = (await db.execute(select(GenerationTask).where(GenerationTask.id == task_id))).scalar_one_or_none()
            if row is None:
                raise InvalidTransitionError(f"Task {task_id} not found")

            current = TaskStatus(row.status)
            if status not in TASK_TRANSITIONS[current]:
                raise InvalidTransitionError(f"Task {task_id}: {current.value} -> {status.value} is not allowed")

            row.status = status.value
            if result_url is not None:
                row.result_url = result_url
            if error is not None:
                row.error = error
            if status.is_terminal:
                row.completed_at = utcnow()
                row.processing_time_ms = processing_time_ms

            await db.commit()
            return _task_record(row)

    async def list_tasks(self, limit: int = 100) -> list[TaskRecord]:
        async with self._session_factory() as db:
            result = await db.execute(select(GenerationTask).order_by(GenerationTask.created_at.desc()).limit(limit))
            return [_task_record(r) for r in result.scalars().all()]

    # -- request log ---------------------------------------------------------

    async def append_log(self, entry: RequestLogEntry) -> None:
        async with self._session_factory() as db:
            db.add(
                RequestLog(
                    timestamp=entry.timestamp,
                    request_id=entry.request_id,
                    model=entry.model,
                    status=entry.status,
                    credential_id=entry.credential_id,
                    processing_time_ms=entry.processing_time_ms,
                    request_size=entry.request_size,
                    response_size=entry.response_size,
                    error=entry.error,
                )
            )
            await db.commit()

    async def list_logs(self, limit: int = 100) -> list[RequestLogEntry]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(RequestLog).order_by(RequestLog.timestamp.desc(), RequestLog.id.desc()).limit(limit)
            )
            return [_log_entry(r) for r in result.scalars().all()]

    async def aggregate_stats(self) -> dict[str, Any]:
        async with self._session_factory() as db:
            row = (
                await db.execute(
                    select(
                        func.count(RequestLog.id),
                        func.sum(case((RequestLog.status == TaskStatus.COMPLETED.value, 1), else_=0)),
                        func.sum(case((RequestLog.status == TaskStatus.FAILED.value, 1), else_=0)),
                        func.avg(RequestLog.processing_time_ms),
                    )
                )
            ).one()

        total, ok, failed, avg_ms = row
        return {
            "total_requests": total or 0,
            "successful_requests": int(ok or 0),
            "failed_requests": int(failed or 0),
            "average_processing_time_ms": round(float(avg_ms), 2) if avg_ms is not None else 0.0,
        }

    # -- credentials ---------------------------------------------------------

    async def list_credentials(self) -> list[Credential]:
        async with self._session_factory() as db:
            result = await db.execute(select(UpstreamCredential).order_by(UpstreamCredential.id))
            return [_credential(r) for r in result.scalars().all()]

    async def add_credential(self, label: str, secret: str) -> Credential:
        async with self._session_factory() as db:
            row = UpstreamCredential(label=label, secret=secret, enabled=True)
            db.add(row)
            await db.commit()
            await db.refresh(row)
            logger.info("Added credential %d (%s)", row.id, label)
            return _credential(row)

    async def update_credential(self, credential_id: int, patch: dict[str, Any]) -> Credential | None:
        async with self._session_factory() as db:
            row = await db.get(UpstreamCredential, credential_id)
            if row is None:
                return None
            for name in _CREDENTIAL_FIELDS:
                if name in patch:
                    setattr(row, name, patch[name])
            row.updated_at = utcnow()
            await db.commit()
            await db.refresh(row)
            return _credential(row)

    async def delete_credential(self, credential_id: int) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(delete(UpstreamCredential).where(UpstreamCredential.id == credential_id))
            await db.commit()
            return result.rowcount > 0

    # -- proxies -------------------------------------------------------------

    async def list_proxies(self) -> list[ProxyConfig]:
        async with self._session_factory() as db:
            result = await db.execute(select(OutboundProxy).order_by(OutboundProxy.id))
            return [_proxy(r) for r in result.scalars().all()]
