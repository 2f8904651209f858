"""Gateway runtime: owns every gateway component for one process.

The FastAPI lifespan builds a ``GatewayRuntime`` from settings, starts it, and
stores it on ``app.state.runtime``. Components get their collaborators
passed in here; none of them read ``settings`` themselves.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine

from app.core.config import Settings
from app.db.session import create_engine, create_session_factory, init_schema
from app.gateway.admission import AdmissionController
from app.gateway.artifact_cache import ArtifactCache
from app.gateway.credential_pool import CredentialPool
from app.gateway.dispatcher import Dispatcher
from app.gateway.orchestrator import RequestOrchestrator
from app.gateway.persistence import PersistencePort, SqlPersistence
from app.gateway.proxy_pool import ProxyPool
from app.gateway.upstream import HttpUpstreamClient, UpstreamClient

logger = logging.getLogger(__name__)

SHUTDOWN_GRACE_SECONDS = 30.0


class GatewayRuntime:
    """Usage:
    runtime = GatewayRuntime.from_settings(settings)
    await runtime.start()
    ...
    await runtime.stop()
    """

    def __init__(
        self,
        persistence: PersistencePort,
        upstream: UpstreamClient,
        cache: ArtifactCache,
        admission: AdmissionController,
        proxy_pool: ProxyPool | None = None,
        engine: AsyncEngine | None = None,
        queue_size: int = 16,
        sweep_interval_seconds: float = 3600,
    ):
        self.persistence = persistence
        self.upstream = upstream
        self.cache = cache
        self.admission = admission
        self.proxy_pool = proxy_pool
        self.engine = engine
        self.sweep_interval_seconds = sweep_interval_seconds

        self.pool = CredentialPool(persistence)
        self.dispatcher = Dispatcher(self.pool, admission)
        self.orchestrator = RequestOrchestrator(self.dispatcher, upstream, persistence, cache, queue_size=queue_size)

    @classmethod
    def from_settings(cls, settings: Settings) -> GatewayRuntime:
        engine = create_engine(settings.database_url, echo=False)
        persistence = SqlPersistence(create_session_factory(engine))
        proxy_pool = ProxyPool(store=persistence)
        upstream = HttpUpstreamClient(
            base_url=settings.upstream_base_url,
            proxy_pool=proxy_pool,
            image_timeout=settings.image_timeout,
            video_timeout=settings.video_timeout,
        )
        cache = ArtifactCache(
            cache_dir=settings.cache_dir,
            ttl_seconds=settings.cache_ttl_seconds,
            enabled=settings.cache_enabled,
            base_url=settings.cache_base_url,
        )
        return cls(
            persistence=persistence,
            upstream=upstream,
            cache=cache,
            admission=AdmissionController(settings.max_concurrent_per_credential),
            proxy_pool=proxy_pool,
            engine=engine,
            queue_size=settings.stream_queue_size,
            sweep_interval_seconds=settings.cache_sweep_interval_seconds,
        )

    async def start(self) -> None:
        if self.engine is not None:
            await init_schema(self.engine)
        await self.dispatcher.refresh()
        if self.proxy_pool is not None:
            await self.proxy_pool.load_all()
        self.cache.start_sweeper(self.sweep_interval_seconds)
        logger.info("Gateway runtime started: %s", self.dispatcher.stats())

    async def stop(self) -> None:
        await self.orchestrator.shutdown(timeout=SHUTDOWN_GRACE_SECONDS)
        await self.cache.stop_sweeper()
        if self.engine is not None:
            await self.engine.dispose()
        logger.info("Gateway runtime stopped")

    # -- runtime-adjustable settings -----------------------------------------

    def set_concurrency_budget(self, budget: int) -> None:
        self.admission.set_budget(budget)

    def set_cache_ttl(self, ttl_seconds: float) -> None:
        self.cache.set_ttl(ttl_seconds)

    def set_cache_enabled(self, enabled: bool) -> None:
        self.cache.set_enabled(enabled)

    async def stats(self) -> dict[str, Any]:
        return {
            **await self.persistence.aggregate_stats(),
            "cache": self.cache.stats(),
            "credentials": self.dispatcher.stats(),
            "admission": {
                str(cid): {"in_use": slot.in_use, "budget": slot.budget}
                for cid, slot in self.admission.snapshot().items()
            },
            "in_flight": self.orchestrator.in_flight,
        }
