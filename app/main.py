import logging
import traceback
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.api.v1.router import v1_router
from app.core.config import settings, validate_settings_for_production
from app.core.logging import setup_logging
from app.core.metrics import PrometheusMiddleware, metrics_response
from app.core.rate_limit import limiter
from app.core.sentry import init_sentry
from app.gateway.runtime import GatewayRuntime

# Configure logging before anything else
setup_logging()
init_sentry()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    validate_settings_for_production()
    logger.info("Starting media generation gateway (env=%s)...", settings.app_env)

    runtime = GatewayRuntime.from_settings(settings)
    await runtime.start()
    app.state.runtime = runtime

    yield

    # Shutdown
    app.state.runtime = None
    await runtime.stop()
    logger.info("Media generation gateway shut down")


app = FastAPI(
    title="Media Generation Gateway",
    description="OpenAI-compatible chat completions backed by an image/video generation upstream",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.app_debug else None,
    redoc_url="/api/redoc" if settings.app_debug else None,
)


def _openai_error(status_code: int, message: str, error_type: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": {"message": message, "type": error_type}})


@app.exception_handler(RequestValidationError)
async def _validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors and errors[0].get("type") == "json_invalid":
        return _openai_error(400, "Invalid JSON in request body", "invalid_request_error")
    first = errors[0] if errors else {}
    location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{location}: {first.get('msg', 'invalid request')}" if location else first.get("msg", "invalid request")
    return _openai_error(400, message, "invalid_request_error")


# Log unhandled exceptions with the full traceback
@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("Unhandled %s on %s %s:\n%s", type(exc).__name__, request.method, request.url.path, "".join(tb))
    return _openai_error(500, f"{type(exc).__name__}: {exc}", "internal_error")


# Rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Prometheus HTTP metrics
app.add_middleware(PrometheusMiddleware)

# CORS: parse allowed_origins from settings (comma-separated)
_origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API routes
app.include_router(v1_router)


@app.get("/api/v1/health")
async def health(request: Request):
    runtime: GatewayRuntime | None = getattr(request.app.state, "runtime", None)
    if runtime is None:
        return {"status": "starting"}
    credentials = runtime.dispatcher.stats()
    return {
        "status": "ok",
        "credentials_enabled": credentials["enabled"],
        "credentials_available": credentials["available"],
        "cache_enabled": runtime.cache.enabled,
    }


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_response()


@app.get("/cache/{filename}", include_in_schema=False)
async def cached_artifact(filename: str, request: Request):
    """Serve a file from the artifact cache directory."""
    runtime: GatewayRuntime | None = getattr(request.app.state, "runtime", None)
    if runtime is None or Path(filename).name != filename:
        raise HTTPException(status_code=404, detail="Not found")
    path = runtime.cache.cache_dir / filename
    if not path.is_file():
        raise HTTPException(status_code=404, detail="Not found")
    return FileResponse(path)
