import secrets

from fastapi import Header, HTTPException, Request, status

from app.core.config import settings
from app.gateway.runtime import GatewayRuntime


async def verify_api_key(authorization: str | None = Header(None, description="Bearer <api key>")) -> None:
    """Reject requests without ``Authorization: Bearer <API_KEY>``."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not secrets.compare_digest(authorization[7:].encode(), settings.api_key.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "Bearer"},
        )


def get_runtime(request: Request) -> GatewayRuntime:
    runtime: GatewayRuntime | None = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Gateway is not ready")
    return runtime
