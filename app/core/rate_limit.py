"""Rate limiting configuration using slowapi."""

from slowapi import Limiter
from slowapi.util import get_remote_address

from app.core.config import settings

# Keyed on client address; the chat endpoint applies settings.chat_rate_limit
limiter = Limiter(key_func=get_remote_address, enabled=settings.app_env != "test")
