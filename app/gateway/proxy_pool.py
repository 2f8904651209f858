"""Outbound proxy rotation for upstream calls.

Proxies are picked round robin from the enabled set; they play no part in
credential admission.
"""

from __future__ import annotations

import logging
import threading
from typing import Protocol

from app.gateway.types import ProxyConfig

logger = logging.getLogger(__name__)


class ProxyStore(Protocol):
    async def list_proxies(self) -> list[ProxyConfig]: ...


class ProxyPool:
    def __init__(self, store: ProxyStore | None = None, proxies: list[ProxyConfig] | None = None):
        self._store = store
        self._proxies: list[ProxyConfig] = list(proxies or [])
        self._cursor = 0
        self._lock = threading.Lock()

    async def load_all(self) -> int:
        if self._store is None:
            return len(self._proxies)
        proxies = await self._store.list_proxies()
        with self._lock:
            self._proxies = list(proxies)
        logger.info("Loaded %d proxies", len(proxies))
        return len(proxies)

    def next_proxy(self) -> ProxyConfig | None:
        with self._lock:
            enabled = [p for p in self._proxies if p.enabled]
            if not enabled:
                return None
            proxy = enabled[self._cursor % len(enabled)]
            self._cursor = (self._cursor + 1) % len(enabled)
            return proxy

    def next_proxy_url(self) -> str | None:
        proxy = self.next_proxy()
        return self.proxy_url(proxy) if proxy else None

    def has_proxy(self) -> bool:
        with self._lock:
            return any(p.enabled for p in self._proxies)

    @staticmethod
    def proxy_url(proxy: ProxyConfig) -> str:
        if proxy.username and proxy.password:
            return f"{proxy.scheme}://{proxy.username}:{proxy.password}@{proxy.host}:{proxy.port}"
        return f"{proxy.scheme}://{proxy.host}:{proxy.port}"
