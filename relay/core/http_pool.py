import asyncio
from typing import Optional, Dict

import httpx

from relay.config import HTTP_TIMEOUT_SECONDS
from relay.core.logging import get_logger

_log = get_logger("core.http_pool")

POOL_LIMITS = httpx.Limits(
    max_connections=50,
    max_keepalive_connections=10,
)

_clients: Dict[str, httpx.AsyncClient] = {}
_lock = asyncio.Lock()


async def get_client(
    service: str = "default",
    base_url: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
) -> httpx.AsyncClient:

    async with _lock:
        if service not in _clients:
            service_timeout = timeout or HTTP_TIMEOUT_SECONDS
            _clients[service] = httpx.AsyncClient(
                base_url=base_url or "",
                headers=headers,
                limits=POOL_LIMITS,
                timeout=httpx.Timeout(service_timeout, connect=5.0),
                follow_redirects=True,
            )
            _log.debug("Client created", service=service, timeout=service_timeout)
        return _clients[service]


async def close_all() -> int:

    async with _lock:
        cnt = len(_clients)
        for service, client in _clients.items():
            try:
                await client.aclose()
                _log.debug("Client closed", service=service)
            except Exception as e:
                _log.warning("Client close error", service=service, error=str(e))
        _clients.clear()
        return cnt
