from __future__ import annotations

import ipaddress
import logging
from typing import Iterable, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from .config import settings

logger = logging.getLogger(__name__)

_LOCAL_HOSTS = {"testclient", "localhost", "testserver"}


def client_address(request: Request) -> Optional[str]:
    """Best guess of the caller's address, honouring X-Forwarded-For behind a proxy."""
    if settings.behind_proxy:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
    host = request.client.host if request.client and request.client.host else "127.0.0.1"
    return "127.0.0.1" if host in _LOCAL_HOSTS else host


def is_blocked(address: str, networks: Iterable[ipaddress._BaseNetwork]) -> bool:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return address not in _LOCAL_HOSTS
    return any(ip in network for network in networks)


class BlockListMiddleware(BaseHTTPMiddleware):
    """Deny access for configured IP ranges."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        runtime_state = getattr(request.app.state, "runtime_state", None)
        networks = runtime_state.block_networks if runtime_state is not None else settings.block_networks
        if not networks:
            return await call_next(request)
        address = client_address(request)
        if address and is_blocked(address, networks):
            logger.warning("Blocked request from %s to %s", address, request.url.path)
            return JSONResponse({"detail": "Access denied"}, status_code=403)
        return await call_next(request)
