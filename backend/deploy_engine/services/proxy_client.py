"""Client for the reverse-proxy host API (route records and Caddy reloads)."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Protocol

import httpx

from deploy_engine.logging_config import get_logger
from deploy_engine.services.exceptions import ProxyClientError

logger = get_logger(__name__)


@dataclass(slots=True)
class CreateHostRequest:
    domain: str
    upstream_addr: str
    tls_enabled: bool = True
    http_redirect: bool = True
    websocket: bool = True


class ProxyHostClient(Protocol):
    async def create_host(self, request: CreateHostRequest) -> int: ...

    async def delete_host(self, host_id: int) -> None: ...

    async def reload_caddy(self) -> None: ...


class HttpProxyHostClient:
    """ProxyHostClient talking JSON over HTTP to the host management API."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.transport = transport

    def _headers(self) -> dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.request(method, url, headers=self._headers(), **kwargs)
                resp.raise_for_status()
                return resp
        except httpx.HTTPError as exc:
            raise ProxyClientError(f"{method} {path} failed: {exc}") from exc

    async def create_host(self, request: CreateHostRequest) -> int:
        resp = await self._request("POST", "/hosts", json=asdict(request))
        data = resp.json()
        host_id = data.get("id") if isinstance(data, dict) else None
        if not isinstance(host_id, int):
            logger.error("proxy_create_host_missing_id", response=data)
            raise ProxyClientError(f"No host id in create_host response: {data}")
        return host_id

    async def delete_host(self, host_id: int) -> None:
        await self._request("DELETE", f"/hosts/{host_id}")

    async def reload_caddy(self) -> None:
        await self._request("POST", "/caddy/reload")
