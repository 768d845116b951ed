from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

import httpx
from loguru import logger


@runtime_checkable
class StoreBackend(Protocol):
    async def query(self, tool_name: str, arguments: dict[str, Any]) -> Any: ...


class HttpStoreBackend:
    """Forwards tool queries to the store application's AI tool endpoint."""

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def query(self, tool_name: str, arguments: dict[str, Any]) -> Any:
        logger.debug(f"Store query: {tool_name} args={list(arguments)}")
        resp = await self._client.post(f"/api/ai/tools/{tool_name}", json=arguments)
        resp.raise_for_status()
        if not resp.content:
            return None
        return resp.json()

    async def close(self) -> None:
        await self._client.aclose()
