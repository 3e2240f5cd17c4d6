from __future__ import annotations

from typing import Any

import httpx


class PipelineClient:
    def __init__(self, base_url: str, *, timeout: float = 30.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def run_coordinator(self, *, force: bool = False, limit: int | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {"force": force}
        if limit is not None:
            payload["limit"] = limit
        return await self._post("/coordinator/run", payload)

    async def run_worker(
        self,
        name: str,
        *,
        batch_size: int | None = None,
        enable_deep_scraping: bool = False,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"enableDeepScraping": enable_deep_scraping}
        if batch_size is not None:
            payload["batchSize"] = batch_size
        return await self._post(f"/workers/{name}/run", payload)

    async def reclaim(self) -> dict[str, Any]:
        return await self._post("/queue/reclaim", None)

    async def _post(self, path: str, payload: dict[str, Any] | None) -> dict[str, Any]:
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(path, json=payload)
            response.raise_for_status()
            body = response.json()
            if not isinstance(body, dict):
                raise ValueError(f"unexpected response shape from {path}")
            return body
