from __future__ import annotations

from typing import Any

import httpx


class CronClient:
    def __init__(
        self,
        base_url: str,
        cron_secret: str | None,
        *,
        timeout_seconds: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not cron_secret:
            raise ValueError("RUNOPS_WORKER_CRON_SECRET is not set")
        self.base_url = base_url.rstrip("/")
        self.headers = {"X-Cron-Secret": cron_secret}
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def trigger_freshness(self) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
            response = await client.post(f"{self.base_url}/cron/freshness", headers=self.headers)
            response.raise_for_status()
            return response.json()
