from __future__ import annotations

import asyncio
import logging
import random

from opentelemetry import trace

from runops.core.config import get_worker_settings
from runops.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from runops.workers.cron_client import CronClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def next_backoff(current: float, *, base: float, ceiling: float) -> float:
    jitter = random.uniform(0.0, 0.5)
    return min(max(current, base) * (2.0 + jitter), ceiling)


async def run_cycle(client: CronClient) -> dict:
    with tracer.start_as_current_span("worker.freshness_cycle") as span:
        summary = await client.trigger_freshness()
        span.set_attribute("runops.processed_postings", int(summary.get("processed_postings", 0)))
        logger.info(
            "freshness triggered processed=%s created_runs=%s created_todos=%s",
            summary.get("processed_postings"),
            summary.get("created_runs"),
            summary.get("created_todos"),
        )
        return summary


async def run_worker(*, max_cycles: int | None = None) -> None:
    settings = get_worker_settings()
    configure_logging()
    telemetry_runtime = setup_telemetry(settings)
    client = CronClient(
        base_url=settings.api_base_url,
        cron_secret=settings.cron_secret,
        timeout_seconds=settings.request_timeout_seconds,
    )

    backoff = 1.0
    cycles = 0
    try:
        while max_cycles is None or cycles < max_cycles:
            cycles += 1
            try:
                await run_cycle(client)
                backoff = 1.0
                await asyncio.sleep(settings.freshness_interval_seconds)
            except Exception as exc:  # pragma: no cover - worker keeps running on transient failures
                backoff = next_backoff(backoff, base=1.0, ceiling=settings.max_backoff_seconds)
                logger.exception("freshness cycle failed: %s; retry in %.1fs", exc, backoff)
                await asyncio.sleep(backoff)
    finally:
        shutdown_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
