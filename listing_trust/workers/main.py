from __future__ import annotations

import asyncio
import logging
import random

from opentelemetry import trace

from listing_trust.core.config import get_settings, get_worker_settings
from listing_trust.core.telemetry import (
    configure_logging,
    setup_worker_telemetry,
    shutdown_worker_telemetry,
)
from listing_trust.services.notifications import DispatchSummary, NotificationDispatcher, build_sender
from listing_trust.services.repository import get_repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def run_cycle(dispatcher: NotificationDispatcher, *, batch_size: int) -> DispatchSummary:
    with tracer.start_as_current_span("worker.dispatch_cycle") as span:
        summary = await dispatcher.dispatch_pending(limit=batch_size)
        span.set_attribute("notifications.delivered", summary.delivered)
        span.set_attribute("notifications.retried", summary.retried)
        span.set_attribute("notifications.failed", summary.failed)
    if summary.event_ids:
        logger.info(
            "notification cycle delivered=%s retried=%s failed=%s",
            summary.delivered,
            summary.retried,
            summary.failed,
        )
    return summary


async def run_worker() -> None:
    settings = get_settings()
    worker_settings = get_worker_settings()
    configure_logging()
    telemetry_runtime = setup_worker_telemetry(worker_settings)
    repository = get_repository()
    dispatcher = NotificationDispatcher(
        repository,
        build_sender(
            webhook_url=worker_settings.notification_webhook_url,
            token=worker_settings.notification_webhook_token,
            timeout_seconds=worker_settings.delivery_timeout_seconds,
        ),
        max_attempts=settings.notification_max_attempts,
    )

    backoff = worker_settings.poll_interval_seconds
    try:
        while True:
            try:
                summary = await run_cycle(dispatcher, batch_size=worker_settings.dispatch_batch_size)
                backoff = worker_settings.poll_interval_seconds
                if len(summary.event_ids) < worker_settings.dispatch_batch_size:
                    await asyncio.sleep(worker_settings.poll_interval_seconds)
            except Exception as exc:  # pragma: no cover - bootstrap robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), worker_settings.max_backoff_seconds)
                logger.exception("notification worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        await repository.close()
        shutdown_worker_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
