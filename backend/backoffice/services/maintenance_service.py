# Overview: Service-layer operations for maintenance; encapsulates scheduled cleanup jobs.

from __future__ import annotations

from flask import current_app

from . import idempotency_service


def cleanup_idempotency(*, retention_days: int | None = None, stale_processing_minutes: int | None = None) -> dict:
    """
    Sweep idempotency rows using configured defaults for omitted arguments.

    Shared by the cron endpoint and the CLI.
    """
    if retention_days is None:
        retention_days = current_app.config.get("IDEMPOTENCY_RETENTION_DAYS", 14)
    if stale_processing_minutes is None:
        stale_processing_minutes = current_app.config.get("IDEMPOTENCY_STALE_PROCESSING_MINUTES", 15)

    result = idempotency_service.cleanup_idempotency_requests(
        retention_days=retention_days,
        stale_processing_minutes=stale_processing_minutes,
    )
    current_app.logger.info(
        "Idempotency cleanup: stale_marked=%s deleted=%s",
        result["stale_marked"], result["deleted"],
    )
    return result
