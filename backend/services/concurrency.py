"""
Concurrency Guard
=================
Optimistic version check on invoice workflow rows.

A write matches on invoice id and the caller's version and bumps the version
in the same statement. No lock is held; the loser of a race gets ok=False
and must reload.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from shared.db_models import InvoiceWorkflow
from shared.errors import VersionConflict
from shared.metrics import MetricsCollector, get_metrics
from shared.models import VersionedUpdate, utcnow

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ConcurrencyGuard:
    """Conditional single-statement writes on invoice_workflows."""

    def __init__(self, metrics: Optional[MetricsCollector] = None):
        self._metrics = metrics or get_metrics()

    async def update_with_version(
        self,
        session: AsyncSession,
        invoice_id: str,
        expected_version: int,
        fields: Optional[Dict[str, Any]] = None,
    ) -> VersionedUpdate:
        """Apply `fields` iff the stored version equals `expected_version`."""
        values = dict(fields or {})
        values.pop("version", None)
        values["updated_at"] = utcnow()

        stmt = (
            update(InvoiceWorkflow)
            .where(InvoiceWorkflow.invoice_id == invoice_id)
            .where(InvoiceWorkflow.version == expected_version)
            .values(version=InvoiceWorkflow.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)

        if result.rowcount != 1:
            self._metrics.record_version_conflict()
            logger.info(
                "Version check failed",
                invoice_id=invoice_id,
                expected_version=expected_version,
            )
            return VersionedUpdate(ok=False)

        return VersionedUpdate(ok=True, version=expected_version + 1)


async def retry_on_conflict(
    operation: Callable[[], Awaitable[T]],
    attempts: int = 3,
    backoff_seconds: float = 0.05,
) -> T:
    """
    Re-run `operation` when it raises VersionConflict.

    The operation must reload current state itself on every call.
    """
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except VersionConflict:
            if attempt == attempts:
                raise
            logger.info("Retrying after version conflict", attempt=attempt)
            await asyncio.sleep(backoff_seconds * attempt)
    raise VersionConflict()
