"""Audit sink: append-only record of billing events.

Writes never fail the caller. A broken audit table must not turn a
successfully reconciled payment into a 500 and a provider redelivery.
"""

import structlog

from nexora_billing.db.base import get_session_factory
from nexora_billing.db.models.audit_log import AuditLog

logger = structlog.get_logger(__name__)


class AuditSink:
    async def record(self, event: str, user_id: str | None = None, **metadata) -> None:
        try:
            async with get_session_factory()() as session:
                session.add(AuditLog(event=event, user_id=user_id, metadata_=metadata))
                await session.commit()
        except Exception as e:
            logger.warning("audit_write_failed", audit_event=event, error=str(e), error_type=type(e).__name__)
