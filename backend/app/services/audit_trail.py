"""Append-only audit trail for generation requests."""

import hashlib
import json
import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.audit_event import AuditEvent, AuditEventKind

logger = logging.getLogger(__name__)


def request_fingerprint(
    user_id: int,
    mode: str,
    prompt: Optional[str],
    source_image: Optional[str] = None,
    template_id: Optional[str] = None,
) -> str:
    """Stable SHA-256 over the content of a request.

    Identical requests share a fingerprint; the per-call request id
    tells attempts apart.
    """
    payload = json.dumps(
        {
            "user_id": user_id,
            "mode": mode,
            "prompt": (prompt or "").strip(),
            "source_image": source_image,
            "template_id": template_id,
        },
        sort_keys=True,
    )
    return hashlib.sha256(payload.encode()).hexdigest()


class AuditTrail:
    """Writes and queries AuditEvent rows."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(
        self,
        kind: AuditEventKind,
        user_id: int,
        request_id: str,
        fingerprint: str,
        detail: Optional[dict[str, Any]] = None,
    ) -> AuditEvent:
        """Append one event and commit it immediately.

        Args:
            kind: Pipeline stage
            user_id: Requesting user
            request_id: Per-call tracking id
            fingerprint: Content fingerprint of the request
            detail: Stage-specific structured context

        Returns:
            The stored AuditEvent
        """
        event = AuditEvent(
            user_id=user_id,
            kind=kind,
            request_id=request_id,
            request_fingerprint=fingerprint,
            detail=detail or {},
        )
        self.db.add(event)
        await self.db.commit()

        logger.info(
            f"AUDIT {kind.value} user={user_id} request={request_id} detail={event.detail}"
        )
        return event

    async def count_recent(
        self,
        user_id: int,
        kind: AuditEventKind,
        since: datetime,
    ) -> int:
        """Count a user's events of one kind created at or after ``since``."""
        stmt = select(func.count(AuditEvent.id)).where(
            AuditEvent.user_id == user_id,
            AuditEvent.kind == kind,
            AuditEvent.created_at >= since,
        )
        return await self.db.scalar(stmt) or 0

    async def events_for_request(self, request_id: str) -> list[AuditEvent]:
        """All events of one request in the order they were written."""
        result = await self.db.execute(
            select(AuditEvent)
            .where(AuditEvent.request_id == request_id)
            .order_by(AuditEvent.id)
        )
        return list(result.scalars().all())
