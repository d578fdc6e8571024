"""Append-only audit trail of state changes and verification attempts."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from warehouse_custody.clock import Clock, utcnow
from warehouse_custody.db.models import AuditEntryModel
from warehouse_custody.exceptions import CustodyError

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


class AuditKind(StrEnum):
    TRANSITION = "transition"
    CONSOLIDATION = "consolidation"
    CODE = "code"
    VERIFICATION = "verification"
    RETENTION = "retention"


class AuditOutcome(StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class AuditFilter:
    """Read-side filter for :meth:`AuditLog.query`."""

    entity_type: str | None = None
    entity_id: str | None = None
    actor: str | None = None
    kind: AuditKind | None = None
    outcome: AuditOutcome | None = None
    since: datetime | None = None
    until: datetime | None = None
    limit: int = 100


def _as_utc(value: datetime) -> datetime:
    """Read a timestamp without an offset as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class AuditLog:
    """Writes and reads audit entries.

    ``append`` is the only write path and always runs inside the caller's
    transaction, so an entry is committed exactly when the state change it
    describes is.
    """

    def __init__(self, *, clock: Clock = utcnow) -> None:
        self._clock = clock

    async def append(
        self,
        session: AsyncSession,
        *,
        kind: AuditKind,
        action: str,
        entity_type: str,
        entity_id: str,
        actor: str,
        previous_state: str | None = None,
        new_state: str | None = None,
        reason: str = "",
        outcome: AuditOutcome = AuditOutcome.SUCCESS,
        failure_kind: str | None = None,
        identity_claim: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditEntryModel:
        entry = AuditEntryModel(
            kind=kind.value,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            previous_state=previous_state,
            new_state=new_state,
            actor=actor,
            reason=reason,
            outcome=outcome.value,
            failure_kind=failure_kind,
            identity_claim=identity_claim,
            details=details or {},
            created_at=self._clock(),
        )
        session.add(entry)
        await session.flush()
        return entry

    async def record_rejection(
        self,
        session: AsyncSession,
        exc: CustodyError,
        *,
        kind: AuditKind,
        action: str,
        actor: str,
        entity_id: str | None = None,
        reason: str = "",
    ) -> AuditEntryModel:
        """Record an operation that was refused and rolled back."""
        logger.warning(
            "%s %s by %s rejected: %s", action, exc.entity_id, actor, exc
        )
        return await self.append(
            session,
            kind=kind,
            action=action,
            entity_type=exc.entity_type,
            entity_id=exc.entity_id or entity_id or "",
            actor=actor,
            reason=reason,
            outcome=AuditOutcome.FAILURE,
            failure_kind=exc.code,
            details={"detail": str(exc)},
        )

    async def query(
        self,
        session: AsyncSession,
        filters: AuditFilter | None = None,
    ) -> list[AuditEntryModel]:
        """Return matching entries, oldest first."""
        filters = filters or AuditFilter()
        stmt = select(AuditEntryModel)
        if filters.entity_type is not None:
            stmt = stmt.where(
                AuditEntryModel.entity_type == filters.entity_type
            )
        if filters.entity_id is not None:
            stmt = stmt.where(AuditEntryModel.entity_id == filters.entity_id)
        if filters.actor is not None:
            stmt = stmt.where(AuditEntryModel.actor == filters.actor)
        if filters.kind is not None:
            stmt = stmt.where(AuditEntryModel.kind == filters.kind.value)
        if filters.outcome is not None:
            stmt = stmt.where(AuditEntryModel.outcome == filters.outcome.value)
        if filters.since is not None:
            stmt = stmt.where(
                AuditEntryModel.created_at >= _as_utc(filters.since)
            )
        if filters.until is not None:
            stmt = stmt.where(
                AuditEntryModel.created_at < _as_utc(filters.until)
            )
        stmt = stmt.order_by(
            AuditEntryModel.created_at, AuditEntryModel.id
        ).limit(filters.limit)
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def purge_expired(
        self,
        session: AsyncSession,
        retention_days: int,
        *,
        actor: str = SYSTEM_ACTOR,
    ) -> int:
        """Delete entries older than the retention window.

        Records the purge itself when anything was removed; running it again
        (or concurrently) with nothing eligible changes nothing.
        """
        now = self._clock()
        cutoff = now - timedelta(days=retention_days)
        result = await session.execute(
            delete(AuditEntryModel)
            .where(AuditEntryModel.created_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        purged = result.rowcount or 0
        if purged:
            await self.append(
                session,
                kind=AuditKind.RETENTION,
                action="purge",
                entity_type="audit_log",
                entity_id=AuditEntryModel.__tablename__,
                actor=actor,
                reason=f"retention window of {retention_days} days",
                details={"purged": purged, "cutoff": cutoff.isoformat()},
            )
            logger.info(
                "Purged %d audit entries older than %s",
                purged,
                cutoff.isoformat(),
            )
        return purged
