"""Audit trail endpoints."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query

from warehouse_custody.audit import AuditFilter, AuditKind, AuditOutcome
from warehouse_custody.dependencies import get_flow
from warehouse_custody.flow import CustodyFlow
from warehouse_custody.schemas import AuditEntryResponse

router = APIRouter()


@router.get("/audit", response_model=list[AuditEntryResponse])
async def query_audit(
    entity_type: str | None = None,
    entity_id: str | None = None,
    actor: str | None = None,
    kind: AuditKind | None = None,
    outcome: AuditOutcome | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    flow: CustodyFlow = Depends(get_flow),
) -> list[AuditEntryResponse]:
    """List audit entries, oldest first."""
    entries = await flow.query_audit(
        AuditFilter(
            entity_type=entity_type,
            entity_id=entity_id,
            actor=actor,
            kind=kind,
            outcome=outcome,
            since=since,
            until=until,
            limit=limit,
        )
    )
    return [AuditEntryResponse.from_entry(entry) for entry in entries]
