"""Audit log tests."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from conftest import make_processed_package
from warehouse_custody.audit import (
    AuditFilter,
    AuditKind,
    AuditLog,
    AuditOutcome,
)
from warehouse_custody.db.models import AuditEntryModel, AuditLogImmutableError
from warehouse_custody.exceptions import InvalidTransition
from warehouse_custody.status import PackageStatus


async def _append(session_factory, audit, **overrides):
    values = {
        "kind": AuditKind.TRANSITION,
        "action": "transition",
        "entity_type": "package",
        "entity_id": "PKG-1",
        "actor": "clerk-1",
    }
    values.update(overrides)
    async with session_factory() as session:
        async with session.begin():
            return await audit.append(session, **values)


class TestQuery:
    async def test_filters_combine(self, session_factory, clock) -> None:
        audit = AuditLog(clock=clock)
        await _append(session_factory, audit)
        await _append(session_factory, audit, actor="clerk-2")
        await _append(
            session_factory,
            audit,
            kind=AuditKind.VERIFICATION,
            outcome=AuditOutcome.FAILURE,
            failure_kind="invalid_code",
        )
        await _append(session_factory, audit, entity_id="PKG-2")

        async with session_factory() as session:
            by_actor = await audit.query(
                session, AuditFilter(entity_id="PKG-1", actor="clerk-2")
            )
            failures = await audit.query(
                session,
                AuditFilter(
                    kind=AuditKind.VERIFICATION,
                    outcome=AuditOutcome.FAILURE,
                ),
            )
            everything = await audit.query(session)

        assert [e.actor for e in by_actor] == ["clerk-2"]
        assert [e.failure_kind for e in failures] == ["invalid_code"]
        assert len(everything) == 4

    async def test_time_range_and_limit(self, session_factory, clock) -> None:
        audit = AuditLog(clock=clock)
        start = clock()
        for _ in range(3):
            await _append(session_factory, audit)
            clock.advance(hours=1)

        async with session_factory() as session:
            window = await audit.query(
                session,
                AuditFilter(
                    since=start + timedelta(minutes=30),
                    until=start + timedelta(hours=2),
                ),
            )
            limited = await audit.query(session, AuditFilter(limit=2))

        assert [e.created_at for e in window] == [start + timedelta(hours=1)]
        assert len(limited) == 2
        assert limited[0].created_at == start

    async def test_time_range_without_offset_is_utc(
        self, session_factory, clock
    ) -> None:
        audit = AuditLog(clock=clock)
        start = clock()
        await _append(session_factory, audit)
        clock.advance(hours=1)
        await _append(session_factory, audit, actor="clerk-2")
        naive_cutoff = (start + timedelta(minutes=30)).replace(tzinfo=None)

        async with session_factory() as session:
            later = await audit.query(
                session, AuditFilter(since=naive_cutoff)
            )
            earlier = await audit.query(
                session, AuditFilter(until=naive_cutoff)
            )

        assert [e.actor for e in later] == ["clerk-2"]
        assert [e.actor for e in earlier] == ["clerk-1"]

    async def test_entries_come_back_in_write_order(self, flow) -> None:
        package = await make_processed_package(flow)

        entries = await flow.query_audit(AuditFilter(entity_id=package.id))

        assert [e.new_state for e in entries] == [
            "awaiting_pickup",
            "received",
            "processing",
            "processed",
        ]


class TestImmutability:
    async def test_update_is_refused(self, session_factory, clock) -> None:
        entry = await _append(session_factory, AuditLog(clock=clock))

        with pytest.raises(AuditLogImmutableError):
            async with session_factory() as session:
                async with session.begin():
                    stored = await session.get(AuditEntryModel, entry.id)
                    stored.reason = "rewritten"

    async def test_delete_is_refused(self, session_factory, clock) -> None:
        entry = await _append(session_factory, AuditLog(clock=clock))

        with pytest.raises(AuditLogImmutableError):
            async with session_factory() as session:
                async with session.begin():
                    stored = await session.get(AuditEntryModel, entry.id)
                    await session.delete(stored)


class TestRejectionRecording:
    async def test_rejected_transition_is_audited_after_rollback(
        self, flow
    ) -> None:
        package = await flow.intake_package(
            customer_id="c", customer_suite="S", actor="clerk-1"
        )

        with pytest.raises(InvalidTransition):
            await flow.transition(package.id, PackageStatus.GROUPED, "bob")

        failures = await flow.query_audit(
            AuditFilter(entity_id=package.id, outcome=AuditOutcome.FAILURE)
        )
        assert len(failures) == 1
        assert failures[0].actor == "bob"
        assert failures[0].action == "transition"
        assert "awaiting_pickup" in failures[0].details["detail"]


class TestPurge:
    async def test_purges_only_expired_entries(
        self, session_factory, clock
    ) -> None:
        audit = AuditLog(clock=clock)
        await _append(session_factory, audit, entity_id="old")
        clock.advance(days=60)
        await _append(session_factory, audit, entity_id="recent")
        clock.advance(days=31)

        async with session_factory() as session:
            async with session.begin():
                purged = await audit.purge_expired(session, 90)

        assert purged == 1
        async with session_factory() as session:
            result = await session.execute(select(AuditEntryModel))
            remaining = {e.entity_id: e for e in result.scalars()}
        assert set(remaining) == {"recent", AuditEntryModel.__tablename__}
        purge_entry = remaining[AuditEntryModel.__tablename__]
        assert purge_entry.kind == AuditKind.RETENTION.value
        assert purge_entry.details["purged"] == 1

    async def test_nothing_to_purge_writes_nothing(
        self, session_factory, clock
    ) -> None:
        audit = AuditLog(clock=clock)
        await _append(session_factory, audit)

        async with session_factory() as session:
            async with session.begin():
                purged = await audit.purge_expired(session, 90)

        assert purged == 0
        async with session_factory() as session:
            assert len(await audit.query(session)) == 1

    async def test_flow_purge_uses_configured_window(
        self, flow, clock
    ) -> None:
        await make_processed_package(flow)
        clock.advance(days=91)

        purged = await flow.purge_audit()
        again = await flow.purge_audit()

        assert purged == 4
        assert again == 0
