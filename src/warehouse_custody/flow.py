"""Custody operations as atomic, audited units of work.

``CustodyFlow`` is the entry point used by the HTTP layer and by callers
embedding the subsystem directly. Each public coroutine runs in its own
transaction; rejected operations are rolled back and then audited, and
notifications go out only after commit.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from warehouse_custody.atomic import Work, run_atomic
from warehouse_custody.audit import (
    SYSTEM_ACTOR,
    AuditFilter,
    AuditKind,
    AuditLog,
)
from warehouse_custody.clock import Clock, utcnow
from warehouse_custody.codes import CodeIssuer, IssuedCode
from warehouse_custody.config import CustodyConfig
from warehouse_custody.consolidation import (
    ShipmentConsolidation,
    ShipmentSnapshot,
)
from warehouse_custody.db.models import AuditEntryModel, PackageModel
from warehouse_custody.db.repository import CustodyRepository
from warehouse_custody.lifecycle import PackageLifecycle
from warehouse_custody.notifications import (
    CodeIssuedNotice,
    DeliveredNotice,
    NotificationDispatcher,
)
from warehouse_custody.protocols import Notifier
from warehouse_custody.status import PackageStatus
from warehouse_custody.verification import (
    VerificationAttempt,
    VerificationService,
)

logger = logging.getLogger(__name__)


@dataclass
class ArrivalResult:
    """Members moved to ARRIVED and the codes issued for them."""

    snapshot: ShipmentSnapshot
    codes: list[IssuedCode] = field(default_factory=list)


@dataclass
class _Issued:
    package: PackageModel
    code: IssuedCode | None = None


class CustodyFlow:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        config: CustodyConfig,
        notifier: Notifier | None = None,
        clock: Clock = utcnow,
        code_generator: Callable[[], str] | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.config = config
        self.clock = clock
        self.audit = AuditLog(clock=clock)
        self.lifecycle = PackageLifecycle(self.audit, clock=clock)
        self.codes = CodeIssuer(
            self.audit,
            config=config,
            clock=clock,
            code_generator=code_generator,
        )
        self.consolidation = ShipmentConsolidation(
            self.lifecycle, self.audit, clock=clock
        )
        self.verification = VerificationService(
            self.lifecycle,
            self.codes,
            self.audit,
            config=config,
            clock=clock,
        )
        self.notifications = NotificationDispatcher(
            notifier, timeout_seconds=config.notification_timeout_seconds
        )

    async def _run(
        self,
        work: Work,
        *,
        kind: AuditKind | None = None,
        action: str = "",
        actor: str = SYSTEM_ACTOR,
        entity_id: str | None = None,
    ):
        on_rejected = None
        if kind is not None:

            async def on_rejected(session, exc):
                await self.audit.record_rejection(
                    session,
                    exc,
                    kind=kind,
                    action=action,
                    actor=actor,
                    entity_id=entity_id,
                )

        return await run_atomic(
            self.session_factory,
            work,
            max_attempts=self.config.conflict_max_attempts,
            backoff_seconds=self.config.conflict_backoff_seconds,
            on_rejected=on_rejected,
        )

    # Packages

    async def intake_package(
        self,
        *,
        customer_id: str,
        customer_suite: str,
        actor: str,
        weight_kg: Decimal = Decimal("0"),
        declared_value: Decimal = Decimal("0"),
        description: str = "",
    ) -> PackageModel:
        async def work(session: AsyncSession) -> PackageModel:
            return await self.lifecycle.intake(
                session,
                customer_id=customer_id,
                customer_suite=customer_suite,
                actor=actor,
                weight_kg=weight_kg,
                declared_value=declared_value,
                description=description,
            )

        return await self._run(work)

    async def get_package(self, package_id: str) -> PackageModel:
        async with self.session_factory() as session:
            return await CustodyRepository(session).get_package(
                package_id, for_update=False
            )

    async def transition(
        self,
        package_id: str,
        target: PackageStatus,
        actor: str,
        reason: str = "",
    ) -> PackageModel:
        """Move one package a single step forward, or into EXCEPTION."""

        async def work(session: AsyncSession) -> _Issued:
            package = await self.lifecycle.transition(
                session, package_id, target, actor, reason
            )
            return await self._issue_if_arrived(session, package, actor)

        issued = await self._run(
            work,
            kind=AuditKind.TRANSITION,
            action="transition",
            actor=actor,
            entity_id=package_id,
        )
        self._notify_issued(issued)
        return issued.package

    async def mark_exception(
        self, package_id: str, actor: str, reason: str = ""
    ) -> PackageModel:
        async def work(session: AsyncSession) -> PackageModel:
            return await self.lifecycle.mark_exception(
                session, package_id, actor, reason
            )

        return await self._run(
            work,
            kind=AuditKind.TRANSITION,
            action="mark_exception",
            actor=actor,
            entity_id=package_id,
        )

    async def resolve_exception(
        self,
        package_id: str,
        target: PackageStatus,
        actor: str,
        reason: str = "",
    ) -> PackageModel:
        """Resolve an exception; a package resumed at ARRIVED gets a code."""

        async def work(session: AsyncSession) -> _Issued:
            package = await self.lifecycle.resolve_exception(
                session, package_id, target, actor, reason
            )
            return await self._issue_if_arrived(session, package, actor)

        issued = await self._run(
            work,
            kind=AuditKind.TRANSITION,
            action="resolve_exception",
            actor=actor,
            entity_id=package_id,
        )
        self._notify_issued(issued)
        return issued.package

    async def _issue_if_arrived(
        self, session: AsyncSession, package: PackageModel, actor: str
    ) -> _Issued:
        if package.status is not PackageStatus.ARRIVED:
            return _Issued(package=package)
        if self.codes.has_active_code(package):
            return _Issued(package=package)
        code = await self.codes.issue_code(
            session, package, actor=actor, reason="package arrived"
        )
        return _Issued(package=package, code=code)

    # Shipments

    async def create_shipment(
        self,
        package_ids: Sequence[str],
        destination: str,
        service_level: str,
        actor: str,
    ) -> ShipmentSnapshot:
        async def work(session: AsyncSession) -> ShipmentSnapshot:
            return await self.consolidation.create_shipment(
                session, package_ids, destination, service_level, actor
            )

        return await self._run(
            work,
            kind=AuditKind.CONSOLIDATION,
            action="create_shipment",
            actor=actor,
        )

    async def add_packages(
        self, shipment_id: str, package_ids: Sequence[str], actor: str
    ) -> ShipmentSnapshot:
        async def work(session: AsyncSession) -> ShipmentSnapshot:
            return await self.consolidation.add_packages(
                session, shipment_id, package_ids, actor
            )

        return await self._run(
            work,
            kind=AuditKind.CONSOLIDATION,
            action="add_packages",
            actor=actor,
            entity_id=shipment_id,
        )

    async def unlink_package(
        self,
        shipment_id: str,
        package_id: str,
        actor: str,
        reason: str = "",
    ) -> ShipmentSnapshot:
        async def work(session: AsyncSession) -> ShipmentSnapshot:
            return await self.consolidation.unlink_package(
                session, shipment_id, package_id, actor, reason
            )

        return await self._run(
            work,
            kind=AuditKind.CONSOLIDATION,
            action="unlink_package",
            actor=actor,
            entity_id=shipment_id,
        )

    async def get_shipment(self, shipment_id: str) -> ShipmentSnapshot:
        async with self.session_factory() as session:
            return await self.consolidation.snapshot(session, shipment_id)

    async def shipment_departed(
        self, shipment_id: str, actor: str
    ) -> ShipmentSnapshot:
        async def work(session: AsyncSession) -> ShipmentSnapshot:
            snapshot, _ = await self.consolidation.mark_departed(
                session, shipment_id, actor
            )
            return snapshot

        return await self._run(
            work,
            kind=AuditKind.CONSOLIDATION,
            action="departed",
            actor=actor,
            entity_id=shipment_id,
        )

    async def shipment_in_transit(
        self, shipment_id: str, actor: str
    ) -> ShipmentSnapshot:
        async def work(session: AsyncSession) -> ShipmentSnapshot:
            snapshot, _ = await self.consolidation.mark_in_transit(
                session, shipment_id, actor
            )
            return snapshot

        return await self._run(
            work,
            kind=AuditKind.CONSOLIDATION,
            action="in_transit",
            actor=actor,
            entity_id=shipment_id,
        )

    async def shipment_arrived(
        self, shipment_id: str, actor: str
    ) -> ArrivalResult:
        """Move members to ARRIVED and issue one code per arrived member.

        Codes are issued in the same transaction as the arrival; customers
        are notified after it commits.
        """

        async def work(session: AsyncSession) -> ArrivalResult:
            snapshot, moved = await self.consolidation.mark_arrived(
                session, shipment_id, actor
            )
            result = ArrivalResult(snapshot=snapshot)
            for package in moved:
                result.codes.append(
                    await self.codes.issue_code(session, package, actor=actor)
                )
            return result

        result = await self._run(
            work,
            kind=AuditKind.CONSOLIDATION,
            action="arrived",
            actor=actor,
            entity_id=shipment_id,
        )
        packages = {p.id: p for p in result.snapshot.packages}
        for code in result.codes:
            self._notify_issued(_Issued(packages[code.package_id], code))
        return result

    # Codes and verification

    async def reissue_code(
        self,
        package_id: str,
        actor: str,
        reason: str = "administrative reissue",
    ) -> IssuedCode:
        async def work(session: AsyncSession) -> _Issued:
            code = await self.codes.reissue_code(
                session, package_id, actor, reason
            )
            package = await CustodyRepository(session).get_package(package_id)
            return _Issued(package=package, code=code)

        issued = await self._run(
            work,
            kind=AuditKind.CODE,
            action="reissue",
            actor=actor,
            entity_id=package_id,
        )
        self._notify_issued(issued)
        return issued.code

    async def verify(
        self,
        package_id: str,
        identity_claim: str,
        presented_code: str,
        actor: str,
    ) -> VerificationAttempt:
        """Verify a release request; raises the rejection after commit.

        The failed-attempt counters and the audit entry of a rejected
        attempt are committed before the error propagates. An attempt that
        keeps losing concurrent updates is recorded as a conflict.
        """

        async def work(session: AsyncSession) -> VerificationAttempt:
            attempt = await self.verification.verify(
                session, package_id, identity_claim, presented_code, actor
            )
            if attempt.accepted and attempt.shipment_id is not None:
                await self.consolidation.archive_if_complete(
                    session, attempt.shipment_id, actor
                )
            return attempt

        try:
            attempt = await self._run(work)
        except StaleDataError:
            async with self.session_factory() as session:
                async with session.begin():
                    await self.verification.record_conflict(
                        session, package_id, identity_claim, actor
                    )
            raise
        if attempt.error is not None:
            raise attempt.error
        self.notifications.delivered(
            DeliveredNotice(
                package_id=attempt.package_id,
                customer_id=attempt.customer_id or "",
                delivered_at=attempt.delivered_at,
            )
        )
        return attempt

    # Audit

    async def query_audit(
        self, filters: AuditFilter | None = None
    ) -> list[AuditEntryModel]:
        async with self.session_factory() as session:
            return await self.audit.query(session, filters)

    async def purge_audit(
        self,
        retention_days: int | None = None,
        *,
        actor: str = SYSTEM_ACTOR,
    ) -> int:
        days = retention_days or self.config.audit_retention_days

        async def work(session: AsyncSession) -> int:
            return await self.audit.purge_expired(session, days, actor=actor)

        return await self._run(work)

    def _notify_issued(self, issued: _Issued) -> None:
        if issued.code is None:
            return
        self.notifications.code_issued(
            CodeIssuedNotice(
                package_id=issued.package.id,
                customer_id=issued.package.customer_id,
                code=issued.code.code,
                expires_at=issued.code.expires_at,
            )
        )
