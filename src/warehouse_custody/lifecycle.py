"""Package lifecycle state machine.

Forward order, one step at a time:

    AWAITING_PICKUP → RECEIVED → PROCESSING → PROCESSED → GROUPED
        → SHIPPED → IN_TRANSIT → ARRIVED → DELIVERED

Any non-terminal state may move to EXCEPTION; leaving EXCEPTION needs a
manual resolution to a forward state no earlier than the one held before.
DELIVERED is only reachable through release-code verification.
"""

from __future__ import annotations

import logging
import uuid
from decimal import Decimal
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from warehouse_custody.audit import AuditKind, AuditLog
from warehouse_custody.clock import Clock, utcnow
from warehouse_custody.db.models import PackageModel
from warehouse_custody.db.repository import CustodyRepository
from warehouse_custody.exceptions import InvalidTransition
from warehouse_custody.status import (
    FORWARD_SEQUENCE,
    SHIPMENT_STATUSES,
    TERMINAL_STATUSES,
    PackageStatus,
    rank,
    successor,
)

logger = logging.getLogger(__name__)


def new_package_id() -> str:
    return f"PKG-{uuid.uuid4().hex[:12].upper()}"


class PackageLifecycle:
    """The only code path that changes ``PackageModel.status``."""

    def __init__(self, audit: AuditLog, *, clock: Clock = utcnow) -> None:
        self.audit = audit
        self._clock = clock

    async def intake(
        self,
        session: AsyncSession,
        *,
        customer_id: str,
        customer_suite: str,
        actor: str,
        weight_kg: Decimal = Decimal("0"),
        declared_value: Decimal = Decimal("0"),
        description: str = "",
    ) -> PackageModel:
        """Register an approved intake request as a new package."""
        now = self._clock()
        package = PackageModel(
            id=new_package_id(),
            status=PackageStatus.AWAITING_PICKUP,
            customer_id=customer_id,
            customer_suite=customer_suite.strip(),
            description=description,
            weight_kg=weight_kg,
            declared_value=declared_value,
            failed_attempts=0,
            created_at=now,
            updated_at=now,
        )
        session.add(package)
        await self.audit.append(
            session,
            kind=AuditKind.TRANSITION,
            action="intake",
            entity_type="package",
            entity_id=package.id,
            new_state=PackageStatus.AWAITING_PICKUP.value,
            actor=actor,
            reason="intake request approved",
            details={"customer_id": customer_id},
        )
        logger.info("Package %s taken in for %s", package.id, customer_id)
        return package

    async def transition(
        self,
        session: AsyncSession,
        package_id: str,
        target: PackageStatus,
        actor: str,
        reason: str = "",
    ) -> PackageModel:
        """Move a package one step forward (or into EXCEPTION).

        GROUPED is entered only through shipment consolidation, and the
        later shipment states only by a package linked to a shipment.
        """
        target = PackageStatus(target)
        package = await CustodyRepository(session).get_package(package_id)
        if target is PackageStatus.GROUPED:
            raise InvalidTransition(
                f"Package {package.id} can only be grouped by adding it "
                "to a shipment",
                entity_id=package.id,
            )
        self._check_membership(package, target)
        await self.advance(session, package, target, actor, reason)
        return package

    async def advance(
        self,
        session: AsyncSession,
        package: PackageModel,
        target: PackageStatus,
        actor: str,
        reason: str = "",
    ) -> None:
        if target is PackageStatus.EXCEPTION:
            await self.enter_exception(session, package, actor, reason)
            return
        if target is PackageStatus.DELIVERED:
            raise InvalidTransition(
                f"Package {package.id} can only be delivered through "
                "release-code verification",
                entity_id=package.id,
            )
        expected = successor(package.status)
        if expected is None or target is not expected:
            raise InvalidTransition(
                f"Cannot move package {package.id} from "
                f"{package.status.value} to {target.value}",
                entity_id=package.id,
            )
        await self._apply(session, package, target, actor, reason)

    async def mark_exception(
        self,
        session: AsyncSession,
        package_id: str,
        actor: str,
        reason: str = "",
    ) -> PackageModel:
        package = await CustodyRepository(session).get_package(package_id)
        await self.enter_exception(session, package, actor, reason)
        return package

    async def enter_exception(
        self,
        session: AsyncSession,
        package: PackageModel,
        actor: str,
        reason: str = "",
    ) -> None:
        if package.status in TERMINAL_STATUSES:
            raise InvalidTransition(
                f"Package {package.id} is already {package.status.value}",
                entity_id=package.id,
            )
        if package.status is PackageStatus.EXCEPTION:
            raise InvalidTransition(
                f"Package {package.id} is already in exception",
                entity_id=package.id,
            )
        package.status_before_exception = package.status
        await self._apply(
            session,
            package,
            PackageStatus.EXCEPTION,
            actor,
            reason,
            action="mark_exception",
        )

    async def resolve_exception(
        self,
        session: AsyncSession,
        package_id: str,
        target: PackageStatus,
        actor: str,
        reason: str = "",
    ) -> PackageModel:
        """Return a package from EXCEPTION into the forward sequence."""
        target = PackageStatus(target)
        package = await CustodyRepository(session).get_package(package_id)
        if package.status is not PackageStatus.EXCEPTION:
            raise InvalidTransition(
                f"Package {package.id} is not in exception",
                entity_id=package.id,
            )
        if target not in FORWARD_SEQUENCE or target is PackageStatus.DELIVERED:
            raise InvalidTransition(
                f"Cannot resolve package {package.id} to {target.value}",
                entity_id=package.id,
            )
        floor = package.status_before_exception or FORWARD_SEQUENCE[0]
        if rank(target) < rank(floor):
            raise InvalidTransition(
                f"Cannot resolve package {package.id} to {target.value}: "
                f"it was already {floor.value} before the exception",
                entity_id=package.id,
            )
        self._check_membership(package, target)
        package.status_before_exception = None
        await self._apply(
            session,
            package,
            target,
            actor,
            reason,
            action="resolve_exception",
            details={"resumed_from": floor.value},
        )
        return package

    async def release(
        self, session: AsyncSession, package: PackageModel, actor: str
    ) -> None:
        """ARRIVED → DELIVERED after a successful code verification."""
        if package.status is not PackageStatus.ARRIVED:
            raise InvalidTransition(
                f"Cannot release package {package.id} from "
                f"{package.status.value}",
                entity_id=package.id,
            )
        if package.code_used_at is None:
            raise InvalidTransition(
                f"Package {package.id} has no verified release code",
                entity_id=package.id,
            )
        package.delivered_at = package.code_used_at
        await self._apply(
            session,
            package,
            PackageStatus.DELIVERED,
            actor,
            "verified",
            action="release",
        )

    async def ungroup(
        self,
        session: AsyncSession,
        package: PackageModel,
        actor: str,
        reason: str = "",
    ) -> None:
        """Undo grouping when a package is unlinked before departure."""
        if package.status is PackageStatus.EXCEPTION:
            # Stays in exception; resolution may resume from PROCESSED.
            package.status_before_exception = PackageStatus.PROCESSED
            package.updated_at = self._clock()
            return
        if package.status is not PackageStatus.GROUPED:
            raise InvalidTransition(
                f"Cannot ungroup package {package.id} from "
                f"{package.status.value}",
                entity_id=package.id,
            )
        await self._apply(
            session,
            package,
            PackageStatus.PROCESSED,
            actor,
            reason,
            action="ungroup",
        )

    def _check_membership(
        self, package: PackageModel, target: PackageStatus
    ) -> None:
        if target in SHIPMENT_STATUSES and package.shipment_id is None:
            raise InvalidTransition(
                f"Package {package.id} is not part of a shipment and "
                f"cannot become {target.value}",
                entity_id=package.id,
            )

    async def _apply(
        self,
        session: AsyncSession,
        package: PackageModel,
        target: PackageStatus,
        actor: str,
        reason: str,
        *,
        action: str = "transition",
        details: dict[str, Any] | None = None,
    ) -> None:
        previous = package.status
        package.status = target
        package.updated_at = self._clock()
        await self.audit.append(
            session,
            kind=AuditKind.TRANSITION,
            action=action,
            entity_type="package",
            entity_id=package.id,
            previous_state=previous.value,
            new_state=target.value,
            actor=actor,
            reason=reason,
            details=details,
        )
        logger.info(
            "Package %s: %s -> %s by %s",
            package.id,
            previous.value,
            target.value,
            actor,
        )
