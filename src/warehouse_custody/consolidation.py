"""Shipment consolidation and derived shipment status."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from warehouse_custody.audit import AuditKind, AuditLog
from warehouse_custody.clock import Clock, utcnow
from warehouse_custody.db.models import PackageModel, ShipmentModel
from warehouse_custody.db.repository import CustodyRepository
from warehouse_custody.exceptions import (
    InvalidTransition,
    NotShipmentMember,
    PackageNotReady,
    ShipmentInTransit,
)
from warehouse_custody.lifecycle import PackageLifecycle
from warehouse_custody.status import PackageStatus, rank, successor

logger = logging.getLogger(__name__)

# Shipment-level events may only walk members up to ARRIVED.
_EVENT_TARGETS = (
    PackageStatus.SHIPPED,
    PackageStatus.IN_TRANSIT,
    PackageStatus.ARRIVED,
)


def new_shipment_id() -> str:
    return f"SHP-{uuid.uuid4().hex[:12].upper()}"


def derive_shipment_status(
    statuses: Iterable[PackageStatus],
) -> PackageStatus | None:
    """Shipment status as a pure function of its members' statuses.

    DELIVERED only when every member is delivered, EXCEPTION when any member
    is in exception, otherwise the earliest member status. A shipment with
    no members has no status.
    """
    statuses = list(statuses)
    if not statuses:
        return None
    if PackageStatus.EXCEPTION in statuses:
        return PackageStatus.EXCEPTION
    return min(statuses, key=rank)


def _effective_status(package: PackageModel) -> PackageStatus:
    if package.status is PackageStatus.EXCEPTION:
        return package.status_before_exception or PackageStatus.PROCESSED
    return package.status


@dataclass
class ShipmentSnapshot:
    """A shipment together with its members and derived status."""

    shipment: ShipmentModel
    packages: list[PackageModel]

    @property
    def status(self) -> PackageStatus | None:
        return derive_shipment_status(p.status for p in self.packages)


class ShipmentConsolidation:
    """Groups processed packages into shipments and moves them as a unit."""

    def __init__(
        self,
        lifecycle: PackageLifecycle,
        audit: AuditLog,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.lifecycle = lifecycle
        self.audit = audit
        self._clock = clock

    async def snapshot(
        self, session: AsyncSession, shipment_id: str
    ) -> ShipmentSnapshot:
        repository = CustodyRepository(session)
        shipment = await repository.get_shipment(shipment_id)
        members = await repository.list_members(shipment_id)
        return ShipmentSnapshot(shipment=shipment, packages=members)

    async def create_shipment(
        self,
        session: AsyncSession,
        package_ids: Sequence[str],
        destination: str,
        service_level: str,
        actor: str,
    ) -> ShipmentSnapshot:
        """Consolidate processed, unassigned packages into a new shipment."""
        package_ids = list(dict.fromkeys(package_ids))
        if not package_ids:
            raise PackageNotReady("A shipment needs at least one package")
        packages = await CustodyRepository(session).get_packages(package_ids)
        self._check_ready(packages)

        now = self._clock()
        shipment = ShipmentModel(
            id=new_shipment_id(),
            destination=destination,
            service_level=service_level,
            created_by=actor,
            created_at=now,
            updated_at=now,
        )
        self._recompute_aggregates(shipment, packages)
        session.add(shipment)
        await session.flush()

        for package in packages:
            package.shipment_id = shipment.id
            await self.lifecycle.advance(
                session,
                package,
                PackageStatus.GROUPED,
                actor,
                f"consolidated into {shipment.id}",
            )
        await self.audit.append(
            session,
            kind=AuditKind.CONSOLIDATION,
            action="create_shipment",
            entity_type="shipment",
            entity_id=shipment.id,
            new_state=PackageStatus.GROUPED.value,
            actor=actor,
            details={
                "package_ids": package_ids,
                **self._aggregate_details(shipment),
            },
        )
        logger.info(
            "Shipment %s created with %d packages by %s",
            shipment.id,
            shipment.package_count,
            actor,
        )
        return ShipmentSnapshot(shipment=shipment, packages=packages)

    async def add_packages(
        self,
        session: AsyncSession,
        shipment_id: str,
        package_ids: Sequence[str],
        actor: str,
    ) -> ShipmentSnapshot:
        """Add more processed packages to a shipment that has not left."""
        repository = CustodyRepository(session)
        shipment = await repository.get_shipment(shipment_id, for_update=True)
        members = await repository.list_members(shipment_id, for_update=True)
        self._check_not_departed(shipment, members)

        package_ids = [
            package_id
            for package_id in dict.fromkeys(package_ids)
            if package_id not in {m.id for m in members}
        ]
        if not package_ids:
            return ShipmentSnapshot(shipment=shipment, packages=members)
        packages = await repository.get_packages(package_ids)
        self._check_ready(packages)

        for package in packages:
            package.shipment_id = shipment.id
            await self.lifecycle.advance(
                session,
                package,
                PackageStatus.GROUPED,
                actor,
                f"consolidated into {shipment.id}",
            )
        members = members + packages
        self._recompute_aggregates(shipment, members)
        shipment.updated_at = self._clock()
        await self.audit.append(
            session,
            kind=AuditKind.CONSOLIDATION,
            action="add_packages",
            entity_type="shipment",
            entity_id=shipment.id,
            actor=actor,
            details={
                "package_ids": package_ids,
                **self._aggregate_details(shipment),
            },
        )
        return ShipmentSnapshot(shipment=shipment, packages=members)

    async def unlink_package(
        self,
        session: AsyncSession,
        shipment_id: str,
        package_id: str,
        actor: str,
        reason: str = "",
    ) -> ShipmentSnapshot:
        """Take a package back out of a shipment before it departs."""
        repository = CustodyRepository(session)
        shipment = await repository.get_shipment(shipment_id, for_update=True)
        members = await repository.list_members(shipment_id, for_update=True)
        package = next((p for p in members if p.id == package_id), None)
        if package is None:
            await repository.get_package(package_id, for_update=False)
            raise NotShipmentMember(
                f"Package {package_id} is not part of shipment {shipment_id}",
                entity_id=package_id,
            )
        self._check_not_departed(shipment, members)

        await self.lifecycle.ungroup(
            session, package, actor, reason or f"unlinked from {shipment_id}"
        )
        package.shipment_id = None
        remaining = [p for p in members if p.id != package_id]
        self._recompute_aggregates(shipment, remaining)
        shipment.updated_at = self._clock()
        await self.audit.append(
            session,
            kind=AuditKind.CONSOLIDATION,
            action="unlink_package",
            entity_type="shipment",
            entity_id=shipment.id,
            actor=actor,
            reason=reason,
            details={
                "package_id": package_id,
                **self._aggregate_details(shipment),
            },
        )
        logger.info(
            "Package %s unlinked from shipment %s by %s",
            package_id,
            shipment_id,
            actor,
        )
        return ShipmentSnapshot(shipment=shipment, packages=remaining)

    async def mark_departed(
        self, session: AsyncSession, shipment_id: str, actor: str
    ) -> tuple[ShipmentSnapshot, list[PackageModel]]:
        return await self.advance(
            session, shipment_id, PackageStatus.SHIPPED, actor, "departed"
        )

    async def mark_in_transit(
        self, session: AsyncSession, shipment_id: str, actor: str
    ) -> tuple[ShipmentSnapshot, list[PackageModel]]:
        return await self.advance(
            session, shipment_id, PackageStatus.IN_TRANSIT, actor, "in_transit"
        )

    async def mark_arrived(
        self, session: AsyncSession, shipment_id: str, actor: str
    ) -> tuple[ShipmentSnapshot, list[PackageModel]]:
        return await self.advance(
            session, shipment_id, PackageStatus.ARRIVED, actor, "arrived"
        )

    async def advance(
        self,
        session: AsyncSession,
        shipment_id: str,
        target: PackageStatus,
        actor: str,
        event: str,
    ) -> tuple[ShipmentSnapshot, list[PackageModel]]:
        """Walk every member forward to ``target``, one audited step each.

        Members already at or past ``target`` are left alone, so replaying
        an event is a no-op. Returns the snapshot and the members that
        actually moved.
        """
        if target not in _EVENT_TARGETS:
            raise InvalidTransition(
                f"Shipments cannot be moved to {target.value}",
                entity_id=shipment_id,
            )
        repository = CustodyRepository(session)
        shipment = await repository.get_shipment(shipment_id, for_update=True)
        members = await repository.list_members(shipment_id, for_update=True)
        if not members:
            raise InvalidTransition(
                f"Shipment {shipment_id} has no packages",
                entity_id=shipment_id,
            )
        blocked = [
            p.id for p in members if p.status is PackageStatus.EXCEPTION
        ]
        if blocked:
            raise InvalidTransition(
                f"Shipment {shipment_id} has packages in exception: "
                + ", ".join(blocked),
                entity_id=shipment_id,
            )

        previous = derive_shipment_status(p.status for p in members)
        moved: list[PackageModel] = []
        for package in members:
            if rank(package.status) >= rank(target):
                continue
            while package.status is not target:
                await self.lifecycle.advance(
                    session,
                    package,
                    successor(package.status),
                    actor,
                    f"shipment {shipment_id} {event}",
                )
            moved.append(package)

        snapshot = ShipmentSnapshot(shipment=shipment, packages=members)
        if not moved:
            logger.info(
                "Shipment %s already %s, nothing to do", shipment_id, event
            )
            return snapshot, moved

        now = self._clock()
        if target is PackageStatus.SHIPPED and shipment.departed_at is None:
            shipment.departed_at = now
        if target is PackageStatus.ARRIVED and shipment.arrived_at is None:
            shipment.arrived_at = now
        shipment.updated_at = now
        await self.audit.append(
            session,
            kind=AuditKind.CONSOLIDATION,
            action=event,
            entity_type="shipment",
            entity_id=shipment.id,
            previous_state=previous.value if previous else None,
            new_state=snapshot.status.value if snapshot.status else None,
            actor=actor,
            details={"moved": [p.id for p in moved]},
        )
        logger.info(
            "Shipment %s %s: %d packages moved to %s",
            shipment_id,
            event,
            len(moved),
            target.value,
        )
        return snapshot, moved

    async def archive_if_complete(
        self, session: AsyncSession, shipment_id: str, actor: str
    ) -> bool:
        """Archive the shipment once every member has been delivered."""
        snapshot = await self.snapshot(session, shipment_id)
        shipment = snapshot.shipment
        if shipment.archived_at is not None:
            return False
        if snapshot.status is not PackageStatus.DELIVERED:
            return False
        shipment.archived_at = self._clock()
        shipment.updated_at = shipment.archived_at
        await self.audit.append(
            session,
            kind=AuditKind.CONSOLIDATION,
            action="archive",
            entity_type="shipment",
            entity_id=shipment.id,
            new_state=PackageStatus.DELIVERED.value,
            actor=actor,
            reason="all packages delivered",
        )
        logger.info("Shipment %s archived", shipment.id)
        return True

    def _check_ready(self, packages: Iterable[PackageModel]) -> None:
        for package in packages:
            if package.status is not PackageStatus.PROCESSED:
                raise PackageNotReady(
                    f"Package {package.id} is {package.status.value}, "
                    "expected processed",
                    entity_id=package.id,
                )
            if package.shipment_id is not None:
                raise PackageNotReady(
                    f"Package {package.id} already belongs to shipment "
                    f"{package.shipment_id}",
                    entity_id=package.id,
                )

    def _check_not_departed(
        self, shipment: ShipmentModel, members: Iterable[PackageModel]
    ) -> None:
        status = derive_shipment_status(_effective_status(p) for p in members)
        departed = shipment.departed_at is not None or (
            status is not None and rank(status) >= rank(PackageStatus.SHIPPED)
        )
        if departed:
            raise ShipmentInTransit(
                f"Shipment {shipment.id} has already been shipped",
                entity_id=shipment.id,
            )

    def _recompute_aggregates(
        self, shipment: ShipmentModel, packages: Sequence[PackageModel]
    ) -> None:
        shipment.package_count = len(packages)
        shipment.total_weight_kg = sum(
            (p.weight_kg or Decimal("0") for p in packages), Decimal("0")
        )
        shipment.total_declared_value = sum(
            (p.declared_value or Decimal("0") for p in packages), Decimal("0")
        )

    def _aggregate_details(self, shipment: ShipmentModel) -> dict[str, str]:
        return {
            "package_count": str(shipment.package_count),
            "total_weight_kg": str(shipment.total_weight_kg),
            "total_declared_value": str(shipment.total_declared_value),
        }
