"""Row lookups used inside custody transactions."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from warehouse_custody.db.models import PackageModel, ShipmentModel
from warehouse_custody.exceptions import UnknownPackage, UnknownShipment


class CustodyRepository:
    """Package and shipment queries bound to one session.

    Reads meant for mutation lock the row (``SELECT ... FOR UPDATE``) on
    backends that support it; the version column covers the rest.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_package(
        self, package_id: str, *, for_update: bool = True
    ) -> PackageModel:
        stmt = select(PackageModel).where(PackageModel.id == package_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        package = result.scalar_one_or_none()
        if package is None:
            raise UnknownPackage(package_id)
        return package

    async def get_packages(
        self, package_ids: Sequence[str], *, for_update: bool = True
    ) -> list[PackageModel]:
        """Load packages in the given order; unknown ids raise."""
        stmt = select(PackageModel).where(PackageModel.id.in_(package_ids))
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        found = {package.id: package for package in result.scalars()}
        for package_id in package_ids:
            if package_id not in found:
                raise UnknownPackage(package_id)
        return [found[package_id] for package_id in package_ids]

    async def get_shipment(
        self, shipment_id: str, *, for_update: bool = False
    ) -> ShipmentModel:
        stmt = select(ShipmentModel).where(ShipmentModel.id == shipment_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        shipment = result.scalar_one_or_none()
        if shipment is None:
            raise UnknownShipment(shipment_id)
        return shipment

    async def list_members(
        self, shipment_id: str, *, for_update: bool = False
    ) -> list[PackageModel]:
        """List packages linked to a shipment, oldest first."""
        stmt = (
            select(PackageModel)
            .where(PackageModel.shipment_id == shipment_id)
            .order_by(PackageModel.created_at, PackageModel.id)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def code_digest_active(self, digest: str, now: datetime) -> bool:
        """Whether an unused, unexpired code with this digest exists."""
        stmt = (
            select(PackageModel.id)
            .where(
                PackageModel.code_digest == digest,
                PackageModel.code_used_at.is_(None),
                PackageModel.code_expires_at > now,
            )
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.first() is not None
