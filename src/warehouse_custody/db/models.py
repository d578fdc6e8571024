"""SQLAlchemy package/shipment/audit models."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    event,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from warehouse_custody.status import PackageStatus


class Base(DeclarativeBase):
    """SQLAlchemy declarative base."""


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always comes back as UTC.

    SQLite drops the offset on storage, so values are normalised to UTC on
    the way in and tagged with UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetimes are not accepted")
        return value.astimezone(UTC)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


def _status_column(**kwargs: Any):
    return mapped_column(
        SAEnum(
            PackageStatus,
            native_enum=False,
            length=32,
            values_callable=lambda enum: [member.value for member in enum],
        ),
        **kwargs,
    )


class ShipmentModel(Base):
    """Consolidated shipment. Its status is derived from member packages."""

    __tablename__ = "custody_shipments"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    destination: Mapped[str] = mapped_column(String(255))
    service_level: Mapped[str] = mapped_column(String(32), default="standard")
    total_weight_kg: Mapped[Decimal] = mapped_column(
        Numeric(12, 3), default=Decimal("0")
    )
    total_declared_value: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), default=Decimal("0")
    )
    package_count: Mapped[int] = mapped_column(Integer, default=0)
    created_by: Mapped[str] = mapped_column(String(128))
    departed_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    arrived_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    archived_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    created_at: Mapped[datetime] = mapped_column(UTCDateTime())
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime())
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class PackageModel(Base):
    """A physical package and its release-code state."""

    __tablename__ = "custody_packages"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    status: Mapped[PackageStatus] = _status_column(
        default=PackageStatus.AWAITING_PICKUP, index=True
    )
    status_before_exception: Mapped[PackageStatus | None] = _status_column(
        nullable=True, default=None
    )
    customer_id: Mapped[str] = mapped_column(String(64), index=True)
    customer_suite: Mapped[str] = mapped_column(String(32))
    description: Mapped[str] = mapped_column(String(500), default="")
    weight_kg: Mapped[Decimal] = mapped_column(
        Numeric(10, 3), default=Decimal("0")
    )
    declared_value: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0")
    )
    shipment_id: Mapped[str | None] = mapped_column(
        ForeignKey("custody_shipments.id"), index=True, default=None
    )

    # Release code: only the salted hash is kept, never the code itself.
    code_hash: Mapped[str | None] = mapped_column(String(255), default=None)
    code_digest: Mapped[str | None] = mapped_column(
        String(64), index=True, default=None
    )
    code_issued_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    code_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    code_used_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    failed_attempts: Mapped[int] = mapped_column(Integer, default=0)
    locked_until: Mapped[datetime | None] = mapped_column(UTCDateTime())

    delivered_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    created_at: Mapped[datetime] = mapped_column(UTCDateTime())
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime())
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class AuditEntryModel(Base):
    """Append-only audit record of a state change or verification attempt."""

    __tablename__ = "custody_audit_entries"

    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True
    )
    kind: Mapped[str] = mapped_column(String(32), index=True)
    action: Mapped[str] = mapped_column(String(64))
    entity_type: Mapped[str] = mapped_column(String(32))
    entity_id: Mapped[str] = mapped_column(String(64), index=True)
    previous_state: Mapped[str | None] = mapped_column(String(32))
    new_state: Mapped[str | None] = mapped_column(String(32))
    actor: Mapped[str] = mapped_column(String(128), index=True)
    reason: Mapped[str] = mapped_column(Text, default="")
    outcome: Mapped[str] = mapped_column(String(16), index=True)
    failure_kind: Mapped[str | None] = mapped_column(String(64))
    identity_claim: Mapped[str | None] = mapped_column(String(64))
    details: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), index=True)


class AuditLogImmutableError(RuntimeError):
    """Raised when code tries to change a written audit entry."""


@event.listens_for(AuditEntryModel, "before_update")
def _refuse_audit_update(mapper, connection, target) -> None:
    raise AuditLogImmutableError(f"Audit entry {target.id} is immutable")


@event.listens_for(AuditEntryModel, "before_delete")
def _refuse_audit_delete(mapper, connection, target) -> None:
    raise AuditLogImmutableError(
        f"Audit entry {target.id} can only be removed by retention purge"
    )
