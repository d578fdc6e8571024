"""Request and response models for the custody HTTP API."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from warehouse_custody.status import PackageStatus


class IntakeRequest(BaseModel):
    customer_id: str = Field(min_length=1, max_length=64)
    customer_suite: str = Field(min_length=1, max_length=32)
    weight_kg: Decimal = Field(default=Decimal("0"), ge=0)
    declared_value: Decimal = Field(default=Decimal("0"), ge=0)
    description: str = Field(default="", max_length=500)


class TransitionRequest(BaseModel):
    target: PackageStatus
    reason: str = ""


class ExceptionRequest(BaseModel):
    reason: str = ""


class ResolveExceptionRequest(BaseModel):
    target: PackageStatus
    reason: str = ""


class ReissueCodeRequest(BaseModel):
    reason: str = "administrative reissue"


class VerifyRequest(BaseModel):
    identity_claim: str = Field(min_length=1, max_length=64)
    code: str = Field(min_length=1, max_length=16)


class CreateShipmentRequest(BaseModel):
    package_ids: list[str] = Field(min_length=1)
    destination: str = Field(min_length=1, max_length=255)
    service_level: str = "standard"


class AddPackagesRequest(BaseModel):
    package_ids: list[str] = Field(min_length=1)


class UnlinkPackageRequest(BaseModel):
    reason: str = ""


class PackageResponse(BaseModel):
    id: str
    status: PackageStatus
    customer_id: str
    shipment_id: str | None = None
    weight_kg: Decimal
    declared_value: Decimal
    description: str = ""
    status_before_exception: PackageStatus | None = None
    code_expires_at: datetime | None = None
    delivered_at: datetime | None = None

    @classmethod
    def from_package(cls, package: Any) -> PackageResponse:
        return cls(
            id=package.id,
            status=package.status,
            customer_id=package.customer_id,
            shipment_id=package.shipment_id,
            weight_kg=package.weight_kg,
            declared_value=package.declared_value,
            description=package.description,
            status_before_exception=package.status_before_exception,
            code_expires_at=package.code_expires_at,
            delivered_at=package.delivered_at,
        )


class ShipmentResponse(BaseModel):
    id: str
    status: PackageStatus | None
    destination: str
    service_level: str
    package_ids: list[str]
    package_count: int
    total_weight_kg: Decimal
    total_declared_value: Decimal
    departed_at: datetime | None = None
    arrived_at: datetime | None = None
    archived_at: datetime | None = None

    @classmethod
    def from_snapshot(cls, snapshot: Any) -> ShipmentResponse:
        shipment = snapshot.shipment
        return cls(
            id=shipment.id,
            status=snapshot.status,
            destination=shipment.destination,
            service_level=shipment.service_level,
            package_ids=[p.id for p in snapshot.packages],
            package_count=shipment.package_count,
            total_weight_kg=shipment.total_weight_kg,
            total_declared_value=shipment.total_declared_value,
            departed_at=shipment.departed_at,
            arrived_at=shipment.arrived_at,
            archived_at=shipment.archived_at,
        )


class ArrivalResponse(BaseModel):
    shipment: ShipmentResponse
    codes_issued: int


class CodeIssuedResponse(BaseModel):
    """Reissue acknowledgement. The code itself goes to the customer only."""

    package_id: str
    issued_at: datetime
    expires_at: datetime


class VerifyResponse(BaseModel):
    package_id: str
    status: str
    delivered_at: datetime | None


class AuditEntryResponse(BaseModel):
    id: int
    kind: str
    action: str
    entity_type: str
    entity_id: str
    previous_state: str | None = None
    new_state: str | None = None
    actor: str
    reason: str = ""
    outcome: str
    failure_kind: str | None = None
    identity_claim: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    @classmethod
    def from_entry(cls, entry: Any) -> AuditEntryResponse:
        return cls(
            id=entry.id,
            kind=entry.kind,
            action=entry.action,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            previous_state=entry.previous_state,
            new_state=entry.new_state,
            actor=entry.actor,
            reason=entry.reason,
            outcome=entry.outcome,
            failure_kind=entry.failure_kind,
            identity_claim=entry.identity_claim,
            details=entry.details or {},
            created_at=entry.created_at,
        )
