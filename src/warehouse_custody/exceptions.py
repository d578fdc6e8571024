"""Custody error taxonomy and the HTTP handlers that expose it."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


class CustodyError(Exception):
    """Base class for every structured custody failure."""

    code = "custody_error"
    entity_type = "package"

    def __init__(self, message: str, *, entity_id: str | None = None) -> None:
        super().__init__(message)
        self.entity_id = entity_id


class UnknownPackage(CustodyError):
    code = "package_not_found"

    def __init__(self, package_id: str) -> None:
        super().__init__(
            f"Package {package_id} not found", entity_id=package_id
        )
        self.package_id = package_id


PackageNotFound = UnknownPackage


class UnknownShipment(CustodyError):
    code = "shipment_not_found"
    entity_type = "shipment"

    def __init__(self, shipment_id: str) -> None:
        super().__init__(
            f"Shipment {shipment_id} not found", entity_id=shipment_id
        )
        self.shipment_id = shipment_id


class InvalidTransition(CustodyError):
    code = "invalid_transition"


class PackageNotReady(CustodyError):
    code = "package_not_ready"


class NotShipmentMember(CustodyError):
    code = "not_shipment_member"


class ShipmentInTransit(CustodyError):
    code = "shipment_in_transit"
    entity_type = "shipment"


class CodeSpaceExhausted(CustodyError):
    """No free release code could be found.

    Unlike the other errors this one is not recoverable by the caller: it
    means the active code space is close to saturation or under attack.
    """

    code = "code_space_exhausted"

    def __init__(self, package_id: str, attempts: int) -> None:
        super().__init__(
            f"No unused release code found for package {package_id} "
            f"after {attempts} attempts",
            entity_id=package_id,
        )
        self.attempts = attempts


class VerificationRejected(CustodyError):
    """A release verification that did not hand the package over.

    Carries the counters the front desk needs for messaging.
    """

    code = "verification_rejected"

    def __init__(
        self,
        message: str,
        *,
        entity_id: str | None = None,
        failed_attempts: int = 0,
        attempts_remaining: int | None = None,
        locked_until: datetime | None = None,
    ) -> None:
        super().__init__(message, entity_id=entity_id)
        self.failed_attempts = failed_attempts
        self.attempts_remaining = attempts_remaining
        self.locked_until = locked_until

    def counters(self) -> dict[str, Any]:
        return {
            "failed_attempts": self.failed_attempts,
            "attempts_remaining": self.attempts_remaining,
            "locked_until": (
                self.locked_until.isoformat() if self.locked_until else None
            ),
        }


class NotArrived(VerificationRejected):
    code = "not_arrived"


class AlreadyDelivered(VerificationRejected):
    code = "already_delivered"


class Locked(VerificationRejected):
    code = "locked"


class IdentityMismatch(VerificationRejected):
    code = "identity_mismatch"


class CodeNotIssued(VerificationRejected):
    code = "code_not_issued"


class Expired(VerificationRejected):
    code = "expired"


class CodeAlreadyUsed(VerificationRejected):
    code = "code_already_used"


class InvalidCode(VerificationRejected):
    code = "invalid_code"


# Most specific classes first; lookup walks the exception's MRO.
_STATUS_CODES: dict[type[CustodyError], int] = {
    UnknownPackage: 404,
    UnknownShipment: 404,
    Locked: 423,
    NotArrived: 409,
    AlreadyDelivered: 409,
    CodeAlreadyUsed: 409,
    IdentityMismatch: 422,
    CodeNotIssued: 422,
    Expired: 422,
    InvalidCode: 422,
    InvalidTransition: 409,
    PackageNotReady: 409,
    NotShipmentMember: 409,
    ShipmentInTransit: 409,
    CodeSpaceExhausted: 503,
    CustodyError: 400,
}


def status_code_for(exc: CustodyError) -> int:
    for cls in type(exc).__mro__:
        if cls in _STATUS_CODES:
            return _STATUS_CODES[cls]
    return 400


def register_exception_handlers(app: FastAPI) -> None:
    """Register custody exception handlers on a FastAPI app.

    Status mapping:
    1. UnknownPackage, UnknownShipment → 404
    2. Locked → 423
    3. IdentityMismatch, CodeNotIssued, Expired, InvalidCode → 422
    4. Other state conflicts (transitions, readiness, delivery) → 409
    5. CodeSpaceExhausted → 503
    6. CustodyError → 400 (catch-all)
    """

    @app.exception_handler(CustodyError)
    async def _custody_error(
        request: Request,
        exc: CustodyError,
    ) -> JSONResponse:
        content: dict[str, Any] = {
            "detail": str(exc),
            "code": exc.code,
        }
        if isinstance(exc, VerificationRejected):
            content.update(exc.counters())
        return JSONResponse(status_code=status_code_for(exc), content=content)
