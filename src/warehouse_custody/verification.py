"""Front-desk release verification with lockout."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum

from sqlalchemy.ext.asyncio import AsyncSession

from warehouse_custody.audit import AuditKind, AuditLog, AuditOutcome
from warehouse_custody.clock import Clock, utcnow
from warehouse_custody.codes import CodeIssuer
from warehouse_custody.config import CustodyConfig
from warehouse_custody.db.models import PackageModel
from warehouse_custody.db.repository import CustodyRepository
from warehouse_custody.exceptions import (
    AlreadyDelivered,
    CodeAlreadyUsed,
    CodeNotIssued,
    CustodyError,
    Expired,
    IdentityMismatch,
    InvalidCode,
    Locked,
    NotArrived,
    UnknownPackage,
    VerificationRejected,
)
from warehouse_custody.lifecycle import PackageLifecycle
from warehouse_custody.status import PackageStatus

logger = logging.getLogger(__name__)

_CLAIM_MAX_LENGTH = 64
_CODE_MAX_LENGTH = 64
CONFLICT_FAILURE = "conflict"


class VerificationState(StrEnum):
    PRESENTED = "presented"
    CHECKING = "checking"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


@dataclass
class VerificationAttempt:
    """Outcome of one ``verify`` call.

    A rejected attempt carries its error instead of raising it, so the
    counter updates and the audit entry commit with the transaction.
    """

    package_id: str
    state: VerificationState = VerificationState.PRESENTED
    error: CustodyError | None = None
    failed_attempts: int = 0
    attempts_remaining: int | None = None
    locked_until: datetime | None = None
    delivered_at: datetime | None = None
    shipment_id: str | None = None
    customer_id: str | None = None

    @property
    def accepted(self) -> bool:
        return self.state is VerificationState.ACCEPTED


def normalize_claim(claim: str) -> str:
    return claim.strip().casefold()


class VerificationService:
    def __init__(
        self,
        lifecycle: PackageLifecycle,
        codes: CodeIssuer,
        audit: AuditLog,
        *,
        config: CustodyConfig,
        clock: Clock = utcnow,
    ) -> None:
        self.lifecycle = lifecycle
        self.codes = codes
        self.audit = audit
        self.config = config
        self._clock = clock

    async def verify(
        self,
        session: AsyncSession,
        package_id: str,
        identity_claim: str,
        presented_code: str,
        actor: str,
    ) -> VerificationAttempt:
        """Check a claim and code against a package and release it on a match.

        Checks run in a fixed order and stop at the first failure. Every
        call records exactly one verification entry; the presented code is
        never written anywhere.
        """
        attempt = VerificationAttempt(package_id=package_id)
        attempt.state = VerificationState.CHECKING
        now = self._clock()

        try:
            package = await CustodyRepository(session).get_package(package_id)
        except UnknownPackage as exc:
            attempt.error = exc
            await self._record(session, attempt, identity_claim, actor)
            return attempt

        attempt.shipment_id = package.shipment_id
        attempt.customer_id = package.customer_id
        error = self._check(package, identity_claim, presented_code, now)
        if error is None:
            package.code_used_at = now
            package.failed_attempts = 0
            package.locked_until = None
            await self.lifecycle.release(session, package, actor)
            attempt.state = VerificationState.ACCEPTED
            attempt.delivered_at = package.delivered_at
        else:
            attempt.error = error
            attempt.locked_until = error.locked_until
        attempt.failed_attempts = package.failed_attempts
        attempt.attempts_remaining = self._remaining(package)
        if isinstance(attempt.error, VerificationRejected):
            attempt.error.failed_attempts = attempt.failed_attempts
            attempt.error.attempts_remaining = attempt.attempts_remaining
        await self._record(session, attempt, identity_claim, actor)
        return attempt

    def _check(
        self,
        package: PackageModel,
        identity_claim: str,
        presented_code: str,
        now: datetime,
    ) -> VerificationRejected | None:
        if package.status is PackageStatus.DELIVERED:
            return AlreadyDelivered(
                f"Package {package.id} was already delivered",
                entity_id=package.id,
            )
        if package.status is not PackageStatus.ARRIVED:
            return NotArrived(
                f"Package {package.id} has not arrived "
                f"(status {package.status.value})",
                entity_id=package.id,
            )
        if package.locked_until is not None and package.locked_until > now:
            return Locked(
                f"Package {package.id} is locked until "
                f"{package.locked_until.isoformat()}",
                entity_id=package.id,
                locked_until=package.locked_until,
            )
        if normalize_claim(identity_claim) != normalize_claim(
            package.customer_suite
        ):
            self._register_failure(package, now)
            return IdentityMismatch(
                f"Identity claim does not match the owner of {package.id}",
                entity_id=package.id,
                locked_until=package.locked_until,
            )
        if package.code_hash is None or package.code_expires_at is None:
            return CodeNotIssued(
                f"No release code has been issued for {package.id}",
                entity_id=package.id,
            )
        if package.code_expires_at <= now:
            return Expired(
                f"Release code for {package.id} expired at "
                f"{package.code_expires_at.isoformat()}",
                entity_id=package.id,
            )
        if package.code_used_at is not None:
            return CodeAlreadyUsed(
                f"Release code for {package.id} was already used",
                entity_id=package.id,
            )
        matched = len(presented_code) <= _CODE_MAX_LENGTH and (
            self.codes.code_matches(presented_code, package.code_hash)
        )
        if not matched:
            self._register_failure(package, now)
            return InvalidCode(
                f"Invalid release code for {package.id}",
                entity_id=package.id,
                locked_until=package.locked_until,
            )
        return None

    async def record_conflict(
        self,
        session: AsyncSession,
        package_id: str,
        identity_claim: str,
        actor: str,
    ) -> None:
        """Record an attempt abandoned after repeated concurrent updates."""
        logger.warning(
            "Verification of %s by %s abandoned after concurrent updates",
            package_id,
            actor,
        )
        await self.audit.append(
            session,
            kind=AuditKind.VERIFICATION,
            action="verify",
            entity_type="package",
            entity_id=package_id,
            actor=actor,
            outcome=AuditOutcome.FAILURE,
            failure_kind=CONFLICT_FAILURE,
            identity_claim=identity_claim.strip()[:_CLAIM_MAX_LENGTH],
            new_state=VerificationState.REJECTED.value,
        )

    def _register_failure(self, package: PackageModel, now: datetime) -> None:
        package.failed_attempts = (package.failed_attempts or 0) + 1
        package.updated_at = now
        if package.failed_attempts >= self.config.max_failed_attempts:
            package.locked_until = now + timedelta(
                minutes=self.config.lockout_minutes
            )
            logger.warning(
                "Package %s locked until %s after %d failed attempts",
                package.id,
                package.locked_until.isoformat(),
                package.failed_attempts,
            )

    def _remaining(self, package: PackageModel) -> int:
        return max(
            self.config.max_failed_attempts - (package.failed_attempts or 0),
            0,
        )

    async def _record(
        self,
        session: AsyncSession,
        attempt: VerificationAttempt,
        identity_claim: str,
        actor: str,
    ) -> None:
        error = attempt.error
        if error is None:
            attempt_outcome = AuditOutcome.SUCCESS
            logger.info(
                "Package %s released to its owner by %s",
                attempt.package_id,
                actor,
            )
        else:
            attempt.state = VerificationState.REJECTED
            attempt_outcome = AuditOutcome.FAILURE
            logger.warning(
                "Verification of %s by %s rejected: %s",
                attempt.package_id,
                actor,
                error.code,
            )
        await self.audit.append(
            session,
            kind=AuditKind.VERIFICATION,
            action="verify",
            entity_type="package",
            entity_id=attempt.package_id,
            actor=actor,
            outcome=attempt_outcome,
            failure_kind=error.code if error is not None else None,
            identity_claim=identity_claim.strip()[:_CLAIM_MAX_LENGTH],
            new_state=attempt.state.value,
            details={
                "failed_attempts": attempt.failed_attempts,
                "attempts_remaining": attempt.attempts_remaining,
                "locked_until": (
                    attempt.locked_until.isoformat()
                    if attempt.locked_until
                    else None
                ),
            },
        )
