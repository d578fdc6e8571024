"""One-time release code issuance."""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from passlib.context import CryptContext
from sqlalchemy.ext.asyncio import AsyncSession

from warehouse_custody.audit import SYSTEM_ACTOR, AuditKind, AuditLog
from warehouse_custody.clock import Clock, utcnow
from warehouse_custody.config import CustodyConfig
from warehouse_custody.db.models import PackageModel
from warehouse_custody.db.repository import CustodyRepository
from warehouse_custody.exceptions import (
    AlreadyDelivered,
    CodeSpaceExhausted,
    NotArrived,
)
from warehouse_custody.status import PackageStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedCode:
    """A freshly issued code. The plaintext exists only in this object."""

    package_id: str
    code: str = field(repr=False)
    issued_at: datetime
    expires_at: datetime


class CodeIssuer:
    """Generates, hashes and stores release codes.

    Each code is kept twice, neither in plaintext: a salted
    ``pbkdf2_sha256`` hash used for verification, and an HMAC digest keyed
    by ``code_index_key`` used only to find collisions with other active
    codes.
    """

    def __init__(
        self,
        audit: AuditLog,
        *,
        config: CustodyConfig,
        clock: Clock = utcnow,
        code_generator: Callable[[], str] | None = None,
    ) -> None:
        self.audit = audit
        self.config = config
        self._clock = clock
        self._generate = code_generator or self._random_code
        self._context = CryptContext(
            schemes=["pbkdf2_sha256"],
            pbkdf2_sha256__default_rounds=config.code_hash_rounds,
        )
        self._index_key = config.code_index_key.get_secret_value().encode()

    def _random_code(self) -> str:
        low = 10 ** (self.config.code_digits - 1)
        return str(low + secrets.randbelow(9 * low))

    def hash_code(self, code: str) -> str:
        return self._context.hash(code)

    def code_matches(self, code: str, code_hash: str) -> bool:
        """Constant-time comparison of ``code`` against a stored hash."""
        return self._context.verify(code, code_hash)

    def lookup_digest(self, code: str) -> str:
        return hmac.new(
            self._index_key, code.encode("utf-8"), hashlib.sha256
        ).hexdigest()

    async def issue_code(
        self,
        session: AsyncSession,
        package: PackageModel,
        *,
        actor: str = SYSTEM_ACTOR,
        action: str = "issue",
        reason: str = "shipment arrived",
    ) -> IssuedCode:
        """Store a new code for ``package`` and return its plaintext once."""
        repository = CustodyRepository(session)
        now = self._clock()
        max_attempts = self.config.code_max_generation_attempts
        for _ in range(max_attempts):
            candidate = self._generate()
            digest = self.lookup_digest(candidate)
            if not await repository.code_digest_active(digest, now):
                break
        else:
            logger.critical(
                "Release code space exhausted: %d collisions in a row while "
                "issuing for package %s",
                max_attempts,
                package.id,
            )
            raise CodeSpaceExhausted(package.id, max_attempts)

        expires_at = now + timedelta(days=self.config.code_ttl_days)
        package.code_hash = self.hash_code(candidate)
        package.code_digest = digest
        package.code_issued_at = now
        package.code_expires_at = expires_at
        package.code_used_at = None
        package.failed_attempts = 0
        package.locked_until = None
        package.updated_at = now
        await self.audit.append(
            session,
            kind=AuditKind.CODE,
            action=action,
            entity_type="package",
            entity_id=package.id,
            actor=actor,
            reason=reason,
            details={"expires_at": expires_at.isoformat()},
        )
        logger.info(
            "Release code %s for package %s, valid until %s",
            action,
            package.id,
            expires_at.isoformat(),
        )
        return IssuedCode(
            package_id=package.id,
            code=candidate,
            issued_at=now,
            expires_at=expires_at,
        )

    async def reissue_code(
        self,
        session: AsyncSession,
        package_id: str,
        actor: str,
        reason: str = "administrative reissue",
    ) -> IssuedCode:
        """Replace any current code, used or not, with a fresh one.

        Callers are expected to have checked the actor's privileges.
        """
        package = await CustodyRepository(session).get_package(package_id)
        if package.status is PackageStatus.DELIVERED:
            raise AlreadyDelivered(
                f"Package {package.id} was already delivered",
                entity_id=package.id,
            )
        if package.status is not PackageStatus.ARRIVED:
            raise NotArrived(
                f"Package {package.id} has not arrived "
                f"(status {package.status.value})",
                entity_id=package.id,
            )
        return await self.issue_code(
            session, package, actor=actor, action="reissue", reason=reason
        )

    def has_active_code(
        self, package: PackageModel, now: datetime | None = None
    ) -> bool:
        now = now or self._clock()
        return (
            package.code_hash is not None
            and package.code_used_at is None
            and package.code_expires_at is not None
            and package.code_expires_at > now
        )
