"""Post-commit customer notifications."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx

from warehouse_custody.protocols import Notifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CodeIssuedNotice:
    package_id: str
    customer_id: str
    code: str = field(repr=False)
    expires_at: datetime

    def as_payload(self) -> dict[str, Any]:
        return {
            "package_id": self.package_id,
            "customer_id": self.customer_id,
            "code": self.code,
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass(frozen=True)
class DeliveredNotice:
    package_id: str
    customer_id: str
    delivered_at: datetime

    def as_payload(self) -> dict[str, Any]:
        return {
            "package_id": self.package_id,
            "customer_id": self.customer_id,
            "delivered_at": self.delivered_at.isoformat(),
        }


class HttpNotifier:
    """Posts notices as JSON to a notification service.

    ``POST {base_url}/code-issued`` and ``POST {base_url}/delivered``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(
            base_url=base_url, timeout=timeout
        )

    async def code_issued(self, notice: CodeIssuedNotice) -> None:
        response = await self._client.post(
            "/code-issued", json=notice.as_payload()
        )
        response.raise_for_status()

    async def delivered(self, notice: DeliveredNotice) -> None:
        response = await self._client.post(
            "/delivered", json=notice.as_payload()
        )
        response.raise_for_status()

    async def aclose(self) -> None:
        await self._client.aclose()


class NotificationDispatcher:
    """Sends notices in the background once their transaction committed.

    A failed or slow notification is logged and dropped; it never affects
    the custody operation that produced it.
    """

    def __init__(
        self, notifier: Notifier | None, *, timeout_seconds: float = 5.0
    ) -> None:
        self.notifier = notifier
        self.timeout_seconds = timeout_seconds
        self._tasks: set[asyncio.Task] = set()

    def code_issued(self, notice: CodeIssuedNotice) -> None:
        if self.notifier is None:
            return
        self._spawn(
            "code_issued", notice.package_id, self.notifier.code_issued(notice)
        )

    def delivered(self, notice: DeliveredNotice) -> None:
        if self.notifier is None:
            return
        self._spawn(
            "delivered", notice.package_id, self.notifier.delivered(notice)
        )

    def _spawn(self, kind: str, package_id: str, coro) -> None:
        task = asyncio.create_task(self._send(kind, package_id, coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _send(self, kind: str, package_id: str, coro) -> None:
        try:
            await asyncio.wait_for(coro, timeout=self.timeout_seconds)
        except TimeoutError:
            logger.warning(
                "Notification %s for package %s timed out after %.1fs",
                kind,
                package_id,
                self.timeout_seconds,
            )
        except Exception as exc:
            # Only the exception type is logged; messages may echo payloads.
            logger.warning(
                "Notification %s for package %s failed: %s",
                kind,
                package_id,
                type(exc).__name__,
            )
        else:
            logger.info(
                "Notification %s sent for package %s", kind, package_id
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every outstanding notification to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
