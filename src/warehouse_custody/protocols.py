"""Collaborator protocols for the custody subsystem."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from warehouse_custody.notifications import (
        CodeIssuedNotice,
        DeliveredNotice,
    )


@runtime_checkable
class Notifier(Protocol):
    """Delivers custody notices to the owning customer.

    The channel (email, SMS, push) is the implementation's business.
    """

    async def code_issued(self, notice: CodeIssuedNotice) -> None: ...

    async def delivered(self, notice: DeliveredNotice) -> None: ...
