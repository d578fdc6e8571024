"""Package status values and their forward ordering."""

from __future__ import annotations

from enum import StrEnum


class PackageStatus(StrEnum):
    AWAITING_PICKUP = "awaiting_pickup"
    RECEIVED = "received"
    PROCESSING = "processing"
    PROCESSED = "processed"
    GROUPED = "grouped"
    SHIPPED = "shipped"
    IN_TRANSIT = "in_transit"
    ARRIVED = "arrived"
    DELIVERED = "delivered"
    EXCEPTION = "exception"


FORWARD_SEQUENCE: tuple[PackageStatus, ...] = (
    PackageStatus.AWAITING_PICKUP,
    PackageStatus.RECEIVED,
    PackageStatus.PROCESSING,
    PackageStatus.PROCESSED,
    PackageStatus.GROUPED,
    PackageStatus.SHIPPED,
    PackageStatus.IN_TRANSIT,
    PackageStatus.ARRIVED,
    PackageStatus.DELIVERED,
)

TERMINAL_STATUSES = frozenset({PackageStatus.DELIVERED})

# Held only while linked to a shipment.
SHIPMENT_STATUSES = frozenset(
    {
        PackageStatus.GROUPED,
        PackageStatus.SHIPPED,
        PackageStatus.IN_TRANSIT,
        PackageStatus.ARRIVED,
    }
)

_RANKS = {status: index for index, status in enumerate(FORWARD_SEQUENCE)}


def rank(status: PackageStatus) -> int:
    """Position of ``status`` in the forward sequence.

    ``EXCEPTION`` sits outside the sequence and has no rank.
    """
    try:
        return _RANKS[status]
    except KeyError:
        raise ValueError(f"{status.value} is not a forward status") from None


def successor(status: PackageStatus) -> PackageStatus | None:
    """Return the immediate forward successor, or ``None`` at the end."""
    if status is PackageStatus.EXCEPTION:
        return None
    index = rank(status) + 1
    if index >= len(FORWARD_SEQUENCE):
        return None
    return FORWARD_SEQUENCE[index]
