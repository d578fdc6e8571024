"""Warehouse custody-transfer public API."""

from typing import TYPE_CHECKING

__version__ = "0.1.0"

__all__ = [
    "CustodyConfig",
    "CustodyError",
    "CustodyFlow",
    "Notifier",
    "PackageStatus",
    "UnknownPackage",
    "__version__",
    "create_custody_router",
    "derive_shipment_status",
    "register_exception_handlers",
]

if TYPE_CHECKING:
    from warehouse_custody.config import CustodyConfig
    from warehouse_custody.consolidation import derive_shipment_status
    from warehouse_custody.exceptions import (
        CustodyError,
        UnknownPackage,
        register_exception_handlers,
    )
    from warehouse_custody.flow import CustodyFlow
    from warehouse_custody.protocols import Notifier
    from warehouse_custody.router import create_custody_router
    from warehouse_custody.status import PackageStatus


def __getattr__(name: str):
    # Lazy imports to avoid loading FastAPI and SQLAlchemy on package import.
    if name == "CustodyConfig":
        from warehouse_custody.config import CustodyConfig

        return CustodyConfig
    if name == "create_custody_router":
        from warehouse_custody.router import create_custody_router

        return create_custody_router
    if name == "CustodyFlow":
        from warehouse_custody.flow import CustodyFlow

        return CustodyFlow
    if name == "PackageStatus":
        from warehouse_custody.status import PackageStatus

        return PackageStatus
    if name == "derive_shipment_status":
        from warehouse_custody.consolidation import derive_shipment_status

        return derive_shipment_status
    if name in (
        "CustodyError",
        "UnknownPackage",
        "register_exception_handlers",
    ):
        from warehouse_custody import exceptions

        return getattr(exceptions, name)
    if name == "Notifier":
        from warehouse_custody import protocols

        return getattr(protocols, name)
    raise AttributeError(
        f"module 'warehouse_custody' has no attribute {name!r}"
    )
