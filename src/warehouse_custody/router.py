"""Router factory for warehouse-custody."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from warehouse_custody.config import CustodyConfig
from warehouse_custody.exceptions import register_exception_handlers
from warehouse_custody.flow import CustodyFlow
from warehouse_custody.notifications import HttpNotifier
from warehouse_custody.protocols import Notifier
from warehouse_custody.retention import start_retention_scheduler
from warehouse_custody.routes.audit import router as audit_router
from warehouse_custody.routes.packages import router as packages_router
from warehouse_custody.routes.shipments import router as shipments_router


def create_custody_router(
    *,
    config: CustodyConfig,
    session_factory: async_sessionmaker[AsyncSession],
    notifier: Notifier | None = None,
) -> APIRouter:
    """Create a configured API router.

    Without an explicit ``notifier``, notices are posted to
    ``config.notification_url`` when one is set.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        owned_notifier = None
        actual_notifier = notifier
        if actual_notifier is None and config.notification_url:
            owned_notifier = actual_notifier = HttpNotifier(
                config.notification_url,
                timeout=config.notification_timeout_seconds,
            )
        flow = CustodyFlow(
            session_factory=session_factory,
            config=config,
            notifier=actual_notifier,
        )
        scheduler = None
        if config.retention_enabled:
            scheduler = start_retention_scheduler(flow, config)

        app.state.custody_config = config
        app.state.custody_flow = flow
        app.state.custody_scheduler = scheduler
        register_exception_handlers(app)
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.shutdown(wait=False)
            await flow.notifications.drain()
            if owned_notifier is not None:
                await owned_notifier.aclose()

    router = APIRouter(lifespan=lifespan)
    router.include_router(packages_router)
    router.include_router(shipments_router)
    router.include_router(audit_router)
    return router
