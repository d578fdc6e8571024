"""Shared fixtures for warehouse-custody tests."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime, timedelta

import pytest

from warehouse_custody.config import CustodyConfig
from warehouse_custody.status import PackageStatus

START = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    def __init__(self) -> None:
        self.issued: list = []
        self.delivered_notices: list = []

    async def code_issued(self, notice) -> None:
        self.issued.append(notice)

    async def delivered(self, notice) -> None:
        self.delivered_notices.append(notice)


class SequenceCodes:
    """Hands out a fixed sequence of codes, then repeats the last one."""

    def __init__(self, codes: Iterable[str]) -> None:
        self.codes = list(codes)
        self.calls = 0

    def __call__(self) -> str:
        index = min(self.calls, len(self.codes) - 1)
        self.calls += 1
        return self.codes[index]


def make_config(**overrides) -> CustodyConfig:
    values = {
        "code_index_key": "test-index-key",
        "code_hash_rounds": 1000,
        "retention_enabled": False,
        "conflict_backoff_seconds": 0,
    }
    values.update(overrides)
    return CustodyConfig(**values)


async def make_processed_package(
    flow,
    *,
    customer_id: str = "cust-1",
    customer_suite: str = "A-101",
    actor: str = "clerk-1",
    **kwargs,
):
    package = await flow.intake_package(
        customer_id=customer_id,
        customer_suite=customer_suite,
        actor=actor,
        **kwargs,
    )
    for target in (
        PackageStatus.RECEIVED,
        PackageStatus.PROCESSING,
        PackageStatus.PROCESSED,
    ):
        package = await flow.transition(package.id, target, actor)
    return package


async def make_arrived_shipment(flow, package_ids, *, actor: str = "ops-1"):
    """Consolidate packages and walk the shipment through to arrival."""
    snapshot = await flow.create_shipment(
        package_ids, "Port of Spain", "standard", actor
    )
    await flow.shipment_departed(snapshot.shipment.id, actor)
    await flow.shipment_in_transit(snapshot.shipment.id, actor)
    return await flow.shipment_arrived(snapshot.shipment.id, actor)


@pytest.fixture()
def config() -> CustodyConfig:
    return make_config()


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
async def async_engine():
    """Create an in-memory aiosqlite async engine."""
    from sqlalchemy.ext.asyncio import create_async_engine

    from warehouse_custody.db.session import init_models

    engine = create_async_engine("sqlite+aiosqlite://", echo=False)
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
async def session_factory(async_engine):
    """Create an async session factory bound to the in-memory engine."""
    from warehouse_custody.db.session import create_session_factory

    yield create_session_factory(async_engine)


@pytest.fixture()
def flow(session_factory, config, clock, notifier):
    from warehouse_custody.flow import CustodyFlow

    return CustodyFlow(
        session_factory=session_factory,
        config=config,
        notifier=notifier,
        clock=clock,
    )
