"""End-to-end HTTP tests against a real aiosqlite database."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine

from conftest import RecordingNotifier, make_config
from warehouse_custody.db.session import create_session_factory, init_models
from warehouse_custody.exceptions import register_exception_handlers
from warehouse_custody.router import create_custody_router

DESK = {"X-Actor-Id": "desk-1"}
OPS = {"X-Actor-Id": "ops-1"}


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def client(tmp_path, notifier):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'custody.db'}"
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        await init_models(engine)
        yield
        await engine.dispose()

    app = FastAPI(lifespan=lifespan)
    register_exception_handlers(app)
    app.include_router(
        create_custody_router(
            config=make_config(),
            session_factory=create_session_factory(engine),
            notifier=notifier,
        )
    )
    with TestClient(app) as test_client:
        yield test_client


def _drain(client: TestClient) -> None:
    """Wait for post-commit notifications sent from the app loop."""
    flow = client.app.state.custody_flow
    client.portal.call(flow.notifications.drain)


def _processed_package(client: TestClient, suite: str = "A-101") -> str:
    resp = client.post(
        "/packages",
        json={
            "customer_id": "cust-1",
            "customer_suite": suite,
            "weight_kg": "1.5",
            "declared_value": "25.00",
        },
        headers=OPS,
    )
    assert resp.status_code == 201
    package_id = resp.json()["id"]
    for target in ("received", "processing", "processed"):
        resp = client.post(
            f"/packages/{package_id}/transitions",
            json={"target": target},
            headers=OPS,
        )
        assert resp.status_code == 200, resp.text
    return package_id


def _arrive(client: TestClient, package_ids: list[str]) -> str:
    resp = client.post(
        "/shipments",
        json={"package_ids": package_ids, "destination": "Kingston"},
        headers=OPS,
    )
    assert resp.status_code == 201, resp.text
    shipment_id = resp.json()["id"]
    for event in ("departed", "in-transit"):
        resp = client.post(f"/shipments/{shipment_id}/{event}", headers=OPS)
        assert resp.status_code == 200, resp.text
    resp = client.post(f"/shipments/{shipment_id}/arrived", headers=OPS)
    assert resp.status_code == 200, resp.text
    assert resp.json()["codes_issued"] == len(package_ids)
    return shipment_id


def test_full_custody_round_trip(client, notifier) -> None:
    package_id = _processed_package(client)
    shipment_id = _arrive(client, [package_id])
    _drain(client)
    code = notifier.issued[0].code

    resp = client.post(
        f"/packages/{package_id}/verify",
        json={"identity_claim": "a-101", "code": code},
        headers=DESK,
    )

    assert resp.status_code == 200
    assert resp.json()["status"] == "accepted"
    shipment = client.get(f"/shipments/{shipment_id}").json()
    assert shipment["status"] == "delivered"
    assert shipment["archived_at"] is not None
    package = client.get(f"/packages/{package_id}").json()
    assert package["status"] == "delivered"

    replay = client.post(
        f"/packages/{package_id}/verify",
        json={"identity_claim": "A-101", "code": code},
        headers=DESK,
    )
    assert replay.status_code == 409
    assert replay.json()["code"] == "already_delivered"


def test_wrong_codes_lock_the_package(client) -> None:
    package_id = _processed_package(client)
    _arrive(client, [package_id])

    for remaining in (4, 3, 2, 1, 0):
        resp = client.post(
            f"/packages/{package_id}/verify",
            json={"identity_claim": "A-101", "code": "000000"},
            headers=DESK,
        )
        assert resp.status_code == 422
        assert resp.json()["attempts_remaining"] == remaining

    locked = client.post(
        f"/packages/{package_id}/verify",
        json={"identity_claim": "A-101", "code": "000000"},
        headers=DESK,
    )
    assert locked.status_code == 423
    assert locked.json()["locked_until"] is not None


def test_reissue_does_not_return_the_code(client, notifier) -> None:
    package_id = _processed_package(client)
    _arrive(client, [package_id])

    resp = client.post(
        f"/packages/{package_id}/code/reissue", json={}, headers=DESK
    )

    assert resp.status_code == 200
    assert "code" not in resp.json()
    _drain(client)
    assert len(notifier.issued) == 2


def test_invalid_transition_returns_409(client) -> None:
    resp = client.post(
        "/packages",
        json={"customer_id": "c", "customer_suite": "S"},
        headers=OPS,
    )
    package_id = resp.json()["id"]

    resp = client.post(
        f"/packages/{package_id}/transitions",
        json={"target": "shipped"},
        headers=OPS,
    )

    assert resp.status_code == 409
    assert resp.json()["code"] == "invalid_transition"


def test_exception_and_resolution(client) -> None:
    package_id = _processed_package(client)

    resp = client.post(
        f"/packages/{package_id}/exception",
        json={"reason": "wet"},
        headers=OPS,
    )
    assert resp.json()["status"] == "exception"
    assert resp.json()["status_before_exception"] == "processed"

    resp = client.post(
        f"/packages/{package_id}/exception/resolve",
        json={"target": "processed", "reason": "dried"},
        headers=OPS,
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "processed"


def test_unlink_and_add_packages(client) -> None:
    first = _processed_package(client)
    second = _processed_package(client, suite="B-2")
    resp = client.post(
        "/shipments",
        json={"package_ids": [first], "destination": "Kingston"},
        headers=OPS,
    )
    shipment_id = resp.json()["id"]

    resp = client.post(
        f"/shipments/{shipment_id}/packages",
        json={"package_ids": [second]},
        headers=OPS,
    )
    assert resp.json()["package_count"] == 2

    resp = client.post(
        f"/shipments/{shipment_id}/packages/{first}/unlink",
        json={"reason": "customer hold"},
        headers=OPS,
    )
    assert resp.status_code == 200
    assert resp.json()["package_ids"] == [second]


def test_missing_actor_header_is_rejected(client) -> None:
    resp = client.post(
        "/packages", json={"customer_id": "c", "customer_suite": "S"}
    )
    assert resp.status_code == 422


def test_unknown_ids_return_404(client) -> None:
    assert client.get("/packages/PKG-NOPE").status_code == 404
    assert client.get("/shipments/SHP-NOPE").status_code == 404


def test_audit_endpoint_filters(client) -> None:
    package_id = _processed_package(client)

    resp = client.get(
        "/audit", params={"entity_id": package_id, "kind": "transition"}
    )

    assert resp.status_code == 200
    entries = resp.json()
    assert [e["new_state"] for e in entries] == [
        "awaiting_pickup",
        "received",
        "processing",
        "processed",
    ]
    assert {e["actor"] for e in entries} == {"ops-1"}


def test_audit_time_range_without_offset(client) -> None:
    package_id = _processed_package(client)

    since = client.get(
        "/audit",
        params={"entity_id": package_id, "since": "2020-01-01T00:00:00"},
    )
    until = client.get(
        "/audit",
        params={"entity_id": package_id, "until": "2020-01-01T00:00:00"},
    )

    assert since.status_code == 200
    assert len(since.json()) == 4
    assert until.status_code == 200
    assert until.json() == []
