"""Package state machine tests."""

from decimal import Decimal

import pytest

from conftest import make_arrived_shipment, make_processed_package
from warehouse_custody.audit import AuditFilter, AuditKind, AuditOutcome
from warehouse_custody.exceptions import InvalidTransition, UnknownPackage
from warehouse_custody.lifecycle import new_package_id
from warehouse_custody.status import PackageStatus


def test_package_ids_have_tracking_format() -> None:
    package_id = new_package_id()
    assert package_id.startswith("PKG-")
    assert len(package_id) == 16
    assert package_id[4:] == package_id[4:].upper()


async def test_intake_creates_awaiting_pickup_package(flow) -> None:
    package = await flow.intake_package(
        customer_id="cust-9",
        customer_suite=" B-7 ",
        actor="clerk-1",
        weight_kg=Decimal("2.5"),
        declared_value=Decimal("40.00"),
        description="books",
    )

    assert package.status is PackageStatus.AWAITING_PICKUP
    assert package.customer_suite == "B-7"
    assert package.shipment_id is None

    entries = await flow.query_audit(AuditFilter(entity_id=package.id))
    assert [e.action for e in entries] == ["intake"]
    assert entries[0].new_state == "awaiting_pickup"
    assert entries[0].actor == "clerk-1"


async def test_forward_step_writes_one_audit_entry(flow) -> None:
    package = await flow.intake_package(
        customer_id="c", customer_suite="S", actor="clerk-1"
    )

    moved = await flow.transition(
        package.id, PackageStatus.RECEIVED, "clerk-2", "at the dock"
    )

    assert moved.status is PackageStatus.RECEIVED
    entries = await flow.query_audit(
        AuditFilter(entity_id=package.id, kind=AuditKind.TRANSITION)
    )
    last = entries[-1]
    assert (last.previous_state, last.new_state) == (
        "awaiting_pickup",
        "received",
    )
    assert last.actor == "clerk-2"
    assert last.reason == "at the dock"


async def test_skipping_a_state_is_rejected_and_audited(flow) -> None:
    package = await flow.intake_package(
        customer_id="c", customer_suite="S", actor="clerk-1"
    )

    with pytest.raises(InvalidTransition):
        await flow.transition(package.id, PackageStatus.PROCESSING, "clerk-1")

    reloaded = await flow.get_package(package.id)
    assert reloaded.status is PackageStatus.AWAITING_PICKUP
    failures = await flow.query_audit(
        AuditFilter(entity_id=package.id, outcome=AuditOutcome.FAILURE)
    )
    assert len(failures) == 1
    assert failures[0].failure_kind == "invalid_transition"


async def test_backward_step_is_rejected(flow) -> None:
    package = await make_processed_package(flow)

    with pytest.raises(InvalidTransition):
        await flow.transition(package.id, PackageStatus.PROCESSING, "clerk-1")


async def test_delivered_only_through_verification(flow) -> None:
    package = await make_processed_package(flow)
    await make_arrived_shipment(flow, [package.id])

    with pytest.raises(InvalidTransition, match="verification"):
        await flow.transition(package.id, PackageStatus.DELIVERED, "clerk-1")


async def test_unknown_package(flow) -> None:
    with pytest.raises(UnknownPackage):
        await flow.transition("PKG-MISSING", PackageStatus.RECEIVED, "c")


async def test_exception_remembers_prior_state(flow) -> None:
    package = await make_processed_package(flow)

    flagged = await flow.mark_exception(package.id, "clerk-1", "damaged")

    assert flagged.status is PackageStatus.EXCEPTION
    assert flagged.status_before_exception is PackageStatus.PROCESSED


async def test_transition_to_exception_target(flow) -> None:
    package = await flow.intake_package(
        customer_id="c", customer_suite="S", actor="clerk-1"
    )

    flagged = await flow.transition(
        package.id, PackageStatus.EXCEPTION, "clerk-1", "lost at pickup"
    )

    assert flagged.status is PackageStatus.EXCEPTION
    assert flagged.status_before_exception is PackageStatus.AWAITING_PICKUP


async def test_exception_twice_is_rejected(flow) -> None:
    package = await make_processed_package(flow)
    await flow.mark_exception(package.id, "clerk-1")

    with pytest.raises(InvalidTransition):
        await flow.mark_exception(package.id, "clerk-1")


async def test_resolve_to_remembered_or_later_state(flow) -> None:
    package = await make_processed_package(flow)
    await flow.mark_exception(package.id, "clerk-1")

    with pytest.raises(InvalidTransition):
        await flow.resolve_exception(
            package.id, PackageStatus.RECEIVED, "supervisor"
        )

    resolved = await flow.resolve_exception(
        package.id, PackageStatus.PROCESSED, "supervisor", "repacked"
    )
    assert resolved.status is PackageStatus.PROCESSED
    assert resolved.status_before_exception is None


async def test_resolve_never_delivers(flow) -> None:
    package = await make_processed_package(flow)
    await flow.mark_exception(package.id, "clerk-1")

    with pytest.raises(InvalidTransition):
        await flow.resolve_exception(
            package.id, PackageStatus.DELIVERED, "supervisor"
        )


async def test_resolve_requires_exception(flow) -> None:
    package = await make_processed_package(flow)

    with pytest.raises(InvalidTransition, match="not in exception"):
        await flow.resolve_exception(
            package.id, PackageStatus.PROCESSED, "supervisor"
        )


async def test_resolving_into_arrived_keeps_active_code(
    flow, notifier
) -> None:
    package = await make_processed_package(flow)
    arrival = await make_arrived_shipment(flow, [package.id])
    await flow.mark_exception(package.id, "clerk-1", "label torn")
    await flow.notifications.drain()
    issued_before = len(notifier.issued)

    resolved = await flow.resolve_exception(
        package.id, PackageStatus.ARRIVED, "supervisor"
    )
    await flow.notifications.drain()

    assert resolved.status is PackageStatus.ARRIVED
    assert len(notifier.issued) == issued_before
    assert arrival.codes[0].package_id == package.id


async def test_resolving_into_arrived_replaces_expired_code(
    flow, notifier, clock
) -> None:
    package = await make_processed_package(flow)
    await make_arrived_shipment(flow, [package.id])
    await flow.mark_exception(package.id, "clerk-1", "held by customs")
    clock.advance(days=31)

    resolved = await flow.resolve_exception(
        package.id, PackageStatus.ARRIVED, "supervisor"
    )
    await flow.notifications.drain()

    assert resolved.code_expires_at > clock()
    assert [n.package_id for n in notifier.issued] == [package.id, package.id]


async def test_grouping_only_through_consolidation(flow) -> None:
    package = await make_processed_package(flow)

    with pytest.raises(InvalidTransition, match="shipment"):
        await flow.transition(package.id, PackageStatus.GROUPED, "clerk-1")

    reloaded = await flow.get_package(package.id)
    assert reloaded.status is PackageStatus.PROCESSED
    assert reloaded.code_hash is None


async def test_shipment_states_need_a_shipment(flow) -> None:
    package = await make_processed_package(flow)
    await flow.mark_exception(package.id, "clerk-1", "misrouted")

    for target in (
        PackageStatus.GROUPED,
        PackageStatus.SHIPPED,
        PackageStatus.ARRIVED,
    ):
        with pytest.raises(InvalidTransition, match="not part of a shipment"):
            await flow.resolve_exception(package.id, target, "supervisor")

    reloaded = await flow.get_package(package.id)
    assert reloaded.status is PackageStatus.EXCEPTION
    assert reloaded.code_hash is None


async def test_member_may_step_ahead_of_its_shipment(flow) -> None:
    package = await make_processed_package(flow)
    snapshot = await flow.create_shipment(
        [package.id], "Kingston", "standard", "ops-1"
    )

    moved = await flow.transition(package.id, PackageStatus.SHIPPED, "ops-1")

    assert moved.status is PackageStatus.SHIPPED
    assert moved.shipment_id == snapshot.shipment.id
