"""Shipment endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from warehouse_custody.dependencies import get_actor, get_flow
from warehouse_custody.flow import CustodyFlow
from warehouse_custody.schemas import (
    AddPackagesRequest,
    ArrivalResponse,
    CreateShipmentRequest,
    ShipmentResponse,
    UnlinkPackageRequest,
)

router = APIRouter()


@router.post("/shipments", response_model=ShipmentResponse, status_code=201)
async def create_shipment(
    body: CreateShipmentRequest,
    flow: CustodyFlow = Depends(get_flow),
    actor: str = Depends(get_actor),
) -> ShipmentResponse:
    """Consolidate processed packages into a shipment."""
    snapshot = await flow.create_shipment(
        body.package_ids, body.destination, body.service_level, actor
    )
    return ShipmentResponse.from_snapshot(snapshot)


@router.get("/shipments/{shipment_id}", response_model=ShipmentResponse)
async def get_shipment(
    shipment_id: str,
    flow: CustodyFlow = Depends(get_flow),
) -> ShipmentResponse:
    snapshot = await flow.get_shipment(shipment_id)
    return ShipmentResponse.from_snapshot(snapshot)


@router.post(
    "/shipments/{shipment_id}/packages", response_model=ShipmentResponse
)
async def add_packages(
    shipment_id: str,
    body: AddPackagesRequest,
    flow: CustodyFlow = Depends(get_flow),
    actor: str = Depends(get_actor),
) -> ShipmentResponse:
    snapshot = await flow.add_packages(shipment_id, body.package_ids, actor)
    return ShipmentResponse.from_snapshot(snapshot)


@router.post(
    "/shipments/{shipment_id}/packages/{package_id}/unlink",
    response_model=ShipmentResponse,
)
async def unlink_package(
    shipment_id: str,
    package_id: str,
    body: UnlinkPackageRequest,
    flow: CustodyFlow = Depends(get_flow),
    actor: str = Depends(get_actor),
) -> ShipmentResponse:
    """Take a package out of a shipment that has not departed."""
    snapshot = await flow.unlink_package(
        shipment_id, package_id, actor, body.reason
    )
    return ShipmentResponse.from_snapshot(snapshot)


@router.post(
    "/shipments/{shipment_id}/departed", response_model=ShipmentResponse
)
async def shipment_departed(
    shipment_id: str,
    flow: CustodyFlow = Depends(get_flow),
    actor: str = Depends(get_actor),
) -> ShipmentResponse:
    snapshot = await flow.shipment_departed(shipment_id, actor)
    return ShipmentResponse.from_snapshot(snapshot)


@router.post(
    "/shipments/{shipment_id}/in-transit", response_model=ShipmentResponse
)
async def shipment_in_transit(
    shipment_id: str,
    flow: CustodyFlow = Depends(get_flow),
    actor: str = Depends(get_actor),
) -> ShipmentResponse:
    snapshot = await flow.shipment_in_transit(shipment_id, actor)
    return ShipmentResponse.from_snapshot(snapshot)


@router.post(
    "/shipments/{shipment_id}/arrived", response_model=ArrivalResponse
)
async def shipment_arrived(
    shipment_id: str,
    flow: CustodyFlow = Depends(get_flow),
    actor: str = Depends(get_actor),
) -> ArrivalResponse:
    """Record arrival; release codes go straight to the customers."""
    result = await flow.shipment_arrived(shipment_id, actor)
    return ArrivalResponse(
        shipment=ShipmentResponse.from_snapshot(result.snapshot),
        codes_issued=len(result.codes),
    )
