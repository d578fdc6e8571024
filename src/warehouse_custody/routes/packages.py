"""Package endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from warehouse_custody.dependencies import get_actor, get_flow
from warehouse_custody.flow import CustodyFlow
from warehouse_custody.schemas import (
    CodeIssuedResponse,
    ExceptionRequest,
    IntakeRequest,
    PackageResponse,
    ReissueCodeRequest,
    ResolveExceptionRequest,
    TransitionRequest,
    VerifyRequest,
    VerifyResponse,
)

router = APIRouter()


@router.post("/packages", response_model=PackageResponse, status_code=201)
async def intake_package(
    body: IntakeRequest,
    flow: CustodyFlow = Depends(get_flow),
    actor: str = Depends(get_actor),
) -> PackageResponse:
    """Register an approved intake request."""
    package = await flow.intake_package(
        customer_id=body.customer_id,
        customer_suite=body.customer_suite,
        actor=actor,
        weight_kg=body.weight_kg,
        declared_value=body.declared_value,
        description=body.description,
    )
    return PackageResponse.from_package(package)


@router.get("/packages/{package_id}", response_model=PackageResponse)
async def get_package(
    package_id: str,
    flow: CustodyFlow = Depends(get_flow),
) -> PackageResponse:
    package = await flow.get_package(package_id)
    return PackageResponse.from_package(package)


@router.post(
    "/packages/{package_id}/transitions", response_model=PackageResponse
)
async def transition_package(
    package_id: str,
    body: TransitionRequest,
    flow: CustodyFlow = Depends(get_flow),
    actor: str = Depends(get_actor),
) -> PackageResponse:
    """Move a package one step forward."""
    package = await flow.transition(
        package_id, body.target, actor, body.reason
    )
    return PackageResponse.from_package(package)


@router.post(
    "/packages/{package_id}/exception", response_model=PackageResponse
)
async def mark_exception(
    package_id: str,
    body: ExceptionRequest,
    flow: CustodyFlow = Depends(get_flow),
    actor: str = Depends(get_actor),
) -> PackageResponse:
    package = await flow.mark_exception(package_id, actor, body.reason)
    return PackageResponse.from_package(package)


@router.post(
    "/packages/{package_id}/exception/resolve",
    response_model=PackageResponse,
)
async def resolve_exception(
    package_id: str,
    body: ResolveExceptionRequest,
    flow: CustodyFlow = Depends(get_flow),
    actor: str = Depends(get_actor),
) -> PackageResponse:
    package = await flow.resolve_exception(
        package_id, body.target, actor, body.reason
    )
    return PackageResponse.from_package(package)


@router.post(
    "/packages/{package_id}/code/reissue",
    response_model=CodeIssuedResponse,
)
async def reissue_code(
    package_id: str,
    body: ReissueCodeRequest,
    flow: CustodyFlow = Depends(get_flow),
    actor: str = Depends(get_actor),
) -> CodeIssuedResponse:
    """Replace the package's release code and notify the customer."""
    issued = await flow.reissue_code(package_id, actor, body.reason)
    return CodeIssuedResponse(
        package_id=issued.package_id,
        issued_at=issued.issued_at,
        expires_at=issued.expires_at,
    )


@router.post("/packages/{package_id}/verify", response_model=VerifyResponse)
async def verify_release(
    package_id: str,
    body: VerifyRequest,
    flow: CustodyFlow = Depends(get_flow),
    actor: str = Depends(get_actor),
) -> VerifyResponse:
    """Check identity and code at the front desk and release the package."""
    attempt = await flow.verify(
        package_id, body.identity_claim, body.code, actor
    )
    return VerifyResponse(
        package_id=attempt.package_id,
        status=attempt.state.value,
        delivered_at=attempt.delivered_at,
    )
