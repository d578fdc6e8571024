"""Dependency providers for request handlers."""

from __future__ import annotations

from fastapi import Header, Request

from warehouse_custody.config import CustodyConfig
from warehouse_custody.flow import CustodyFlow


def get_config(request: Request) -> CustodyConfig:
    """Read config from FastAPI app state."""
    return request.app.state.custody_config


def get_flow(request: Request) -> CustodyFlow:
    """Read the custody flow from FastAPI app state."""
    return request.app.state.custody_flow


def get_actor(x_actor_id: str = Header(min_length=1)) -> str:
    """Acting user, as asserted by the upstream auth layer."""
    return x_actor_id
