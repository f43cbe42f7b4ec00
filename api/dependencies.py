"""Shared dependencies for API routes."""

from typing import Optional
from fastapi import Depends, HTTPException
from bridge import BridgeService
from core.types import Transfer

# Set by the app lifespan; None until the bridge has started
_bridge: Optional[BridgeService] = None


def set_bridge(bridge: Optional[BridgeService]) -> None:
    """Install (or clear) the bridge the routes operate on."""
    global _bridge
    _bridge = bridge


def get_bridge() -> BridgeService:
    """Get the bridge instance dependency."""
    if _bridge is None:
        raise HTTPException(status_code=503, detail="Bridge not initialized")
    return _bridge


def get_transfer(transfer_id: str, bridge: BridgeService = Depends(get_bridge)) -> Transfer:
    """Resolve a transfer id from the path, or 404."""
    transfer = bridge.get_transfer(transfer_id)
    if transfer is None:
        raise HTTPException(status_code=404, detail=f"Unknown transfer {transfer_id}")
    return transfer
