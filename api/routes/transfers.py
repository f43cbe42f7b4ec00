"""Transfer endpoints."""

import logging
from typing import List
from fastapi import APIRouter, HTTPException, Depends

from api.models import TransferCreateRequest, TransferStatus
from api.dependencies import get_bridge, get_transfer
from bridge import BridgeService
from core.errors import InvalidRequestError
from core.types import Transfer, TransferRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["transfers"])


@router.post("/transfers", response_model=TransferStatus, status_code=202)
async def create_transfer(
    request: TransferCreateRequest,
    bridge: BridgeService = Depends(get_bridge)
):
    """Start a transfer; it runs in the background.

    Poll GET /api/transfers/{transfer_id} for progress.
    """
    try:
        transfer = bridge.submit_transfer(
            TransferRequest(
                source_chain=request.source_chain,
                dest_chain=request.dest_chain,
                amount=request.amount,
                recipient=request.recipient,
                asset=request.asset,
            )
        )
    except InvalidRequestError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info(f"Accepted transfer {transfer.transfer_id} via API")
    return TransferStatus.from_transfer(transfer)


@router.get("/transfers", response_model=List[TransferStatus])
async def list_transfers(bridge: BridgeService = Depends(get_bridge)):
    """All transfers known to this process."""
    return [TransferStatus.from_transfer(t) for t in bridge.list_transfers()]


@router.get("/transfers/{transfer_id}", response_model=TransferStatus)
async def get_transfer_status(transfer: Transfer = Depends(get_transfer)):
    """Current state of one transfer."""
    return TransferStatus.from_transfer(transfer)
