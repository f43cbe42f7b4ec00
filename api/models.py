"""Pydantic models for API requests and responses."""

from typing import Optional

from pydantic import BaseModel, Field

from core.types import Transfer, TxRef


class TransferCreateRequest(BaseModel):
    """Request to start a transfer."""
    source_chain: str
    dest_chain: str
    amount: int = Field(gt=0, description="Amount in the token's smallest unit")
    recipient: str
    asset: Optional[str] = None


class TxRefModel(BaseModel):
    """Transaction reference."""
    chain: str
    tx_hash: str

    @classmethod
    def from_ref(cls, ref: Optional[TxRef]) -> Optional["TxRefModel"]:
        return cls(chain=ref.chain, tx_hash=ref.tx_hash) if ref else None


class TransferStatus(BaseModel):
    """Transfer status information."""
    transfer_id: str
    source_chain: str
    dest_chain: str
    asset: str
    amount: int
    recipient: str
    state: str  # "init" ... "completed" / "failed"
    approval_tx: Optional[TxRefModel] = None
    burn_tx: Optional[TxRefModel] = None
    completion_tx: Optional[TxRefModel] = None
    message_hash: Optional[str] = None
    failure_reason: Optional[str] = None
    failure_detail: Optional[str] = None
    failed_from: Optional[str] = None
    created_at: str
    updated_at: str

    @classmethod
    def from_transfer(cls, transfer: Transfer) -> "TransferStatus":
        data = transfer.to_dict()
        return cls(
            transfer_id=data["transfer_id"],
            source_chain=data["source_chain"],
            dest_chain=data["dest_chain"],
            asset=data["asset"],
            amount=data["amount"],
            recipient=data["recipient"],
            state=data["state"],
            approval_tx=TxRefModel.from_ref(transfer.approval_tx_ref),
            burn_tx=TxRefModel.from_ref(transfer.burn_tx_ref),
            completion_tx=TxRefModel.from_ref(transfer.completion_tx_ref),
            message_hash=data["message_hash"],
            failure_reason=data["failure_reason"],
            failure_detail=data["failure_detail"],
            failed_from=data["failed_from"],
            created_at=data["created_at"],
            updated_at=data["updated_at"],
        )


class HealthResponse(BaseModel):
    """API health check response."""
    status: str
    service: str
    version: str
