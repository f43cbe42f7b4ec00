"""Core types and errors for the USDC bridge."""

from core.errors import (
    BridgeError,
    ConfigurationError,
    LedgerError,
    CodecError,
    PollError,
    TransferError,
)
from core.types import (
    TransferState,
    FailureReason,
    Transfer,
    TransferRequest,
    TxRef,
    Receipt,
    LogEntry,
    CompletionReceipt,
)

__all__ = [
    "BridgeError",
    "ConfigurationError",
    "LedgerError",
    "CodecError",
    "PollError",
    "TransferError",
    "TransferState",
    "FailureReason",
    "Transfer",
    "TransferRequest",
    "TxRef",
    "Receipt",
    "LogEntry",
    "CompletionReceipt",
]
