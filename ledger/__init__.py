"""Chain access: contract calldata and ledger clients."""

from ledger.client import LedgerClient, EvmLedgerClient
from ledger.contracts import approve_call, deposit_for_burn_call, receive_message_call

__all__ = [
    "LedgerClient",
    "EvmLedgerClient",
    "approve_call",
    "deposit_for_burn_call",
    "receive_message_call",
]
