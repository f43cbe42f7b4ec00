"""Core types for the USDC bridge."""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from core.errors import InvalidTransitionError


class TransferState(Enum):
    """Lifecycle of a single burn-and-mint transfer."""
    INIT = "init"
    AUTHORIZED = "authorized"
    BURNED = "burned"
    MESSAGE_EXTRACTED = "message_extracted"
    ATTESTATION_PENDING = "attestation_pending"
    ATTESTATION_READY = "attestation_ready"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TransferState.COMPLETED, TransferState.FAILED)


# Forward order of the non-failed states
STATE_ORDER: List[TransferState] = [
    TransferState.INIT,
    TransferState.AUTHORIZED,
    TransferState.BURNED,
    TransferState.MESSAGE_EXTRACTED,
    TransferState.ATTESTATION_PENDING,
    TransferState.ATTESTATION_READY,
    TransferState.COMPLETED,
]


class FailureReason(Enum):
    """Why a transfer ended in FAILED."""
    INVALID_RECIPIENT = "invalid_recipient"
    AUTHORIZATION_FAILED = "authorization_failed"
    BURN_FAILED = "burn_failed"
    RECEIPT_UNAVAILABLE = "receipt_unavailable"
    PROTOCOL_VIOLATION = "protocol_violation"
    ATTESTATION_REJECTED = "attestation_rejected"
    ATTESTATION_TIMEOUT = "attestation_timeout"
    ATTESTATION_UNAVAILABLE = "attestation_unavailable"
    COMPLETION_FAILED = "completion_failed"


@dataclass(frozen=True)
class TxRef:
    """Reference to a transaction on a specific chain."""
    chain: str
    tx_hash: str  # 0x-prefixed hex

    def to_dict(self) -> Dict[str, str]:
        return {"chain": self.chain, "tx_hash": self.tx_hash}

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "TxRef":
        return cls(chain=data["chain"], tx_hash=data["tx_hash"])


@dataclass(frozen=True)
class LogEntry:
    """A single event log from a transaction receipt."""
    address: str
    topics: List[bytes]
    data: bytes
    log_index: int = 0


@dataclass(frozen=True)
class Receipt:
    """Transaction receipt as returned by a ledger client."""
    tx_ref: TxRef
    status: int  # 1 = success, 0 = reverted
    block_number: int
    logs: List[LogEntry] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == 1


@dataclass(frozen=True)
class ContractCall:
    """An encoded contract call ready to be signed and sent."""
    to: str
    data: bytes
    label: str = ""


@dataclass(frozen=True)
class MessageHeader:
    """Decoded CCTP message envelope."""
    version: int
    source_domain: int
    destination_domain: int
    nonce: int
    sender: bytes
    recipient: bytes
    destination_caller: bytes
    body: bytes


@dataclass(frozen=True)
class BurnMessage:
    """Decoded CCTP burn message body."""
    version: int
    burn_token: bytes
    mint_recipient: bytes
    amount: int
    message_sender: bytes


@dataclass(frozen=True)
class TransferRequest:
    """What a caller asks the bridge to do."""
    source_chain: str
    dest_chain: str
    amount: int  # smallest unit (USDC has 6 decimals)
    recipient: str  # destination-chain native encoding
    asset: Optional[str] = None  # defaults to the source chain's USDC


@dataclass(frozen=True)
class CompletionReceipt:
    """Returned when a transfer reaches COMPLETED."""
    transfer_id: str
    message_hash: bytes
    burn_tx_ref: TxRef
    completion_tx_ref: TxRef
    amount: int
    recipient: str


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _hex(value: Optional[bytes]) -> Optional[str]:
    return "0x" + value.hex() if value is not None else None


def _unhex(value: Optional[str]) -> Optional[bytes]:
    if value is None:
        return None
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


@dataclass
class Transfer:
    """A burn-and-mint transfer and every durable fact recorded about it.

    Each state is backed by a recorded field (a tx ref, the message, the
    proof), so a transfer can be resumed from any non-terminal state
    without repeating on-chain effects it already caused.
    """
    source_chain: str
    dest_chain: str
    asset: str
    amount: int
    recipient: str
    transfer_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    recipient_canonical: Optional[bytes] = None
    state: TransferState = TransferState.INIT
    approval_tx_ref: Optional[TxRef] = None
    burn_tx_ref: Optional[TxRef] = None
    completion_tx_ref: Optional[TxRef] = None
    message_bytes: Optional[bytes] = None
    message_hash: Optional[bytes] = None
    attestation: Optional[bytes] = None
    failure_reason: Optional[FailureReason] = None
    failure_detail: Optional[str] = None
    failed_from: Optional[TransferState] = None
    created_at: str = field(default_factory=_utcnow)
    updated_at: str = field(default_factory=_utcnow)

    @classmethod
    def from_request(cls, request: TransferRequest, asset: str) -> "Transfer":
        return cls(
            source_chain=request.source_chain,
            dest_chain=request.dest_chain,
            asset=asset,
            amount=request.amount,
            recipient=request.recipient,
        )

    @property
    def last_state(self) -> TransferState:
        """Last state reached before failing (or the current state)."""
        if self.state == TransferState.FAILED and self.failed_from is not None:
            return self.failed_from
        return self.state

    def advance(self, new_state: TransferState) -> TransferState:
        """Move to the immediate successor state.

        Returns:
            The previous state

        Raises:
            InvalidTransitionError: If new_state is not the next state
        """
        if self.state.is_terminal:
            raise InvalidTransitionError(
                f"Transfer {self.transfer_id} is terminal ({self.state.value})"
            )
        index = STATE_ORDER.index(self.state)
        if STATE_ORDER[index + 1] != new_state:
            raise InvalidTransitionError(
                f"Cannot move from {self.state.value} to {new_state.value}"
            )
        previous = self.state
        self.state = new_state
        self.updated_at = _utcnow()
        return previous

    def fail(self, reason: FailureReason, detail: str = "") -> TransferState:
        """Move to FAILED from any non-terminal state."""
        if self.state.is_terminal:
            raise InvalidTransitionError(
                f"Transfer {self.transfer_id} is terminal ({self.state.value})"
            )
        previous = self.state
        self.failed_from = previous
        self.failure_reason = reason
        self.failure_detail = detail
        self.state = TransferState.FAILED
        self.updated_at = _utcnow()
        return previous

    def recover(self) -> "Transfer":
        """Return a resumable copy of a failed transfer.

        The copy sits in the last state reached and keeps every recorded
        tx ref, message and proof. The failed transfer itself is untouched.
        """
        if self.state != TransferState.FAILED:
            raise InvalidTransitionError(
                f"Only failed transfers can be recovered, got {self.state.value}"
            )
        return replace(
            self,
            state=self.failed_from or TransferState.INIT,
            failure_reason=None,
            failure_detail=None,
            failed_from=None,
            updated_at=_utcnow(),
        )

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe representation (bytes as 0x-hex)."""
        return {
            "transfer_id": self.transfer_id,
            "source_chain": self.source_chain,
            "dest_chain": self.dest_chain,
            "asset": self.asset,
            "amount": self.amount,
            "recipient": self.recipient,
            "recipient_canonical": _hex(self.recipient_canonical),
            "state": self.state.value,
            "approval_tx_ref": self.approval_tx_ref.to_dict() if self.approval_tx_ref else None,
            "burn_tx_ref": self.burn_tx_ref.to_dict() if self.burn_tx_ref else None,
            "completion_tx_ref": self.completion_tx_ref.to_dict() if self.completion_tx_ref else None,
            "message_bytes": _hex(self.message_bytes),
            "message_hash": _hex(self.message_hash),
            "attestation": _hex(self.attestation),
            "failure_reason": self.failure_reason.value if self.failure_reason else None,
            "failure_detail": self.failure_detail,
            "failed_from": self.failed_from.value if self.failed_from else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Transfer":
        def _ref(key: str) -> Optional[TxRef]:
            return TxRef.from_dict(data[key]) if data.get(key) else None

        return cls(
            transfer_id=data["transfer_id"],
            source_chain=data["source_chain"],
            dest_chain=data["dest_chain"],
            asset=data["asset"],
            amount=int(data["amount"]),
            recipient=data["recipient"],
            recipient_canonical=_unhex(data.get("recipient_canonical")),
            state=TransferState(data["state"]),
            approval_tx_ref=_ref("approval_tx_ref"),
            burn_tx_ref=_ref("burn_tx_ref"),
            completion_tx_ref=_ref("completion_tx_ref"),
            message_bytes=_unhex(data.get("message_bytes")),
            message_hash=_unhex(data.get("message_hash")),
            attestation=_unhex(data.get("attestation")),
            failure_reason=FailureReason(data["failure_reason"]) if data.get("failure_reason") else None,
            failure_detail=data.get("failure_detail"),
            failed_from=TransferState(data["failed_from"]) if data.get("failed_from") else None,
            created_at=data.get("created_at") or _utcnow(),
            updated_at=data.get("updated_at") or _utcnow(),
        )
