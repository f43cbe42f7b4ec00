"""Error types for the USDC bridge."""

from typing import Optional


class BridgeError(Exception):
    """Base exception for all bridge errors."""
    pass


class ConfigurationError(BridgeError):
    """Errors related to configuration."""
    pass


class InvalidRequestError(BridgeError):
    """A transfer request cannot be accepted."""
    pass


class InvalidTransitionError(BridgeError):
    """A transfer was asked to move to a state it cannot reach."""
    pass


class LedgerError(BridgeError):
    """Errors related to ledger (chain RPC) operations."""

    def __init__(self, message: str, chain: str = "", tx_hash: str = ""):
        self.chain = chain
        self.tx_hash = tx_hash
        super().__init__(message)


class SubmissionError(LedgerError):
    """The transaction was not accepted by the node. Safe to resubmit."""
    pass


class ConfirmationTimeoutError(LedgerError):
    """The transaction was accepted but confirmation did not arrive in time."""
    pass


class ReceiptPendingError(LedgerError):
    """No receipt exists yet for an accepted transaction."""
    pass


class TransactionRevertedError(LedgerError):
    """The transaction was mined (or simulated) and reverted."""
    pass


class TransactionDroppedError(LedgerError):
    """The transaction is no longer known to the node (dropped or replaced)."""
    pass


class CodecError(BridgeError):
    """Errors decoding protocol messages or addresses."""
    pass


class InvalidRecipientError(CodecError):
    """Recipient address cannot be converted to canonical form."""
    pass


class EventNotFoundError(CodecError):
    """No log in the receipt matches the expected event topic."""
    pass


class MalformedMessageError(CodecError):
    """Event payload or message bytes do not decode."""
    pass


class MessageMismatchError(CodecError):
    """The burn message does not describe the transfer that emitted it."""
    pass


class PollError(BridgeError):
    """Errors while waiting for an attestation."""

    def __init__(self, message: str, message_hash: str = ""):
        self.message_hash = message_hash
        super().__init__(message)


class AttestationRequestError(PollError):
    """A single attestation request failed (transport, rate limit, 5xx)."""

    def __init__(self, message: str, message_hash: str = "", http_status: int = 0):
        self.http_status = http_status
        super().__init__(message, message_hash=message_hash)


class AttestationTimeoutError(PollError):
    """No complete attestation before the deadline."""
    pass


class AttestationRejectedError(PollError):
    """The attestation service reported a permanent rejection."""

    def __init__(self, message: str, message_hash: str = "", status: str = ""):
        self.status = status
        super().__init__(message, message_hash=message_hash)


class AttestationUnavailableError(PollError):
    """The attestation service failed too many times in a row."""
    pass


class RetryExhaustedError(BridgeError):
    """A remote call failed on every attempt of its retry budget."""

    def __init__(self, description: str, attempts: int, last_error: BaseException):
        self.description = description
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{description} failed after {attempts} attempt(s): {last_error}"
        )


class TransferError(BridgeError):
    """A transfer ended in the FAILED state.

    Carries the failure reason and the last state reached before failing,
    which tells the caller which on-chain effects already happened.
    """

    def __init__(self, reason, state, transfer=None, detail: Optional[str] = None):
        self.reason = reason
        self.state = state
        self.transfer = transfer
        self.detail = detail or ""
        message = f"Transfer failed in state {state.value}: {reason.value}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
