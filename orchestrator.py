"""Transfer orchestrator: drives one burn-and-mint transfer to completion.

Each state of a Transfer is backed by a recorded fact, and each handler
below only needs those facts to make progress:

    INIT                 -> approve TokenMessenger           -> AUTHORIZED
    AUTHORIZED           -> depositForBurn                   -> BURNED
    BURNED               -> extract MessageSent from receipt -> MESSAGE_EXTRACTED
    MESSAGE_EXTRACTED    -> verify message hash              -> ATTESTATION_PENDING
    ATTESTATION_PENDING  -> poll attestation service         -> ATTESTATION_READY
    ATTESTATION_READY    -> receiveMessage on destination    -> COMPLETED

Any handler may move the transfer to FAILED instead. A tx ref is recorded
on the transfer as soon as the node accepts the transaction, so a resumed
transfer waits on that transaction instead of sending a new one.
"""

import logging
from typing import Awaitable, Callable, Dict, Mapping, Optional

from eth_utils import is_hex_address

from attestation import AttestationPoller
from config import AttestationConfig, BridgeConfig, ChainConfig
from core.errors import (
    AttestationRejectedError,
    AttestationTimeoutError,
    AttestationUnavailableError,
    CodecError,
    ConfirmationTimeoutError,
    InvalidRecipientError,
    InvalidRequestError,
    LedgerError,
    MessageMismatchError,
    ReceiptPendingError,
    RetryExhaustedError,
    SubmissionError,
    TransferError,
)
from core.types import (
    CompletionReceipt,
    FailureReason,
    Receipt,
    Transfer,
    TransferRequest,
    TransferState,
    TxRef,
)
from ledger.client import LedgerClient
from ledger.contracts import deposit_for_burn_call, receive_message_call
from message_codec import (
    MESSAGE_SENT_EVENT,
    extract_message,
    message_hash,
    parse_burn_message,
    parse_message,
    to_canonical_address,
)
from retry_policy import Clock, RetryPolicy, SystemClock, retry_call

logger = logging.getLogger(__name__)

TransitionCallback = Callable[[Transfer, TransferState, TransferState], None]

# Failure recorded when a step raises something no handler maps
STEP_FAILURES: Dict[TransferState, FailureReason] = {
    TransferState.INIT: FailureReason.AUTHORIZATION_FAILED,
    TransferState.AUTHORIZED: FailureReason.BURN_FAILED,
    TransferState.BURNED: FailureReason.RECEIPT_UNAVAILABLE,
    TransferState.MESSAGE_EXTRACTED: FailureReason.PROTOCOL_VIOLATION,
    TransferState.ATTESTATION_PENDING: FailureReason.ATTESTATION_UNAVAILABLE,
    TransferState.ATTESTATION_READY: FailureReason.COMPLETION_FAILED,
}


class _StepFailed(Exception):
    def __init__(self, reason: FailureReason, detail: str):
        self.reason = reason
        self.detail = detail
        super().__init__(detail)


class TransferOrchestrator:
    """Runs transfers through approve, burn, attest and mint."""

    def __init__(
        self,
        chains: Mapping[str, ChainConfig],
        ledgers: Mapping[str, LedgerClient],
        poller: AttestationPoller,
        attestation: Optional[AttestationConfig] = None,
        submission_policy: Optional[RetryPolicy] = None,
        confirmation_policy: Optional[RetryPolicy] = None,
        clock: Optional[Clock] = None,
        on_transition: Optional[TransitionCallback] = None,
        event_signature: str = MESSAGE_SENT_EVENT,
        verify_message: bool = True,
    ):
        """Create an orchestrator.

        Args:
            chains: Chain configuration by name
            ledgers: Ledger client by chain name
            poller: Attestation poller
            attestation: Poll interval and deadline
            submission_policy: Budget for broadcasts the node did not accept
            confirmation_policy: Budget for re-querying receipts
            clock: Time source for retry delays
            on_transition: Called as (transfer, old_state, new_state) after each change
            event_signature: Event carrying the message in the burn receipt
            verify_message: Check the message's domain, recipient and amount
        """
        self.chains = dict(chains)
        self.ledgers = dict(ledgers)
        self.poller = poller
        self.attestation = attestation or AttestationConfig()
        self.submission_policy = submission_policy or RetryPolicy()
        self.confirmation_policy = confirmation_policy or RetryPolicy(
            max_attempts=10, initial_delay=5.0, max_delay=60.0
        )
        self.clock = clock or SystemClock()
        self.on_transition = on_transition
        self.event_signature = event_signature
        self.verify_message = verify_message

        # Completion tx per message hash; one receiveMessage per message
        self._completions: Dict[bytes, TxRef] = {}

        self._handlers: Dict[TransferState, Callable[[Transfer], Awaitable[None]]] = {
            TransferState.INIT: self._authorize,
            TransferState.AUTHORIZED: self._burn,
            TransferState.BURNED: self._extract_message,
            TransferState.MESSAGE_EXTRACTED: self._begin_attestation,
            TransferState.ATTESTATION_PENDING: self._await_attestation,
            TransferState.ATTESTATION_READY: self._complete,
        }

    @classmethod
    def from_config(
        cls,
        config: BridgeConfig,
        ledgers: Mapping[str, LedgerClient],
        poller: AttestationPoller,
        clock: Optional[Clock] = None,
        on_transition: Optional[TransitionCallback] = None,
    ) -> "TransferOrchestrator":
        return cls(
            chains=config.chains,
            ledgers=ledgers,
            poller=poller,
            attestation=config.attestation,
            submission_policy=config.submission_retry,
            confirmation_policy=config.confirmation_retry,
            clock=clock,
            on_transition=on_transition,
        )

    def create_transfer(self, request: TransferRequest) -> Transfer:
        """Accept a request and create its Transfer in INIT.

        Raises:
            InvalidRequestError: If the request names unknown chains or a bad amount
        """
        amount = request.amount
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidRequestError(f"Amount must be a positive integer, got {amount!r}")
        if request.source_chain == request.dest_chain:
            raise InvalidRequestError("Source and destination chains must differ")
        for name in (request.source_chain, request.dest_chain):
            if name not in self.chains or name not in self.ledgers:
                raise InvalidRequestError(f"Chain {name!r} is not configured")

        asset = request.asset or self.chains[request.source_chain].usdc_address
        if not is_hex_address(asset):
            raise InvalidRequestError(f"Asset {asset!r} is not a valid token address")

        transfer = Transfer.from_request(request, asset=asset)
        logger.info(
            f"Created transfer {transfer.transfer_id}: {amount} of {asset} "
            f"from {request.source_chain} to {request.dest_chain}"
        )
        return transfer

    async def execute(self, request: TransferRequest) -> CompletionReceipt:
        """Run a new transfer to completion.

        Raises:
            InvalidRequestError: If the request is rejected up front
            TransferError: If the transfer ends in FAILED
        """
        return await self.resume(self.create_transfer(request))

    async def resume(self, transfer: Transfer) -> CompletionReceipt:
        """Drive a transfer from its recorded state to a terminal state.

        Raises:
            TransferError: If the transfer is or becomes FAILED
        """
        while not transfer.state.is_terminal:
            handler = self._handlers[transfer.state]
            try:
                await handler(transfer)
            except _StepFailed as failure:
                self._fail(transfer, failure.reason, failure.detail)
            except Exception as e:
                logger.exception(
                    f"Transfer {transfer.transfer_id} hit an unexpected error in {transfer.state.value}"
                )
                self._fail(transfer, STEP_FAILURES[transfer.state], f"Unexpected error: {e!r}")

        if transfer.state == TransferState.FAILED:
            raise TransferError(
                transfer.failure_reason,
                transfer.last_state,
                transfer=transfer,
                detail=transfer.failure_detail,
            )

        return CompletionReceipt(
            transfer_id=transfer.transfer_id,
            message_hash=transfer.message_hash,
            burn_tx_ref=transfer.burn_tx_ref,
            completion_tx_ref=transfer.completion_tx_ref,
            amount=transfer.amount,
            recipient=transfer.recipient,
        )

    # State handlers

    async def _authorize(self, transfer: Transfer) -> None:
        if transfer.recipient_canonical is None:
            try:
                transfer.recipient_canonical = to_canonical_address(transfer.recipient)
            except InvalidRecipientError as e:
                raise _StepFailed(FailureReason.INVALID_RECIPIENT, str(e))

        source = self.chains[transfer.source_chain]
        ledger = self.ledgers[transfer.source_chain]

        await self._transact(
            transfer,
            "approval_tx_ref",
            ledger,
            lambda: ledger.authorize(source.token_messenger_address, transfer.amount, transfer.asset),
            FailureReason.AUTHORIZATION_FAILED,
            "approve",
        )
        self._advance(transfer, TransferState.AUTHORIZED)

    async def _burn(self, transfer: Transfer) -> None:
        source = self.chains[transfer.source_chain]
        dest = self.chains[transfer.dest_chain]
        ledger = self.ledgers[transfer.source_chain]
        call = deposit_for_burn_call(
            source.token_messenger_address,
            transfer.amount,
            dest.domain,
            transfer.recipient_canonical,
            transfer.asset,
        )

        await self._transact(
            transfer,
            "burn_tx_ref",
            ledger,
            lambda: ledger.submit(call),
            FailureReason.BURN_FAILED,
            "depositForBurn",
        )
        self._advance(transfer, TransferState.BURNED)

    async def _extract_message(self, transfer: Transfer) -> None:
        ledger = self.ledgers[transfer.source_chain]
        burn_ref = transfer.burn_tx_ref

        try:
            receipt = await retry_call(
                lambda: ledger.get_receipt(burn_ref),
                self.confirmation_policy,
                self.clock,
                retry_on=(ReceiptPendingError,),
                description=f"receipt for burn {burn_ref.tx_hash}",
            )
        except (RetryExhaustedError, LedgerError) as e:
            raise _StepFailed(FailureReason.RECEIPT_UNAVAILABLE, str(e))

        # Decoding problems mean a contract or version mismatch; never retried
        try:
            message_bytes, digest = extract_message(receipt, self.event_signature)
            if self.verify_message:
                self._check_message(transfer, message_bytes)
        except CodecError as e:
            raise _StepFailed(FailureReason.PROTOCOL_VIOLATION, str(e))

        transfer.message_bytes = message_bytes
        transfer.message_hash = digest
        logger.info(f"Transfer {transfer.transfer_id}: message hash 0x{digest.hex()}")
        self._advance(transfer, TransferState.MESSAGE_EXTRACTED)

    async def _begin_attestation(self, transfer: Transfer) -> None:
        if message_hash(transfer.message_bytes) != transfer.message_hash:
            raise _StepFailed(
                FailureReason.PROTOCOL_VIOLATION,
                "Recorded message hash does not match the message bytes",
            )
        self._advance(transfer, TransferState.ATTESTATION_PENDING)

    async def _await_attestation(self, transfer: Transfer) -> None:
        if transfer.attestation is None:
            try:
                transfer.attestation = await self.poller.wait_for_attestation(
                    transfer.message_hash,
                    self.attestation.poll_interval,
                    self.attestation.max_wait,
                )
            except AttestationRejectedError as e:
                raise _StepFailed(FailureReason.ATTESTATION_REJECTED, str(e))
            except AttestationTimeoutError as e:
                raise _StepFailed(FailureReason.ATTESTATION_TIMEOUT, str(e))
            except AttestationUnavailableError as e:
                raise _StepFailed(FailureReason.ATTESTATION_UNAVAILABLE, str(e))
        self._advance(transfer, TransferState.ATTESTATION_READY)

    async def _complete(self, transfer: Transfer) -> None:
        dest = self.chains[transfer.dest_chain]
        ledger = self.ledgers[transfer.dest_chain]
        digest = transfer.message_hash

        known = self._completions.get(digest)
        if transfer.completion_tx_ref is None and known is not None:
            logger.info(
                f"Transfer {transfer.transfer_id}: message 0x{digest.hex()[:16]}... "
                f"already submitted in {known.tx_hash}, not resubmitting"
            )
            transfer.completion_tx_ref = known

        call = receive_message_call(
            dest.message_transmitter_address, transfer.message_bytes, transfer.attestation
        )

        async def submit() -> TxRef:
            ref = await ledger.submit(call)
            self._completions[digest] = ref
            return ref

        await self._transact(
            transfer,
            "completion_tx_ref",
            ledger,
            submit,
            FailureReason.COMPLETION_FAILED,
            "receiveMessage",
        )
        self._advance(transfer, TransferState.COMPLETED)

    # Helpers

    async def _transact(
        self,
        transfer: Transfer,
        ref_field: str,
        ledger: LedgerClient,
        send: Callable[[], Awaitable[TxRef]],
        reason: FailureReason,
        description: str,
    ) -> Receipt:
        """Submit once (unless a ref is already recorded) and confirm."""
        tx_ref = getattr(transfer, ref_field)

        if tx_ref is None:
            try:
                tx_ref = await retry_call(
                    send,
                    self.submission_policy,
                    self.clock,
                    retry_on=(SubmissionError,),
                    description=f"{description} for transfer {transfer.transfer_id}",
                )
            except (RetryExhaustedError, LedgerError) as e:
                raise _StepFailed(reason, str(e))
            setattr(transfer, ref_field, tx_ref)
            logger.info(f"Transfer {transfer.transfer_id}: {description} tx {tx_ref.tx_hash}")
        else:
            logger.info(
                f"Transfer {transfer.transfer_id}: {description} already sent in "
                f"{tx_ref.tx_hash}, waiting for it"
            )

        try:
            return await self._confirm(ledger, tx_ref, description)
        except (RetryExhaustedError, LedgerError) as e:
            raise _StepFailed(reason, str(e))

    async def _confirm(self, ledger: LedgerClient, tx_ref: TxRef, description: str) -> Receipt:
        """Wait for a receipt, falling back to re-querying it. Never resubmits."""
        try:
            return await ledger.await_confirmation(tx_ref)
        except (ConfirmationTimeoutError, ReceiptPendingError) as e:
            logger.warning(f"Confirmation of {description} {tx_ref.tx_hash} interrupted: {e}")

        return await retry_call(
            lambda: ledger.get_receipt(tx_ref),
            self.confirmation_policy,
            self.clock,
            retry_on=(ReceiptPendingError, ConfirmationTimeoutError),
            description=f"receipt for {description} {tx_ref.tx_hash}",
        )

    def _check_message(self, transfer: Transfer, message_bytes: bytes) -> None:
        header = parse_message(message_bytes)
        burn = parse_burn_message(header.body)

        source = self.chains[transfer.source_chain]
        dest = self.chains[transfer.dest_chain]

        if header.source_domain != source.domain:
            raise MessageMismatchError(
                f"Message source domain {header.source_domain}, expected {source.domain}"
            )
        if header.destination_domain != dest.domain:
            raise MessageMismatchError(
                f"Message destination domain {header.destination_domain}, expected {dest.domain}"
            )
        if burn.mint_recipient != transfer.recipient_canonical:
            raise MessageMismatchError("Message mint recipient does not match transfer recipient")
        if burn.amount != transfer.amount:
            raise MessageMismatchError(
                f"Message amount {burn.amount}, expected {transfer.amount}"
            )

    def _advance(self, transfer: Transfer, new_state: TransferState) -> None:
        previous = transfer.advance(new_state)
        logger.info(
            f"Transfer {transfer.transfer_id}: {previous.value} -> {new_state.value}"
        )
        self._notify(transfer, previous, new_state)

    def _fail(self, transfer: Transfer, reason: FailureReason, detail: str) -> None:
        previous = transfer.fail(reason, detail)
        logger.error(
            f"Transfer {transfer.transfer_id} failed in {previous.value}: {reason.value} - {detail}"
        )
        self._notify(transfer, previous, TransferState.FAILED)

    def _notify(self, transfer: Transfer, previous: TransferState, new_state: TransferState) -> None:
        if self.on_transition:
            self.on_transition(transfer, previous, new_state)
