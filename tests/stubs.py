"""Stub collaborators for orchestrator tests: ledgers, attestation service, clock."""

import asyncio
from typing import Callable, Dict, List, Optional, Union

from eth_abi import decode, encode
from eth_utils import keccak

from attestation import AttestationPoller, AttestationResponse
from config import AttestationConfig, ChainConfig
from core.errors import SubmissionError, TransactionRevertedError
from core.types import ContractCall, LogEntry, Receipt, TxRef
from message_codec import MESSAGE_SENT_EVENT, event_topic, to_canonical_address
from orchestrator import TransferOrchestrator
from retry_policy import Clock, RetryPolicy

SOURCE = "ethereum-sepolia"
DEST = "base-sepolia"
SOURCE_DOMAIN = 0
DEST_DOMAIN = 6

RECIPIENT = "0x" + "ab" * 20
USDC = "0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238"
TOKEN_MESSENGER = "0x9f3B8679c73C2Fef8b59B4f3444d4e156fb70AA5"
MESSAGE_TRANSMITTER = "0x7865fAfC2db2093669d92c0F33AeEF291086BEFD"
PRIVATE_KEY = "0x" + "11" * 32

TRANSFER_TOPIC = keccak(text="Transfer(address,address,uint256)")


class FakeClock(Clock):
    """Clock whose sleeps advance virtual time instantly."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: List[float] = []

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        # Yield so cancellation can land here, as it would on a real sleep
        await asyncio.sleep(0)


def build_message(
    amount: int,
    mint_recipient: bytes,
    nonce: int = 1,
    source_domain: int = SOURCE_DOMAIN,
    dest_domain: int = DEST_DOMAIN,
    burn_token: str = USDC,
) -> bytes:
    """CCTP v1 message carrying a burn body."""
    body = (
        (0).to_bytes(4, "big")
        + to_canonical_address(burn_token)
        + mint_recipient
        + amount.to_bytes(32, "big")
        + bytes(12) + bytes.fromhex("22" * 20)
    )
    return (
        (0).to_bytes(4, "big")
        + source_domain.to_bytes(4, "big")
        + dest_domain.to_bytes(4, "big")
        + nonce.to_bytes(8, "big")
        + to_canonical_address(TOKEN_MESSENGER)
        + to_canonical_address(TOKEN_MESSENGER)
        + bytes(32)
        + body
    )


def message_sent_log(message: bytes, log_index: int = 0) -> LogEntry:
    return LogEntry(
        address=MESSAGE_TRANSMITTER,
        topics=[event_topic(MESSAGE_SENT_EVENT)],
        data=encode(["bytes"], [message]),
        log_index=log_index,
    )


def transfer_log(log_index: int = 0) -> LogEntry:
    return LogEntry(
        address=USDC,
        topics=[TRANSFER_TOPIC, bytes(32), bytes(32)],
        data=(1).to_bytes(32, "big"),
        log_index=log_index,
    )


def cctp_burn_logs(source_domain: int = SOURCE_DOMAIN) -> Callable[[ContractCall, int], List[LogEntry]]:
    """Log factory emitting a MessageSent event that mirrors the burn call."""

    def factory(call: ContractCall, nonce: int) -> List[LogEntry]:
        if call.label != "depositForBurn":
            return []
        amount, domain, recipient, token = decode(
            ["uint256", "uint32", "bytes32", "address"], call.data[4:]
        )
        message = build_message(
            amount, recipient, nonce=nonce, source_domain=source_domain,
            dest_domain=domain, burn_token=token,
        )
        return [transfer_log(0), message_sent_log(message, 1)]

    return factory


class StubLedgerClient:
    """Records every call and answers from scripted behaviour.

    Attributes:
        fail_authorize: Number of authorize attempts to reject before accepting
        fail_submit: label -> number of submit attempts to reject
        revert: Labels whose transactions revert
        confirmation_errors: label -> exceptions raised by await_confirmation, in order
        receipt_errors: label -> exceptions raised by get_receipt, in order
        log_factory: Builds the logs of an accepted call
    """

    def __init__(self, chain: str, log_factory: Optional[Callable] = None):
        self.chain = chain
        self.log_factory = log_factory or (lambda call, nonce: [])

        self.fail_authorize = 0
        self.fail_submit: Dict[str, int] = {}
        self.revert = set()
        self.confirmation_errors: Dict[str, List[Exception]] = {}
        self.receipt_errors: Dict[str, List[Exception]] = {}

        self.authorize_calls: List[tuple] = []
        self.submit_attempts: List[ContractCall] = []
        self.accepted: List[tuple] = []  # (label, TxRef)
        self.confirmations: List[TxRef] = []
        self.receipt_queries: List[TxRef] = []

        self._receipts: Dict[str, Receipt] = {}
        self._labels: Dict[str, str] = {}
        self.started = False

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.started = False

    async def authorize(self, spender: str, amount: int, token: str) -> TxRef:
        self.authorize_calls.append((spender, amount, token))
        if self.fail_authorize > 0:
            self.fail_authorize -= 1
            raise SubmissionError("connection refused", chain=self.chain)
        return self._accept(ContractCall(to=token, data=b"", label="approve"))

    async def submit(self, call: ContractCall) -> TxRef:
        self.submit_attempts.append(call)
        if self.fail_submit.get(call.label, 0) > 0:
            self.fail_submit[call.label] -= 1
            raise SubmissionError("connection reset", chain=self.chain)
        return self._accept(call)

    def _accept(self, call: ContractCall) -> TxRef:
        nonce = len(self.accepted) + 1
        tx_ref = TxRef(chain=self.chain, tx_hash="0x" + keccak(text=f"{self.chain}:{nonce}").hex())
        status = 0 if call.label in self.revert else 1
        self._receipts[tx_ref.tx_hash] = Receipt(
            tx_ref=tx_ref, status=status, block_number=1000 + nonce,
            logs=self.log_factory(call, nonce),
        )
        self._labels[tx_ref.tx_hash] = call.label
        self.accepted.append((call.label, tx_ref))
        return tx_ref

    async def await_confirmation(self, tx_ref: TxRef, timeout: Optional[float] = None) -> Receipt:
        self.confirmations.append(tx_ref)
        errors = self.confirmation_errors.get(self._labels[tx_ref.tx_hash])
        if errors:
            raise errors.pop(0)
        return self._receipt(tx_ref)

    async def get_receipt(self, tx_ref: TxRef) -> Receipt:
        self.receipt_queries.append(tx_ref)
        errors = self.receipt_errors.get(self._labels[tx_ref.tx_hash])
        if errors:
            raise errors.pop(0)
        return self._receipt(tx_ref)

    def _receipt(self, tx_ref: TxRef) -> Receipt:
        receipt = self._receipts[tx_ref.tx_hash]
        if not receipt.succeeded:
            raise TransactionRevertedError(f"{tx_ref.tx_hash} reverted", chain=self.chain)
        return receipt

    def labels(self) -> List[str]:
        return [label for label, _ in self.accepted]

    def set_logs(self, label: str, logs: List[LogEntry]) -> None:
        """Make every accepted call with this label emit fixed logs."""
        previous = self.log_factory

        def factory(call, nonce):
            return list(logs) if call.label == label else previous(call, nonce)

        self.log_factory = factory


class StubAttestationClient:
    """Replies from a script; the last entry repeats once the script runs out."""

    def __init__(self, responses: List[Union[AttestationResponse, Exception]]):
        self.responses = list(responses)
        self.requests: List[bytes] = []

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    async def get_attestation(self, message_hash: bytes) -> AttestationResponse:
        self.requests.append(message_hash)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item


def pending() -> AttestationResponse:
    return AttestationResponse(status="pending_confirmations")


def complete(attestation: bytes) -> AttestationResponse:
    return AttestationResponse(status="complete", attestation=attestation)


def make_chains() -> Dict[str, ChainConfig]:
    common = dict(
        token_messenger_address=TOKEN_MESSENGER,
        message_transmitter_address=MESSAGE_TRANSMITTER,
        private_key=PRIVATE_KEY,
    )
    return {
        SOURCE: ChainConfig(
            name=SOURCE, rpc_url="http://source.invalid", domain=SOURCE_DOMAIN,
            usdc_address=USDC, chain_id=11155111, **common,
        ),
        DEST: ChainConfig(
            name=DEST, rpc_url="http://dest.invalid", domain=DEST_DOMAIN,
            usdc_address="0x036CbD53842c5426634e7929541eC2318f3dCF7e", chain_id=84532, **common,
        ),
    }


def make_orchestrator(
    source: StubLedgerClient,
    dest: StubLedgerClient,
    oracle: StubAttestationClient,
    clock: FakeClock,
    **kwargs,
) -> TransferOrchestrator:
    options = dict(
        attestation=AttestationConfig(poll_interval=2.0, max_wait=60.0, max_consecutive_failures=3),
        submission_policy=RetryPolicy(max_attempts=3, initial_delay=1.0, max_delay=4.0),
        confirmation_policy=RetryPolicy(max_attempts=4, initial_delay=1.0, max_delay=4.0),
    )
    options.update(kwargs)
    return TransferOrchestrator(
        chains=make_chains(),
        ledgers={SOURCE: source, DEST: dest},
        poller=AttestationPoller(oracle, clock=clock, max_consecutive_failures=3),
        clock=clock,
        **options,
    )
