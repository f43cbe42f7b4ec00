"""Ledger clients: sign, submit and confirm transactions on one chain."""

import asyncio
import logging
from typing import Dict, Optional, Tuple

import aiohttp
from eth_account.signers.local import LocalAccount
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3Exception

from core.errors import (
    ConfigurationError,
    ConfirmationTimeoutError,
    ReceiptPendingError,
    SubmissionError,
    TransactionDroppedError,
    TransactionRevertedError,
)
from core.types import ContractCall, LogEntry, Receipt, TxRef
from ledger.contracts import approve_call

logger = logging.getLogger(__name__)

NETWORK_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError)
# JSON-RPC error replies (Web3RPCError and friends) as well as transport failures
RPC_ERRORS = NETWORK_ERRORS + (Web3Exception,)


class LedgerClient:
    """Interface the orchestrator uses to talk to one chain.

    Implementations must serialize nonce assignment for their sending
    account; the orchestrator may submit from several transfers at once.
    """

    chain: str = ""

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    async def authorize(self, spender: str, amount: int, token: str) -> TxRef:
        """Approve spender to pull amount of token from the sending account."""
        return await self.submit(approve_call(token, spender, amount))

    async def submit(self, call: ContractCall) -> TxRef:
        """Sign and broadcast a call.

        Raises:
            SubmissionError: If the node did not accept the transaction
            TransactionRevertedError: If the call reverts in simulation
        """
        raise NotImplementedError

    async def await_confirmation(self, tx_ref: TxRef, timeout: Optional[float] = None) -> Receipt:
        """Wait for a successful receipt.

        Raises:
            ConfirmationTimeoutError: If no receipt arrived in time
            TransactionRevertedError: If the transaction reverted
            TransactionDroppedError: If the node no longer knows the transaction
        """
        raise NotImplementedError

    async def get_receipt(self, tx_ref: TxRef) -> Receipt:
        """Fetch the receipt of a mined transaction.

        Raises:
            ReceiptPendingError: If the transaction is not mined yet
            TransactionRevertedError: If the transaction reverted
            TransactionDroppedError: If the node no longer knows the transaction
        """
        raise NotImplementedError


class EvmLedgerClient(LedgerClient):
    """LedgerClient for EVM chains over JSON-RPC with a local signing key."""

    def __init__(
        self,
        chain: str,
        rpc_url: str,
        account: LocalAccount,
        chain_id: Optional[int] = None,
        confirmation_timeout: float = 180.0,
        poll_latency: float = 2.0,
        gas_multiplier: float = 1.2,
        web3: Optional[AsyncWeb3] = None,
    ):
        """Create a ledger client.

        Args:
            chain: Chain name used in TxRefs and logs
            rpc_url: JSON-RPC endpoint
            account: Signing account
            chain_id: Expected EVM chain id, checked on start
            confirmation_timeout: Default seconds to wait for a receipt
            poll_latency: Seconds between receipt polls
            gas_multiplier: Safety margin applied to gas estimates
            web3: Pre-built AsyncWeb3 instance (tests)
        """
        self.chain = chain
        self.rpc_url = rpc_url
        self.account = account
        self.expected_chain_id = chain_id
        self.confirmation_timeout = confirmation_timeout
        self.poll_latency = poll_latency
        self.gas_multiplier = gas_multiplier
        self.web3 = web3

        self._chain_id: Optional[int] = chain_id
        self._nonce: Optional[int] = None
        self._nonce_lock = asyncio.Lock()
        # Signed transactions (with their nonce) whose broadcast outcome is unknown
        self._unresolved: Dict[ContractCall, Tuple[object, int]] = {}

        logger.info(f"Initialized {chain} ledger client for {account.address}")

    async def start(self) -> None:
        """Connect and check the chain id."""
        if self.web3 is None:
            self.web3 = AsyncWeb3(AsyncHTTPProvider(self.rpc_url))

        try:
            chain_id = await self.web3.eth.chain_id
        except RPC_ERRORS as e:
            raise ConfigurationError(f"Cannot reach {self.chain} RPC at {self.rpc_url}: {e}")

        if self.expected_chain_id is not None and chain_id != self.expected_chain_id:
            raise ConfigurationError(
                f"{self.chain} RPC reports chain id {chain_id}, expected {self.expected_chain_id}"
            )
        self._chain_id = chain_id
        logger.info(f"Connected to {self.chain} (chain id {chain_id})")

    async def stop(self) -> None:
        """Close the RPC connection."""
        if self.web3 is not None:
            provider = self.web3.provider
            if hasattr(provider, "disconnect"):
                await provider.disconnect()
        logger.info(f"{self.chain} ledger client stopped")

    async def _next_nonce(self) -> int:
        if self._nonce is None:
            try:
                self._nonce = await self.web3.eth.get_transaction_count(
                    self.account.address, "pending"
                )
            except RPC_ERRORS as e:
                raise SubmissionError(f"Could not fetch nonce on {self.chain}: {e}", chain=self.chain)
        return self._nonce

    async def _lookup(self, tx_hash: str) -> Optional[bool]:
        """Whether the node knows a transaction; None if it cannot be asked."""
        try:
            await self.web3.eth.get_transaction(tx_hash)
            return True
        except TransactionNotFound:
            return False
        except RPC_ERRORS as e:
            logger.warning(f"Could not look up {tx_hash[:18]}... on {self.chain}: {e}")
            return None

    async def _sign(self, call: ContractCall, nonce: int):
        tx = {
            "from": self.account.address,
            "to": call.to,
            "data": call.data,
            "value": 0,
            "nonce": nonce,
            "chainId": self._chain_id,
        }
        try:
            gas = await self.web3.eth.estimate_gas(tx)
            tx["gasPrice"] = await self.web3.eth.gas_price
        except ContractLogicError as e:
            raise TransactionRevertedError(
                f"{call.label or 'call'} would revert on {self.chain}: {e}", chain=self.chain
            )
        except RPC_ERRORS as e:
            raise SubmissionError(
                f"Could not prepare {call.label or 'call'} on {self.chain}: {e}", chain=self.chain
            )
        tx["gas"] = int(gas * self.gas_multiplier)
        del tx["from"]
        return self.account.sign_transaction(tx)

    async def submit(self, call: ContractCall) -> TxRef:
        if self.web3 is None:
            raise SubmissionError(f"{self.chain} client not started", chain=self.chain)

        async with self._nonce_lock:
            pending = self._unresolved.get(call)
            if pending is None:
                nonce = await self._next_nonce()
                signed = await self._sign(call, nonce)
            else:
                signed, nonce = pending
                logger.info(f"Rebroadcasting unresolved {call.label} on {self.chain}")

            tx_hash = "0x" + bytes(signed.hash).hex()

            # Stays stashed until the node's answer is known, including when
            # the broadcast is cancelled after the bytes may have left
            self._unresolved[call] = (signed, nonce)
            try:
                await self.web3.eth.send_raw_transaction(signed.raw_transaction)
            except asyncio.CancelledError:
                self._nonce = None
                raise
            except RPC_ERRORS + (ValueError,) as e:
                known = await self._lookup(tx_hash)
                if known is None:
                    self._nonce = None
                    raise SubmissionError(
                        f"Broadcast of {call.label} on {self.chain} has unknown outcome: {e}",
                        chain=self.chain,
                        tx_hash=tx_hash,
                    )
                if not known:
                    # Rejected or superseded; a retry signs afresh
                    del self._unresolved[call]
                    self._nonce = None
                    raise SubmissionError(
                        f"Broadcast of {call.label} on {self.chain} rejected: {e}",
                        chain=self.chain,
                        tx_hash=tx_hash,
                    )
                logger.warning(f"Broadcast of {tx_hash[:18]}... errored but node has it: {e}")

            del self._unresolved[call]
            if self._nonce is None or self._nonce <= nonce:
                self._nonce = nonce + 1
            await self._drop_superseded(nonce)

        logger.info(f"Submitted {call.label} on {self.chain}: {tx_hash}")
        return TxRef(chain=self.chain, tx_hash=tx_hash)

    async def _drop_superseded(self, nonce: int) -> None:
        """Forget stashed transactions whose nonce slot went to another transaction."""
        for call, (signed, stashed_nonce) in list(self._unresolved.items()):
            if stashed_nonce >= nonce:
                continue
            if await self._lookup("0x" + bytes(signed.hash).hex()) is False:
                logger.info(f"Dropping superseded {call.label} (nonce {stashed_nonce}) on {self.chain}")
                del self._unresolved[call]

    async def await_confirmation(self, tx_ref: TxRef, timeout: Optional[float] = None) -> Receipt:
        timeout = timeout or self.confirmation_timeout
        try:
            raw = await self.web3.eth.wait_for_transaction_receipt(
                tx_ref.tx_hash, timeout=timeout, poll_latency=self.poll_latency
            )
        except TimeExhausted:
            if await self._lookup(tx_ref.tx_hash) is False:
                raise TransactionDroppedError(
                    f"{tx_ref.tx_hash} dropped from {self.chain}",
                    chain=self.chain, tx_hash=tx_ref.tx_hash,
                )
            raise ConfirmationTimeoutError(
                f"{tx_ref.tx_hash} not confirmed on {self.chain} within {timeout}s",
                chain=self.chain, tx_hash=tx_ref.tx_hash,
            )
        except RPC_ERRORS as e:
            raise ConfirmationTimeoutError(
                f"Lost connection waiting for {tx_ref.tx_hash} on {self.chain}: {e}",
                chain=self.chain, tx_hash=tx_ref.tx_hash,
            )
        return self._checked(tx_ref, raw)

    async def get_receipt(self, tx_ref: TxRef) -> Receipt:
        try:
            raw = await self.web3.eth.get_transaction_receipt(tx_ref.tx_hash)
        except TransactionNotFound:
            if await self._lookup(tx_ref.tx_hash) is False:
                raise TransactionDroppedError(
                    f"{tx_ref.tx_hash} unknown to {self.chain}",
                    chain=self.chain, tx_hash=tx_ref.tx_hash,
                )
            raise ReceiptPendingError(
                f"{tx_ref.tx_hash} not mined yet on {self.chain}",
                chain=self.chain, tx_hash=tx_ref.tx_hash,
            )
        except RPC_ERRORS as e:
            raise ReceiptPendingError(
                f"Could not fetch receipt for {tx_ref.tx_hash} on {self.chain}: {e}",
                chain=self.chain, tx_hash=tx_ref.tx_hash,
            )
        return self._checked(tx_ref, raw)

    def _checked(self, tx_ref: TxRef, raw) -> Receipt:
        receipt = to_receipt(tx_ref, raw)
        if not receipt.succeeded:
            raise TransactionRevertedError(
                f"{tx_ref.tx_hash} reverted on {self.chain} in block {receipt.block_number}",
                chain=self.chain, tx_hash=tx_ref.tx_hash,
            )
        return receipt


def to_receipt(tx_ref: TxRef, raw) -> Receipt:
    """Convert a web3 receipt mapping into a Receipt."""
    logs = [
        LogEntry(
            address=log["address"],
            topics=[bytes(topic) for topic in log["topics"]],
            data=bytes(log["data"]),
            log_index=int(log.get("logIndex", index)),
        )
        for index, log in enumerate(raw.get("logs", []))
    ]
    return Receipt(
        tx_ref=tx_ref,
        status=int(raw.get("status", 0)),
        block_number=int(raw.get("blockNumber", 0)),
        logs=logs,
    )
