"""USDC burn-and-mint bridge service."""

import asyncio
import logging
from typing import Dict, List, Mapping, Optional

from attestation import AttestationClient, AttestationPoller
from config import BridgeConfig
from core.errors import BridgeError, TransferError
from core.types import CompletionReceipt, Transfer, TransferRequest, TransferState
from ledger.client import EvmLedgerClient, LedgerClient
from orchestrator import TransferOrchestrator
from retry_policy import Clock
from wallet import load_chain_account

logger = logging.getLogger(__name__)


class BridgeService:
    """Runs transfers and keeps track of them while the process lives.

    Transfers are held in memory only; they are discarded on restart.
    """

    def __init__(
        self,
        config: BridgeConfig,
        ledgers: Optional[Mapping[str, LedgerClient]] = None,
        attestation_client: Optional[AttestationClient] = None,
        clock: Optional[Clock] = None,
    ):
        """Initialize the bridge.

        Args:
            config: Bridge configuration
            ledgers: Ledger clients by chain name (built from config if omitted)
            attestation_client: Attestation client (built from config if omitted)
            clock: Time source for polling and retries
        """
        self.config = config
        self.running = False

        if ledgers is None:
            ledgers = {
                name: EvmLedgerClient(
                    chain=name,
                    rpc_url=chain.rpc_url,
                    account=load_chain_account(chain),
                    chain_id=chain.chain_id,
                    confirmation_timeout=chain.confirmation_timeout,
                )
                for name, chain in config.chains.items()
            }
        self.ledgers: Dict[str, LedgerClient] = dict(ledgers)

        self.attestation_client = attestation_client or AttestationClient(
            config.attestation.api_url,
            request_timeout=config.attestation.request_timeout,
        )
        self.poller = AttestationPoller(
            self.attestation_client,
            clock=clock,
            max_consecutive_failures=config.attestation.max_consecutive_failures,
        )
        self.orchestrator = TransferOrchestrator.from_config(
            config,
            self.ledgers,
            self.poller,
            clock=clock,
            on_transition=self._on_transition,
        )

        self.transfers: Dict[str, Transfer] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

        logger.info(f"Initialized bridge with chains: {', '.join(self.ledgers)}")

    async def start(self) -> None:
        """Start the bridge."""
        logger.info("Starting bridge...")

        self.config.validate()

        for ledger in self.ledgers.values():
            await ledger.start()

        await self.attestation_client.start()

        self.running = True
        logger.info("Bridge started successfully")

    async def stop(self) -> None:
        """Stop the bridge, cancelling transfers still in flight."""
        logger.info("Stopping bridge...")
        self.running = False

        for task in self._tasks.values():
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()

        await self.attestation_client.stop()
        for ledger in self.ledgers.values():
            await ledger.stop()

        logger.info("Bridge stopped")

    def _on_transition(self, transfer: Transfer, previous: TransferState, new_state: TransferState) -> None:
        logger.debug(f"Transfer {transfer.transfer_id} recorded {previous.value} -> {new_state.value}")

    def default_request(self) -> TransferRequest:
        """Transfer described by the configuration (single-run mode)."""
        missing = [
            key for key in ("source_chain", "dest_chain", "recipient", "amount")
            if getattr(self.config, key) is None
        ]
        if missing:
            raise BridgeError(f"Configuration does not describe a transfer, missing: {missing}")
        return TransferRequest(
            source_chain=self.config.source_chain,
            dest_chain=self.config.dest_chain,
            amount=self.config.amount,
            recipient=self.config.recipient,
        )

    async def run_transfer(self, request: TransferRequest) -> CompletionReceipt:
        """Run one transfer and wait for the result.

        Raises:
            InvalidRequestError: If the request is rejected
            TransferError: If the transfer fails
        """
        transfer = self.orchestrator.create_transfer(request)
        self.transfers[transfer.transfer_id] = transfer
        try:
            return await self.orchestrator.resume(transfer)
        finally:
            self._prune()

    def submit_transfer(self, request: TransferRequest) -> Transfer:
        """Start a transfer in the background and return it immediately.

        Raises:
            InvalidRequestError: If the request is rejected
        """
        transfer = self.orchestrator.create_transfer(request)
        self.transfers[transfer.transfer_id] = transfer
        self._tasks[transfer.transfer_id] = asyncio.create_task(self._drive(transfer))
        return transfer

    async def _drive(self, transfer: Transfer) -> None:
        try:
            receipt = await self.orchestrator.resume(transfer)
            logger.info(
                f"Transfer {transfer.transfer_id} completed in {receipt.completion_tx_ref.tx_hash}"
            )
        except TransferError as e:
            logger.error(f"Transfer {transfer.transfer_id} failed: {e}")
        except asyncio.CancelledError:
            logger.warning(
                f"Transfer {transfer.transfer_id} cancelled in state {transfer.state.value}"
            )
            raise
        except Exception as e:
            logger.error(f"Unexpected error in transfer {transfer.transfer_id}: {e}", exc_info=True)
        finally:
            self._tasks.pop(transfer.transfer_id, None)
            self._prune()

    def _prune(self) -> None:
        """Forget the oldest finished transfers beyond the configured limit."""
        finished = [
            transfer_id for transfer_id, transfer in self.transfers.items()
            if transfer.state.is_terminal and transfer_id not in self._tasks
        ]
        excess = len(finished) - self.config.max_finished_transfers
        for transfer_id in finished[:max(excess, 0)]:
            del self.transfers[transfer_id]
            logger.debug(f"Evicted finished transfer {transfer_id}")

    async def wait(self, transfer_id: str) -> Transfer:
        """Wait until a background transfer stops running."""
        transfer = self.transfers[transfer_id]
        task = self._tasks.get(transfer_id)
        if task is not None:
            await asyncio.shield(task)
        return transfer

    def get_transfer(self, transfer_id: str) -> Optional[Transfer]:
        return self.transfers.get(transfer_id)

    def list_transfers(self) -> List[Transfer]:
        return sorted(self.transfers.values(), key=lambda t: t.created_at)
