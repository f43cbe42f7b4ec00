"""Attestation service client and poller.

The attestation service watches source chains for burn events and signs
each message once it is final. It must be polled:

    GET {base_url}/attestations/0x{message_hash}
    -> {"status": "pending_confirmations" | "complete" | ..., "attestation": "0x..."}

A 404 means the burn has not been indexed yet and counts as pending.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import FrozenSet, Optional

import aiohttp

from core.errors import (
    AttestationRejectedError,
    AttestationRequestError,
    AttestationTimeoutError,
    AttestationUnavailableError,
)
from retry_policy import Clock, SystemClock

logger = logging.getLogger(__name__)

STATUS_COMPLETE = "complete"
PENDING_STATUSES: FrozenSet[str] = frozenset({"pending", "pending_confirmations"})
REJECTED_STATUSES: FrozenSet[str] = frozenset({"failed", "rejected", "invalid"})


@dataclass(frozen=True)
class AttestationResponse:
    """One reply from the attestation service."""
    status: str
    attestation: Optional[bytes] = None
    http_status: int = 200

    @property
    def is_complete(self) -> bool:
        return self.status == STATUS_COMPLETE and bool(self.attestation)


def _decode_attestation(value) -> Optional[bytes]:
    if not isinstance(value, str) or not value.startswith("0x"):
        # The service answers "PENDING" in this field until the proof exists
        return None
    try:
        return bytes.fromhex(value[2:])
    except ValueError:
        return None


class AttestationClient:
    """HTTP client for the attestation service."""

    def __init__(self, base_url: str, request_timeout: float = 10.0):
        """Initialize the attestation client.

        Args:
            base_url: Service root, e.g. https://iris-api-sandbox.circle.com
            request_timeout: Seconds before a single request is abandoned
        """
        self.base_url = base_url.rstrip("/")
        self.request_timeout = request_timeout
        self._session: Optional[aiohttp.ClientSession] = None
        logger.info(f"Initialized attestation client for {self.base_url}")

    async def start(self) -> None:
        """Open the HTTP session."""
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.request_timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def stop(self) -> None:
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None
        logger.info("Attestation client stopped")

    async def get_attestation(self, message_hash: bytes) -> AttestationResponse:
        """Fetch the current attestation status for a message.

        Args:
            message_hash: keccak256 of the message bytes

        Returns:
            The service's reply

        Raises:
            AttestationRequestError: On transport errors, unparseable bodies, 429 or 5xx replies
        """
        if not self._session:
            await self.start()

        hash_hex = "0x" + message_hash.hex()
        url = f"{self.base_url}/attestations/{hash_hex}"

        try:
            async with self._session.get(url) as response:
                if response.status == 404:
                    return AttestationResponse(status="pending", http_status=404)
                if response.status != 200:
                    raise AttestationRequestError(
                        f"Attestation service returned HTTP {response.status}",
                        message_hash=hash_hex,
                        http_status=response.status,
                    )
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise AttestationRequestError(
                f"Attestation request failed: {e!r}", message_hash=hash_hex
            )

        if not isinstance(data, dict):
            raise AttestationRequestError(
                f"Unexpected attestation payload: {data!r}", message_hash=hash_hex
            )

        return AttestationResponse(
            status=str(data.get("status", "")).lower(),
            attestation=_decode_attestation(data.get("attestation")),
            http_status=200,
        )

    async def __aenter__(self) -> "AttestationClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()


class AttestationPoller:
    """Polls the attestation service until a proof is ready."""

    def __init__(
        self,
        client: AttestationClient,
        clock: Optional[Clock] = None,
        max_consecutive_failures: int = 5,
        rejected_statuses: FrozenSet[str] = REJECTED_STATUSES,
    ):
        self.client = client
        self.clock = clock or SystemClock()
        self.max_consecutive_failures = max_consecutive_failures
        self.rejected_statuses = rejected_statuses

    async def wait_for_attestation(
        self,
        message_hash: bytes,
        poll_interval: float,
        max_wait: float,
    ) -> bytes:
        """Poll until the attestation is complete.

        Transient request failures are waited out on the same interval; only
        a run of more than max_consecutive_failures of them gives up.

        Args:
            message_hash: Hash of the message to attest
            poll_interval: Seconds between requests
            max_wait: Seconds before giving up

        Returns:
            The attestation bytes

        Raises:
            AttestationRejectedError: If the service rejects the message
            AttestationUnavailableError: If the service keeps failing
            AttestationTimeoutError: If max_wait elapses first
        """
        hash_hex = "0x" + message_hash.hex()
        deadline = self.clock.monotonic() + max_wait
        attempts = 0
        consecutive_failures = 0

        logger.info(f"Waiting for attestation of {hash_hex[:18]}...")

        while True:
            attempts += 1
            try:
                response = await self.client.get_attestation(message_hash)
            except AttestationRequestError as e:
                consecutive_failures += 1
                logger.warning(
                    f"Attestation request {attempts} for {hash_hex[:18]}... failed "
                    f"({consecutive_failures}/{self.max_consecutive_failures}): {e}"
                )
                if consecutive_failures > self.max_consecutive_failures:
                    raise AttestationUnavailableError(
                        f"Attestation service unavailable after "
                        f"{consecutive_failures} consecutive failures: {e}",
                        message_hash=hash_hex,
                    )
            else:
                consecutive_failures = 0

                if response.is_complete:
                    logger.info(
                        f"Attestation for {hash_hex[:18]}... complete after {attempts} request(s)"
                    )
                    return response.attestation

                if response.status in self.rejected_statuses:
                    raise AttestationRejectedError(
                        f"Attestation rejected with status {response.status!r}",
                        message_hash=hash_hex,
                        status=response.status,
                    )

                if response.status not in PENDING_STATUSES and response.status != STATUS_COMPLETE:
                    logger.warning(f"Unknown attestation status {response.status!r}, still waiting")
                else:
                    logger.debug(f"Attestation for {hash_hex[:18]}... is {response.status}")

            remaining = deadline - self.clock.monotonic()
            if remaining <= 0:
                raise AttestationTimeoutError(
                    f"No attestation for {hash_hex} after {max_wait}s ({attempts} requests)",
                    message_hash=hash_hex,
                )
            await self.clock.sleep(min(poll_interval, remaining))
