"""Tests for the bridge service and its HTTP API."""

import asyncio

import httpx
import pytest

from api.dependencies import set_bridge
from api.main import app
from bridge import BridgeService
from config import AttestationConfig, BridgeConfig
from core.errors import BridgeError, TransferError
from core.types import TransferRequest, TransferState
from retry_policy import RetryPolicy
from tests.stubs import (
    DEST,
    RECIPIENT,
    SOURCE,
    FakeClock,
    StubAttestationClient,
    StubLedgerClient,
    cctp_burn_logs,
    complete,
    make_chains,
    pending,
)

PROOF = b"\x07" * 65


def make_service(oracle_responses=None, **config_overrides):
    config = BridgeConfig(
        chains=make_chains(),
        attestation=AttestationConfig(poll_interval=2.0, max_wait=60.0, max_consecutive_failures=3),
        submission_retry=RetryPolicy(max_attempts=2, initial_delay=1.0),
        confirmation_retry=RetryPolicy(max_attempts=2, initial_delay=1.0),
        **config_overrides,
    )
    ledgers = {
        SOURCE: StubLedgerClient(SOURCE, log_factory=cctp_burn_logs()),
        DEST: StubLedgerClient(DEST),
    }
    oracle = StubAttestationClient(oracle_responses or [pending(), complete(PROOF)])
    return BridgeService(config, ledgers=ledgers, attestation_client=oracle, clock=FakeClock())


def transfer_request(**overrides):
    fields = dict(source_chain=SOURCE, dest_chain=DEST, amount=500_000, recipient=RECIPIENT)
    fields.update(overrides)
    return TransferRequest(**fields)


class TestBridgeService:
    """Service lifecycle and transfer tracking."""

    @pytest.mark.asyncio
    async def test_start_and_stop_manage_clients(self):
        service = make_service()

        await service.start()
        assert service.running
        assert all(ledger.started for ledger in service.ledgers.values())

        await service.stop()
        assert not service.running
        assert not any(ledger.started for ledger in service.ledgers.values())

    @pytest.mark.asyncio
    async def test_run_transfer_records_transfer(self):
        service = make_service()

        receipt = await service.run_transfer(transfer_request())

        transfer = service.get_transfer(receipt.transfer_id)
        assert transfer.state == TransferState.COMPLETED
        assert service.list_transfers() == [transfer]

    @pytest.mark.asyncio
    async def test_background_transfer_failure_is_recorded(self):
        service = make_service()
        service.ledgers[SOURCE].fail_authorize = 100

        transfer = service.submit_transfer(transfer_request())
        await service.wait(transfer.transfer_id)

        assert transfer.state == TransferState.FAILED
        assert transfer.failed_from == TransferState.INIT

    @pytest.mark.asyncio
    async def test_stop_cancels_in_flight_transfers(self):
        service = make_service(oracle_responses=[pending()])
        transfer = service.submit_transfer(transfer_request())

        while service.attestation_client.requests == []:
            await asyncio.sleep(0)
        await service.stop()

        assert transfer.state == TransferState.ATTESTATION_PENDING
        assert service._tasks == {}

    @pytest.mark.asyncio
    async def test_oldest_finished_transfers_are_evicted(self):
        service = make_service(oracle_responses=[complete(PROOF)], max_finished_transfers=1)

        first = await service.run_transfer(transfer_request())
        second = await service.run_transfer(transfer_request(amount=700_000))

        assert service.get_transfer(first.transfer_id) is None
        assert service.get_transfer(second.transfer_id).state == TransferState.COMPLETED

        failing = service.submit_transfer(transfer_request(recipient="not-an-address"))
        finished = await service.wait(failing.transfer_id)

        assert finished is failing
        assert finished.state == TransferState.FAILED
        assert [t.transfer_id for t in service.list_transfers()] == [failing.transfer_id]

    @pytest.mark.asyncio
    async def test_running_transfers_are_not_evicted(self):
        service = make_service(max_finished_transfers=0)
        hold = asyncio.Event()

        async def submit(call):
            await hold.wait()

        service.ledgers[DEST].submit = submit
        running = service.submit_transfer(transfer_request())

        while running.state != TransferState.ATTESTATION_READY:
            await asyncio.sleep(0)
        with pytest.raises(TransferError):
            await service.run_transfer(transfer_request(recipient="not-an-address"))

        assert service.list_transfers() == [running]
        await service.stop()

    def test_default_request_from_config(self):
        service = make_service(source_chain=SOURCE, dest_chain=DEST, recipient=RECIPIENT, amount=10)

        request = service.default_request()

        assert request == TransferRequest(SOURCE, DEST, 10, RECIPIENT)

    def test_default_request_requires_transfer_fields(self):
        with pytest.raises(BridgeError):
            make_service(source_chain=SOURCE).default_request()


@pytest.fixture
def service():
    service = make_service()
    set_bridge(service)
    yield service
    set_bridge(None)


def api_client():
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


class TestTransferApi:
    """HTTP endpoints."""

    @pytest.mark.asyncio
    async def test_health(self, service):
        async with api_client() as client:
            root = await client.get("/")
            health = await client.get("/health")

        assert root.status_code == 200
        assert root.json()["status"] == "online"
        assert health.json() == {"status": "healthy"}

    @pytest.mark.asyncio
    async def test_create_and_fetch_transfer(self, service):
        payload = {"source_chain": SOURCE, "dest_chain": DEST, "amount": 500_000, "recipient": RECIPIENT}

        async with api_client() as client:
            created = await client.post("/api/transfers", json=payload)
            assert created.status_code == 202
            transfer_id = created.json()["transfer_id"]

            await service.wait(transfer_id)

            fetched = await client.get(f"/api/transfers/{transfer_id}")
            listed = await client.get("/api/transfers")

        body = fetched.json()
        assert body["state"] == "completed"
        assert body["burn_tx"]["chain"] == SOURCE
        assert body["completion_tx"]["chain"] == DEST
        assert body["message_hash"].startswith("0x")
        assert [t["transfer_id"] for t in listed.json()] == [transfer_id]

    @pytest.mark.asyncio
    async def test_unknown_transfer_is_404(self, service):
        async with api_client() as client:
            response = await client.get("/api/transfers/missing")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_unknown_chain_is_400(self, service):
        payload = {"source_chain": SOURCE, "dest_chain": "solana-devnet", "amount": 1, "recipient": RECIPIENT}
        async with api_client() as client:
            response = await client.post("/api/transfers", json=payload)
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_non_positive_amount_is_422(self, service):
        payload = {"source_chain": SOURCE, "dest_chain": DEST, "amount": 0, "recipient": RECIPIENT}
        async with api_client() as client:
            response = await client.post("/api/transfers", json=payload)
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_bridge_not_initialized_is_503(self):
        set_bridge(None)
        async with api_client() as client:
            response = await client.get("/api/transfers")
        assert response.status_code == 503
