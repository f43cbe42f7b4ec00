"""Tests for the attestation client and poller."""

import asyncio
import json

import aiohttp
import pytest

from attestation import AttestationClient, AttestationPoller, AttestationResponse
from core.errors import (
    AttestationRejectedError,
    AttestationRequestError,
    AttestationTimeoutError,
    AttestationUnavailableError,
)
from tests.stubs import FakeClock, StubAttestationClient, complete, pending

MESSAGE_HASH = bytes.fromhex("cd" * 32)
PROOF = b"\x99" * 65


def make_poller(responses, max_consecutive_failures=3):
    clock = FakeClock()
    client = StubAttestationClient(responses)
    poller = AttestationPoller(client, clock=clock, max_consecutive_failures=max_consecutive_failures)
    return poller, client, clock


class TestAttestationPoller:
    """Polling until complete, rejected, unavailable or out of time."""

    @pytest.mark.asyncio
    async def test_returns_proof_after_pending_replies(self):
        poller, client, clock = make_poller([pending(), pending(), pending(), complete(PROOF)])

        proof = await poller.wait_for_attestation(MESSAGE_HASH, poll_interval=2.0, max_wait=60.0)

        assert proof == PROOF
        assert len(client.requests) == 4
        assert clock.sleeps == [2.0, 2.0, 2.0]
        assert all(h == MESSAGE_HASH for h in client.requests)

    @pytest.mark.asyncio
    async def test_not_found_counts_as_pending(self):
        not_indexed = AttestationResponse(status="pending", http_status=404)
        poller, client, _ = make_poller([not_indexed, complete(PROOF)])

        assert await poller.wait_for_attestation(MESSAGE_HASH, 2.0, 60.0) == PROOF
        assert len(client.requests) == 2

    @pytest.mark.asyncio
    async def test_times_out_after_final_attempt_at_deadline(self):
        poller, client, clock = make_poller([pending()])

        with pytest.raises(AttestationTimeoutError):
            await poller.wait_for_attestation(MESSAGE_HASH, poll_interval=2.0, max_wait=10.0)

        # t = 0, 2, 4, 6, 8, 10
        assert len(client.requests) == 6
        assert clock.now == 10.0

    @pytest.mark.asyncio
    async def test_last_sleep_shortened_to_deadline(self):
        poller, client, clock = make_poller([pending()])

        with pytest.raises(AttestationTimeoutError):
            await poller.wait_for_attestation(MESSAGE_HASH, poll_interval=4.0, max_wait=10.0)

        assert clock.sleeps == [4.0, 4.0, 2.0]

    @pytest.mark.asyncio
    async def test_rejection_stops_polling(self):
        poller, client, _ = make_poller([pending(), AttestationResponse(status="failed")])

        with pytest.raises(AttestationRejectedError) as exc_info:
            await poller.wait_for_attestation(MESSAGE_HASH, 2.0, 60.0)

        assert exc_info.value.status == "failed"
        assert len(client.requests) == 2

    @pytest.mark.asyncio
    async def test_transient_failures_are_tolerated(self):
        flaky = AttestationRequestError("HTTP 503", http_status=503)
        poller, client, _ = make_poller([flaky, flaky, pending(), complete(PROOF)])

        assert await poller.wait_for_attestation(MESSAGE_HASH, 2.0, 60.0) == PROOF
        assert len(client.requests) == 4

    @pytest.mark.asyncio
    async def test_failure_count_resets_after_a_reply(self):
        flaky = AttestationRequestError("HTTP 429", http_status=429)
        poller, client, _ = make_poller(
            [flaky, flaky, flaky, pending(), flaky, flaky, flaky, complete(PROOF)]
        )

        assert await poller.wait_for_attestation(MESSAGE_HASH, 2.0, 60.0) == PROOF
        assert len(client.requests) == 8

    @pytest.mark.asyncio
    async def test_unavailable_after_too_many_consecutive_failures(self):
        poller, client, _ = make_poller([AttestationRequestError("connection refused")])

        with pytest.raises(AttestationUnavailableError):
            await poller.wait_for_attestation(MESSAGE_HASH, 2.0, 600.0)

        assert len(client.requests) == 4

    @pytest.mark.asyncio
    async def test_unknown_status_keeps_waiting(self):
        poller, client, _ = make_poller([AttestationResponse(status="queued"), complete(PROOF)])

        assert await poller.wait_for_attestation(MESSAGE_HASH, 2.0, 60.0) == PROOF

    @pytest.mark.asyncio
    async def test_complete_without_proof_keeps_waiting(self):
        poller, client, _ = make_poller(
            [AttestationResponse(status="complete", attestation=None), complete(PROOF)]
        )

        assert await poller.wait_for_attestation(MESSAGE_HASH, 2.0, 60.0) == PROOF
        assert len(client.requests) == 2

    @pytest.mark.asyncio
    async def test_cancellation_stops_polling(self):
        poller, client, _ = make_poller([pending()])

        task = asyncio.create_task(poller.wait_for_attestation(MESSAGE_HASH, 2.0, 10_000.0))
        for _ in range(5):
            await asyncio.sleep(0)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        seen = len(client.requests)
        assert seen >= 1
        for _ in range(5):
            await asyncio.sleep(0)
        assert len(client.requests) == seen


class FakeResponse:
    def __init__(self, status, payload=None):
        self.status = status
        self.payload = payload

    async def json(self, content_type=None):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        return False


class FakeSession:
    """Stands in for aiohttp.ClientSession.get()."""

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.urls = []

    def get(self, url):
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        return self.response

    async def close(self):
        pass


def client_with(session):
    client = AttestationClient("https://iris.example/")
    client._session = session
    return client


class TestAttestationClient:
    """HTTP reply handling."""

    @pytest.mark.asyncio
    async def test_complete_reply_decoded(self):
        session = FakeSession(FakeResponse(200, {"status": "complete", "attestation": "0x" + PROOF.hex()}))
        client = client_with(session)

        response = await client.get_attestation(MESSAGE_HASH)

        assert response.is_complete
        assert response.attestation == PROOF
        assert session.urls == ["https://iris.example/attestations/0x" + MESSAGE_HASH.hex()]

    @pytest.mark.asyncio
    async def test_pending_reply_has_no_proof(self):
        client = client_with(FakeSession(FakeResponse(200, {"status": "pending_confirmations", "attestation": "PENDING"})))

        response = await client.get_attestation(MESSAGE_HASH)

        assert response.status == "pending_confirmations"
        assert response.attestation is None
        assert not response.is_complete

    @pytest.mark.asyncio
    async def test_not_found_is_pending(self):
        client = client_with(FakeSession(FakeResponse(404)))

        response = await client.get_attestation(MESSAGE_HASH)

        assert response.status == "pending"
        assert response.http_status == 404

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_error_status_raises_request_error(self, status):
        client = client_with(FakeSession(FakeResponse(status)))

        with pytest.raises(AttestationRequestError) as exc_info:
            await client.get_attestation(MESSAGE_HASH)

        assert exc_info.value.http_status == status

    @pytest.mark.asyncio
    async def test_transport_error_raises_request_error(self):
        client = client_with(FakeSession(error=aiohttp.ClientConnectionError("refused")))

        with pytest.raises(AttestationRequestError):
            await client.get_attestation(MESSAGE_HASH)

    @pytest.mark.asyncio
    async def test_unexpected_payload_raises_request_error(self):
        client = client_with(FakeSession(FakeResponse(200, ["not", "a", "dict"])))

        with pytest.raises(AttestationRequestError):
            await client.get_attestation(MESSAGE_HASH)

    @pytest.mark.asyncio
    async def test_non_json_body_raises_request_error(self):
        body = "<html>Bad gateway</html>"
        error = json.JSONDecodeError("Expecting value", body, 0)
        client = client_with(FakeSession(FakeResponse(200, error)))

        with pytest.raises(AttestationRequestError):
            await client.get_attestation(MESSAGE_HASH)

    @pytest.mark.asyncio
    async def test_poller_treats_non_json_body_as_request_failure(self):
        error = json.JSONDecodeError("Expecting value", "<html>Bad gateway</html>", 0)
        client = client_with(FakeSession(FakeResponse(200, error)))
        poller = AttestationPoller(client, clock=FakeClock(), max_consecutive_failures=0)

        with pytest.raises(AttestationUnavailableError):
            await poller.wait_for_attestation(MESSAGE_HASH, 2.0, 60.0)
