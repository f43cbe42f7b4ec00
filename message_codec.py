"""Protocol message extraction and address encoding for CCTP.

Everything here is pure: no I/O and no state. The burn transaction emits a
``MessageSent(bytes)`` event whose single argument is the raw cross-chain
message; its keccak256 hash is the key the attestation service is queried by.
"""

import logging
from typing import Tuple

import bech32
from eth_abi import decode
from eth_abi.exceptions import DecodingError
from eth_utils import is_checksum_address, is_hex_address, keccak

from core.errors import EventNotFoundError, InvalidRecipientError, MalformedMessageError
from core.types import BurnMessage, MessageHeader, Receipt

logger = logging.getLogger(__name__)

MESSAGE_SENT_EVENT = "MessageSent(bytes)"

CANONICAL_ADDRESS_LENGTH = 32

# CCTP v1 message layout (byte offsets)
_HEADER_LENGTH = 116
_BURN_BODY_LENGTH = 132


def event_topic(event_signature: str) -> bytes:
    """Topic0 of an event: keccak256 of its canonical signature."""
    return keccak(text=event_signature)


def message_hash(message_bytes: bytes) -> bytes:
    """Identity of a message as used by the attestation service."""
    return keccak(message_bytes)


def to_canonical_address(address: str) -> bytes:
    """Convert a destination address into the 32-byte protocol form.

    Accepts 20-byte EVM hex addresses (left-padded), 32-byte hex values
    (used as-is) and bech32 addresses such as Noble's (decoded, left-padded).

    Raises:
        InvalidRecipientError: If the address is not recognised
    """
    if not isinstance(address, str) or not address.strip():
        raise InvalidRecipientError("Recipient address is empty")
    address = address.strip()

    if address.lower().startswith("0x"):
        return _canonical_from_hex(address)

    hrp, words = bech32.bech32_decode(address)
    if hrp is None or words is None:
        raise InvalidRecipientError(f"Unrecognised recipient address: {address}")
    raw = bech32.convertbits(words, 5, 8, False)
    if raw is None or not raw or len(raw) > CANONICAL_ADDRESS_LENGTH:
        raise InvalidRecipientError(f"Invalid bech32 payload in {address}")
    return bytes(raw).rjust(CANONICAL_ADDRESS_LENGTH, b"\x00")


def _canonical_from_hex(address: str) -> bytes:
    digits = address[2:]
    if len(digits) == 40:
        if not is_hex_address(address):
            raise InvalidRecipientError(f"Invalid EVM address: {address}")
        # Mixed case means a checksum was supplied, so it has to be right
        if digits != digits.lower() and digits != digits.upper() and not is_checksum_address(address):
            raise InvalidRecipientError(f"Bad checksum for EVM address: {address}")
        return bytes.fromhex(digits).rjust(CANONICAL_ADDRESS_LENGTH, b"\x00")
    if len(digits) == 64:
        try:
            return bytes.fromhex(digits)
        except ValueError:
            raise InvalidRecipientError(f"Invalid hex address: {address}")
    raise InvalidRecipientError(
        f"Hex address must be 20 or 32 bytes, got {len(digits) // 2}: {address}"
    )


def extract_message(
    receipt: Receipt,
    event_signature: str = MESSAGE_SENT_EVENT
) -> Tuple[bytes, bytes]:
    """Find the burn event in a receipt and decode its message.

    The first matching log in log order wins; a burn transaction emits at
    most one such event.

    Args:
        receipt: Receipt of the burn transaction
        event_signature: Signature of the event carrying the message

    Returns:
        Tuple of (message_bytes, message_hash)

    Raises:
        EventNotFoundError: If no log matches the event topic
        MalformedMessageError: If the log data is not ABI-encoded bytes
    """
    topic = event_topic(event_signature)

    for log in receipt.logs:
        if log.topics and bytes(log.topics[0]) == topic:
            break
    else:
        raise EventNotFoundError(
            f"No {event_signature} event in receipt for {receipt.tx_ref.tx_hash}"
        )

    try:
        (message_bytes,) = decode(["bytes"], bytes(log.data))
    except (DecodingError, ValueError, TypeError) as e:
        raise MalformedMessageError(
            f"Cannot decode {event_signature} payload in {receipt.tx_ref.tx_hash}: {e}"
        )

    digest = message_hash(message_bytes)
    logger.debug(
        f"Extracted {len(message_bytes)}-byte message 0x{digest.hex()[:16]}... "
        f"from log {log.log_index}"
    )
    return message_bytes, digest


def parse_message(message_bytes: bytes) -> MessageHeader:
    """Decode the CCTP message envelope.

    Raises:
        MalformedMessageError: If the message is shorter than the header
    """
    if len(message_bytes) < _HEADER_LENGTH:
        raise MalformedMessageError(
            f"Message is {len(message_bytes)} bytes, header needs {_HEADER_LENGTH}"
        )
    return MessageHeader(
        version=int.from_bytes(message_bytes[0:4], "big"),
        source_domain=int.from_bytes(message_bytes[4:8], "big"),
        destination_domain=int.from_bytes(message_bytes[8:12], "big"),
        nonce=int.from_bytes(message_bytes[12:20], "big"),
        sender=message_bytes[20:52],
        recipient=message_bytes[52:84],
        destination_caller=message_bytes[84:116],
        body=message_bytes[116:],
    )


def parse_burn_message(body: bytes) -> BurnMessage:
    """Decode the burn body carried inside a CCTP message.

    Raises:
        MalformedMessageError: If the body is too short
    """
    if len(body) < _BURN_BODY_LENGTH:
        raise MalformedMessageError(
            f"Burn body is {len(body)} bytes, expected {_BURN_BODY_LENGTH}"
        )
    return BurnMessage(
        version=int.from_bytes(body[0:4], "big"),
        burn_token=body[4:36],
        mint_recipient=body[36:68],
        amount=int.from_bytes(body[68:100], "big"),
        message_sender=body[100:132],
    )
