"""Calldata for the three contract calls a transfer makes.

- USDC ``approve(spender, amount)`` on the source chain
- TokenMessenger ``depositForBurn(amount, destinationDomain, mintRecipient, burnToken)``
  on the source chain
- MessageTransmitter ``receiveMessage(message, attestation)`` on the destination chain
"""

from typing import List, Sequence

from eth_abi import encode
from eth_utils import keccak, to_checksum_address

from core.types import ContractCall

APPROVE = "approve(address,uint256)"
DEPOSIT_FOR_BURN = "depositForBurn(uint256,uint32,bytes32,address)"
RECEIVE_MESSAGE = "receiveMessage(bytes,bytes)"


def function_selector(signature: str) -> bytes:
    """First four bytes of keccak256 of the function signature."""
    return keccak(text=signature)[:4]


def _arg_types(signature: str) -> List[str]:
    inner = signature[signature.index("(") + 1:-1]
    return inner.split(",") if inner else []


def encode_call(signature: str, args: Sequence) -> bytes:
    return function_selector(signature) + encode(_arg_types(signature), list(args))


def approve_call(token: str, spender: str, amount: int) -> ContractCall:
    return ContractCall(
        to=to_checksum_address(token),
        data=encode_call(APPROVE, [to_checksum_address(spender), amount]),
        label="approve",
    )


def deposit_for_burn_call(
    token_messenger: str,
    amount: int,
    destination_domain: int,
    mint_recipient: bytes,
    burn_token: str,
) -> ContractCall:
    return ContractCall(
        to=to_checksum_address(token_messenger),
        data=encode_call(
            DEPOSIT_FOR_BURN,
            [amount, destination_domain, mint_recipient, to_checksum_address(burn_token)],
        ),
        label="depositForBurn",
    )


def receive_message_call(message_transmitter: str, message: bytes, attestation: bytes) -> ContractCall:
    return ContractCall(
        to=to_checksum_address(message_transmitter),
        data=encode_call(RECEIVE_MESSAGE, [message, attestation]),
        label="receiveMessage",
    )
