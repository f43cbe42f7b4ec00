"""Signing account management for EVM chains."""

import logging
from typing import Optional

from bip_utils import Bip39MnemonicValidator, Bip39SeedGenerator, Bip44, Bip44Changes, Bip44Coins
from eth_account import Account
from eth_account.signers.local import LocalAccount

from config import ChainConfig
from core.errors import ConfigurationError

logger = logging.getLogger(__name__)


def load_account_from_private_key(private_key: str) -> LocalAccount:
    """Load a signing account from a hex private key.

    Raises:
        ConfigurationError: If the key is malformed
    """
    private_key = private_key.strip()
    if not private_key.startswith("0x"):
        private_key = "0x" + private_key
    try:
        return Account.from_key(private_key)
    except (ValueError, TypeError) as e:
        raise ConfigurationError(f"Invalid private key: {e}")


def load_account_from_mnemonic(mnemonic: str, account_index: int = 0) -> LocalAccount:
    """Load a signing account from a BIP39 mnemonic.

    Derives m/44'/60'/0'/0/<account_index>.

    Args:
        mnemonic: 12 or 24-word mnemonic phrase
        account_index: Address index on the external chain

    Returns:
        Signing account

    Raises:
        ConfigurationError: If mnemonic is invalid
    """
    if not mnemonic or not mnemonic.strip():
        raise ConfigurationError("Mnemonic cannot be empty")

    mnemonic = mnemonic.strip()

    if not Bip39MnemonicValidator().IsValid(mnemonic):
        raise ConfigurationError("Invalid mnemonic phrase")

    seed_bytes = Bip39SeedGenerator(mnemonic).Generate()
    bip44_account = (
        Bip44.FromSeed(seed_bytes, Bip44Coins.ETHEREUM)
        .Purpose()
        .Coin()
        .Account(0)
        .Change(Bip44Changes.CHAIN_EXT)
        .AddressIndex(account_index)
    )
    account = Account.from_key(bip44_account.PrivateKey().Raw().ToBytes())

    logger.info(f"Loaded account {account.address} from mnemonic (index {account_index})")
    return account


def load_account(
    private_key: Optional[str] = None,
    mnemonic: Optional[str] = None,
    account_index: int = 0,
) -> LocalAccount:
    """Load a signing account from a private key or mnemonic.

    Raises:
        ConfigurationError: If neither is provided
    """
    if private_key:
        return load_account_from_private_key(private_key)
    elif mnemonic:
        return load_account_from_mnemonic(mnemonic, account_index)
    else:
        raise ConfigurationError("Must provide either private key or mnemonic")


def load_chain_account(chain: ChainConfig) -> LocalAccount:
    """Signing account configured for a chain."""
    return load_account(chain.private_key, chain.mnemonic, chain.account_index)
