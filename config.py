"""Configuration management for the USDC bridge."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

import toml
from eth_utils import is_hex_address

from core.errors import ConfigurationError
from retry_policy import RetryPolicy

logger = logging.getLogger(__name__)

# CCTP v1 testnet deployments (same addresses on every EVM testnet)
TESTNET_TOKEN_MESSENGER = "0x9f3B8679c73C2Fef8b59B4f3444d4e156fb70AA5"
TESTNET_MESSAGE_TRANSMITTER = "0x7865fAfC2db2093669d92c0F33AeEF291086BEFD"

SEPOLIA_USDC = "0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238"
BASE_SEPOLIA_USDC = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"

SANDBOX_ATTESTATION_API = "https://iris-api-sandbox.circle.com"


@dataclass
class ChainConfig:
    """One ledger the bridge can burn on or mint on."""

    name: str
    rpc_url: str
    domain: int  # CCTP domain id, not the EVM chain id
    usdc_address: str
    token_messenger_address: str
    message_transmitter_address: str
    chain_id: Optional[int] = None

    # Signing: either a hex private key or a BIP39 mnemonic
    private_key: Optional[str] = None
    mnemonic: Optional[str] = None
    account_index: int = 0

    confirmation_timeout: float = 180.0

    @classmethod
    def from_dict(cls, name: str, data: dict) -> "ChainConfig":
        try:
            return cls(
                name=name,
                rpc_url=data["rpc_url"],
                domain=int(data["domain"]),
                usdc_address=data["usdc_address"],
                token_messenger_address=data.get("token_messenger_address", TESTNET_TOKEN_MESSENGER),
                message_transmitter_address=data.get(
                    "message_transmitter_address", TESTNET_MESSAGE_TRANSMITTER
                ),
                chain_id=int(data["chain_id"]) if data.get("chain_id") is not None else None,
                private_key=data.get("private_key"),
                mnemonic=data.get("mnemonic"),
                account_index=int(data.get("account_index", 0)),
                confirmation_timeout=float(data.get("confirmation_timeout", 180.0)),
            )
        except KeyError as e:
            raise ConfigurationError(f"Chain {name}: missing required key {e}")
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Chain {name}: invalid value: {e}")

    def validate(self) -> None:
        if not self.rpc_url:
            raise ConfigurationError(f"Chain {self.name}: rpc_url is required")
        if self.domain < 0:
            raise ConfigurationError(f"Chain {self.name}: domain must not be negative")
        if not self.private_key and not self.mnemonic:
            raise ConfigurationError(
                f"Chain {self.name}: must provide either private_key or mnemonic"
            )
        for key in ("usdc_address", "token_messenger_address", "message_transmitter_address"):
            if not is_hex_address(getattr(self, key)):
                raise ConfigurationError(f"Chain {self.name}: {key} is not a valid address")


@dataclass
class AttestationConfig:
    """Attestation service access and polling settings."""

    api_url: str = SANDBOX_ATTESTATION_API
    poll_interval: float = 2.0
    max_wait: float = 1800.0
    max_consecutive_failures: int = 5
    request_timeout: float = 10.0

    @classmethod
    def from_dict(cls, data: dict) -> "AttestationConfig":
        return cls(
            api_url=data.get("api_url", SANDBOX_ATTESTATION_API),
            poll_interval=float(data.get("poll_interval", 2.0)),
            max_wait=float(data.get("max_wait", 1800.0)),
            max_consecutive_failures=int(data.get("max_consecutive_failures", 5)),
            request_timeout=float(data.get("request_timeout", 10.0)),
        )

    def validate(self) -> None:
        if not self.api_url:
            raise ConfigurationError("attestation api_url is required")
        if self.poll_interval <= 0:
            raise ConfigurationError("attestation poll_interval must be positive")
        if self.max_wait <= 0:
            raise ConfigurationError("attestation max_wait must be positive")
        if self.max_consecutive_failures < 0:
            raise ConfigurationError("attestation max_consecutive_failures must not be negative")


@dataclass
class BridgeConfig:
    """Main bridge configuration."""

    chains: Dict[str, ChainConfig]
    attestation: AttestationConfig = field(default_factory=AttestationConfig)

    # Budget for broadcasting a transaction the node did not accept
    submission_retry: RetryPolicy = field(
        default_factory=lambda: RetryPolicy(max_attempts=3, initial_delay=2.0, max_delay=20.0)
    )
    # Budget for re-querying a receipt after a confirmation wait fails
    confirmation_retry: RetryPolicy = field(
        default_factory=lambda: RetryPolicy(max_attempts=10, initial_delay=5.0, max_delay=60.0)
    )

    # Default transfer for single-run mode
    source_chain: Optional[str] = None
    dest_chain: Optional[str] = None
    recipient: Optional[str] = None
    amount: Optional[int] = None

    # Finished transfers kept in memory for status queries; oldest go first
    max_finished_transfers: int = 1000

    @classmethod
    def from_file(cls, config_path: Path) -> "BridgeConfig":
        """Load configuration from TOML file.

        Args:
            config_path: Path to configuration file

        Returns:
            BridgeConfig instance

        Raises:
            ConfigurationError: If config is invalid
        """
        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        logger.info(f"Loading configuration from {config_path}")

        try:
            with open(config_path, "r") as f:
                config_data = toml.load(f)
        except (OSError, toml.TomlDecodeError) as e:
            raise ConfigurationError(f"Failed to parse configuration file: {e}")

        return cls.from_dict(config_data)

    @classmethod
    def from_dict(cls, config_data: dict) -> "BridgeConfig":
        chains_data = config_data.get("chains") or {}
        if not chains_data:
            raise ConfigurationError("At least one [chains.<name>] section is required")

        retry_data = config_data.get("retry", {})
        try:
            amount = config_data.get("amount")
            return cls(
                chains={
                    name: ChainConfig.from_dict(name, data) for name, data in chains_data.items()
                },
                attestation=AttestationConfig.from_dict(config_data.get("attestation", {})),
                submission_retry=RetryPolicy.from_dict(retry_data.get("submission", {})),
                confirmation_retry=RetryPolicy.from_dict(retry_data.get("confirmation", {})),
                source_chain=config_data.get("source_chain"),
                dest_chain=config_data.get("dest_chain"),
                recipient=config_data.get("recipient"),
                amount=int(amount) if amount is not None else None,
                max_finished_transfers=int(config_data.get("max_finished_transfers", 1000)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid configuration: {e}")

    @classmethod
    def from_env(cls) -> "BridgeConfig":
        """Load the Sepolia -> Base Sepolia route from environment variables."""
        amount = os.getenv("AMOUNT")
        try:
            parsed_amount = int(amount) if amount else None
        except ValueError:
            raise ConfigurationError(f"AMOUNT must be an integer, got {amount!r}")

        try:
            chains = {
                "ethereum-sepolia": ChainConfig(
                    name="ethereum-sepolia",
                    rpc_url=os.getenv("ETH_TESTNET_RPC", ""),
                    domain=int(os.getenv("ETH_DOMAIN", "0")),
                    chain_id=11155111,
                    usdc_address=os.getenv("USDC_ETH_CONTRACT_ADDRESS", SEPOLIA_USDC),
                    token_messenger_address=os.getenv(
                        "ETH_TOKEN_MESSENGER_CONTRACT_ADDRESS", TESTNET_TOKEN_MESSENGER
                    ),
                    message_transmitter_address=os.getenv(
                        "ETH_MESSAGE_TRANSMITTER_CONTRACT_ADDRESS", TESTNET_MESSAGE_TRANSMITTER
                    ),
                    private_key=os.getenv("ETH_PRIVATE_KEY"),
                    mnemonic=os.getenv("ETH_MNEMONIC"),
                ),
                "base-sepolia": ChainConfig(
                    name="base-sepolia",
                    rpc_url=os.getenv("BASE_TESTNET_RPC", ""),
                    domain=int(os.getenv("BASE_DESTINATION_DOMAIN", "6")),
                    chain_id=84532,
                    usdc_address=os.getenv("USDC_BASE_CONTRACT_ADDRESS", BASE_SEPOLIA_USDC),
                    token_messenger_address=os.getenv(
                        "BASE_TOKEN_MESSENGER_CONTRACT_ADDRESS", TESTNET_TOKEN_MESSENGER
                    ),
                    message_transmitter_address=os.getenv(
                        "BASE_MESSAGE_TRANSMITTER_CONTRACT_ADDRESS", TESTNET_MESSAGE_TRANSMITTER
                    ),
                    private_key=os.getenv("BASE_PRIVATE_KEY"),
                    mnemonic=os.getenv("BASE_MNEMONIC"),
                ),
            }
            attestation = AttestationConfig(
                api_url=os.getenv("ATTESTATION_API_URL", SANDBOX_ATTESTATION_API),
                poll_interval=float(os.getenv("ATTESTATION_POLL_INTERVAL", "2")),
                max_wait=float(os.getenv("ATTESTATION_MAX_WAIT", "1800")),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment configuration: {e}")

        return cls(
            chains=chains,
            attestation=attestation,
            source_chain="ethereum-sepolia",
            dest_chain="base-sepolia",
            recipient=os.getenv("RECIPIENT_ADDRESS"),
            amount=parsed_amount,
        )

    def validate(self) -> None:
        """Validate configuration.

        Raises:
            ConfigurationError: If configuration is invalid
        """
        for chain in self.chains.values():
            chain.validate()

        self.attestation.validate()

        for key in ("source_chain", "dest_chain"):
            name = getattr(self, key)
            if name is not None and name not in self.chains:
                raise ConfigurationError(f"{key} {name!r} is not a configured chain")

        if self.source_chain and self.source_chain == self.dest_chain:
            raise ConfigurationError("source_chain and dest_chain must differ")

        if self.amount is not None and self.amount <= 0:
            raise ConfigurationError("amount must be positive")

        if self.max_finished_transfers < 0:
            raise ConfigurationError("max_finished_transfers must not be negative")

        logger.info("Configuration validated successfully")
