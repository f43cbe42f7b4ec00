"""Main entry point: run a single USDC transfer from configuration."""

import asyncio
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from bridge import BridgeService
from config import BridgeConfig
from core.errors import BridgeError, ConfigurationError, TransferError


def setup_logging(level: str = "INFO") -> None:
    """Setup logging configuration.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler("bridge.log"),
        ],
    )


def load_config() -> BridgeConfig:
    """Load configuration from BRIDGE_CONFIG (TOML) or the environment."""
    config_file = os.getenv("BRIDGE_CONFIG")
    if config_file:
        config = BridgeConfig.from_file(Path(config_file))
    else:
        config = BridgeConfig.from_env()
    config.validate()
    return config


async def async_main() -> int:
    """Async main function.

    Returns:
        Exit code
    """
    logger = logging.getLogger(__name__)

    try:
        config = load_config()
        bridge = BridgeService(config)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    try:
        await bridge.start()
        receipt = await bridge.run_transfer(bridge.default_request())
    except TransferError as e:
        logger.error(f"Transfer failed: {e}")
        transfer = e.transfer
        if transfer is not None:
            print(f"Transfer {transfer.transfer_id} FAILED after {e.state.value}: {e.reason.value}")
            if transfer.burn_tx_ref:
                print(f"BurnTx: {transfer.burn_tx_ref.tx_hash}")
        return 2
    except BridgeError as e:
        logger.error(f"Bridge error: {e}")
        return 1
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return 1
    finally:
        await bridge.stop()

    print(f"BurnTx: {receipt.burn_tx_ref.tx_hash}")
    print(f"MessageHash: 0x{receipt.message_hash.hex()}")
    print(f"ReceiveTx: {receipt.completion_tx_ref.tx_hash}")
    return 0


def main() -> None:
    """Main entry point."""
    load_dotenv(Path(".env"))

    log_level = os.getenv("LOG_LEVEL", "INFO")
    setup_logging(log_level)

    logger = logging.getLogger(__name__)
    logger.info("Starting USDC bridge transfer...")

    exit_code = asyncio.run(async_main())
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
