"""
valleydrop/config.py

Configuration constants and the environment-backed AirdropConfig.

Amounts are always integers in the settlement currency's smallest unit
(lovelace for Cardano).

Environment variables:
    BLOCKFROST_API_KEY          Blockfrost project id (balance + holder queries)
    BLOCKFROST_URL              Blockfrost base URL (default: mainnet)
    CARDANO_VALLEY_ADDRESS      Service fee destination and default drain target
    AIRDROP_PUBLIC_CHANNEL_ID   Where completion announcements go (optional)
    CARDANO_NODE_SOCKET_PATH    Node socket passed to cardano-cli
    CARDANO_NETWORK             "mainnet" or a testnet magic number
    VALLEYDROP_BASE_DIR         Root for sessions and temp wallets
    VALLEYDROP_POLL_INTERVAL    Deposit poll interval in seconds
"""

from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any
import os
import logging

from .errors import ConfigurationError

logger = logging.getLogger("valleydrop.config")


# ============================================================================
# CONSTANTS
# ============================================================================

LOVELACE_PER_ADA = 1_000_000

# Covers network fees of the distribution transactions
FEE_BUFFER_LOVELACE = 5 * LOVELACE_PER_ADA

# Flat service fee, paid in a separate transaction after distribution
SERVICE_FEE_LOVELACE = 20 * LOVELACE_PER_ADA

# Outputs per transaction (protocol ceiling; 80-120 is common)
MAX_OUTPUTS_PER_TX = 120

# Payouts below this are dust and dropped from the recipient set
MIN_PAYOUT_LOVELACE = 1 * LOVELACE_PER_ADA

# Shelley payment addresses
ADDRESS_PREFIX = "addr"

DEPOSIT_POLL_INTERVAL = 60      # seconds
SETTLE_DELAY = 60               # seconds between fee tx and final drain check

DEFAULT_BASE_DIR = "./airdrops"
DEFAULT_NETWORK = "mainnet"
BLOCKFROST_MAINNET_URL = "https://cardano-mainnet.blockfrost.io/api/v0"


# ============================================================================
# CONFIG
# ============================================================================

@dataclass
class AirdropConfig:
    """Runtime settings for an AirdropEngine."""
    base_dir: str = DEFAULT_BASE_DIR
    treasury_address: str = ""
    public_channel_id: str = ""
    blockfrost_api_key: str = ""
    blockfrost_url: str = BLOCKFROST_MAINNET_URL
    node_socket_path: str = ""
    network: str = DEFAULT_NETWORK
    fee_buffer: int = FEE_BUFFER_LOVELACE
    service_fee: int = SERVICE_FEE_LOVELACE
    max_outputs_per_tx: int = MAX_OUTPUTS_PER_TX
    min_payout: int = MIN_PAYOUT_LOVELACE
    address_prefix: str = ADDRESS_PREFIX
    poll_interval: float = DEPOSIT_POLL_INTERVAL
    settle_delay: float = SETTLE_DELAY

    @classmethod
    def from_env(cls, env: Optional[Dict[str, str]] = None) -> "AirdropConfig":
        """Build a config from environment variables, falling back to defaults."""
        env = os.environ if env is None else env

        poll_interval = DEPOSIT_POLL_INTERVAL
        raw_interval = env.get("VALLEYDROP_POLL_INTERVAL")
        if raw_interval:
            try:
                poll_interval = float(raw_interval)
            except ValueError:
                logger.warning(f"Invalid VALLEYDROP_POLL_INTERVAL: {raw_interval!r}, using default")

        return cls(
            base_dir=env.get("VALLEYDROP_BASE_DIR") or DEFAULT_BASE_DIR,
            treasury_address=env.get("CARDANO_VALLEY_ADDRESS", ""),
            public_channel_id=env.get("AIRDROP_PUBLIC_CHANNEL_ID", ""),
            blockfrost_api_key=env.get("BLOCKFROST_API_KEY", ""),
            blockfrost_url=env.get("BLOCKFROST_URL") or BLOCKFROST_MAINNET_URL,
            node_socket_path=env.get("CARDANO_NODE_SOCKET_PATH", ""),
            network=env.get("CARDANO_NETWORK") or DEFAULT_NETWORK,
            poll_interval=poll_interval,
        )

    def require_treasury(self) -> str:
        """Treasury address, or ConfigurationError if unset."""
        if not self.treasury_address:
            raise ConfigurationError("CARDANO_VALLEY_ADDRESS env var is required")
        return self.treasury_address

    def require_blockfrost_key(self) -> str:
        if not self.blockfrost_api_key:
            raise ConfigurationError("BLOCKFROST_API_KEY is required")
        return self.blockfrost_api_key

    @property
    def sessions_dir(self) -> str:
        return os.path.join(self.base_dir, "sessions")

    @property
    def wallets_dir(self) -> str:
        return os.path.join(self.base_dir, "active")

    def to_dict(self) -> Dict[str, Any]:
        """Export settings, with the API key masked."""
        data = asdict(self)
        if data["blockfrost_api_key"]:
            data["blockfrost_api_key"] = "***"
        return data


def lovelace_to_ada(amount: int) -> float:
    """Convert lovelace to ADA for display."""
    return amount / LOVELACE_PER_ADA
