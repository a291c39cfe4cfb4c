import json
import os
import logging
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel
from solders.keypair import Keypair

# Import custom errors
from mcp_solana_presale.errors import ConfigurationError

"""
Configuration Management for the Solana Presale Launchpad

This module loads runtime settings (RPC endpoint, wallet addresses, signing keys, launch
service credentials and the tunable verification constants) from environment variables
and collects them into a LaunchpadSettings model. The presale rules themselves (bounds,
fee split, durations) are static and live in policy.py.

Configuration Sources (in order of precedence):
1. Environment variables (a .env file is loaded first)
2. Default values defined in LaunchpadSettings

Security Considerations:
- LAUNCHER_PRIVATE_KEY and ESCROW_PRIVATE_KEY control real funds; they are only decoded
  when a transfer or launch needs them, and a missing key is reported at that point
- The escrow wallet defaults to the launcher wallet, and so does its key

Environment Variables:
    RPC_ENDPOINT: Solana RPC endpoint URL
    PRESALE_DB_PATH: JSON file holding presales and participants
    PRESALE_DB_DEBOUNCE_SECONDS: Delay before non-critical writes are flushed
    TAX_WALLET / LAUNCHER_WALLET / ESCROW_WALLET / PARTNER_WALLET: Public keys
    PARTNER_CONFIG_KEY: Partner config used for fee-share attribution
    LAUNCHER_PRIVATE_KEY / ESCROW_PRIVATE_KEY: base58 secret key or 32 comma-separated seed bytes
    BAGS_API_BASE / BAGS_API_KEY: Token launch service
    MARKET_DATA_API_BASE: Market data lookups (display only)
    DEPOSIT_TOLERANCE_SOL: Allowed gap between claimed and received deposit
    LAUNCH_FEE_TOLERANCE_BPS: Allowed shortfall on the launch fee payment
    TX_LOOKUP_RETRIES / TX_LOOKUP_RETRY_DELAY_SECONDS: Wait-and-retry for unconfirmed transactions
    TX_CONFIRM_TIMEOUT_SECONDS / TX_CONFIRM_INTERVAL_SECONDS: Confirmation polling
    INITIAL_BUY_BPS: Share of the raised SOL spent on the launch's initial buy
    REQUIRE_FEE_SHARE_CONFIG_TXS: Fail the launch when no fee-share config transaction lands
    RATE_LIMIT_PER_MINUTE: Mutating requests allowed per wallet per minute
"""

# Set up logger
logger = logging.getLogger(__name__)

# Load environment variables
load_dotenv()

DEFAULT_TAX_WALLET = "DtDrwr7qXqWoXikXndmENBZBjjagMjEt1wnZBTVPPser"
DEFAULT_LAUNCHER_WALLET = "7rj696ScXmLPhicac53svqPqTkV7D8xHoqFozhY9HV6y"
DEFAULT_PARTNER_CONFIG_KEY = "CcBd9g98VKcbfHke7FzQNPypAUZg7waDJ1VXTPzEvY5C"


class LaunchpadSettings(BaseModel):
    rpc_endpoint: str = "https://api.mainnet-beta.solana.com"
    presale_db_path: Optional[str] = "presales.json"
    presale_db_debounce_seconds: float = 0.5

    tax_wallet: str = DEFAULT_TAX_WALLET
    launcher_wallet: str = DEFAULT_LAUNCHER_WALLET
    escrow_wallet: str = DEFAULT_LAUNCHER_WALLET
    partner_wallet: str = DEFAULT_LAUNCHER_WALLET
    partner_config_key: Optional[str] = DEFAULT_PARTNER_CONFIG_KEY

    launcher_private_key: Optional[str] = None
    escrow_private_key: Optional[str] = None

    bags_api_base: str = "https://public-api-v2.bags.fm/api/v1"
    bags_api_key: Optional[str] = None
    market_data_api_base: str = "https://api.dexscreener.com"

    deposit_tolerance_sol: float = 0.001
    launch_fee_tolerance_bps: int = 100
    tx_lookup_retries: int = 1
    tx_lookup_retry_delay_seconds: float = 3.0
    tx_confirm_timeout_seconds: float = 60.0
    tx_confirm_interval_seconds: float = 2.0
    http_timeout_seconds: float = 10.0

    initial_buy_bps: int = 5000
    refund_fee_lamports: int = 5000
    withdrawal_fee_lamports: int = 10000
    require_fee_share_config_txs: bool = False
    # Manual launch of a presale that has not filled (creator or launcher wallet only)
    allow_force_launch: bool = False

    rate_limit_per_minute: int = 10


def _get_env_str(key: str, default: str, required: bool = False) -> str:
    """Get environment variable as string with validation."""
    value = os.getenv(key, default)
    if required and not value:
        raise ConfigurationError(f"Required environment variable {key} is not set")
    return value


def _get_env_optional(key: str, default: Optional[str] = None) -> Optional[str]:
    """Get environment variable as string, treating an empty value as unset."""
    value = os.getenv(key, default)
    return value or None


def _get_env_int(key: str, default: int, min_val: Optional[int] = None, max_val: Optional[int] = None) -> int:
    """Get environment variable as integer with validation."""
    try:
        value = int(os.getenv(key, str(default)))
    except ValueError:
        raise ConfigurationError(f"Environment variable {key} must be a valid integer")
    if min_val is not None and value < min_val:
        raise ConfigurationError(f"Environment variable {key} must be >= {min_val}")
    if max_val is not None and value > max_val:
        raise ConfigurationError(f"Environment variable {key} must be <= {max_val}")
    return value


def _get_env_float(key: str, default: float, min_val: Optional[float] = None, max_val: Optional[float] = None) -> float:
    """Get environment variable as float with validation."""
    try:
        value = float(os.getenv(key, str(default)))
    except ValueError:
        raise ConfigurationError(f"Environment variable {key} must be a valid float")
    if min_val is not None and value < min_val:
        raise ConfigurationError(f"Environment variable {key} must be >= {min_val}")
    if max_val is not None and value > max_val:
        raise ConfigurationError(f"Environment variable {key} must be <= {max_val}")
    return value


def _get_env_bool(key: str, default: bool) -> bool:
    """Get environment variable as boolean ("true"/"false", "1"/"0", "yes"/"no")."""
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    lowered = raw.strip().lower()
    if lowered in ("true", "1", "yes"):
        return True
    if lowered in ("false", "0", "no"):
        return False
    raise ConfigurationError(f"Environment variable {key} must be a boolean")


def load_keypair(secret: Optional[str], name: str) -> Keypair:
    """
    Decode a signing key from its configured form.

    Accepts a base58-encoded 64-byte secret key, a JSON byte array (solana-keygen format)
    or 32 comma-separated seed bytes.

    Raises:
        ConfigurationError: If the key is missing or cannot be decoded.
    """
    if not secret:
        raise ConfigurationError(f"{name} not configured")
    try:
        secret = secret.strip()
        if secret.startswith("["):
            raw = bytes(json.loads(secret))
            return Keypair.from_bytes(raw) if len(raw) == 64 else Keypair.from_seed(raw)
        if "," in secret:
            seed_parts = [x.strip() for x in secret.split(",")]
            if len(seed_parts) != 32:
                raise ValueError(f"expected exactly 32 comma-separated integers, got {len(seed_parts)}")
            return Keypair.from_seed(bytes([int(x) for x in seed_parts]))
        return Keypair.from_base58_string(secret)
    except (ValueError, TypeError) as e:
        raise ConfigurationError(f"Error loading {name}: {e}")


def load_settings() -> LaunchpadSettings:
    """Build LaunchpadSettings from the environment."""
    defaults = LaunchpadSettings()
    launcher_wallet = _get_env_str("LAUNCHER_WALLET", defaults.launcher_wallet)
    launcher_key = _get_env_optional("LAUNCHER_PRIVATE_KEY")
    escrow_wallet = _get_env_str("ESCROW_WALLET", launcher_wallet)
    # The escrow shares the launcher's key unless it is a separate wallet
    escrow_key = _get_env_optional(
        "ESCROW_PRIVATE_KEY", launcher_key if escrow_wallet == launcher_wallet else None
    )
    db_path = _get_env_str("PRESALE_DB_PATH", defaults.presale_db_path)

    return LaunchpadSettings(
        rpc_endpoint=_get_env_str("RPC_ENDPOINT", defaults.rpc_endpoint, required=True),
        presale_db_path=db_path or None,
        presale_db_debounce_seconds=_get_env_float(
            "PRESALE_DB_DEBOUNCE_SECONDS", defaults.presale_db_debounce_seconds, min_val=0.0
        ),
        tax_wallet=_get_env_str("TAX_WALLET", defaults.tax_wallet),
        launcher_wallet=launcher_wallet,
        escrow_wallet=escrow_wallet,
        partner_wallet=_get_env_str("PARTNER_WALLET", launcher_wallet),
        partner_config_key=_get_env_optional("PARTNER_CONFIG_KEY", defaults.partner_config_key),
        launcher_private_key=launcher_key,
        escrow_private_key=escrow_key,
        bags_api_base=_get_env_str("BAGS_API_BASE", defaults.bags_api_base),
        bags_api_key=_get_env_optional("BAGS_API_KEY"),
        market_data_api_base=_get_env_str("MARKET_DATA_API_BASE", defaults.market_data_api_base),
        deposit_tolerance_sol=_get_env_float(
            "DEPOSIT_TOLERANCE_SOL", defaults.deposit_tolerance_sol, min_val=0.0, max_val=1.0
        ),
        launch_fee_tolerance_bps=_get_env_int(
            "LAUNCH_FEE_TOLERANCE_BPS", defaults.launch_fee_tolerance_bps, min_val=0, max_val=10000
        ),
        tx_lookup_retries=_get_env_int("TX_LOOKUP_RETRIES", defaults.tx_lookup_retries, min_val=0, max_val=10),
        tx_lookup_retry_delay_seconds=_get_env_float(
            "TX_LOOKUP_RETRY_DELAY_SECONDS", defaults.tx_lookup_retry_delay_seconds, min_val=0.0, max_val=30.0
        ),
        tx_confirm_timeout_seconds=_get_env_float(
            "TX_CONFIRM_TIMEOUT_SECONDS", defaults.tx_confirm_timeout_seconds, min_val=1.0
        ),
        tx_confirm_interval_seconds=_get_env_float(
            "TX_CONFIRM_INTERVAL_SECONDS", defaults.tx_confirm_interval_seconds, min_val=0.1
        ),
        http_timeout_seconds=_get_env_float("HTTP_TIMEOUT_SECONDS", defaults.http_timeout_seconds, min_val=1.0),
        initial_buy_bps=_get_env_int("INITIAL_BUY_BPS", defaults.initial_buy_bps, min_val=0, max_val=10000),
        refund_fee_lamports=_get_env_int("REFUND_FEE_LAMPORTS", defaults.refund_fee_lamports, min_val=0),
        withdrawal_fee_lamports=_get_env_int("WITHDRAWAL_FEE_LAMPORTS", defaults.withdrawal_fee_lamports, min_val=0),
        require_fee_share_config_txs=_get_env_bool(
            "REQUIRE_FEE_SHARE_CONFIG_TXS", defaults.require_fee_share_config_txs
        ),
        allow_force_launch=_get_env_bool("ALLOW_FORCE_LAUNCH", defaults.allow_force_launch),
        rate_limit_per_minute=_get_env_int(
            "RATE_LIMIT_PER_MINUTE", defaults.rate_limit_per_minute, min_val=1, max_val=1000
        ),
    )


try:
    settings = load_settings()
    logger.info("Configuration loaded successfully")
except ConfigurationError as e:
    logger.error(f"Configuration error: {e}")
    raise
except Exception as e:
    logger.error(f"Unexpected error loading configuration: {e}")
    raise ConfigurationError(f"Failed to load configuration: {e}")
