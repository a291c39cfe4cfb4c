"""
Presale Policy Constants and Calculations

Static rules every presale is held to: participant bounds, fee split constants, the
duration whitelist, withdrawal tax and default contribution limits. All helpers here are
pure functions over integers (lamports and basis points), so they are safe to call from
anywhere without synchronization.

A presale has at most 69 wallets in its fee share: up to 68 participants plus the creator.
The creator always receives CREATOR_ALLOCATION_BPS; the remaining PARTICIPANT_ALLOCATION_BPS
are split by contribution weight.
"""
from decimal import Decimal, ROUND_HALF_EVEN
from typing import Any, Dict, Tuple

LAMPORTS_PER_SOL = 10**9
TOTAL_BPS = 10000

# ---- Participant limits ----
MIN_PARTICIPANTS = 1
MAX_PARTICIPANTS = 68
MAX_WALLETS = MAX_PARTICIPANTS + 1
DEFAULT_PARTICIPANTS = 68

# ---- Fee distribution (basis points) ----
CREATOR_ALLOCATION_BPS = 500
PARTICIPANT_ALLOCATION_BPS = TOTAL_BPS - CREATOR_ALLOCATION_BPS
WITHDRAWAL_TAX_BPS = 500

# ---- Timing ----
DURATION_OPTIONS = (10, 20, 30)
DEFAULT_DURATION_MINUTES = 30

# ---- Fees and contribution limits (SOL) ----
LAUNCH_FEE_SOL = 0.045
DEFAULT_MIN_SOL = 0.01
DEFAULT_MAX_SOL = 0.1

MAX_SYMBOL_LENGTH = 10


def sol_to_lamports(sol: float) -> int:
    """Convert SOL to lamports, rounding half-even to the nearest lamport."""
    return int((Decimal(str(sol)) * LAMPORTS_PER_SOL).to_integral_value(rounding=ROUND_HALF_EVEN))


def lamports_to_sol(lamports: int) -> float:
    """Convert lamports to SOL."""
    return lamports / LAMPORTS_PER_SOL


def is_valid_duration(minutes: int) -> bool:
    """Validate that a duration is one of the allowed options."""
    return minutes in DURATION_OPTIONS


def calculate_withdrawal_tax(amount_lamports: int) -> Tuple[int, int]:
    """
    Split an early withdrawal into the tax and the amount returned to the wallet.

    Returns:
        (tax_lamports, returned_lamports); the two always add up to amount_lamports.
    """
    tax = amount_lamports * WITHDRAWAL_TAX_BPS // TOTAL_BPS
    return tax, amount_lamports - tax


def calculate_participant_share(contribution_lamports: int, pool_total_lamports: int) -> int:
    """
    A participant's weighted share of the participant fee pool, floored to whole bps.

    Returns 0 for an empty pool.
    """
    if pool_total_lamports <= 0:
        return 0
    return contribution_lamports * PARTICIPANT_ALLOCATION_BPS // pool_total_lamports


def bps_to_percent(bps: int) -> str:
    """Format a basis points value as a percentage string."""
    return f"{bps / 100:.2f}%"


def normalize_symbol(symbol: str) -> str:
    """Upper-case a ticker and drop any '$' prefix the creator typed."""
    return symbol.strip().upper().replace("$", "")


def public_config() -> Dict[str, Any]:
    """Rules a client needs to know before creating or joining a presale."""
    return {
        "max_wallets": MAX_WALLETS,
        "min_participants": MIN_PARTICIPANTS,
        "max_participants": MAX_PARTICIPANTS,
        "default_participants": DEFAULT_PARTICIPANTS,
        "creator_allocation_percent": CREATOR_ALLOCATION_BPS / 100,
        "participant_allocation_percent": PARTICIPANT_ALLOCATION_BPS / 100,
        "withdrawal_tax_percent": WITHDRAWAL_TAX_BPS / 100,
        "duration_options": list(DURATION_OPTIONS),
        "default_duration_minutes": DEFAULT_DURATION_MINUTES,
        "launch_fee_sol": LAUNCH_FEE_SOL,
        "default_min_sol": DEFAULT_MIN_SOL,
        "default_max_sol": DEFAULT_MAX_SOL,
        "max_symbol_length": MAX_SYMBOL_LENGTH,
    }
