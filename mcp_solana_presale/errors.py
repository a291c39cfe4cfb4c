"""
Custom Exception Classes for the Solana Presale Launchpad

This module defines the exception classes raised by the presale core. They map onto the
outcomes a caller has to tell apart:

- Validation / Not found: the request itself is malformed or names an unknown presale.
- Precondition: the presale is in the wrong state for the requested transition.
- Verification: an on-chain proof (deposit, launch fee) does not match the claim.
- External service: the launch service or a chain write failed; carries the launch step.
- Escrow balance: an outbound transfer is not covered by the paying wallet.
- Fee share invariant: the computed split does not sum to 10000 bps (fatal).

Every message names the rule that was violated, so the MCP layer can return it verbatim.
"""
from typing import Any, Dict, Optional


class PresaleError(Exception):
    """Base class for every error raised by the presale core."""

    def details(self) -> Dict[str, Any]:
        """Extra fields returned to the caller alongside the message."""
        return {}


class ValidationError(PresaleError):
    """Raised when input validation fails (bad shape or range)."""


class NotFoundError(PresaleError):
    """Raised when the requested presale does not exist."""


class PreconditionError(PresaleError):
    """Raised when the presale is in the wrong state for the requested operation."""


class AlreadyResolvedError(PreconditionError):
    """Raised when a participation was already withdrawn or refunded."""

    def __init__(self, kind: str, settlement_signature: Optional[str]):
        self.kind = kind
        self.settlement_signature = settlement_signature
        super().__init__(f"Already {kind}")

    def details(self) -> Dict[str, Any]:
        return {"resolution": self.kind, "settlement_signature": self.settlement_signature}


class VerificationError(PresaleError):
    """Raised when an on-chain transaction does not prove the claimed payment."""


class ExternalServiceError(PresaleError):
    """Raised when the token launch service or a chain write fails."""

    def __init__(self, message: str, step: Optional[str] = None):
        self.step = step
        super().__init__(message)

    def details(self) -> Dict[str, Any]:
        return {"step": self.step} if self.step else {}


class TransactionFailedError(ExternalServiceError):
    """Raised if a submitted transaction fails on-chain or is not confirmed in time."""


class InsufficientEscrowBalanceError(PresaleError):
    """Raised when the paying wallet cannot cover an outbound transfer plus fees."""

    def __init__(self, wallet: str, balance_lamports: int, required_lamports: int):
        self.wallet = wallet
        self.balance_lamports = balance_lamports
        self.required_lamports = required_lamports
        super().__init__("Insufficient escrow balance. Contact support.")

    def details(self) -> Dict[str, Any]:
        return {
            "balance_lamports": self.balance_lamports,
            "required_lamports": self.required_lamports,
        }


class FeeShareInvariantError(PresaleError):
    """Raised when the fee share split does not sum to exactly 10000 bps."""


class RateLimitExceededError(Exception):
    """Raised when the rate limit is exceeded for a wallet."""


class ConfigurationError(Exception):
    """Raised when there are configuration-related errors."""
