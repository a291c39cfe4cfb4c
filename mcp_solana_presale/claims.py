"""
Fee Claims

Creators and participants of a launched presale hold fee-share positions (the bps split
registered at launch). The launch service tracks the trading fees each position has
accrued; this module lists them and prepares the claim transactions, which the claiming
wallet signs and sends itself. The escrow and launcher keys are never involved.
"""
from typing import List

from mcp_solana_presale.bags_client import BagsClient, ClaimablePosition, ClaimTransaction
from mcp_solana_presale.errors import NotFoundError, ValidationError
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)


class FeeClaimService:
    def __init__(self, bags: BagsClient):
        self.bags = bags

    async def positions(self, wallet: str) -> List[ClaimablePosition]:
        if not wallet:
            raise ValidationError("Wallet address required")
        return await self.bags.get_claimable_positions(wallet)

    async def create_claim(self, wallet: str, token_mint: str) -> List[ClaimTransaction]:
        """
        Build the claim transactions for wallet's position in token_mint.

        The position is looked up from the service rather than taken from the caller, so
        only fees the wallet can actually claim are requested.

        Raises:
            ValidationError: Missing wallet or token mint.
            NotFoundError: The wallet has nothing to claim for this token.
        """
        if not wallet or not token_mint:
            raise ValidationError("Wallet and token mint required")
        positions = await self.bags.get_claimable_positions(wallet)
        position = next((p for p in positions if p.base_mint == token_mint), None)
        if position is None:
            raise NotFoundError(f"No claimable fees for wallet {wallet} on token {token_mint}")

        transactions = await self.bags.create_claim_transactions(wallet, position)
        logger.info(
            f"Prepared {len(transactions)} claim transaction(s) for {wallet} on {token_mint} "
            f"({position.claimable_lamports} lamports claimable)"
        )
        return transactions

    async def submit_claim(self, signature: str) -> str:
        if not signature:
            raise ValidationError("Signature required")
        message = await self.bags.submit_claim_transaction(signature)
        logger.info(f"Claim {signature} submitted: {message}")
        return message
