"""
Fee Share Allocation

Splits the launched token's trading-fee revenue between the creator and the confirmed
participants of one presale, in basis points:

1. The creator receives CREATOR_ALLOCATION_BPS unconditionally (a floor, not a weight).
2. The remaining bps are split by contribution weight, floored per participant.
3. Flooring can leave up to N-1 bps unassigned; the shortfall goes to the last
   participant in join order so the split always sums to exactly 10000.

The launch service rejects any split that does not sum to 10000, so the sum is verified
before anything external is called.
"""
from typing import Iterable, List

from mcp_solana_presale import policy
from mcp_solana_presale.errors import FeeShareInvariantError, NotFoundError, PreconditionError
from mcp_solana_presale.ledger import PresaleLedger
from mcp_solana_presale.schemas import FeeShare, Participant
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)


def compute_fee_shares(
    creator_wallet: str,
    participants: Iterable[Participant],
    creator_bps: int = policy.CREATOR_ALLOCATION_BPS,
) -> List[FeeShare]:
    """
    Compute the (wallet, bps) split, creator first, participants in join order.

    Raises:
        PreconditionError: If there are no participants or nothing was contributed.
    """
    ordered = sorted(participants, key=lambda p: p.join_seq)
    pool_total = sum(p.amount_lamports for p in ordered)
    if not ordered:
        raise PreconditionError("No confirmed participants")
    if pool_total <= 0:
        raise PreconditionError("Presale has no SOL raised")

    pool_bps = policy.TOTAL_BPS - creator_bps
    shares = [FeeShare(wallet=creator_wallet, bps=creator_bps)]
    for participant in ordered:
        shares.append(
            FeeShare(
                wallet=participant.wallet,
                bps=participant.amount_lamports * pool_bps // pool_total,
                participant_id=participant.id,
            )
        )

    shortfall = policy.TOTAL_BPS - sum(s.bps for s in shares)
    if shortfall:
        shares[-1].bps += shortfall
        logger.debug(f"Assigned {shortfall} bps rounding remainder to {shares[-1].wallet}")
    return shares


def verify_fee_shares(shares: List[FeeShare], creator_bps: int = policy.CREATOR_ALLOCATION_BPS) -> None:
    """
    Raises:
        FeeShareInvariantError: Unless the creator entry comes first with creator_bps and
            the whole split sums to exactly 10000 bps.
    """
    total = sum(s.bps for s in shares)
    if total != policy.TOTAL_BPS:
        raise FeeShareInvariantError(
            f"Fee share calculation error: total is {total}, expected {policy.TOTAL_BPS}"
        )
    if not shares or shares[0].participant_id is not None or shares[0].bps != creator_bps:
        raise FeeShareInvariantError(f"Fee share calculation error: creator must receive exactly {creator_bps} bps")
    if any(s.bps < 0 for s in shares):
        raise FeeShareInvariantError("Fee share calculation error: negative share")


def allocate_fee_shares(ledger: PresaleLedger, presale_id: str) -> List[FeeShare]:
    """
    Compute, verify and persist the fee split for a presale about to launch.

    Raises:
        NotFoundError: If the presale does not exist.
        PreconditionError: If there is nothing to split.
        FeeShareInvariantError: If the split fails verification or the ledger totals
            disagree with the participant records.
    """
    presale = ledger.get(presale_id)
    if presale is None:
        raise NotFoundError(f"Presale {presale_id} not found")

    participants = ledger.get_active_participants(presale_id)
    contributed = sum(p.amount_lamports for p in participants)
    if participants and contributed != presale.total_lamports:
        raise FeeShareInvariantError(
            f"Ledger total {presale.total_lamports} lamports does not match "
            f"participant deposits {contributed} lamports"
        )

    shares = compute_fee_shares(presale.creator_wallet, participants)
    verify_fee_shares(shares)
    ledger.set_fee_shares(presale_id, {s.participant_id: s.bps for s in shares if s.participant_id})

    logger.info(f"Calculated fee shares for {len(shares)} wallets in presale {presale_id}")
    logger.info(
        f"Creator {presale.creator_wallet} gets {shares[0].bps} bps ({policy.bps_to_percent(shares[0].bps)})"
    )
    return shares
