"""
Solana Presale Launchpad - MCP Server Implementation

This module exposes the presale launchpad as MCP tools. A presale is a fixed-capacity,
timed round: wallets deposit SOL into an escrow, and when the target participant count is
reached the token is launched through the launch service with the trading-fee revenue
split between the creator and the participants. If the deadline passes first, the round
fails and every participant can claim a refund.

Tools:
- get_presale_config: Static rules (bounds, fees, durations, wallets)
- create_presale: Open a round after paying the launch fee
- get_presale / list_presales / presale_stats: Reads
- check_participation / quote_exit: Per-wallet reads
- join_presale: Confirm an escrow deposit (auto-launches when the round fills)
- withdraw_from_presale: Leave an active round early (5% tax)
- refund_from_presale: Full refund from a failed round
- launch_presale: Manual launch or retry after a failed launch attempt
- get_claimable_fees / create_fee_claim / submit_fee_claim: Collect fee-share trading fees

Every tool returns a JSON document with a "success" flag. Failures carry the violated
rule in "error", the exception class in "error_type" and any structured extras (launch
step, prior settlement signature, escrow balance).

Security Features:
- Deposits and launch fees are verified on-chain before they count
- Deposit and launch fee signatures are single-use
- Mutating tools are rate-limited per wallet
- Unexpected errors are logged with details but reported generically
"""

import json
import time
from typing import Any, Dict, Optional

from pydantic import Field
from pydantic import ValidationError as PydanticValidationError

from mcp.server.fastmcp import Context, FastMCP
from mcp.server.fastmcp.utilities.logging import get_logger

from mcp_solana_presale import config
from mcp_solana_presale import policy
from mcp_solana_presale.bags_client import BagsClient
from mcp_solana_presale.claims import FeeClaimService
from mcp_solana_presale.errors import ConfigurationError, PresaleError, RateLimitExceededError
from mcp_solana_presale.launcher import LaunchOrchestrator
from mcp_solana_presale.ledger import PresaleLedger
from mcp_solana_presale.lifecycle import PresaleManager
from mcp_solana_presale.market_data import MarketDataClient
from mcp_solana_presale.rate_limiter import WalletRateLimiter
from mcp_solana_presale.schemas import CreatePresaleRequest, Participant, Presale
from mcp_solana_presale.solana_utils import SolanaChainClient

logger = get_logger(__name__)

MAX_PRESALE_ID_LENGTH = 100
MAX_SIGNATURE_LENGTH = 200

# --- Server Setup ---
mcp = FastMCP(name="Solana Presale Launchpad")

ledger = PresaleLedger(config.settings.presale_db_path, config.settings.presale_db_debounce_seconds)
chain = SolanaChainClient.from_settings(config.settings)
bags = BagsClient.from_settings(config.settings)
orchestrator = LaunchOrchestrator(ledger, chain, bags, config.settings)
manager = PresaleManager(
    ledger,
    chain,
    orchestrator,
    config.settings,
    market=MarketDataClient(config.settings.market_data_api_base, timeout=config.settings.http_timeout_seconds),
)
claims = FeeClaimService(bags)
limiter = WalletRateLimiter(config.settings.rate_limit_per_minute)


# --- Helper Functions ---

def validate_presale_id(presale_id: str) -> None:
    if not presale_id or not isinstance(presale_id, str):
        raise ValueError("Presale ID must be a non-empty string")
    if len(presale_id) > MAX_PRESALE_ID_LENGTH:
        raise ValueError("Presale ID is too long")


def validate_signature(signature: str, name: str = "Transaction signature") -> None:
    if not signature or not isinstance(signature, str):
        raise ValueError(f"{name} must be a non-empty string")
    if len(signature) > MAX_SIGNATURE_LENGTH:
        raise ValueError(f"{name} is too long")


def presale_to_dict(presale: Presale) -> Dict[str, Any]:
    data = presale.model_dump(mode="json")
    data.update(
        total_sol=presale.total_sol,
        min_sol=presale.min_sol,
        max_sol=presale.max_sol,
        progress_percent=presale.progress_percent,
    )
    return data


def participant_to_dict(participant: Participant) -> Dict[str, Any]:
    return {
        "wallet": participant.wallet,
        "wallet_short": f"{participant.wallet[:4]}...{participant.wallet[-4:]}",
        "amount_sol": participant.amount_sol,
        "joined_at": participant.joined_at,
        "confirmed": participant.confirmed,
        "refunded": participant.refunded,
        "withdrawn": participant.withdrawn,
        "fee_share_bps": participant.fee_share_bps,
    }


def success_response(**payload: Any) -> str:
    return json.dumps({"success": True, **payload}, indent=2)


def error_response(error: Exception, message: Optional[str] = None) -> str:
    body: Dict[str, Any] = {
        "success": False,
        "error": message or str(error),
        "error_type": type(error).__name__,
    }
    if isinstance(error, PresaleError):
        body.update(error.details())
    return json.dumps(body, indent=2)


def log_operation_error(operation: str, presale_id: str, error: Exception, wallet: str, duration: float) -> None:
    """Log operation error with structured information."""
    logger.error(f"{operation} failed for presale '{presale_id}': {error}, "
                 f"wallet: {wallet}, duration: {duration:.3f}s")


def handle_error(operation: str, presale_id: str, error: Exception, wallet: str, start_time: float) -> str:
    """Map an exception raised by a tool to its JSON error response."""
    duration = time.time() - start_time
    if isinstance(error, RateLimitExceededError):
        # Already logged by the limiter
        return error_response(error)
    if isinstance(error, (PresaleError, ValueError)):
        log_operation_error(operation, presale_id, error, wallet, duration)
        return error_response(error)
    if isinstance(error, ConfigurationError):
        log_operation_error(operation, presale_id, error, wallet, duration)
        return error_response(error, "Server is not configured for this operation. Contact support.")
    logger.exception(f"Unexpected error in {operation} for presale '{presale_id}': {error}")
    return error_response(error, "An unexpected server error occurred")


# --- MCP Tools: reads ---

@mcp.tool()
async def get_presale_config(context: Context) -> str:
    """Get the presale rules: participant bounds, fee split, durations, launch fee and wallets."""
    return success_response(
        config={
            **policy.public_config(),
            "launcher_wallet": config.settings.launcher_wallet,
            "escrow_wallet": config.settings.escrow_wallet,
            "tax_wallet": config.settings.tax_wallet,
        }
    )


@mcp.tool()
async def get_presale(
    context: Context,
    presale_id: str = Field(..., description="The presale ID."),
    include_market: bool = Field(False, description="Include market data for a launched token."),
) -> str:
    """Get a presale with its participants, time remaining and whether it can be joined or refunded."""
    start_time = time.time()
    try:
        validate_presale_id(presale_id)
        view = await manager.get(presale_id, include_market=include_market)
        return success_response(
            presale=presale_to_dict(view.presale),
            participants=[participant_to_dict(p) for p in view.participants],
            escrow_wallet=view.escrow_wallet,
            time_remaining_seconds=view.time_remaining_seconds,
            can_join=view.can_join,
            can_refund=view.can_refund,
            is_full=view.is_full,
            market=view.market.model_dump(mode="json") if view.market else None,
        )
    except Exception as e:
        return handle_error("Get presale", presale_id, e, "-", start_time)


@mcp.tool()
async def check_participation(
    context: Context,
    presale_id: str = Field(..., description="The presale ID."),
    wallet: str = Field(..., description="The participant's wallet address."),
) -> str:
    """Check whether a wallet has joined a presale, and the state of its latest participation."""
    start_time = time.time()
    try:
        validate_presale_id(presale_id)
        participant = manager.get_participation(presale_id, wallet)
        return success_response(
            has_joined=participant is not None and participant.counts_toward_totals,
            participant=participant_to_dict(participant) if participant else None,
        )
    except Exception as e:
        return handle_error("Check participation", presale_id, e, wallet, start_time)


@mcp.tool()
async def quote_exit(
    context: Context,
    presale_id: str = Field(..., description="The presale ID."),
    wallet: str = Field(..., description="The participant's wallet address."),
) -> str:
    """Preview a withdrawal (active presale, 5% tax) or refund (failed presale) without moving funds."""
    start_time = time.time()
    try:
        validate_presale_id(presale_id)
        quote = manager.quote_exit(presale_id, wallet)
        return success_response(
            type=quote.kind,
            presale_status=quote.presale_status.value,
            original_amount_sol=policy.lamports_to_sol(quote.original_lamports),
            tax_percent=policy.WITHDRAWAL_TAX_BPS / 100 if quote.kind == "withdrawal" else 0,
            tax_amount_sol=policy.lamports_to_sol(quote.tax_lamports),
            network_fee_sol=policy.lamports_to_sol(quote.network_fee_lamports),
            return_amount_sol=policy.lamports_to_sol(quote.return_lamports),
            tax_wallet=quote.tax_wallet,
        )
    except Exception as e:
        return handle_error("Exit quote", presale_id, e, wallet, start_time)


@mcp.tool()
async def list_presales(
    context: Context,
    status_filter: str = Field("active", description="One of: active, launched, failed, refunding, all."),
    limit: int = Field(50, description="Maximum number of presales to return (1-100)."),
    offset: int = Field(0, description="Number of presales to skip."),
) -> str:
    """List presales, most recent first."""
    start_time = time.time()
    try:
        presales = manager.list_presales(status_filter, limit, offset)
        return success_response(
            presales=[presale_to_dict(p) for p in presales],
            stats=manager.stats().model_dump(mode="json"),
        )
    except Exception as e:
        return handle_error("List presales", "-", e, "-", start_time)


@mcp.tool()
async def presale_stats(context: Context) -> str:
    """Get presale counts by status and the total SOL raised by launched presales."""
    start_time = time.time()
    try:
        stats = manager.stats()
        return success_response(
            stats={
                "total_presales": stats.total,
                "active_presales": stats.active,
                "launched_tokens": stats.launched,
                "failed_presales": stats.failed + stats.refunding,
                "total_sol_raised": stats.total_sol_raised,
            }
        )
    except Exception as e:
        return handle_error("Presale stats", "-", e, "-", start_time)


# --- MCP Tools: mutations ---

@mcp.tool()
async def create_presale(
    context: Context,
    creator_wallet: str = Field(..., description="The creator's wallet address (paid the launch fee)."),
    token_name: str = Field(..., description="Token name."),
    token_symbol: str = Field(..., description="Token symbol (10 characters or less)."),
    description: str = Field(..., description="Token description."),
    image_url: str = Field(..., description="Token image URL."),
    launch_fee_signature: str = Field(..., description="Signature of the 0.045 SOL launch fee payment."),
    twitter: Optional[str] = Field(None, description="Twitter/X link."),
    website: Optional[str] = Field(None, description="Website link."),
    telegram: Optional[str] = Field(None, description="Telegram link."),
    min_sol_per_wallet: Optional[float] = Field(None, description="Minimum deposit per wallet in SOL."),
    max_sol_per_wallet: Optional[float] = Field(None, description="Maximum deposit per wallet in SOL."),
    duration_minutes: Optional[int] = Field(None, description="Round duration: 10, 20 or 30 minutes."),
    target_participants: Optional[int] = Field(None, description="Participants needed to launch (1-68)."),
) -> str:
    """Create a presale after paying the launch fee to the launcher wallet."""
    start_time = time.time()
    try:
        limiter.enforce(creator_wallet)
        validate_signature(launch_fee_signature, "Launch fee signature")
        request = CreatePresaleRequest(
            creator_wallet=creator_wallet,
            token_name=token_name,
            token_symbol=token_symbol,
            description=description,
            image_url=image_url,
            launch_fee_signature=launch_fee_signature,
            twitter=twitter,
            website=website,
            telegram=telegram,
            min_sol_per_wallet=min_sol_per_wallet,
            max_sol_per_wallet=max_sol_per_wallet,
            duration_minutes=duration_minutes,
            target_participants=target_participants,
        )
        presale = await manager.create(request)
        logger.info(f"Presale '{presale.id}' created by {creator_wallet} in {time.time() - start_time:.3f}s")
        return success_response(
            presale=presale_to_dict(presale),
            config={
                "max_wallets": presale.target_participants + 1,
                "target_participants": presale.target_participants,
                "creator_allocation_percent": policy.CREATOR_ALLOCATION_BPS / 100,
                "withdrawal_tax_percent": policy.WITHDRAWAL_TAX_BPS / 100,
                "escrow_wallet": config.settings.escrow_wallet,
            },
        )
    except PydanticValidationError as e:
        logger.error(f"Invalid presale request from {creator_wallet}: {e}")
        return error_response(e, f"Invalid presale request - {e}")
    except Exception as e:
        return handle_error("Create presale", "-", e, creator_wallet, start_time)


@mcp.tool()
async def join_presale(
    context: Context,
    presale_id: str = Field(..., description="The presale ID."),
    wallet: str = Field(..., description="The depositing wallet address."),
    amount_sol: float = Field(..., description="Amount of SOL deposited into the escrow wallet."),
    tx_signature: str = Field(..., description="Signature of the confirmed deposit transaction."),
) -> str:
    """
    Join a presale by confirming an escrow deposit.

    The deposit is verified on-chain (sender, escrow recipient, amount). If this join fills
    the presale, the token launch runs immediately and its outcome is included; a failed
    launch does not undo the join and can be retried with launch_presale.
    """
    start_time = time.time()
    try:
        validate_presale_id(presale_id)
        validate_signature(tx_signature)
        limiter.enforce(wallet)
        result = await manager.join(presale_id, wallet, amount_sol, tx_signature)
        launch = result.launch
        logger.info(f"Join completed for presale '{presale_id}': wallet={wallet}, amount={amount_sol} SOL, "
                    f"position={result.position}, duration={time.time() - start_time:.3f}s")
        return success_response(
            message="Presale launched!" if result.launch_triggered else "Successfully joined presale!",
            participant={"wallet": wallet, "amount_sol": amount_sol, "position": result.position},
            presale={
                "participant_count": result.participant_count,
                "target_participants": result.target_participants,
                "total_sol": policy.lamports_to_sol(result.total_lamports),
                "progress_percent": round(result.participant_count / result.target_participants * 100),
                "is_full": result.is_full,
            },
            ready_to_launch=result.is_full,
            launch_triggered=result.launch_triggered,
            launch=launch.model_dump(mode="json") if launch else None,
        )
    except Exception as e:
        return handle_error("Join", presale_id, e, wallet, start_time)


@mcp.tool()
async def withdraw_from_presale(
    context: Context,
    presale_id: str = Field(..., description="The presale ID."),
    wallet: str = Field(..., description="The participant's wallet address."),
) -> str:
    """Withdraw a deposit from an active presale. 5% goes to the tax wallet, the rest is returned."""
    start_time = time.time()
    try:
        validate_presale_id(presale_id)
        limiter.enforce(wallet)
        receipt = await manager.withdraw(presale_id, wallet)
        return success_response(
            type="withdrawal",
            message="Withdrawal successful!",
            withdrawal={
                "original_amount_sol": policy.lamports_to_sol(receipt.gross_lamports),
                "tax_percent": policy.WITHDRAWAL_TAX_BPS / 100,
                "tax_amount_sol": policy.lamports_to_sol(receipt.tax_lamports),
                "return_amount_sol": policy.lamports_to_sol(receipt.paid_lamports),
                "signature": receipt.signature,
                "explorer_url": receipt.explorer_url,
            },
        )
    except Exception as e:
        return handle_error("Withdrawal", presale_id, e, wallet, start_time)


@mcp.tool()
async def refund_from_presale(
    context: Context,
    presale_id: str = Field(..., description="The presale ID."),
    wallet: str = Field(..., description="The participant's wallet address."),
) -> str:
    """Claim a full (untaxed) refund from a presale that expired before filling."""
    start_time = time.time()
    try:
        validate_presale_id(presale_id)
        limiter.enforce(wallet)
        receipt = await manager.refund(presale_id, wallet)
        return success_response(
            type="refund",
            message="Refund sent successfully!",
            refund={
                "amount_sol": policy.lamports_to_sol(receipt.paid_lamports),
                "signature": receipt.signature,
                "explorer_url": receipt.explorer_url,
            },
        )
    except Exception as e:
        return handle_error("Refund", presale_id, e, wallet, start_time)


@mcp.tool()
async def launch_presale(
    context: Context,
    presale_id: str = Field(..., description="The presale ID."),
    wallet: str = Field(..., description="Wallet requesting the launch."),
    force: bool = Field(
        False, description="Launch even if the presale is not full (creator or launcher wallet, when enabled)."
    ),
) -> str:
    """
    Launch a presale's token, or retry after a failed launch attempt.

    Steps that already completed (token metadata, fee share config) are reused. A failure
    names the step it stopped at; the presale stays active so the launch can be retried.
    """
    start_time = time.time()
    try:
        validate_presale_id(presale_id)
        limiter.enforce(wallet)
        logger.info(f"Launch requested for presale '{presale_id}' by {wallet}, force: {force}")
        result = await manager.launch(presale_id, force=force, requested_by=wallet)
        if not result.success:
            return json.dumps(
                {
                    "success": False,
                    "error": result.error,
                    "error_type": "LaunchFailed",
                    "step": result.step.value if result.step else None,
                    "token_mint": result.token_mint,
                    "launch_signature": result.launch_signature,
                    "fee_share_config_key": result.fee_share_config_key,
                },
                indent=2,
            )
        return success_response(
            message="Token launched successfully!",
            token_mint=result.token_mint,
            launch_signature=result.launch_signature,
            fee_share_config_key=result.fee_share_config_key,
            config_txs_submitted=result.config_txs_submitted,
            config_txs_confirmed=result.config_txs_confirmed,
            bags_url=result.bags_url,
            explorer_url=result.explorer_url,
        )
    except Exception as e:
        return handle_error("Launch", presale_id, e, wallet, start_time)



# --- MCP Tools: fee claims ---

@mcp.tool()
async def get_claimable_fees(
    context: Context,
    wallet: str = Field(..., description="The fee claimer's wallet address."),
) -> str:
    """List the wallet's fee-share positions that have trading fees to claim."""
    start_time = time.time()
    try:
        positions = await claims.positions(wallet)
        return success_response(
            positions=[
                {**p.model_dump(mode="json"), "claimable_sol": policy.lamports_to_sol(p.claimable_lamports)}
                for p in positions
            ],
            count=len(positions),
        )
    except Exception as e:
        return handle_error("Claimable fees", "-", e, wallet, start_time)


@mcp.tool()
async def create_fee_claim(
    context: Context,
    wallet: str = Field(..., description="The fee claimer's wallet address."),
    token_mint: str = Field(..., description="Mint of the launched token to claim fees for."),
) -> str:
    """
    Create the transactions that claim a wallet's trading fees for one token.

    The transactions are base58-encoded and unsigned; the wallet signs and sends them, then
    reports the signature with submit_fee_claim.
    """
    start_time = time.time()
    try:
        limiter.enforce(wallet)
        transactions = await claims.create_claim(wallet, token_mint)
        return success_response(
            transactions=[{"tx": t.transaction, "blockhash": t.blockhash} for t in transactions],
            transaction_encoding="base58",
        )
    except Exception as e:
        return handle_error("Create fee claim", "-", e, wallet, start_time)


@mcp.tool()
async def submit_fee_claim(
    context: Context,
    signature: str = Field(..., description="Signature of the signed claim transaction."),
) -> str:
    """Report a signed and sent claim transaction to the launch service."""
    start_time = time.time()
    try:
        validate_signature(signature)
        message = await claims.submit_claim(signature)
        return success_response(message=message)
    except Exception as e:
        return handle_error("Submit fee claim", "-", e, "-", start_time)

# --- Main Execution ---
if __name__ == "__main__":
    startup_start = time.time()
    logger.info("Starting Solana Presale Launchpad MCP Server...")

    expired = manager.reconcile_all()
    stats = manager.stats()
    startup_duration = time.time() - startup_start
    logger.info(f"Server startup completed in {startup_duration:.3f}s, loaded {stats.total} presale(s), "
                f"{stats.active} active, {expired} newly expired.")

    try:
        mcp.run(transport="stdio")
    except KeyboardInterrupt:
        logger.info("Server shutdown requested by user")
    except Exception as e:
        logger.exception(f"Server error: {e}")
    finally:
        ledger.flush()
        logger.info("Solana Presale Launchpad MCP Server stopped.")
