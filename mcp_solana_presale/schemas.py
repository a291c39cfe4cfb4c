"""
Pydantic Data Models for the Presale Launchpad

Persisted records (Presale, Participant), the requests accepted by the lifecycle manager
and the structured results it returns.

Amounts are stored as integer lamports so that running totals, tax splits and fee shares
stay exact; the *_sol properties are views for display and API responses.

Status transitions are monotonic: active -> launched | failed, failed -> refunding.
A failed launch attempt leaves the presale active with its partial launch identifiers.
"""
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from mcp_solana_presale.policy import lamports_to_sol


class PresaleStatus(str, Enum):
    active = "active"
    launched = "launched"
    failed = "failed"
    refunding = "refunding"


class LaunchStep(str, Enum):
    precondition = "precondition"
    fee_shares = "fee_shares"
    metadata = "metadata"
    fee_share_config = "fee_share_config"
    fee_share_txs = "fee_share_txs"
    launch_tx = "launch_tx"
    launch_send = "launch_send"


class FeeShare(BaseModel):
    wallet: str
    bps: int
    # None for the creator entry
    participant_id: Optional[str] = None


class Presale(BaseModel):
    id: str
    creator_wallet: str

    # Token metadata
    token_name: str
    token_symbol: str
    description: str
    image_url: str
    twitter: Optional[str] = None
    website: Optional[str] = None
    telegram: Optional[str] = None

    # Round configuration
    min_lamports_per_wallet: int
    max_lamports_per_wallet: int
    target_participants: int
    duration_minutes: int
    launch_fee_signature: str

    status: PresaleStatus = PresaleStatus.active
    created_at: int
    expires_at: int

    # Running totals over confirmed, unresolved participants
    total_lamports: int = 0
    participant_count: int = 0

    # Launch progress; partial values survive a failed attempt
    token_mint: Optional[str] = None
    token_metadata: Optional[str] = None
    fee_share_config_key: Optional[str] = None
    fee_share_config_shares: List[FeeShare] = Field(default_factory=list)
    launch_signature: Optional[str] = None
    launched_at: Optional[int] = None
    last_launch_step: Optional[LaunchStep] = None
    last_launch_error: Optional[str] = None

    @property
    def total_sol(self) -> float:
        return lamports_to_sol(self.total_lamports)

    @property
    def min_sol(self) -> float:
        return lamports_to_sol(self.min_lamports_per_wallet)

    @property
    def max_sol(self) -> float:
        return lamports_to_sol(self.max_lamports_per_wallet)

    @property
    def is_full(self) -> bool:
        return self.participant_count >= self.target_participants

    @property
    def progress_percent(self) -> int:
        return round(self.participant_count / self.target_participants * 100)

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


class Participant(BaseModel):
    id: str
    presale_id: str
    join_seq: int
    wallet: str
    amount_lamports: int
    tx_signature: str
    joined_at: int
    confirmed: bool = False
    refunded: bool = False
    refund_signature: Optional[str] = None
    withdrawn: bool = False
    withdraw_signature: Optional[str] = None
    withdraw_tax_lamports: Optional[int] = None
    fee_share_bps: int = 0
    # Payout signed and submitted but not yet known to have landed
    pending_settlement_kind: Optional[str] = None
    pending_settlement_signature: Optional[str] = None
    pending_settlement_blockhash: Optional[str] = None

    @property
    def amount_sol(self) -> float:
        return lamports_to_sol(self.amount_lamports)

    @property
    def is_resolved(self) -> bool:
        return self.refunded or self.withdrawn

    @property
    def counts_toward_totals(self) -> bool:
        return self.confirmed and not self.is_resolved


class CreatePresaleRequest(BaseModel):
    creator_wallet: str
    token_name: str
    token_symbol: str
    description: str
    image_url: str
    launch_fee_signature: str
    twitter: Optional[str] = None
    website: Optional[str] = None
    telegram: Optional[str] = None
    min_sol_per_wallet: Optional[float] = None
    max_sol_per_wallet: Optional[float] = None
    duration_minutes: Optional[int] = None
    target_participants: Optional[int] = None


class TransactionInfo(BaseModel):
    """The parts of a confirmed transaction needed to verify a payment."""
    signature: str
    success: bool
    error: Optional[str] = None
    account_keys: List[str] = Field(default_factory=list)
    balance_deltas: Dict[str, int] = Field(default_factory=dict)

    def received_by(self, account: str) -> int:
        return self.balance_deltas.get(account, 0)


class SignatureStatus(BaseModel):
    """Cluster view of a submitted transaction (getSignatureStatuses)."""
    signature: str
    confirmation_status: Optional[str] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def landed(self) -> bool:
        return not self.failed and self.confirmation_status in ("confirmed", "finalized")


class TokenMarketData(BaseModel):
    token_mint: str
    price_usd: Optional[float] = None
    liquidity_usd: Optional[float] = None
    fdv: Optional[float] = None
    volume_24h_usd: Optional[float] = None
    pair_url: Optional[str] = None


class LaunchResult(BaseModel):
    success: bool
    presale_id: str
    step: Optional[LaunchStep] = None
    error: Optional[str] = None
    token_mint: Optional[str] = None
    launch_signature: Optional[str] = None
    fee_share_config_key: Optional[str] = None
    config_txs_submitted: int = 0
    config_txs_confirmed: int = 0
    bags_url: Optional[str] = None
    explorer_url: Optional[str] = None


class JoinResult(BaseModel):
    presale_id: str
    wallet: str
    amount_lamports: int
    position: int
    participant_count: int
    target_participants: int
    total_lamports: int
    is_full: bool
    launch: Optional[LaunchResult] = None

    @property
    def launch_triggered(self) -> bool:
        return self.launch is not None and self.launch.success


class ExitQuote(BaseModel):
    presale_id: str
    wallet: str
    kind: str
    presale_status: PresaleStatus
    original_lamports: int
    tax_lamports: int
    network_fee_lamports: int
    return_lamports: int
    tax_wallet: Optional[str] = None


class SettlementReceipt(BaseModel):
    presale_id: str
    wallet: str
    kind: str
    gross_lamports: int
    tax_lamports: int
    returned_lamports: int
    network_fee_lamports: int
    paid_lamports: int
    signature: str

    @property
    def explorer_url(self) -> str:
        return f"https://solscan.io/tx/{self.signature}"


class PresaleView(BaseModel):
    presale: Presale
    participants: List[Participant]
    escrow_wallet: str
    time_remaining_seconds: int
    can_join: bool
    can_refund: bool
    is_full: bool
    market: Optional[TokenMarketData] = None


class PresaleStats(BaseModel):
    total: int = 0
    active: int = 0
    launched: int = 0
    failed: int = 0
    refunding: int = 0
    total_lamports_raised: int = 0

    @property
    def total_sol_raised(self) -> float:
        return lamports_to_sol(self.total_lamports_raised)
