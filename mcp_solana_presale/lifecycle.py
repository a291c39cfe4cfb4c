"""
Presale Lifecycle Manager

The presale state machine:

    active --(target reached, launch succeeds)--> launched
    active --(deadline passes)------------------> failed --(first refund)--> refunding

While active, wallets join by depositing SOL into the escrow and may withdraw early for a
5% tax. Once failed, every confirmed participant can claim an untaxed refund. A failed
launch attempt keeps the presale active so the launch can be retried.

Expiry is lazy: nothing runs on a timer. Every entry point reconciles the presale it is
about to answer for (reconcile_expiry), so an expired round is reported as failed no matter
which operation observes it first.

Operations that move money or change the participant set for a presale (join, withdraw,
refund, launch) run under that presale's asyncio lock. The join that fills the round holds
the lock while the launch runs, so the fee split is computed over a settled participant set.
"""
import asyncio
import time
from typing import Callable, Dict, List, Optional, Tuple

from solders.keypair import Keypair

from mcp_solana_presale import policy
from mcp_solana_presale.config import LaunchpadSettings, load_keypair
from mcp_solana_presale.errors import (
    AlreadyResolvedError,
    InsufficientEscrowBalanceError,
    NotFoundError,
    PreconditionError,
    PresaleError,
    TransactionFailedError,
    ValidationError,
    VerificationError,
)
from mcp_solana_presale.launcher import LaunchOrchestrator
from mcp_solana_presale.ledger import PresaleLedger
from mcp_solana_presale.market_data import MarketDataClient
from mcp_solana_presale.schemas import (
    CreatePresaleRequest,
    ExitQuote,
    JoinResult,
    LaunchResult,
    Participant,
    Presale,
    PresaleStats,
    PresaleStatus,
    PresaleView,
    SettlementReceipt,
)
from mcp_solana_presale.solana_utils import SolanaChainClient
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)

LIST_FILTERS = ("active", "launched", "failed", "refunding", "all")
MAX_LIST_LIMIT = 100


class PresaleManager:
    def __init__(
        self,
        ledger: PresaleLedger,
        chain: SolanaChainClient,
        orchestrator: LaunchOrchestrator,
        settings: LaunchpadSettings,
        market: Optional[MarketDataClient] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.ledger = ledger
        self.chain = chain
        self.orchestrator = orchestrator
        self.settings = settings
        self.market = market
        self._clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, presale_id: str) -> asyncio.Lock:
        return self._locks.setdefault(presale_id, asyncio.Lock())

    # --- Expiry ---

    def reconcile_expiry(self, presale: Presale) -> Presale:
        """Flip an expired active presale to failed; any other presale is returned as is."""
        if presale.status == PresaleStatus.active and presale.is_expired(self._clock()):
            logger.info(
                f"Presale {presale.id} expired with {presale.participant_count}/"
                f"{presale.target_participants} participants, marking failed"
            )
            return self.ledger.update_status(presale.id, PresaleStatus.failed)
        return presale

    def reconcile_all(self) -> int:
        """Reconcile every expired active presale. Returns how many were failed."""
        expired = self.ledger.list_expired(self._clock())
        for presale in expired:
            self.reconcile_expiry(presale)
        return len(expired)

    def _load(self, presale_id: str) -> Presale:
        presale = self.ledger.get(presale_id)
        if presale is None:
            raise NotFoundError("Presale not found")
        return self.reconcile_expiry(presale)

    # --- Creation ---

    async def create(self, request: CreatePresaleRequest) -> Presale:
        """
        Validate a presale request, verify its launch fee payment and open the round.

        Raises:
            ValidationError: Missing fields or values outside the policy bounds.
            PreconditionError: The launch fee signature already backs another presale.
            VerificationError: The launch fee payment could not be verified on-chain.
        """
        missing = [
            name for name in ("creator_wallet", "token_name", "token_symbol", "description", "image_url")
            if not getattr(request, name)
        ]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        if not request.launch_fee_signature:
            raise ValidationError(
                f"Launch fee payment required. Please pay {policy.LAUNCH_FEE_SOL} SOL to "
                f"{self.settings.launcher_wallet} to create a presale."
            )

        symbol = policy.normalize_symbol(request.token_symbol)
        if not symbol:
            raise ValidationError("Token symbol is required")
        if len(symbol) > policy.MAX_SYMBOL_LENGTH:
            raise ValidationError(f"Token symbol must be {policy.MAX_SYMBOL_LENGTH} characters or less")

        duration = policy.DEFAULT_DURATION_MINUTES if request.duration_minutes is None else request.duration_minutes
        if not policy.is_valid_duration(duration):
            options = ", ".join(str(d) for d in policy.DURATION_OPTIONS)
            raise ValidationError(f"Invalid duration. Must be one of: {options} minutes")

        target = policy.DEFAULT_PARTICIPANTS if request.target_participants is None else request.target_participants
        if not policy.MIN_PARTICIPANTS <= target <= policy.MAX_PARTICIPANTS:
            raise ValidationError(
                f"Target participants must be between {policy.MIN_PARTICIPANTS} and {policy.MAX_PARTICIPANTS}"
            )

        min_sol = policy.DEFAULT_MIN_SOL if request.min_sol_per_wallet is None else request.min_sol_per_wallet
        max_sol = policy.DEFAULT_MAX_SOL if request.max_sol_per_wallet is None else request.max_sol_per_wallet
        min_lamports = policy.sol_to_lamports(min_sol)
        max_lamports = policy.sol_to_lamports(max_sol)
        if min_lamports <= 0:
            raise ValidationError("Minimum contribution must be greater than 0 SOL")
        if max_lamports < min_lamports:
            raise ValidationError("Maximum contribution must be at least the minimum contribution")

        signature = request.launch_fee_signature
        if self.ledger.is_signature_used(signature):
            raise PreconditionError("Launch fee signature already used")

        try:
            await self.chain.verify_launch_fee(
                signature,
                request.creator_wallet,
                self.settings.launcher_wallet,
                policy.sol_to_lamports(policy.LAUNCH_FEE_SOL),
                self.settings.launch_fee_tolerance_bps,
            )
        except VerificationError as e:
            logger.warning(f"Launch fee {signature} from {request.creator_wallet} rejected: {e}")
            raise VerificationError(f"Launch fee verification failed: {e}")

        # Another create or join may have claimed the signature while we were verifying
        if self.ledger.is_signature_used(signature):
            raise PreconditionError("Launch fee signature already used")

        now = int(self._clock())
        return self.ledger.create(
            creator_wallet=request.creator_wallet,
            token_name=request.token_name.strip(),
            token_symbol=symbol,
            description=request.description,
            image_url=request.image_url,
            twitter=request.twitter or None,
            website=request.website or None,
            telegram=request.telegram or None,
            min_lamports_per_wallet=min_lamports,
            max_lamports_per_wallet=max_lamports,
            target_participants=target,
            duration_minutes=duration,
            launch_fee_signature=signature,
            created_at=now,
            expires_at=now + duration * 60,
        )

    # --- Reads ---

    async def get(self, presale_id: str, include_market: bool = False) -> PresaleView:
        presale = self._load(presale_id)
        now = self._clock()
        active = presale.status == PresaleStatus.active
        market = None
        if include_market and self.market is not None and presale.status == PresaleStatus.launched and presale.token_mint:
            market = await self.market.get_token_market(presale.token_mint)
        return PresaleView(
            presale=presale,
            participants=self.ledger.get_active_participants(presale_id),
            escrow_wallet=self.settings.escrow_wallet,
            time_remaining_seconds=max(0, int(presale.expires_at - now)) if active else 0,
            can_join=active and not presale.is_expired(now) and not presale.is_full,
            can_refund=presale.status in (PresaleStatus.failed, PresaleStatus.refunding),
            is_full=presale.is_full,
            market=market,
        )

    def get_participation(self, presale_id: str, wallet: str) -> Optional[Participant]:
        """The wallet's latest participation record, or None if it never joined."""
        self._load(presale_id)
        return self.ledger.get_latest_participation(presale_id, wallet)

    def list_presales(self, status_filter: str = "active", limit: int = 50, offset: int = 0) -> List[Presale]:
        if status_filter not in LIST_FILTERS:
            raise ValidationError(f"Invalid filter. Must be one of: {', '.join(LIST_FILTERS)}")
        limit = max(1, min(limit, MAX_LIST_LIMIT))
        offset = max(0, offset)
        self.reconcile_all()
        if status_filter == "all":
            return self.ledger.list_all(limit, offset)
        if status_filter == "active":
            return self.ledger.list_active(self._clock())[offset:offset + limit]
        return self.ledger.list_by_status(PresaleStatus(status_filter), limit, offset)

    def stats(self) -> PresaleStats:
        self.reconcile_all()
        return self.ledger.stats()

    # --- Joining ---

    def _check_can_join(self, presale: Presale, wallet: str, amount_lamports: int, tx_signature: str) -> None:
        if presale.status != PresaleStatus.active:
            if presale.status == PresaleStatus.failed and presale.is_expired(self._clock()):
                raise PreconditionError("Presale has expired")
            raise PreconditionError(f"Presale is {presale.status.value}, cannot join")
        if presale.is_full:
            raise PreconditionError("Presale is full")
        if wallet == presale.creator_wallet:
            raise PreconditionError("Creator cannot join their own presale")
        if self.ledger.get_unresolved_participant(presale.id, wallet) is not None:
            raise PreconditionError("Wallet has already joined this presale")
        if amount_lamports < presale.min_lamports_per_wallet:
            raise ValidationError(f"Amount below minimum of {presale.min_sol} SOL")
        if amount_lamports > presale.max_lamports_per_wallet:
            raise ValidationError(f"Amount above maximum of {presale.max_sol} SOL")
        if self.ledger.is_signature_used(tx_signature):
            raise PreconditionError("Deposit already claimed")

    async def join(self, presale_id: str, wallet: str, amount_sol: float, tx_signature: str) -> JoinResult:
        """
        Record a verified escrow deposit and, if it fills the round, launch the token.

        The deposit is verified on-chain before the presale lock is taken; every check is
        repeated under the lock. A launch failure is reported in the result and never undoes
        the join.

        Raises:
            ValidationError / PreconditionError: The wallet cannot join with this deposit.
            VerificationError: The deposit transaction does not prove the claimed payment.
        """
        if not wallet or not tx_signature or amount_sol is None:
            raise ValidationError("Missing required fields: wallet, amount_sol, tx_signature")
        if amount_sol <= 0:
            raise ValidationError("Amount must be greater than 0 SOL")
        amount = policy.sol_to_lamports(amount_sol)

        presale = self._load(presale_id)
        self._check_can_join(presale, wallet, amount, tx_signature)

        try:
            await self.chain.verify_deposit(
                tx_signature,
                wallet,
                self.settings.escrow_wallet,
                amount,
                policy.sol_to_lamports(self.settings.deposit_tolerance_sol),
            )
        except VerificationError as e:
            logger.warning(f"Deposit {tx_signature} from {wallet} to presale {presale_id} rejected: {e}")
            raise

        async with self._lock_for(presale_id):
            presale = self._load(presale_id)
            try:
                self._check_can_join(presale, wallet, amount, tx_signature)
            except PresaleError as e:
                logger.warning(
                    f"Verified deposit {tx_signature} of {amount_sol} SOL from {wallet} rejected for presale "
                    f"{presale_id} ({e}); funds are in escrow and need a manual refund"
                )
                raise

            participant = self.ledger.add_participant(presale_id, wallet, amount, tx_signature, int(self._clock()))
            if participant is None:
                raise PreconditionError("Failed to add participant. Wallet may have already joined.")
            presale = self.ledger.confirm_participant(presale_id, wallet)

            launch: Optional[LaunchResult] = None
            if presale.is_full:
                logger.info(f"Presale {presale_id} is full, triggering auto-launch")
                try:
                    launch = await self.orchestrator.run(presale_id)
                except Exception as e:
                    logger.exception(f"Auto-launch of presale {presale_id} raised: {e}")
                    launch = LaunchResult(success=False, presale_id=presale_id, error=str(e))
                if launch.success:
                    logger.info(f"Auto-launch of presale {presale_id} succeeded: {launch.token_mint}")
                else:
                    logger.error(f"Auto-launch of presale {presale_id} failed: {launch.error}")
                presale = self.ledger.get(presale_id) or presale

        if launch is not None:
            self._release_lock_if_launched(presale_id)

        return JoinResult(
            presale_id=presale_id,
            wallet=wallet,
            amount_lamports=amount,
            position=presale.participant_count,
            participant_count=presale.participant_count,
            target_participants=presale.target_participants,
            total_lamports=presale.total_lamports,
            is_full=presale.is_full,
            launch=launch,
        )

    # --- Withdrawals and refunds ---

    def _settleable_participant(self, presale_id: str, wallet: str) -> Participant:
        participant = self.ledger.get_unresolved_participant(presale_id, wallet)
        if participant is None:
            latest = self.ledger.get_latest_participation(presale_id, wallet)
            if latest is not None and latest.refunded:
                raise AlreadyResolvedError("refunded", latest.refund_signature)
            if latest is not None and latest.withdrawn:
                raise AlreadyResolvedError("withdrawn", latest.withdraw_signature)
            raise NotFoundError("Wallet did not participate in this presale")
        if not participant.confirmed:
            raise PreconditionError("Deposit was not confirmed")
        return participant

    def quote_exit(self, presale_id: str, wallet: str) -> ExitQuote:
        """Preview what a withdrawal (active) or refund (failed) would pay, without moving funds."""
        presale = self._load(presale_id)
        participant = self._settleable_participant(presale_id, wallet)
        amount = participant.amount_lamports

        if presale.status == PresaleStatus.active:
            tax, returned = policy.calculate_withdrawal_tax(amount)
            fee = self.settings.withdrawal_fee_lamports
            return ExitQuote(
                presale_id=presale_id,
                wallet=wallet,
                kind="withdrawal",
                presale_status=presale.status,
                original_lamports=amount,
                tax_lamports=tax,
                network_fee_lamports=fee,
                return_lamports=max(0, returned - fee),
                tax_wallet=self.settings.tax_wallet,
            )
        if presale.status in (PresaleStatus.failed, PresaleStatus.refunding):
            fee = self.settings.refund_fee_lamports
            return ExitQuote(
                presale_id=presale_id,
                wallet=wallet,
                kind="refund",
                presale_status=presale.status,
                original_lamports=amount,
                tax_lamports=0,
                network_fee_lamports=fee,
                return_lamports=max(0, amount - fee),
            )
        raise PreconditionError(f"Cannot withdraw from {presale.status.value} presale")

    async def _check_escrow_balance(self, escrow_wallet: str, required_lamports: int) -> None:
        balance = await self.chain.get_balance(escrow_wallet)
        if balance < required_lamports:
            logger.error(
                f"Insufficient escrow balance: {policy.lamports_to_sol(balance)} SOL, "
                f"need {policy.lamports_to_sol(required_lamports)} SOL"
            )
            raise InsufficientEscrowBalanceError(escrow_wallet, balance, required_lamports)

    def _settle(self, presale: Presale, participant: Participant, kind: str, signature: str) -> SettlementReceipt:
        """Mark a paid-out participation resolved and build its receipt."""
        amount = participant.amount_lamports
        if kind == "withdrawal":
            tax, returned = policy.calculate_withdrawal_tax(amount)
            fee = self.settings.withdrawal_fee_lamports
            self.ledger.mark_withdrawn(presale.id, participant.wallet, signature, tax)
        else:
            tax, returned = 0, amount
            fee = self.settings.refund_fee_lamports
            self.ledger.mark_refunded(presale.id, participant.wallet, signature)
            if presale.status == PresaleStatus.failed:
                self.ledger.update_status(presale.id, PresaleStatus.refunding)
        return SettlementReceipt(
            presale_id=presale.id,
            wallet=participant.wallet,
            kind=kind,
            gross_lamports=amount,
            tax_lamports=tax,
            returned_lamports=returned,
            network_fee_lamports=fee,
            paid_lamports=returned - fee,
            signature=signature,
        )

    async def _reconcile_pending_settlement(self, presale: Presale, wallet: str) -> Optional[SettlementReceipt]:
        """
        Resolve a payout an earlier attempt signed but could not confirm.

        Returns its receipt if it landed. A payout that failed on-chain, or whose blockhash
        expired before the cluster saw it, is cleared so a new one can be sent. Anything
        else is still in flight and blocks a second payout.

        Raises:
            PreconditionError: The earlier payout may still land.
        """
        participant = self.ledger.get_unresolved_participant(presale.id, wallet)
        if participant is None or participant.pending_settlement_signature is None:
            return None
        kind = participant.pending_settlement_kind
        signature = participant.pending_settlement_signature

        # Blockhash first: a transaction that landed before it expired is already visible below
        blockhash_valid = await self.chain.is_blockhash_valid(participant.pending_settlement_blockhash)
        status = await self.chain.get_signature_status(signature)
        if status is not None and status.landed:
            logger.info(f"Earlier {kind} {signature} for {wallet} in presale {presale.id} landed, settling it")
            return self._settle(presale, participant, kind, signature)
        if status is not None and status.failed:
            logger.warning(f"Earlier {kind} {signature} for {wallet} failed on-chain: {status.error}")
            self.ledger.clear_pending_settlement(presale.id, wallet)
            return None
        if status is None and not blockhash_valid:
            logger.warning(f"Earlier {kind} {signature} for {wallet} expired without landing")
            self.ledger.clear_pending_settlement(presale.id, wallet)
            return None
        raise PreconditionError(
            f"Previous {kind} {signature} is still awaiting confirmation. Try again shortly."
        )

    async def _send_payout(
        self, presale_id: str, wallet: str, kind: str, escrow: Keypair, transfers: List[Tuple[str, int]]
    ) -> str:
        def record_pending(signature: str, blockhash: str) -> None:
            self.ledger.record_pending_settlement(presale_id, wallet, kind, signature, blockhash)

        try:
            return await self.chain.send_transfers(escrow, transfers, on_signed=record_pending)
        except TransactionFailedError as e:
            logger.error(
                f"{kind.capitalize()} for {wallet} in presale {presale_id} not confirmed: {e}. "
                f"It is reconciled against the chain on the next request."
            )
            raise

    async def withdraw(self, presale_id: str, wallet: str) -> SettlementReceipt:
        """
        Leave an active presale early. 5% of the deposit goes to the tax wallet; the rest,
        minus the network fee buffer, goes back to the wallet in the same transaction.
        """
        async with self._lock_for(presale_id):
            presale = self._load(presale_id)
            receipt = await self._reconcile_pending_settlement(presale, wallet)
            if receipt is not None:
                return receipt

            if presale.status in (PresaleStatus.failed, PresaleStatus.refunding):
                raise PreconditionError(f"Presale is {presale.status.value}; request a refund instead")
            if presale.status != PresaleStatus.active:
                raise PreconditionError(f"Presale is {presale.status.value}. Cannot withdraw/refund.")
            participant = self._settleable_participant(presale_id, wallet)

            amount = participant.amount_lamports
            tax, returned = policy.calculate_withdrawal_tax(amount)
            fee = self.settings.withdrawal_fee_lamports
            paid = returned - fee
            if paid <= 0:
                raise ValidationError("Withdrawal amount too small after tax and fees")

            escrow = load_keypair(self.settings.escrow_private_key, "ESCROW_PRIVATE_KEY")
            await self._check_escrow_balance(str(escrow.pubkey()), amount + fee)

            logger.info(f"Processing withdrawal for {wallet} in presale {presale_id}: {participant.amount_sol} SOL")
            transfers = [(self.settings.tax_wallet, tax)] if tax > 0 else []
            transfers.append((wallet, paid))
            signature = await self._send_payout(presale_id, wallet, "withdrawal", escrow, transfers)
            receipt = self._settle(presale, participant, "withdrawal", signature)

        logger.info(
            f"Withdrawal sent: {signature} | tax {policy.lamports_to_sol(tax)} SOL, "
            f"return {policy.lamports_to_sol(paid)} SOL"
        )
        return receipt

    async def refund(self, presale_id: str, wallet: str) -> SettlementReceipt:
        """Return a full, untaxed deposit (minus the network fee) from a failed presale."""
        async with self._lock_for(presale_id):
            presale = self._load(presale_id)
            receipt = await self._reconcile_pending_settlement(presale, wallet)
            if receipt is not None:
                return receipt

            if presale.status not in (PresaleStatus.failed, PresaleStatus.refunding):
                raise PreconditionError(
                    f"Presale is {presale.status.value}. Refunds are only available for failed presales."
                )
            participant = self._settleable_participant(presale_id, wallet)

            amount = participant.amount_lamports
            fee = self.settings.refund_fee_lamports
            paid = amount - fee
            if paid <= 0:
                raise ValidationError("Refund amount too small after fees")

            escrow = load_keypair(self.settings.escrow_private_key, "ESCROW_PRIVATE_KEY")
            await self._check_escrow_balance(str(escrow.pubkey()), paid + fee)

            logger.info(f"Processing refund for {wallet} in presale {presale_id}: {participant.amount_sol} SOL")
            signature = await self._send_payout(presale_id, wallet, "refund", escrow, [(wallet, paid)])
            receipt = self._settle(presale, participant, "refund", signature)

        logger.info(f"Refund sent: {signature}")
        return receipt

    # --- Launch ---

    def _check_force_allowed(self, presale: Presale, requested_by: Optional[str]) -> None:
        if not self.settings.allow_force_launch:
            raise PreconditionError("Forced launches are disabled on this server")
        if requested_by not in (presale.creator_wallet, self.settings.launcher_wallet):
            raise PreconditionError("Only the presale creator or the launcher wallet can force a launch")

    def _release_lock_if_launched(self, presale_id: str) -> None:
        # Launched presales accept no further state changes
        presale = self.ledger.get(presale_id)
        if presale is not None and presale.status == PresaleStatus.launched:
            self._locks.pop(presale_id, None)

    async def launch(self, presale_id: str, force: bool = False, requested_by: Optional[str] = None) -> LaunchResult:
        """
        Run the launch sequence (manual trigger or retry) under the presale lock.

        force skips the fullness check; it must be enabled with ALLOW_FORCE_LAUNCH and
        requested by the creator or the launcher wallet.
        """
        presale = self._load(presale_id)
        if force:
            self._check_force_allowed(presale, requested_by)
        async with self._lock_for(presale_id):
            self._load(presale_id)
            result = await self.orchestrator.run(presale_id, force=force)
        self._release_lock_if_launched(presale_id)
        return result
