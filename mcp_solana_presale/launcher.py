"""
Presale Launch Orchestrator

Turns a full presale into a deployed token:

1. fee_shares        compute and verify the 10000 bps split (fatal on mismatch)
2. metadata          register token metadata -> token mint + metadata handle
3. fee_share_config  register the split (partner attribution, retried once without it),
                     then sign and submit the returned config transactions
4. launch_tx         request the launch transaction (initial buy from the raised SOL)
   launch_send       sign and submit it
5. finalize          status -> launched, flushed before returning

Every identifier is persisted as soon as it is obtained. A failure in steps 2-4 leaves the
presale active with those identifiers, so the next attempt resumes where this one stopped
instead of registering a second token. There is no retry loop here; retries come from the
next full-detecting join or a manual launch.
"""
import time
from typing import Callable, List, Optional, Tuple

from solders.keypair import Keypair

from mcp_solana_presale.bags_client import BagsClient
from mcp_solana_presale.config import LaunchpadSettings, load_keypair
from mcp_solana_presale.errors import (
    ConfigurationError,
    ExternalServiceError,
    FeeShareInvariantError,
    InsufficientEscrowBalanceError,
    PresaleError,
)
from mcp_solana_presale.fee_shares import allocate_fee_shares
from mcp_solana_presale.ledger import PresaleLedger
from mcp_solana_presale.schemas import FeeShare, LaunchResult, LaunchStep, Presale, PresaleStatus
from mcp_solana_presale.solana_utils import SolanaChainClient
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)


class LaunchOrchestrator:
    def __init__(
        self,
        ledger: PresaleLedger,
        chain: SolanaChainClient,
        bags: BagsClient,
        settings: LaunchpadSettings,
        clock: Callable[[], float] = time.time,
    ):
        self.ledger = ledger
        self.chain = chain
        self.bags = bags
        self.settings = settings
        self._clock = clock

    async def run(self, presale_id: str, force: bool = False) -> LaunchResult:
        """
        Launch a presale's token. The caller must hold the presale's lock.

        Args:
            presale_id: Presale to launch.
            force: Skip the fullness check (manual override). Never bypasses an existing launch.

        Returns:
            LaunchResult; on failure it names the failing step and carries any partial
            identifiers (token mint, fee share config key).
        """
        presale = self.ledger.get(presale_id)
        if presale is None:
            return self._rejected(presale_id, "Presale not found")
        if presale.status == PresaleStatus.launched:
            return LaunchResult(
                success=False,
                presale_id=presale_id,
                error="Presale already launched",
                token_mint=presale.token_mint,
                launch_signature=presale.launch_signature,
                fee_share_config_key=presale.fee_share_config_key,
            )
        if presale.status != PresaleStatus.active:
            return self._rejected(presale_id, f"Presale is {presale.status.value}, cannot launch")
        if not force and not presale.is_full:
            return self._rejected(
                presale_id,
                f"Presale not full. {presale.participant_count}/{presale.target_participants} participants.",
            )
        try:
            launcher = load_keypair(self.settings.launcher_private_key, "LAUNCHER_PRIVATE_KEY")
            if not self.settings.bags_api_key:
                raise ConfigurationError("BAGS_API_KEY not configured")
        except ConfigurationError as e:
            return self._rejected(presale_id, str(e))

        logger.info(
            f"Starting launch for presale {presale_id}: {presale.participant_count} participants, "
            f"{presale.total_sol} SOL, launcher {launcher.pubkey()}"
        )

        step = LaunchStep.fee_shares
        submitted = confirmed = 0
        try:
            shares = allocate_fee_shares(self.ledger, presale_id)

            step = LaunchStep.metadata
            presale = await self._ensure_token_metadata(presale)

            step = LaunchStep.fee_share_config
            presale, submitted, confirmed = await self._ensure_fee_share_config(presale, shares, launcher)

            step = LaunchStep.launch_tx
            encoded_tx = await self._request_launch_transaction(presale, launcher)

            step = LaunchStep.launch_send
            launch_signature = await self.chain.sign_and_send_encoded(encoded_tx, launcher)
        except FeeShareInvariantError as e:
            logger.critical(f"Aborting launch of presale {presale_id}: {e}")
            return self._rejected(presale_id, str(e), step)
        except ExternalServiceError as e:
            failing_step = LaunchStep(e.step) if e.step else step
            return self._failed(presale_id, failing_step, e, submitted, confirmed)
        except (InsufficientEscrowBalanceError, ConfigurationError) as e:
            return self._failed(presale_id, step, e, submitted, confirmed)
        except PresaleError as e:
            if step == LaunchStep.fee_shares:
                return self._rejected(presale_id, str(e), step)
            return self._failed(presale_id, step, e, submitted, confirmed)
        except Exception as e:
            logger.exception(f"Unexpected error launching presale {presale_id} at step {step.value}: {e}")
            return self._failed(presale_id, step, e, submitted, confirmed)

        presale = self.ledger.update_status(
            presale_id,
            PresaleStatus.launched,
            launch_signature=launch_signature,
            launched_at=int(self._clock()),
            last_launch_step=None,
            last_launch_error=None,
        )
        logger.info(f"Launch complete for presale {presale_id}: token {presale.token_mint}, tx {launch_signature}")
        return LaunchResult(
            success=True,
            presale_id=presale_id,
            token_mint=presale.token_mint,
            launch_signature=launch_signature,
            fee_share_config_key=presale.fee_share_config_key,
            config_txs_submitted=submitted,
            config_txs_confirmed=confirmed,
            bags_url=f"https://bags.fm/{presale.token_mint}",
            explorer_url=f"https://solscan.io/tx/{launch_signature}",
        )

    # --- Steps ---

    async def _ensure_token_metadata(self, presale: Presale) -> Presale:
        # Mint and metadata are recorded together; the launch transaction needs both
        if presale.token_mint and presale.token_metadata:
            logger.info(f"Presale {presale.id} already has token {presale.token_mint}, skipping metadata")
            return presale
        if presale.token_mint:
            logger.warning(
                f"Presale {presale.id} has token {presale.token_mint} without metadata, registering the token again"
            )

        logger.info(f"Creating token metadata for presale {presale.id}")
        info = await self.bags.create_token_info(
            presale.token_name,
            presale.token_symbol,
            presale.description,
            presale.image_url,
            twitter=presale.twitter,
            website=presale.website,
            telegram=presale.telegram,
        )
        logger.info(f"Token mint for presale {presale.id}: {info.token_mint}")
        progress = dict(token_mint=info.token_mint, token_metadata=info.token_metadata)
        if presale.token_mint and presale.token_mint != info.token_mint:
            # A fee share config registered for the old mint does not apply to the new one
            progress.update(fee_share_config_key=None, fee_share_config_shares=[])
        return self.ledger.record_launch_progress(presale.id, **progress)

    async def _ensure_fee_share_config(
        self, presale: Presale, shares: List[FeeShare], launcher: Keypair
    ) -> Tuple[Presale, int, int]:
        if presale.fee_share_config_key and presale.fee_share_config_shares == shares:
            logger.info(f"Presale {presale.id} already has fee share config {presale.fee_share_config_key}")
            return presale, 0, 0
        if presale.fee_share_config_key:
            logger.warning(
                f"Fee split for presale {presale.id} changed since config {presale.fee_share_config_key} "
                f"was registered; registering a new one"
            )

        payer = str(launcher.pubkey())
        claimers = [s.wallet for s in shares]
        basis_points = [s.bps for s in shares]
        partner_config = self.settings.partner_config_key
        try:
            config = await self.bags.create_fee_share_config(
                payer, presale.token_mint, claimers, basis_points,
                partner=self.settings.partner_wallet if partner_config else None,
                partner_config=partner_config,
            )
        except ExternalServiceError as e:
            if not partner_config:
                raise
            logger.info(f"Fee share config with partner rejected ({e}); trying without partner config")
            config = await self.bags.create_fee_share_config(payer, presale.token_mint, claimers, basis_points)

        logger.info(
            f"Fee share config {config.config_key} for presale {presale.id}: "
            f"{len(claimers)} claimers, {len(config.transactions)} transaction(s)"
        )
        confirmed = await self._submit_config_transactions(presale.id, config.transactions, launcher)
        submitted = len(config.transactions)

        if submitted and confirmed == 0:
            if self.settings.require_fee_share_config_txs:
                # Keep the key for diagnosis but no share snapshot, so a retry re-registers
                self.ledger.record_launch_progress(
                    presale.id, fee_share_config_key=config.config_key, fee_share_config_shares=[]
                )
                raise ExternalServiceError(
                    f"None of {submitted} fee share config transactions confirmed",
                    step=LaunchStep.fee_share_txs.value,
                )
            logger.warning(
                f"No fee share config transactions succeeded for presale {presale.id} "
                f"(0/{submitted}); proceeding, launch may fail"
            )

        presale = self.ledger.record_launch_progress(
            presale.id, fee_share_config_key=config.config_key, fee_share_config_shares=shares
        )
        return presale, submitted, confirmed

    async def _submit_config_transactions(self, presale_id: str, transactions: List[str], launcher: Keypair) -> int:
        confirmed = 0
        for index, encoded in enumerate(transactions, start=1):
            try:
                signature = await self.chain.sign_and_send_encoded(encoded, launcher)
            except ExternalServiceError as e:
                logger.error(f"Config tx {index}/{len(transactions)} for presale {presale_id} failed: {e}")
                continue
            logger.info(f"Config tx {index}/{len(transactions)} for presale {presale_id} confirmed: {signature}")
            confirmed += 1
        return confirmed

    async def _request_launch_transaction(self, presale: Presale, launcher: Keypair) -> str:
        initial_buy = presale.total_lamports * self.settings.initial_buy_bps // 10000
        launcher_wallet = str(launcher.pubkey())
        required = initial_buy + self.settings.refund_fee_lamports
        balance = await self.chain.get_balance(launcher_wallet)
        if balance < required:
            logger.error(
                f"Launcher {launcher_wallet} balance {balance} lamports cannot fund initial buy "
                f"of {initial_buy} lamports for presale {presale.id}"
            )
            raise InsufficientEscrowBalanceError(launcher_wallet, balance, required)

        logger.info(f"Creating launch transaction for presale {presale.id}, initial buy {initial_buy} lamports")
        return await self.bags.create_launch_transaction(
            presale.token_metadata, presale.token_mint, launcher_wallet, initial_buy, presale.fee_share_config_key
        )

    # --- Results ---

    def _rejected(self, presale_id: str, error: str, step: Optional[LaunchStep] = LaunchStep.precondition) -> LaunchResult:
        logger.warning(f"Launch of presale {presale_id} rejected: {error}")
        return LaunchResult(success=False, presale_id=presale_id, step=step, error=error)

    def _failed(
        self, presale_id: str, step: LaunchStep, error: Exception, submitted: int = 0, confirmed: int = 0
    ) -> LaunchResult:
        logger.error(f"Launch of presale {presale_id} failed at step {step.value}: {error}")
        presale = self.ledger.record_launch_progress(
            presale_id, last_launch_step=step, last_launch_error=str(error)
        )
        return LaunchResult(
            success=False,
            presale_id=presale_id,
            step=step,
            error=str(error),
            token_mint=presale.token_mint,
            fee_share_config_key=presale.fee_share_config_key,
            config_txs_submitted=submitted,
            config_txs_confirmed=confirmed,
        )
