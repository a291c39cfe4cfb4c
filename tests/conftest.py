import os

# Keep the server's module-level ledger in memory during tests
os.environ.setdefault("PRESALE_DB_PATH", "")

import pytest
from unittest.mock import MagicMock
from solders.keypair import Keypair

from mcp_solana_presale.bags_client import BagsClient, FeeShareConfig, TokenInfo
from mcp_solana_presale.config import LaunchpadSettings
from mcp_solana_presale.launcher import LaunchOrchestrator
from mcp_solana_presale.ledger import PresaleLedger
from mcp_solana_presale.lifecycle import PresaleManager
from mcp_solana_presale.policy import LAMPORTS_PER_SOL, sol_to_lamports
from mcp_solana_presale.solana_utils import SolanaChainClient

TAX_WALLET = "TaxWa11et1111111111111111111111111111111111"
CREATOR_WALLET = "Creator111111111111111111111111111111111111"
START_TIME = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def launcher_keypair():
    return Keypair()


@pytest.fixture
def settings(launcher_keypair):
    launcher = str(launcher_keypair.pubkey())
    return LaunchpadSettings(
        presale_db_path=None,
        tax_wallet=TAX_WALLET,
        launcher_wallet=launcher,
        escrow_wallet=launcher,
        partner_wallet=launcher,
        launcher_private_key=str(launcher_keypair),
        escrow_private_key=str(launcher_keypair),
        bags_api_key="test-api-key",
        tx_lookup_retry_delay_seconds=0.0,
    )


@pytest.fixture
def ledger():
    return PresaleLedger(None)


@pytest.fixture
def chain():
    chain = MagicMock(spec=SolanaChainClient)
    chain.verify_deposit.return_value = None
    chain.verify_launch_fee.return_value = None
    chain.get_balance.return_value = 100 * LAMPORTS_PER_SOL
    chain.send_transfers.return_value = "transfer-sig"
    chain.get_signature_status.return_value = None
    chain.is_blockhash_valid.return_value = True
    chain.sign_and_send_encoded.side_effect = lambda encoded_tx, signer: f"sig-{encoded_tx}"
    return chain


@pytest.fixture
def bags():
    bags = MagicMock(spec=BagsClient)
    bags.create_token_info.return_value = TokenInfo(token_mint="MintAAA", token_metadata="ipfs://metadata")
    bags.create_fee_share_config.return_value = FeeShareConfig(config_key="ConfigKey1", transactions=["cfg-tx-1"])
    bags.create_launch_transaction.return_value = "launch-tx"
    return bags


@pytest.fixture
def orchestrator(ledger, chain, bags, settings, clock):
    return LaunchOrchestrator(ledger, chain, bags, settings, clock=clock)


@pytest.fixture
def manager(ledger, chain, orchestrator, settings, clock):
    return PresaleManager(ledger, chain, orchestrator, settings, clock=clock)


@pytest.fixture
def make_presale(ledger, clock):
    """Store an active presale directly in the ledger."""
    counter = {"n": 0}

    def _make(target_participants: int = 3, duration_minutes: int = 30, **overrides):
        counter["n"] += 1
        now = int(clock())
        fields = dict(
            creator_wallet=CREATOR_WALLET,
            token_name="Test Token",
            token_symbol="TEST",
            description="A test token",
            image_url="https://example.com/token.png",
            min_lamports_per_wallet=sol_to_lamports(0.01),
            max_lamports_per_wallet=sol_to_lamports(0.1),
            target_participants=target_participants,
            duration_minutes=duration_minutes,
            launch_fee_signature=f"launch-fee-{counter['n']}",
            created_at=now,
            expires_at=now + duration_minutes * 60,
        )
        fields.update(overrides)
        return ledger.create(**fields)

    return _make


@pytest.fixture
def add_confirmed(ledger, clock):
    """Record and confirm a deposit without going through verification."""

    def _add(presale_id: str, wallet: str, sol: float, signature: str = None):
        participant = ledger.add_participant(
            presale_id, wallet, sol_to_lamports(sol), signature or f"dep-{presale_id}-{wallet}", int(clock())
        )
        assert participant is not None
        return ledger.confirm_participant(presale_id, wallet)

    return _add
