import asyncio

import pytest
from unittest.mock import AsyncMock

from mcp_solana_presale.bags_client import TokenInfo
from mcp_solana_presale.errors import (
    AlreadyResolvedError,
    ExternalServiceError,
    InsufficientEscrowBalanceError,
    NotFoundError,
    PreconditionError,
    TransactionFailedError,
    ValidationError,
    VerificationError,
)
from mcp_solana_presale.policy import sol_to_lamports
from mcp_solana_presale.schemas import CreatePresaleRequest, PresaleStatus, SignatureStatus

CREATOR_WALLET = "Creator111111111111111111111111111111111111"


def create_request(**overrides):
    fields = dict(
        creator_wallet="CreatorWallet",
        token_name="Moon Token",
        token_symbol="$moon",
        description="To the moon",
        image_url="https://example.com/moon.png",
        launch_fee_signature="fee-sig-1",
    )
    fields.update(overrides)
    return CreatePresaleRequest(**fields)


def assert_totals_match(ledger, presale_id):
    presale = ledger.get(presale_id)
    active = ledger.get_active_participants(presale_id)
    assert presale.total_lamports == sum(p.amount_lamports for p in active)
    assert presale.participant_count == len(active)
    assert presale.participant_count <= presale.target_participants


# --- create ---

@pytest.mark.asyncio
async def test_create_presale_with_defaults(manager, chain, settings, clock):
    presale = await manager.create(create_request())

    assert presale.status == PresaleStatus.active
    assert presale.token_symbol == "MOON"
    assert presale.target_participants == 68
    assert presale.duration_minutes == 30
    assert presale.expires_at == int(clock()) + 1800
    assert presale.min_lamports_per_wallet == 10_000_000
    assert presale.max_lamports_per_wallet == 100_000_000
    chain.verify_launch_fee.assert_awaited_once_with(
        "fee-sig-1", "CreatorWallet", settings.launcher_wallet, 45_000_000, 100
    )


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"token_name": ""}, "Missing required fields: token_name"),
        ({"launch_fee_signature": ""}, "Launch fee payment required"),
        ({"token_symbol": "ABCDEFGHIJK"}, "10 characters or less"),
        ({"duration_minutes": 15}, "Invalid duration. Must be one of: 10, 20, 30 minutes"),
        ({"target_participants": 0}, "between 1 and 68"),
        ({"target_participants": 69}, "between 1 and 68"),
        ({"min_sol_per_wallet": 0}, "greater than 0"),
        ({"min_sol_per_wallet": 0.5, "max_sol_per_wallet": 0.1}, "at least the minimum"),
    ],
)
async def test_create_validation(manager, chain, ledger, overrides, message):
    with pytest.raises(ValidationError, match=message):
        await manager.create(create_request(**overrides))
    chain.verify_launch_fee.assert_not_awaited()
    assert ledger.list_all() == []


@pytest.mark.asyncio
async def test_create_rejects_reused_launch_fee(manager):
    await manager.create(create_request())
    with pytest.raises(PreconditionError, match="Launch fee signature already used"):
        await manager.create(create_request(token_name="Other"))


@pytest.mark.asyncio
async def test_create_rejects_unverified_launch_fee(manager, chain, ledger):
    chain.verify_launch_fee.side_effect = VerificationError("Transaction does not include launcher wallet")
    with pytest.raises(VerificationError, match="Launch fee verification failed: Transaction does not include"):
        await manager.create(create_request())
    assert ledger.list_all() == []


@pytest.mark.asyncio
async def test_create_rejects_signature_of_a_deposit(manager, chain, ledger, make_presale):
    presale = make_presale()
    await manager.join(presale.id, "WalletA", 0.05, "shared-sig")

    with pytest.raises(PreconditionError, match="Launch fee signature already used"):
        await manager.create(create_request(launch_fee_signature="shared-sig"))

    chain.verify_launch_fee.assert_not_awaited()
    assert [p.id for p in ledger.list_all()] == [presale.id]


@pytest.mark.asyncio
async def test_create_rechecks_signature_after_verification(manager, chain, ledger, make_presale):
    presale = make_presale()

    async def deposit_lands_first(signature, *args):
        ledger.add_participant(presale.id, "WalletA", sol_to_lamports(0.05), signature, 0)

    chain.verify_launch_fee.side_effect = deposit_lands_first

    with pytest.raises(PreconditionError, match="Launch fee signature already used"):
        await manager.create(create_request(launch_fee_signature="shared-sig"))
    assert len(ledger.list_all()) == 1


# --- join ---

@pytest.mark.asyncio
async def test_join_records_verified_deposit(manager, ledger, chain, settings, make_presale):
    presale = make_presale(target_participants=3)

    result = await manager.join(presale.id, "WalletA", 0.05, "dep-1")

    assert result.position == 1
    assert result.total_lamports == 50_000_000
    assert not result.is_full
    assert result.launch is None
    chain.verify_deposit.assert_awaited_once_with("dep-1", "WalletA", settings.escrow_wallet, 50_000_000, 1_000_000)
    assert ledger.get_unresolved_participant(presale.id, "WalletA").confirmed
    assert_totals_match(ledger, presale.id)


@pytest.mark.asyncio
async def test_join_rejections(manager, ledger, chain, make_presale):
    presale = make_presale(target_participants=3)
    await manager.join(presale.id, "WalletA", 0.05, "dep-1")

    with pytest.raises(PreconditionError, match="Creator cannot join"):
        await manager.join(presale.id, presale.creator_wallet, 0.05, "dep-2")
    with pytest.raises(PreconditionError, match="already joined"):
        await manager.join(presale.id, "WalletA", 0.05, "dep-3")
    with pytest.raises(ValidationError, match="below minimum of 0.01 SOL"):
        await manager.join(presale.id, "WalletB", 0.005, "dep-4")
    with pytest.raises(ValidationError, match="above maximum of 0.1 SOL"):
        await manager.join(presale.id, "WalletB", 0.2, "dep-5")
    with pytest.raises(PreconditionError, match="Deposit already claimed"):
        await manager.join(presale.id, "WalletB", 0.05, "dep-1")
    with pytest.raises(NotFoundError):
        await manager.join("PS0000NONE", "WalletB", 0.05, "dep-6")

    assert chain.verify_deposit.await_count == 1
    assert ledger.get(presale.id).participant_count == 1


@pytest.mark.asyncio
async def test_join_rejects_failed_verification(manager, ledger, chain, make_presale):
    presale = make_presale()
    chain.verify_deposit.side_effect = VerificationError("Transaction did not send SOL to escrow wallet")

    with pytest.raises(VerificationError, match="escrow wallet"):
        await manager.join(presale.id, "WalletA", 0.05, "dep-1")

    assert ledger.get_latest_participation(presale.id, "WalletA") is None
    assert not ledger.is_signature_used("dep-1")


@pytest.mark.asyncio
async def test_join_rejects_signature_of_a_launch_fee(manager, ledger, chain, make_presale):
    presale = make_presale()

    with pytest.raises(PreconditionError, match="Deposit already claimed"):
        await manager.join(presale.id, "WalletA", 0.05, presale.launch_fee_signature)

    chain.verify_deposit.assert_not_awaited()
    stored = ledger.get(presale.id)
    assert stored.total_lamports == 0 and stored.participant_count == 0


@pytest.mark.asyncio
async def test_join_rechecks_signature_under_lock(manager, ledger, chain, make_presale):
    presale = make_presale()

    async def launch_fee_lands_first(signature, *args):
        make_presale(launch_fee_signature=signature)

    chain.verify_deposit.side_effect = launch_fee_lands_first

    with pytest.raises(PreconditionError, match="Deposit already claimed"):
        await manager.join(presale.id, "WalletA", 0.05, "shared-sig")

    assert ledger.get_latest_participation(presale.id, "WalletA") is None
    assert ledger.get(presale.id).total_lamports == 0


@pytest.mark.asyncio
async def test_join_after_expiry_fails_presale(manager, ledger, make_presale, clock):
    presale = make_presale(duration_minutes=10)
    clock.advance(601)

    with pytest.raises(PreconditionError, match="Presale has expired"):
        await manager.join(presale.id, "WalletA", 0.05, "dep-1")
    assert ledger.get(presale.id).status == PresaleStatus.failed


@pytest.mark.asyncio
async def test_join_that_fills_presale_launches(manager, ledger, bags, make_presale):
    presale = make_presale(target_participants=2)
    await manager.join(presale.id, "WalletA", 0.09, "dep-1")

    result = await manager.join(presale.id, "WalletB", 0.01, "dep-2")

    assert result.is_full
    assert result.launch_triggered
    assert result.launch.token_mint == "MintAAA"
    assert ledger.get(presale.id).status == PresaleStatus.launched
    assert bags.create_fee_share_config.await_args.args[3] == [500, 8550, 950]

    with pytest.raises(PreconditionError, match="Presale is launched, cannot join"):
        await manager.join(presale.id, "WalletC", 0.05, "dep-3")


@pytest.mark.asyncio
async def test_launch_failure_does_not_undo_join(manager, ledger, bags, make_presale):
    presale = make_presale(target_participants=1)
    bags.create_token_info.side_effect = ExternalServiceError("service down", step="metadata")

    result = await manager.join(presale.id, "WalletA", 0.05, "dep-1")

    assert result.is_full
    assert not result.launch_triggered
    assert result.launch.error == "service down"
    stored = ledger.get(presale.id)
    assert stored.status == PresaleStatus.active
    assert stored.participant_count == 1

    # Manual retry resumes and succeeds
    bags.create_token_info.side_effect = None
    retry = await manager.launch(presale.id)
    assert retry.success
    assert ledger.get(presale.id).status == PresaleStatus.launched


@pytest.mark.asyncio
async def test_unexpected_launch_exception_does_not_undo_join(manager, ledger, make_presale):
    presale = make_presale(target_participants=1)
    manager.orchestrator.run = AsyncMock(side_effect=RuntimeError("boom"))

    result = await manager.join(presale.id, "WalletA", 0.05, "dep-1")

    assert result.launch is not None
    assert not result.launch.success
    assert result.launch.error == "boom"
    assert ledger.get(presale.id).participant_count == 1


@pytest.mark.asyncio
async def test_verified_deposit_losing_last_slot_is_rejected(manager, ledger, chain, make_presale, add_confirmed):
    presale = make_presale(target_participants=1)

    async def someone_else_fills(*args, **kwargs):
        add_confirmed(presale.id, "WalletFast", 0.05)

    chain.verify_deposit.side_effect = someone_else_fills

    with pytest.raises(PreconditionError, match="Presale is full"):
        await manager.join(presale.id, "WalletSlow", 0.05, "dep-slow")

    assert ledger.get_latest_participation(presale.id, "WalletSlow") is None
    assert ledger.get(presale.id).participant_count == 1


@pytest.mark.asyncio
async def test_concurrent_joins_never_exceed_target(manager, ledger, chain, make_presale):
    presale = make_presale(target_participants=2)

    async def slow_verify(*args, **kwargs):
        await asyncio.sleep(0)

    chain.verify_deposit.side_effect = slow_verify

    results = await asyncio.gather(
        *[manager.join(presale.id, f"Wallet{i}", 0.05, f"dep-{i}") for i in range(5)],
        return_exceptions=True,
    )

    joined = [r for r in results if not isinstance(r, Exception)]
    assert len(joined) == 2
    assert sum(1 for r in joined if r.launch is not None) == 1
    assert all(isinstance(r, PreconditionError) for r in results if isinstance(r, Exception))
    assert_totals_match(ledger, presale.id)


# --- withdraw / refund ---

@pytest.mark.asyncio
async def test_withdraw_pays_tax_and_returns_rest(manager, ledger, chain, settings, make_presale):
    presale = make_presale(target_participants=3)
    await manager.join(presale.id, "WalletA", 0.1, "dep-1")
    await manager.join(presale.id, "WalletB", 0.05, "dep-2")

    receipt = await manager.withdraw(presale.id, "WalletA")

    assert receipt.kind == "withdrawal"
    assert receipt.tax_lamports == 5_000_000
    assert receipt.returned_lamports == 95_000_000
    assert receipt.tax_lamports + receipt.returned_lamports == receipt.gross_lamports
    assert receipt.paid_lamports == 95_000_000 - 10_000
    payer, transfers = chain.send_transfers.await_args.args
    assert transfers == [(settings.tax_wallet, 5_000_000), ("WalletA", 94_990_000)]

    stored = ledger.get(presale.id)
    assert stored.total_lamports == 50_000_000
    assert stored.participant_count == 1
    assert ledger.get_latest_participation(presale.id, "WalletA").withdraw_tax_lamports == 5_000_000
    assert_totals_match(ledger, presale.id)


@pytest.mark.asyncio
async def test_repeated_withdraw_reports_prior_settlement(manager, chain, make_presale):
    presale = make_presale()
    await manager.join(presale.id, "WalletA", 0.05, "dep-1")
    chain.send_transfers.return_value = "withdraw-sig"
    await manager.withdraw(presale.id, "WalletA")

    with pytest.raises(AlreadyResolvedError) as exc_info:
        await manager.withdraw(presale.id, "WalletA")

    assert str(exc_info.value) == "Already withdrawn"
    assert exc_info.value.details() == {"resolution": "withdrawn", "settlement_signature": "withdraw-sig"}
    assert chain.send_transfers.await_count == 1


@pytest.mark.asyncio
async def test_concurrent_withdrawals_pay_once(manager, chain, make_presale):
    presale = make_presale()
    await manager.join(presale.id, "WalletA", 0.05, "dep-1")

    async def slow_transfer(*args, **kwargs):
        await asyncio.sleep(0)
        return "withdraw-sig"

    chain.send_transfers.side_effect = slow_transfer

    results = await asyncio.gather(
        manager.withdraw(presale.id, "WalletA"),
        manager.withdraw(presale.id, "WalletA"),
        return_exceptions=True,
    )

    assert sum(1 for r in results if isinstance(r, AlreadyResolvedError)) == 1
    assert chain.send_transfers.await_count == 1


@pytest.mark.asyncio
async def test_rejoin_after_withdrawal(manager, ledger, make_presale):
    presale = make_presale()
    await manager.join(presale.id, "WalletA", 0.05, "dep-1")
    await manager.withdraw(presale.id, "WalletA")

    result = await manager.join(presale.id, "WalletA", 0.02, "dep-2")

    assert result.participant_count == 1
    assert ledger.get(presale.id).total_lamports == 20_000_000
    assert_totals_match(ledger, presale.id)


@pytest.mark.asyncio
async def test_withdraw_with_short_escrow_moves_nothing(manager, ledger, chain, make_presale):
    presale = make_presale()
    await manager.join(presale.id, "WalletA", 0.05, "dep-1")
    chain.get_balance.return_value = 1_000

    with pytest.raises(InsufficientEscrowBalanceError):
        await manager.withdraw(presale.id, "WalletA")

    chain.send_transfers.assert_not_awaited()
    assert ledger.get_unresolved_participant(presale.id, "WalletA") is not None
    assert ledger.get(presale.id).total_lamports == 50_000_000


@pytest.mark.asyncio
async def test_withdraw_from_failed_presale_is_rejected(manager, make_presale, clock):
    presale = make_presale(duration_minutes=10)
    await manager.join(presale.id, "WalletA", 0.05, "dep-1")
    clock.advance(601)

    with pytest.raises(PreconditionError, match="request a refund instead"):
        await manager.withdraw(presale.id, "WalletA")


@pytest.mark.asyncio
async def test_withdraw_unknown_wallet(manager, make_presale):
    presale = make_presale()
    with pytest.raises(NotFoundError, match="did not participate"):
        await manager.withdraw(presale.id, "Stranger")


@pytest.mark.asyncio
async def test_refund_after_expiry(manager, ledger, chain, make_presale, clock):
    presale = make_presale(duration_minutes=10)
    await manager.join(presale.id, "WalletA", 0.05, "dep-1")
    await manager.join(presale.id, "WalletB", 0.02, "dep-2")
    clock.advance(601)

    chain.send_transfers.return_value = "refund-sig"
    receipt = await manager.refund(presale.id, "WalletA")

    assert receipt.kind == "refund"
    assert receipt.tax_lamports == 0
    assert receipt.paid_lamports == 50_000_000 - 5_000
    assert chain.send_transfers.await_args.args[1] == [("WalletA", 49_995_000)]
    stored = ledger.get(presale.id)
    assert stored.status == PresaleStatus.refunding
    assert stored.total_lamports == 20_000_000

    second = await manager.refund(presale.id, "WalletB")
    assert second.paid_lamports == 20_000_000 - 5_000
    assert ledger.get(presale.id).status == PresaleStatus.refunding

    with pytest.raises(AlreadyResolvedError) as exc_info:
        await manager.refund(presale.id, "WalletA")
    assert exc_info.value.settlement_signature == "refund-sig"
    assert exc_info.value.kind == "refunded"


@pytest.mark.asyncio
async def test_refund_requires_failed_presale(manager, make_presale):
    presale = make_presale()
    await manager.join(presale.id, "WalletA", 0.05, "dep-1")
    with pytest.raises(PreconditionError, match="only available for failed presales"):
        await manager.refund(presale.id, "WalletA")


@pytest.mark.asyncio
async def test_refund_with_short_escrow(manager, ledger, chain, make_presale, clock):
    presale = make_presale(duration_minutes=10)
    await manager.join(presale.id, "WalletA", 0.05, "dep-1")
    clock.advance(601)
    chain.get_balance.return_value = 0

    with pytest.raises(InsufficientEscrowBalanceError) as exc_info:
        await manager.refund(presale.id, "WalletA")

    assert exc_info.value.details()["required_lamports"] == 50_000_000
    assert ledger.get(presale.id).status == PresaleStatus.failed


def timed_out_after_signing(signature="sig-1", blockhash="hash-1"):
    async def send(payer, transfers, on_signed=None):
        on_signed(signature, blockhash)
        raise TransactionFailedError("Transaction confirmation timed out")
    return send


@pytest.mark.asyncio
async def test_unconfirmed_withdrawal_is_remembered(manager, ledger, chain, make_presale):
    presale = make_presale()
    await manager.join(presale.id, "WalletA", 0.05, "dep-1")
    chain.send_transfers.side_effect = timed_out_after_signing()

    with pytest.raises(TransactionFailedError, match="timed out"):
        await manager.withdraw(presale.id, "WalletA")

    participant = ledger.get_unresolved_participant(presale.id, "WalletA")
    assert participant.pending_settlement_kind == "withdrawal"
    assert participant.pending_settlement_signature == "sig-1"
    assert participant.pending_settlement_blockhash == "hash-1"
    assert ledger.get(presale.id).total_lamports == 50_000_000


@pytest.mark.asyncio
async def test_withdrawal_that_landed_after_timeout_is_not_paid_twice(manager, ledger, chain, make_presale):
    presale = make_presale()
    await manager.join(presale.id, "WalletA", 0.05, "dep-1")
    chain.send_transfers.side_effect = timed_out_after_signing()
    with pytest.raises(TransactionFailedError):
        await manager.withdraw(presale.id, "WalletA")

    chain.get_signature_status.return_value = SignatureStatus(signature="sig-1", confirmation_status="confirmed")
    receipt = await manager.withdraw(presale.id, "WalletA")

    assert receipt.signature == "sig-1"
    assert receipt.kind == "withdrawal"
    assert receipt.tax_lamports == 2_500_000
    assert chain.send_transfers.await_count == 1
    chain.get_signature_status.assert_awaited_once_with("sig-1")
    latest = ledger.get_latest_participation(presale.id, "WalletA")
    assert latest.withdrawn and latest.withdraw_signature == "sig-1"
    assert latest.pending_settlement_signature is None
    assert ledger.get(presale.id).total_lamports == 0

    with pytest.raises(AlreadyResolvedError):
        await manager.withdraw(presale.id, "WalletA")


@pytest.mark.asyncio
async def test_withdrawal_still_in_flight_blocks_retry(manager, ledger, chain, make_presale):
    presale = make_presale()
    await manager.join(presale.id, "WalletA", 0.05, "dep-1")
    chain.send_transfers.side_effect = timed_out_after_signing()
    with pytest.raises(TransactionFailedError):
        await manager.withdraw(presale.id, "WalletA")

    with pytest.raises(PreconditionError, match="Previous withdrawal sig-1 is still awaiting confirmation"):
        await manager.withdraw(presale.id, "WalletA")

    chain.is_blockhash_valid.assert_awaited_with("hash-1")
    assert chain.send_transfers.await_count == 1
    assert ledger.get_unresolved_participant(presale.id, "WalletA").pending_settlement_signature == "sig-1"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, blockhash_valid",
    [
        (SignatureStatus(signature="sig-1", error="InstructionError"), True),
        (None, False),
    ],
)
async def test_withdrawal_that_never_landed_is_sent_again(
    manager, ledger, chain, make_presale, status, blockhash_valid
):
    presale = make_presale()
    await manager.join(presale.id, "WalletA", 0.05, "dep-1")
    chain.send_transfers.side_effect = timed_out_after_signing()
    with pytest.raises(TransactionFailedError):
        await manager.withdraw(presale.id, "WalletA")

    chain.get_signature_status.return_value = status
    chain.is_blockhash_valid.return_value = blockhash_valid
    chain.send_transfers.side_effect = None
    chain.send_transfers.return_value = "sig-2"
    receipt = await manager.withdraw(presale.id, "WalletA")

    assert receipt.signature == "sig-2"
    assert chain.send_transfers.await_count == 2
    assert ledger.get_latest_participation(presale.id, "WalletA").withdraw_signature == "sig-2"


@pytest.mark.asyncio
async def test_refund_that_landed_after_timeout_is_settled(manager, ledger, chain, make_presale, clock):
    presale = make_presale(duration_minutes=10)
    await manager.join(presale.id, "WalletA", 0.05, "dep-1")
    clock.advance(601)
    chain.send_transfers.side_effect = timed_out_after_signing("refund-1", "hash-9")
    with pytest.raises(TransactionFailedError):
        await manager.refund(presale.id, "WalletA")
    assert ledger.get(presale.id).status == PresaleStatus.failed

    chain.get_signature_status.return_value = SignatureStatus(signature="refund-1", confirmation_status="finalized")
    receipt = await manager.refund(presale.id, "WalletA")

    assert receipt.signature == "refund-1"
    assert receipt.paid_lamports == 50_000_000 - 5_000
    assert chain.send_transfers.await_count == 1
    assert ledger.get(presale.id).status == PresaleStatus.refunding
    assert ledger.get_latest_participation(presale.id, "WalletA").refund_signature == "refund-1"


# --- quotes and reads ---

@pytest.mark.asyncio
async def test_quote_exit_active_and_failed(manager, settings, make_presale, clock):
    presale = make_presale(duration_minutes=10)
    await manager.join(presale.id, "WalletA", 0.1, "dep-1")

    quote = manager.quote_exit(presale.id, "WalletA")
    assert quote.kind == "withdrawal"
    assert quote.tax_lamports == 5_000_000
    assert quote.return_lamports == 94_990_000
    assert quote.tax_wallet == settings.tax_wallet

    clock.advance(601)
    quote = manager.quote_exit(presale.id, "WalletA")
    assert quote.kind == "refund"
    assert quote.presale_status == PresaleStatus.failed
    assert quote.tax_lamports == 0
    assert quote.return_lamports == 99_995_000


@pytest.mark.asyncio
async def test_get_view(manager, settings, make_presale, clock):
    presale = make_presale(target_participants=2, duration_minutes=20)
    await manager.join(presale.id, "WalletA", 0.05, "dep-1")
    clock.advance(60)

    view = await manager.get(presale.id)
    assert view.can_join and not view.can_refund and not view.is_full
    assert view.time_remaining_seconds == 1140
    assert view.escrow_wallet == settings.escrow_wallet
    assert [p.wallet for p in view.participants] == ["WalletA"]

    clock.advance(1200)
    view = await manager.get(presale.id)
    assert view.presale.status == PresaleStatus.failed
    assert not view.can_join and view.can_refund
    assert view.time_remaining_seconds == 0


@pytest.mark.asyncio
async def test_get_view_includes_market_data_for_launched_token(manager, make_presale):
    presale = make_presale(target_participants=1)
    await manager.join(presale.id, "WalletA", 0.05, "dep-1")
    market = AsyncMock()
    market.get_token_market.return_value = None
    manager.market = market

    view = await manager.get(presale.id, include_market=True)

    market.get_token_market.assert_awaited_once_with("MintAAA")
    assert view.market is None


@pytest.mark.asyncio
async def test_get_participation(manager, make_presale):
    presale = make_presale()
    assert manager.get_participation(presale.id, "WalletA") is None
    await manager.join(presale.id, "WalletA", 0.05, "dep-1")
    assert manager.get_participation(presale.id, "WalletA").amount_lamports == sol_to_lamports(0.05)


def test_list_and_stats_reconcile_expired(manager, make_presale, clock):
    expiring = make_presale(duration_minutes=10)
    lasting = make_presale(duration_minutes=30)
    clock.advance(601)

    assert [p.id for p in manager.list_presales("active")] == [lasting.id]
    assert [p.id for p in manager.list_presales("failed")] == [expiring.id]
    assert len(manager.list_presales("all")) == 2

    stats = manager.stats()
    assert stats.total == 2 and stats.active == 1 and stats.failed == 1


def test_list_rejects_unknown_filter(manager):
    with pytest.raises(ValidationError, match="Invalid filter"):
        manager.list_presales("pending")


@pytest.mark.asyncio
async def test_launch_unknown_presale(manager):
    with pytest.raises(NotFoundError):
        await manager.launch("PS0000NONE")


@pytest.mark.asyncio
async def test_launch_expired_presale_is_rejected(manager, ledger, make_presale, clock, bags):
    presale = make_presale(target_participants=2, duration_minutes=10)
    await manager.join(presale.id, "WalletA", 0.05, "dep-1")
    clock.advance(601)

    result = await manager.launch(presale.id)

    assert not result.success
    assert "failed" in result.error
    bags.create_token_info.assert_not_awaited()


@pytest.mark.asyncio
async def test_force_launch_disabled_by_default(manager, ledger, make_presale, bags):
    presale = make_presale(target_participants=3)
    await manager.join(presale.id, "WalletA", 0.05, "dep-1")

    with pytest.raises(PreconditionError, match="Forced launches are disabled"):
        await manager.launch(presale.id, force=True, requested_by=CREATOR_WALLET)

    bags.create_token_info.assert_not_awaited()
    assert ledger.get(presale.id).status == PresaleStatus.active


@pytest.mark.asyncio
async def test_force_launch_restricted_to_creator_and_launcher(manager, ledger, settings, make_presale, bags):
    settings.allow_force_launch = True
    presale = make_presale(target_participants=3)
    await manager.join(presale.id, "WalletA", 0.05, "dep-1")

    for requester in ("WalletA", None):
        with pytest.raises(PreconditionError, match="Only the presale creator or the launcher wallet"):
            await manager.launch(presale.id, force=True, requested_by=requester)
    bags.create_token_info.assert_not_awaited()

    result = await manager.launch(presale.id, force=True, requested_by=CREATOR_WALLET)

    assert result.success
    assert ledger.get(presale.id).status == PresaleStatus.launched


@pytest.mark.asyncio
async def test_launcher_wallet_can_force_launch(manager, ledger, settings, make_presale):
    settings.allow_force_launch = True
    presale = make_presale(target_participants=3)
    await manager.join(presale.id, "WalletA", 0.05, "dep-1")

    result = await manager.launch(presale.id, force=True, requested_by=settings.launcher_wallet)

    assert result.success


@pytest.mark.asyncio
async def test_lock_released_after_manual_launch(manager, bags, make_presale):
    presale = make_presale(target_participants=1)
    bags.create_token_info.side_effect = [
        ExternalServiceError("service down", step="metadata"),
        TokenInfo(token_mint="MintAAA", token_metadata="ipfs://metadata"),
    ]
    await manager.join(presale.id, "WalletA", 0.05, "dep-1")
    # The failed auto-launch leaves the presale active and its lock in place
    assert presale.id in manager._locks

    result = await manager.launch(presale.id)

    assert result.success
    assert presale.id not in manager._locks


@pytest.mark.asyncio
async def test_lock_released_after_auto_launch(manager, make_presale):
    presale = make_presale(target_participants=2)
    await manager.join(presale.id, "WalletA", 0.05, "dep-1")
    assert presale.id in manager._locks

    result = await manager.join(presale.id, "WalletB", 0.05, "dep-2")

    assert result.launch_triggered
    assert presale.id not in manager._locks
