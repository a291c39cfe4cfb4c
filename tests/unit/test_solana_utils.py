import base64
import json

import base58
import httpx
import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import MessageV0, to_bytes_versioned
from solders.signature import Signature
from solders.system_program import transfer, TransferParams
from solders.transaction import Transaction, VersionedTransaction

from mcp_solana_presale.errors import ExternalServiceError, TransactionFailedError, VerificationError
from mcp_solana_presale.solana_utils import SolanaChainClient

RPC_URL = "https://rpc.test"
DEPOSITOR = "Depositor1111111111111111111111111111111111"
ESCROW = "Escrow1111111111111111111111111111111111111"


class FakeRpc:
    """Answers JSON-RPC calls from a {method: result} table and records what was sent."""

    def __init__(self, results):
        self.results = results
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.calls.append(body)
        result = self.results.get(body["method"])
        if isinstance(result, dict) and "__error__" in result:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": result["__error__"]})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": result})

    def params_for(self, method):
        return [call["params"] for call in self.calls if call["method"] == method]


def make_chain(results, **kwargs):
    rpc = FakeRpc(results)
    options = dict(confirm_interval=0, lookup_retries=1, lookup_retry_delay=0)
    options.update(kwargs)
    return SolanaChainClient(RPC_URL, transport=httpx.MockTransport(rpc), **options), rpc


def tx_result(keys, pre, post, err=None):
    return {
        "meta": {"err": err, "preBalances": pre, "postBalances": post},
        "transaction": {"message": {"accountKeys": keys}},
    }


def deposit_result(amount, err=None):
    fee = 5000
    return tx_result(
        [DEPOSITOR, ESCROW, "11111111111111111111111111111111"],
        [1_000_000_000, 0, 1],
        [1_000_000_000 - amount - fee, amount, 1],
        err=err,
    )


CONFIRMED = {"value": [{"confirmationStatus": "confirmed", "err": None}]}
BLOCKHASH = {"value": {"blockhash": str(Hash.default()), "lastValidBlockHeight": 100}}


# --- reads ---

@pytest.mark.asyncio
async def test_get_transaction_balance_deltas():
    chain, rpc = make_chain({"getTransaction": deposit_result(50_000_000)})

    tx = await chain.get_transaction("sig-1")

    assert tx.success
    assert tx.received_by(ESCROW) == 50_000_000
    assert tx.received_by(DEPOSITOR) == -50_005_000
    assert tx.received_by("Unrelated") == 0
    assert rpc.params_for("getTransaction")[0][1]["maxSupportedTransactionVersion"] == 0


@pytest.mark.asyncio
async def test_get_transaction_not_found_retries_then_returns_none():
    chain, rpc = make_chain({"getTransaction": None}, lookup_retries=2)

    assert await chain.get_transaction_with_retry("sig-1") is None
    assert len(rpc.params_for("getTransaction")) == 3


@pytest.mark.asyncio
async def test_rpc_error_is_external_service_error():
    chain, _ = make_chain({"getBalance": {"__error__": {"code": -32602, "message": "Invalid param"}}})

    with pytest.raises(ExternalServiceError, match="getBalance"):
        await chain.get_balance(ESCROW)


@pytest.mark.asyncio
async def test_get_balance():
    chain, _ = make_chain({"getBalance": {"context": {"slot": 1}, "value": 123_456}})
    assert await chain.get_balance(ESCROW) == 123_456


# --- payment verification ---

@pytest.mark.asyncio
async def test_verify_deposit_accepts_exact_amount():
    chain, _ = make_chain({"getTransaction": deposit_result(50_000_000)})
    tx = await chain.verify_deposit("sig-1", DEPOSITOR, ESCROW, 50_000_000, 1_000_000)
    assert tx.signature == "sig-1"


@pytest.mark.asyncio
async def test_verify_deposit_within_tolerance():
    chain, _ = make_chain({"getTransaction": deposit_result(49_500_000)})
    await chain.verify_deposit("sig-1", DEPOSITOR, ESCROW, 50_000_000, 1_000_000)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "result, depositor, message",
    [
        (None, DEPOSITOR, "Transaction not found"),
        (deposit_result(50_000_000, err={"InstructionError": [0, "Custom"]}), DEPOSITOR, "failed on-chain"),
        (deposit_result(50_000_000), "SomeoneElse", "not paid by wallet SomeoneElse"),
        (tx_result([DEPOSITOR, "Other"], [100_000_000, 0], [40_000_000, 60_000_000]), DEPOSITOR,
         "did not send SOL to escrow wallet"),
        (deposit_result(30_000_000), DEPOSITOR, "Amount mismatch. Expected 0.05 SOL, received 0.0300 SOL"),
    ],
)
async def test_verify_deposit_rejections(result, depositor, message):
    chain, _ = make_chain({"getTransaction": result})

    with pytest.raises(VerificationError, match=message):
        await chain.verify_deposit("sig-1", depositor, ESCROW, 50_000_000, 1_000_000)


@pytest.mark.asyncio
async def test_verify_launch_fee_tolerance():
    launcher = "Launcher11111111111111111111111111111111111"
    short_by_half_percent = tx_result([DEPOSITOR, launcher], [100_000_000, 0], [55_220_000, 44_775_000])
    short_by_two_percent = tx_result([DEPOSITOR, launcher], [100_000_000, 0], [55_895_000, 44_100_000])

    chain, _ = make_chain({"getTransaction": short_by_half_percent})
    await chain.verify_launch_fee("fee-sig", DEPOSITOR, launcher, 45_000_000, 100)

    chain, _ = make_chain({"getTransaction": short_by_two_percent})
    with pytest.raises(VerificationError, match="Insufficient amount"):
        await chain.verify_launch_fee("fee-sig", DEPOSITOR, launcher, 45_000_000, 100)


@pytest.mark.asyncio
async def test_verify_launch_fee_wrong_recipient():
    chain, _ = make_chain({"getTransaction": deposit_result(45_000_000)})
    with pytest.raises(VerificationError, match="does not include launcher wallet"):
        await chain.verify_launch_fee("fee-sig", DEPOSITOR, "Launcher11111111111111111111111111111111111", 45_000_000, 100)


# --- writes ---

@pytest.mark.asyncio
async def test_send_transfers_builds_one_atomic_transaction():
    payer = Keypair()
    tax_wallet = str(Keypair().pubkey())
    wallet = str(Keypair().pubkey())
    chain, rpc = make_chain(
        {"getLatestBlockhash": BLOCKHASH, "sendTransaction": "transfer-sig", "getSignatureStatuses": CONFIRMED}
    )

    signature = await chain.send_transfers(payer, [(tax_wallet, 500_000), (wallet, 9_490_000)])

    assert signature == "transfer-sig"
    (raw, options), = rpc.params_for("sendTransaction")
    assert options["encoding"] == "base64"
    assert options["skipPreflight"] is False
    sent = Transaction.from_bytes(base64.b64decode(raw))
    assert len(sent.message.instructions) == 2
    assert sent.message.recent_blockhash == Hash.default()
    assert sent.message.account_keys[0] == payer.pubkey()


@pytest.mark.asyncio
async def test_send_transfers_failed_on_chain():
    payer = Keypair()
    failed = {"value": [{"confirmationStatus": "confirmed", "err": {"InstructionError": [0, "Custom"]}}]}
    chain, _ = make_chain(
        {"getLatestBlockhash": BLOCKHASH, "sendTransaction": "transfer-sig", "getSignatureStatuses": failed}
    )

    with pytest.raises(TransactionFailedError, match="failed on-chain"):
        await chain.send_transfers(payer, [(str(Keypair().pubkey()), 1_000)])


@pytest.mark.asyncio
async def test_send_transfers_confirmation_timeout():
    payer = Keypair()
    chain, _ = make_chain(
        {"getLatestBlockhash": BLOCKHASH, "sendTransaction": "transfer-sig", "getSignatureStatuses": {"value": [None]}},
        confirm_interval=0.01,
        confirm_timeout=0.03,
    )

    with pytest.raises(TransactionFailedError, match="timed out"):
        await chain.send_transfers(payer, [(str(Keypair().pubkey()), 1_000)])


@pytest.mark.asyncio
async def test_send_transfers_rpc_failure_is_transaction_failure():
    payer = Keypair()
    chain, _ = make_chain({"getLatestBlockhash": {"__error__": {"code": -32005, "message": "Node is behind"}}})

    with pytest.raises(TransactionFailedError, match="Transfer failed"):
        await chain.send_transfers(payer, [(str(Keypair().pubkey()), 1_000)])


@pytest.mark.asyncio
async def test_get_signature_status():
    chain, rpc = make_chain({"getSignatureStatuses": CONFIRMED})

    status = await chain.get_signature_status("sig-1")

    assert status.landed and not status.failed
    assert status.confirmation_status == "confirmed"
    assert rpc.params_for("getSignatureStatuses")[0] == [["sig-1"], {"searchTransactionHistory": True}]


@pytest.mark.asyncio
async def test_get_signature_status_failed_or_unknown():
    failed = {"value": [{"confirmationStatus": "finalized", "err": {"InstructionError": [0, "Custom"]}}]}
    chain, _ = make_chain({"getSignatureStatuses": failed})
    status = await chain.get_signature_status("sig-1")
    assert status.failed and not status.landed

    chain, _ = make_chain({"getSignatureStatuses": {"value": [None]}})
    assert await chain.get_signature_status("sig-1") is None


@pytest.mark.asyncio
async def test_is_blockhash_valid():
    chain, rpc = make_chain({"isBlockhashValid": {"context": {"slot": 1}, "value": False}})

    assert await chain.is_blockhash_valid("hash-1") is False
    assert rpc.params_for("isBlockhashValid")[0] == ["hash-1", {"commitment": "processed"}]

    chain, _ = make_chain({"isBlockhashValid": None})
    with pytest.raises(ExternalServiceError, match="Unexpected response format"):
        await chain.is_blockhash_valid("hash-1")


@pytest.mark.asyncio
async def test_send_transfers_reports_signature_before_submitting():
    payer = Keypair()
    chain, rpc = make_chain(
        {"getLatestBlockhash": BLOCKHASH, "sendTransaction": "transfer-sig", "getSignatureStatuses": {"value": [None]}},
        confirm_interval=0.01,
        confirm_timeout=0.03,
    )
    signed = []

    def on_signed(signature, blockhash):
        signed.append((signature, blockhash, len(rpc.params_for("sendTransaction"))))

    with pytest.raises(TransactionFailedError, match="timed out"):
        await chain.send_transfers(payer, [(str(Keypair().pubkey()), 1_000)], on_signed=on_signed)

    (raw, _), = rpc.params_for("sendTransaction")
    sent = Transaction.from_bytes(base64.b64decode(raw))
    assert signed == [(str(sent.signatures[0]), str(Hash.default()), 0)]


def unsigned_versioned_tx(payer: Keypair) -> str:
    instruction = transfer(TransferParams(from_pubkey=payer.pubkey(), to_pubkey=Keypair().pubkey(), lamports=1_000))
    message = MessageV0.try_compile(payer.pubkey(), [instruction], [], Hash.default())
    tx = VersionedTransaction.populate(message, [Signature.default()])
    return base58.b58encode(bytes(tx)).decode("ascii")


@pytest.mark.asyncio
async def test_sign_and_send_encoded_adds_signature():
    signer = Keypair()
    chain, rpc = make_chain({"sendTransaction": "launch-sig", "getSignatureStatuses": CONFIRMED})

    signature = await chain.sign_and_send_encoded(unsigned_versioned_tx(signer), signer)

    assert signature == "launch-sig"
    (raw, options), = rpc.params_for("sendTransaction")
    assert options["skipPreflight"] is True
    sent = VersionedTransaction.from_bytes(base64.b64decode(raw))
    assert sent.signatures[0] == signer.sign_message(to_bytes_versioned(sent.message))


@pytest.mark.asyncio
async def test_sign_and_send_encoded_wrong_signer():
    chain, rpc = make_chain({})

    with pytest.raises(TransactionFailedError, match="does not expect a signature"):
        await chain.sign_and_send_encoded(unsigned_versioned_tx(Keypair()), Keypair())
    assert rpc.calls == []


@pytest.mark.asyncio
async def test_sign_and_send_encoded_garbage():
    chain, _ = make_chain({})

    with pytest.raises(TransactionFailedError, match="Could not decode transaction"):
        await chain.sign_and_send_encoded("not-base58-0OIl", Keypair())
