import asyncio
import base64
from typing import Any, Callable, List, Optional, Sequence, Tuple

import base58
import httpx
from solders.errors import BincodeError
from solders.hash import Hash as Blockhash
from solders.keypair import Keypair
from solders.message import to_bytes_versioned
from solders.pubkey import Pubkey
from solders.system_program import transfer, TransferParams
from solders.transaction import Transaction, VersionedTransaction

from mcp_solana_presale.config import LaunchpadSettings
from mcp_solana_presale.errors import (
    ExternalServiceError,
    TransactionFailedError,
    VerificationError,
)
from mcp_solana_presale.policy import lamports_to_sol
from mcp_solana_presale.schemas import SignatureStatus, TransactionInfo
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)


class SolanaChainClient:
    """
    Chain reader and writer over Solana JSON-RPC.

    Reads (transactions, balances) back payment verification and escrow balance checks;
    writes sign with a local keypair, submit, and poll getSignatureStatuses until the
    transaction is confirmed or the timeout passes.
    """

    def __init__(
        self,
        rpc_endpoint: str,
        timeout: float = 10.0,
        confirm_timeout: float = 60.0,
        confirm_interval: float = 2.0,
        lookup_retries: int = 1,
        lookup_retry_delay: float = 3.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.rpc_endpoint = rpc_endpoint
        self._timeout = timeout
        self._confirm_timeout = confirm_timeout
        self._confirm_interval = confirm_interval
        self._lookup_retries = lookup_retries
        self._lookup_retry_delay = lookup_retry_delay
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: LaunchpadSettings) -> "SolanaChainClient":
        return cls(
            settings.rpc_endpoint,
            timeout=settings.http_timeout_seconds,
            confirm_timeout=settings.tx_confirm_timeout_seconds,
            confirm_interval=settings.tx_confirm_interval_seconds,
            lookup_retries=settings.tx_lookup_retries,
            lookup_retry_delay=settings.tx_lookup_retry_delay_seconds,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self._timeout, connect=5.0),
            transport=self._transport,
        )

    async def _rpc(self, client: httpx.AsyncClient, method: str, params: List[Any]) -> Any:
        try:
            resp = await client.post(
                self.rpc_endpoint,
                json={"jsonrpc": "2.0", "id": 1, "method": method, "params": params},
            )
            resp.raise_for_status()
            data = resp.json()
        except httpx.TimeoutException:
            logger.error(f"Timeout calling {method}")
            raise ExternalServiceError(f"Solana RPC timeout on {method}")
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error calling {method}: {e.response.status_code} - {e.response.text}")
            raise ExternalServiceError(f"Solana RPC HTTP error on {method}: {e.response.status_code}")
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Error calling {method}: {e}")
            raise ExternalServiceError(f"Solana RPC error on {method}: {e}")

        if data.get("error"):
            raise ExternalServiceError(f"Solana RPC error on {method}: {data['error']}")
        return data.get("result")

    # --- Reads ---

    async def get_transaction(self, signature: str) -> Optional[TransactionInfo]:
        """Fetch a confirmed transaction, or None if the cluster does not know it yet."""
        async with self._client() as client:
            result = await self._rpc(
                client,
                "getTransaction",
                [
                    signature,
                    {"encoding": "json", "commitment": "confirmed", "maxSupportedTransactionVersion": 0},
                ],
            )
        if not result:
            return None

        try:
            meta = result.get("meta") or {}
            account_keys = list(result["transaction"]["message"]["accountKeys"])
            loaded = meta.get("loadedAddresses") or {}
            account_keys += loaded.get("writable", []) + loaded.get("readonly", [])
            pre_balances = meta.get("preBalances") or []
            post_balances = meta.get("postBalances") or []
        except (KeyError, TypeError) as e:
            logger.error(f"Malformed transaction data for {signature}: {e}")
            raise ExternalServiceError(f"Malformed transaction data received for {signature}")

        deltas = {}
        for index, key in enumerate(account_keys):
            if index < len(pre_balances) and index < len(post_balances):
                deltas[key] = deltas.get(key, 0) + post_balances[index] - pre_balances[index]

        err = meta.get("err")
        return TransactionInfo(
            signature=signature,
            success=err is None,
            error=str(err) if err is not None else None,
            account_keys=account_keys,
            balance_deltas=deltas,
        )

    async def get_transaction_with_retry(self, signature: str) -> Optional[TransactionInfo]:
        """get_transaction with a bounded wait-and-retry for not-yet-confirmed signatures."""
        tx = await self.get_transaction(signature)
        attempt = 0
        while tx is None and attempt < self._lookup_retries:
            attempt += 1
            logger.info(f"Transaction {signature} not found, waiting {self._lookup_retry_delay}s (retry {attempt})")
            await asyncio.sleep(self._lookup_retry_delay)
            tx = await self.get_transaction(signature)
        return tx

    async def get_balance(self, pubkey: str) -> int:
        """Balance of an account in lamports."""
        async with self._client() as client:
            result = await self._rpc(client, "getBalance", [pubkey, {"commitment": "confirmed"}])
        try:
            return int(result["value"])
        except (KeyError, TypeError, ValueError):
            raise ExternalServiceError(f"Unexpected response format for balance of {pubkey}")

    async def get_signature_status(self, signature: str) -> Optional[SignatureStatus]:
        """Status of a submitted transaction, or None if the cluster has not seen it."""
        async with self._client() as client:
            result = await self._rpc(
                client, "getSignatureStatuses", [[signature], {"searchTransactionHistory": True}]
            )
        status = ((result or {}).get("value") or [None])[0]
        if not status:
            return None
        err = status.get("err")
        return SignatureStatus(
            signature=signature,
            confirmation_status=status.get("confirmationStatus"),
            error=str(err) if err is not None else None,
        )

    async def is_blockhash_valid(self, blockhash: str) -> bool:
        """False once no transaction built on this blockhash can land any more."""
        async with self._client() as client:
            result = await self._rpc(client, "isBlockhashValid", [blockhash, {"commitment": "processed"}])
        try:
            return bool(result["value"])
        except (KeyError, TypeError):
            raise ExternalServiceError(f"Unexpected response format for blockhash {blockhash}")

    # --- Payment verification ---

    async def _fetch_verified(self, signature: str, payer: str) -> TransactionInfo:
        tx = await self.get_transaction_with_retry(signature)
        if tx is None:
            raise VerificationError("Transaction not found. Please wait for confirmation and try again.")
        if not tx.success:
            raise VerificationError(f"Transaction failed on-chain: {tx.error}")
        if payer not in tx.account_keys or tx.received_by(payer) >= 0:
            raise VerificationError(f"Transaction was not paid by wallet {payer}")
        return tx

    async def verify_deposit(
        self, signature: str, depositor: str, escrow_wallet: str, expected_lamports: int, tolerance_lamports: int
    ) -> TransactionInfo:
        """
        Check that a deposit moved the claimed amount from the depositor into the escrow.

        Raises:
            VerificationError: If the transaction is missing, failed, or the escrow did not
                receive the claimed amount within the tolerance.
        """
        tx = await self._fetch_verified(signature, depositor)
        if escrow_wallet not in tx.account_keys:
            raise VerificationError("Transaction did not send SOL to escrow wallet")
        received = tx.received_by(escrow_wallet)
        if abs(received - expected_lamports) > tolerance_lamports:
            raise VerificationError(
                f"Amount mismatch. Expected {lamports_to_sol(expected_lamports)} SOL, "
                f"received {lamports_to_sol(received):.4f} SOL"
            )
        logger.info(f"Verified deposit {signature}: {lamports_to_sol(received)} SOL from {depositor}")
        return tx

    async def verify_launch_fee(
        self, signature: str, creator: str, launcher_wallet: str, fee_lamports: int, tolerance_bps: int
    ) -> TransactionInfo:
        """
        Check that the creator paid the launch fee to the launcher wallet.

        Raises:
            VerificationError: If the payment is missing, failed, or short by more than
                tolerance_bps.
        """
        tx = await self._fetch_verified(signature, creator)
        if launcher_wallet not in tx.account_keys:
            raise VerificationError("Transaction does not include launcher wallet")
        received = tx.received_by(launcher_wallet)
        minimum = fee_lamports * (10000 - tolerance_bps) // 10000
        if received < minimum:
            raise VerificationError(
                f"Insufficient amount. Expected {lamports_to_sol(fee_lamports)} SOL, "
                f"received {lamports_to_sol(received)} SOL"
            )
        logger.info(f"Verified launch fee {signature} from {creator}")
        return tx

    # --- Writes ---

    async def _latest_blockhash(self, client: httpx.AsyncClient) -> Blockhash:
        result = await self._rpc(client, "getLatestBlockhash", [{"commitment": "finalized"}])
        try:
            return Blockhash.from_string(result["value"]["blockhash"])
        except (KeyError, TypeError, ValueError):
            raise ExternalServiceError("Unexpected response format for latest blockhash")

    async def _submit_and_confirm(self, client: httpx.AsyncClient, raw_tx: bytes, skip_preflight: bool) -> str:
        signature = await self._rpc(
            client,
            "sendTransaction",
            [
                base64.b64encode(raw_tx).decode("ascii"),
                {"encoding": "base64", "skipPreflight": skip_preflight, "preflightCommitment": "confirmed"},
            ],
        )
        if not isinstance(signature, str):
            raise TransactionFailedError("sendTransaction returned no signature")
        logger.info(f"Sent transaction {signature}")
        await self._wait_for_confirmation(client, signature)
        return signature

    async def _wait_for_confirmation(self, client: httpx.AsyncClient, signature: str) -> None:
        elapsed = 0.0
        while elapsed < self._confirm_timeout:
            await asyncio.sleep(self._confirm_interval)
            elapsed += self._confirm_interval
            try:
                result = await self._rpc(
                    client, "getSignatureStatuses", [[signature], {"searchTransactionHistory": True}]
                )
            except ExternalServiceError as e:
                logger.error(f"Error checking status for transaction {signature}: {e}")
                continue
            status = ((result or {}).get("value") or [None])[0]
            if not status:
                continue
            if status.get("err") is not None:
                logger.error(f"Transaction {signature} failed on-chain: {status['err']}")
                raise TransactionFailedError(f"Transaction {signature} failed on-chain: {status['err']}")
            if status.get("confirmationStatus") in ("confirmed", "finalized"):
                logger.info(f"Transaction {signature} confirmed")
                return
        logger.warning(f"Transaction {signature} confirmation timed out")
        raise TransactionFailedError(f"Transaction {signature} confirmation timed out")

    async def send_transfers(
        self,
        payer: Keypair,
        transfers: Sequence[Tuple[str, int]],
        on_signed: Optional[Callable[[str, str], None]] = None,
    ) -> str:
        """
        Send every (recipient, lamports) transfer from payer in one transaction.

        The transfers land together or not at all. on_signed(signature, blockhash) is called
        once the transaction is signed and before it is submitted, so a caller can record
        a payout that may land even if this call later fails.

        Raises:
            TransactionFailedError: If the transaction fails or is not confirmed in time.
        """
        instructions = [
            transfer(TransferParams(from_pubkey=payer.pubkey(), to_pubkey=Pubkey.from_string(to), lamports=lamports))
            for to, lamports in transfers
        ]
        async with self._client() as client:
            try:
                blockhash = await self._latest_blockhash(client)
                txn = Transaction.new_signed_with_payer(instructions, payer.pubkey(), [payer], blockhash)
                if on_signed is not None:
                    on_signed(str(txn.signatures[0]), str(blockhash))
                return await self._submit_and_confirm(client, bytes(txn), skip_preflight=False)
            except TransactionFailedError:
                raise
            except ExternalServiceError as e:
                raise TransactionFailedError(f"Transfer failed: {e}")

    async def sign_and_send_encoded(self, encoded_tx: str, signer: Keypair) -> str:
        """
        Add signer's signature to a base58-encoded versioned transaction and submit it.

        Signatures already present (e.g. the new mint's) are kept.

        Raises:
            TransactionFailedError: If the payload cannot be decoded, does not expect this
                signer, fails on-chain or is not confirmed in time.
        """
        try:
            tx = VersionedTransaction.from_bytes(base58.b58decode(encoded_tx))
        except (ValueError, BincodeError) as e:
            raise TransactionFailedError(f"Could not decode transaction: {e}")

        message = tx.message
        required = message.header.num_required_signatures
        signer_keys = list(message.account_keys)[:required]
        if signer.pubkey() not in signer_keys:
            raise TransactionFailedError(f"Transaction does not expect a signature from {signer.pubkey()}")

        signatures = list(tx.signatures)
        signatures[signer_keys.index(signer.pubkey())] = signer.sign_message(to_bytes_versioned(message))
        signed = VersionedTransaction.populate(message, signatures)

        async with self._client() as client:
            try:
                return await self._submit_and_confirm(client, bytes(signed), skip_preflight=True)
            except TransactionFailedError:
                raise
            except ExternalServiceError as e:
                raise TransactionFailedError(f"Transaction submission failed: {e}")
