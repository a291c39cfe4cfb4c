"""
Presale Ledger Store

Holds every Presale and Participant record in memory, guarded by a re-entrant lock, and
persists them as a single JSON document. Ledger methods never await, so each one is atomic
with respect to other coroutines on the event loop; the lock also covers callers on other
threads and the debounced flush.

Persistence:
- Critical changes (status transitions, confirmations, settlements, fee shares, launch
  progress) are written synchronously before the method returns.
- Non-critical changes (an unconfirmed deposit record) are debounced on the running event
  loop and written by the next flush.
- Writes go to a temporary file that replaces the database atomically, so a crash never
  leaves a half-written document behind.
"""
import asyncio
import json
import os
import secrets
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from mcp_solana_presale.errors import NotFoundError, PreconditionError
from mcp_solana_presale.schemas import Participant, Presale, PresaleStats, PresaleStatus
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)

# No 0/O/1/I so ids survive being read aloud
_ID_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def _generate_presale_id(num: int) -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(4))
    return f"PS{num:04d}{suffix}"


class PresaleLedger:
    """In-memory presale store with write-through JSON persistence."""

    def __init__(self, db_path: Optional[str] = None, debounce_seconds: float = 0.5):
        self._path = Path(db_path) if db_path else None
        self._debounce_seconds = debounce_seconds
        self._lock = threading.RLock()
        self._presales: List[Presale] = []  # most recent first
        self._participants: List[Participant] = []
        self._last_presale_num = 0
        self._last_join_seq = 0
        self._pending_flush: Optional[asyncio.TimerHandle] = None
        self._load()

    # --- Persistence ---

    def _load(self) -> None:
        if self._path is None:
            logger.info("Presale ledger running in memory only")
            return
        if not self._path.exists():
            logger.info(f"No presale database at {self._path}, starting empty")
            return

        logger.info(f"Loading presale database from: {self._path.resolve()}")
        try:
            with open(self._path, "r") as f:
                data = json.load(f)
            self._presales = [Presale.model_validate(p) for p in data.get("presales", [])]
            self._participants = [Participant.model_validate(p) for p in data.get("participants", [])]
            self._last_presale_num = data.get("last_presale_num", len(self._presales))
            self._last_join_seq = data.get(
                "last_join_seq", max((p.join_seq for p in self._participants), default=0)
            )
        except json.JSONDecodeError:
            logger.error(f"Error decoding JSON from presale database: {self._path}")
            raise
        except ValidationError as e:
            logger.error(f"Invalid record in presale database {self._path}: {e}")
            raise
        logger.info(
            f"Loaded {len(self._presales)} presale(s) and {len(self._participants)} participant record(s)"
        )

    def _snapshot(self) -> Dict[str, Any]:
        return {
            "presales": [p.model_dump(mode="json") for p in self._presales],
            "participants": [p.model_dump(mode="json") for p in self._participants],
            "last_presale_num": self._last_presale_num,
            "last_join_seq": self._last_join_seq,
        }

    def flush(self) -> None:
        """Write the whole ledger to disk now, cancelling any pending debounced write."""
        with self._lock:
            if self._pending_flush is not None:
                self._pending_flush.cancel()
                self._pending_flush = None
            if self._path is None:
                return
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(self._path.parent), prefix=".presales-", suffix=".tmp")
            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(self._snapshot(), f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self._path)
            except OSError:
                logger.exception(f"Error saving presale database to {self._path}")
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise
            logger.debug("Presale database saved")

    def _flush_from_timer(self) -> None:
        with self._lock:
            self._pending_flush = None
        try:
            self.flush()
        except OSError:
            # Already logged; the next critical write retries the whole document
            pass

    def _persist(self, critical: bool) -> None:
        if self._path is None:
            return
        if critical:
            self.flush()
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.flush()
            return
        if self._pending_flush is None:
            self._pending_flush = loop.call_later(self._debounce_seconds, self._flush_from_timer)

    # --- Internal lookups (caller holds the lock) ---

    def _find_presale(self, presale_id: str) -> Optional[Presale]:
        return next((p for p in self._presales if p.id == presale_id), None)

    def _require_presale(self, presale_id: str) -> Presale:
        presale = self._find_presale(presale_id)
        if presale is None:
            raise NotFoundError(f"Presale {presale_id} not found")
        return presale

    def _find_unresolved(self, presale_id: str, wallet: str) -> Optional[Participant]:
        return next(
            (
                p for p in self._participants
                if p.presale_id == presale_id and p.wallet == wallet and not p.is_resolved
            ),
            None,
        )

    def _signature_used(self, signature: str) -> bool:
        return any(p.tx_signature == signature for p in self._participants) or any(
            p.launch_fee_signature == signature for p in self._presales
        )

    # --- Presales ---

    def create(self, **fields: Any) -> Presale:
        """Assign a fresh id, store the presale (most recent first) and persist it."""
        with self._lock:
            self._last_presale_num += 1
            presale_id = _generate_presale_id(self._last_presale_num)
            while self._find_presale(presale_id) is not None:
                presale_id = _generate_presale_id(self._last_presale_num)
            presale = Presale(id=presale_id, **fields)
            self._presales.insert(0, presale)
            self._persist(critical=True)
            logger.info(
                f"Created presale {presale.id} ({presale.token_symbol}), target: {presale.target_participants}"
            )
            return presale.model_copy(deep=True)

    def get(self, presale_id: str) -> Optional[Presale]:
        with self._lock:
            presale = self._find_presale(presale_id)
            return presale.model_copy(deep=True) if presale else None

    def list_active(self, now: float) -> List[Presale]:
        """Presales still accepting deposits: status active and not yet expired."""
        with self._lock:
            return [
                p.model_copy(deep=True) for p in self._presales
                if p.status == PresaleStatus.active and not p.is_expired(now)
            ]

    def list_expired(self, now: float) -> List[Presale]:
        """Presales still marked active whose deadline has passed."""
        with self._lock:
            return [
                p.model_copy(deep=True) for p in self._presales
                if p.status == PresaleStatus.active and p.is_expired(now)
            ]

    def list_all(self, limit: int = 50, offset: int = 0) -> List[Presale]:
        with self._lock:
            return [p.model_copy(deep=True) for p in self._presales[offset:offset + limit]]

    def list_by_status(self, status: PresaleStatus, limit: int = 50, offset: int = 0) -> List[Presale]:
        with self._lock:
            matching = [p for p in self._presales if p.status == status]
            return [p.model_copy(deep=True) for p in matching[offset:offset + limit]]

    def update_status(self, presale_id: str, status: PresaleStatus, **extra: Any) -> Presale:
        """Set the status, merge any extra fields and flush before returning."""
        with self._lock:
            presale = self._require_presale(presale_id)
            previous = presale.status
            presale.status = status
            for key, value in extra.items():
                setattr(presale, key, value)
            self._persist(critical=True)
            logger.info(f"Presale {presale_id} status: {previous.value} -> {status.value}")
            return presale.model_copy(deep=True)

    def record_launch_progress(self, presale_id: str, **fields: Any) -> Presale:
        """Persist partial launch identifiers without touching the status."""
        with self._lock:
            presale = self._require_presale(presale_id)
            for key, value in fields.items():
                setattr(presale, key, value)
            self._persist(critical=True)
            return presale.model_copy(deep=True)

    # --- Participants ---

    def add_participant(
        self, presale_id: str, wallet: str, amount_lamports: int, tx_signature: str, joined_at: int
    ) -> Optional[Participant]:
        """
        Record an unconfirmed deposit.

        Returns None when the wallet already has an unresolved record in this presale or
        the deposit signature already backs another record.
        """
        with self._lock:
            self._require_presale(presale_id)
            if self._find_unresolved(presale_id, wallet) is not None:
                logger.error(f"Wallet {wallet} already participates in presale {presale_id}")
                return None
            if self._signature_used(tx_signature):
                logger.error(f"Deposit {tx_signature} already claimed")
                return None

            self._last_join_seq += 1
            participant = Participant(
                id=f"{presale_id}-{self._last_join_seq}",
                presale_id=presale_id,
                join_seq=self._last_join_seq,
                wallet=wallet,
                amount_lamports=amount_lamports,
                tx_signature=tx_signature,
                joined_at=joined_at,
            )
            self._participants.append(participant)
            self._persist(critical=False)
            logger.info(f"Added participant {wallet} to presale {presale_id}")
            return participant.model_copy(deep=True)

    def confirm_participant(self, presale_id: str, wallet: str) -> Presale:
        """
        Confirm the wallet's pending deposit and add it to the presale totals.

        The capacity check and the increment happen under one lock, so the participant
        count can never pass the target.

        Raises:
            PreconditionError: If the presale is not active, is full, or the wallet has no
                pending deposit.
        """
        with self._lock:
            presale = self._require_presale(presale_id)
            participant = next(
                (
                    p for p in self._participants
                    if p.presale_id == presale_id and p.wallet == wallet
                    and not p.confirmed and not p.is_resolved
                ),
                None,
            )
            if participant is None:
                raise PreconditionError(f"No pending deposit for wallet {wallet}")
            if presale.status != PresaleStatus.active:
                raise PreconditionError(f"Presale is {presale.status.value}, cannot join")
            if presale.is_full:
                raise PreconditionError("Presale is full")

            participant.confirmed = True
            presale.total_lamports += participant.amount_lamports
            presale.participant_count += 1
            self._persist(critical=True)
            logger.info(
                f"Confirmed participant {wallet} | presale {presale_id} now has "
                f"{presale.participant_count}/{presale.target_participants} participants, "
                f"{presale.total_sol} SOL"
            )
            return presale.model_copy(deep=True)

    def _resolve(self, presale_id: str, wallet: str, **fields: Any) -> Optional[Participant]:
        with self._lock:
            participant = self._find_unresolved(presale_id, wallet)
            if participant is None:
                return None
            presale = self._find_presale(presale_id)
            for key, value in fields.items():
                setattr(participant, key, value)
            participant.pending_settlement_kind = None
            participant.pending_settlement_signature = None
            participant.pending_settlement_blockhash = None
            if participant.confirmed and presale is not None:
                presale.total_lamports -= participant.amount_lamports
                presale.participant_count -= 1
            self._persist(critical=True)
            return participant.model_copy(deep=True)

    def mark_refunded(self, presale_id: str, wallet: str, refund_signature: str) -> Optional[Participant]:
        """Settle a failed-round refund (no tax); returns None if nothing was unresolved."""
        participant = self._resolve(presale_id, wallet, refunded=True, refund_signature=refund_signature)
        if participant:
            logger.info(f"Marked refunded: {wallet} in presale {presale_id}")
        return participant

    def mark_withdrawn(
        self, presale_id: str, wallet: str, withdraw_signature: str, tax_lamports: int
    ) -> Optional[Participant]:
        """Settle an early withdrawal and record the tax paid."""
        participant = self._resolve(
            presale_id, wallet,
            withdrawn=True, withdraw_signature=withdraw_signature, withdraw_tax_lamports=tax_lamports,
        )
        if participant:
            logger.info(f"Marked withdrawn with {tax_lamports} lamports tax: {wallet} in presale {presale_id}")
        return participant

    def record_pending_settlement(
        self, presale_id: str, wallet: str, kind: str, signature: str, blockhash: str
    ) -> Participant:
        """
        Remember a signed payout before it is submitted.

        Until it is settled or cleared, the payout must be reconciled against the chain
        before another one is sent to the same participant.
        """
        with self._lock:
            participant = self._find_unresolved(presale_id, wallet)
            if participant is None:
                raise NotFoundError(f"No unresolved participation for wallet {wallet} in presale {presale_id}")
            participant.pending_settlement_kind = kind
            participant.pending_settlement_signature = signature
            participant.pending_settlement_blockhash = blockhash
            self._persist(critical=True)
            logger.info(f"Pending {kind} {signature} recorded for {wallet} in presale {presale_id}")
            return participant.model_copy(deep=True)

    def clear_pending_settlement(self, presale_id: str, wallet: str) -> None:
        """Forget a payout that is known never to land."""
        with self._lock:
            participant = self._find_unresolved(presale_id, wallet)
            if participant is None or participant.pending_settlement_signature is None:
                return
            logger.info(
                f"Clearing pending {participant.pending_settlement_kind} "
                f"{participant.pending_settlement_signature} for {wallet} in presale {presale_id}"
            )
            participant.pending_settlement_kind = None
            participant.pending_settlement_signature = None
            participant.pending_settlement_blockhash = None
            self._persist(critical=True)

    def set_fee_shares(self, presale_id: str, shares: Dict[str, int]) -> None:
        """Store computed fee share bps keyed by participant id."""
        with self._lock:
            for participant in self._participants:
                if participant.presale_id == presale_id and participant.id in shares:
                    participant.fee_share_bps = shares[participant.id]
            self._persist(critical=True)

    def get_active_participants(self, presale_id: str) -> List[Participant]:
        """Confirmed, unresolved participants in join order."""
        with self._lock:
            active = [p for p in self._participants if p.presale_id == presale_id and p.counts_toward_totals]
            return [p.model_copy(deep=True) for p in sorted(active, key=lambda p: p.join_seq)]

    def get_unresolved_participant(self, presale_id: str, wallet: str) -> Optional[Participant]:
        with self._lock:
            participant = self._find_unresolved(presale_id, wallet)
            return participant.model_copy(deep=True) if participant else None

    def get_latest_participation(self, presale_id: str, wallet: str) -> Optional[Participant]:
        """The wallet's most recent record in this presale, resolved or not."""
        with self._lock:
            records = [p for p in self._participants if p.presale_id == presale_id and p.wallet == wallet]
            if not records:
                return None
            return max(records, key=lambda p: p.join_seq).model_copy(deep=True)

    def is_signature_used(self, signature: str) -> bool:
        """
        True if the signature already backs a deposit or a launch fee.

        Both kinds are checked together since the escrow and launcher may be one wallet.
        """
        with self._lock:
            return self._signature_used(signature)

    def stats(self) -> PresaleStats:
        with self._lock:
            stats = PresaleStats(total=len(self._presales))
            for presale in self._presales:
                setattr(stats, presale.status.value, getattr(stats, presale.status.value) + 1)
                if presale.status == PresaleStatus.launched:
                    stats.total_lamports_raised += presale.total_lamports
            return stats
