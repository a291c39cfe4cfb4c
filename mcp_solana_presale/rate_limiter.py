"""
Per-Wallet Rate Limiting

Limits how often a single wallet can call the mutating presale tools (create, join,
withdraw, refund, launch). Each wallet gets a fixed number of requests per 60-second
window; the window starts with the wallet's first request and resets once it has passed.

Entries live in an OrderedDict kept in least-recently-used order, so stale wallets can be
swept from the front once the cache grows past max_entries.
"""
import time
from collections import OrderedDict
from typing import Callable, Tuple

from mcp_solana_presale.errors import RateLimitExceededError
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)

WINDOW_SECONDS = 60


class WalletRateLimiter:
    def __init__(self, limit_per_minute: int, max_entries: int = 1000, clock: Callable[[], float] = time.time):
        self.limit = limit_per_minute
        self.max_entries = max_entries
        self._clock = clock
        # {wallet: (count, first_request_timestamp_in_window)}
        self._cache: "OrderedDict[str, Tuple[int, int]]" = OrderedDict()

    def check(self, wallet: str) -> bool:
        """
        Count a request from wallet.

        Returns:
            True if the request is allowed, False if the wallet is over its limit.
        """
        now = int(self._clock())
        if len(self._cache) > self.max_entries:
            self.cleanup_old_entries(now - WINDOW_SECONDS)

        count, started = self._cache.get(wallet, (0, now))
        if now - started >= WINDOW_SECONDS:
            count, started = 0, now
            logger.debug(f"Rate limit window reset for wallet: {wallet}")
        if count >= self.limit:
            logger.warning(f"Rate limit exceeded for wallet: {wallet}. Count: {count}, Limit: {self.limit}")
            return False

        self._cache[wallet] = (count + 1, started)
        self._cache.move_to_end(wallet)
        return True

    def enforce(self, wallet: str) -> None:
        """Raises RateLimitExceededError if the wallet is over its limit."""
        if not self.check(wallet):
            raise RateLimitExceededError(
                f"Rate limit exceeded for wallet {wallet}: at most {self.limit} requests per minute"
            )

    def cleanup_old_entries(self, cutoff_time: int) -> None:
        """Drop wallets whose window started before cutoff_time."""
        stale = [wallet for wallet, (_, started) in self._cache.items() if started < cutoff_time]
        for wallet in stale:
            del self._cache[wallet]
        if stale:
            logger.debug(f"Cleaned up {len(stale)} old rate limit entries")
