"""Best-effort market data for launched tokens (display only)."""
from typing import Any, Dict, Optional

import httpx

from mcp_solana_presale.schemas import TokenMarketData
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)


def _as_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class MarketDataClient:
    """DexScreener token lookups. Failures return None; they never block a presale flow."""

    def __init__(
        self,
        base_url: str = "https://api.dexscreener.com",
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def get_token_market(self, token_mint: str) -> Optional[TokenMarketData]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.get(f"{self._base_url}/latest/dex/tokens/{token_mint}")
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Market data lookup failed for {token_mint}: {e}")
            return None

        pairs = [p for p in (data or {}).get("pairs") or [] if isinstance(p, dict)]
        if not pairs:
            return None
        # Most liquid pair wins
        pair: Dict[str, Any] = max(pairs, key=lambda p: _as_float((p.get("liquidity") or {}).get("usd")) or 0.0)
        return TokenMarketData(
            token_mint=token_mint,
            price_usd=_as_float(pair.get("priceUsd")),
            liquidity_usd=_as_float((pair.get("liquidity") or {}).get("usd")),
            fdv=_as_float(pair.get("fdv")),
            volume_24h_usd=_as_float((pair.get("volume") or {}).get("h24")),
            pair_url=pair.get("url"),
        )
