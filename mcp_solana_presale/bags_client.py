"""
Token Launch Service Client (BAGS API)

Three calls drive a launch: register the token metadata, register the fee-share
configuration, and request the launch transaction. Three more let fee-share claimers
collect their trading fees once the token trades.

Response contract (every endpoint):

    {"success": true,  "response": <payload>}
    {"success": false, "error": "<reason>"}

Payloads:
- create-token-info:          {"tokenMint": str, "tokenMetadata": str}
- fee-share/config:           {"meteoraConfigKey": str, "transactions": [{"transaction": <base58>}, ...]}
- create-launch-transaction:  <base58 versioned transaction>
- claimable-positions:        [{"baseMint", "quoteMint", "programId", "isCustomFeeVault",
                               "totalClaimableLamportsUserShare"}, ...]
- create-claim-txs:           [{"tx": <base58>, "blockhash": str}, ...] or a single object
- submit-claim-tx:            <status message>

Anything else is reported as an ExternalServiceError for the calling step.
"""
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field, ValidationError

from mcp_solana_presale.config import LaunchpadSettings
from mcp_solana_presale.errors import ConfigurationError, ExternalServiceError
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)

WRAPPED_SOL_MINT = "So11111111111111111111111111111111111111112"


class TokenInfo(BaseModel):
    token_mint: str
    token_metadata: str


class FeeShareConfig(BaseModel):
    config_key: str
    transactions: List[str] = Field(default_factory=list)


class ClaimablePosition(BaseModel):
    """A fee-share position with unclaimed trading fees for one wallet."""
    base_mint: str
    quote_mint: str = WRAPPED_SOL_MINT
    program_id: Optional[str] = None
    is_custom_fee_vault: bool = False
    claimable_lamports: int = 0


class ClaimTransaction(BaseModel):
    transaction: str
    blockhash: Optional[str] = None


class BagsClient:
    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://public-api-v2.bags.fm/api/v1",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: LaunchpadSettings) -> "BagsClient":
        return cls(settings.bags_api_key, settings.bags_api_base, timeout=settings.http_timeout_seconds)

    async def _post(self, path: str, body: Dict[str, Any], step: Optional[str]) -> Any:
        return await self._request("POST", path, step, json=body)

    async def _request(self, method: str, path: str, step: Optional[str], **kwargs: Any) -> Any:
        if not self._api_key:
            raise ConfigurationError("BAGS_API_KEY not configured")
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout, connect=5.0), transport=self._transport
            ) as client:
                resp = await client.request(
                    method,
                    f"{self._base_url}{path}",
                    headers={"Accept": "application/json", "x-api-key": self._api_key},
                    **kwargs,
                )
            data = resp.json()
        except httpx.TimeoutException:
            logger.error(f"Timeout calling launch service {path}")
            raise ExternalServiceError(f"Launch service timeout on {path}", step=step)
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Error calling launch service {path}: {e}")
            raise ExternalServiceError(f"Launch service error on {path}: {e}", step=step)

        if not isinstance(data, dict) or data.get("success") is not True:
            error = None
            if isinstance(data, dict):
                error = data.get("error") or (data.get("response") if isinstance(data.get("response"), str) else None)
            reason = error or f"HTTP {resp.status_code}"
            logger.error(f"Launch service rejected {path}: {reason}")
            raise ExternalServiceError(str(reason), step=step)
        return data.get("response")

    async def create_token_info(
        self,
        name: str,
        symbol: str,
        description: str,
        image_url: str,
        twitter: Optional[str] = None,
        website: Optional[str] = None,
        telegram: Optional[str] = None,
    ) -> TokenInfo:
        body: Dict[str, Any] = {"name": name, "symbol": symbol, "description": description, "imageUrl": image_url}
        for key, value in (("twitter", twitter), ("website", website), ("telegram", telegram)):
            if value:
                body[key] = value

        payload = await self._post("/token-launch/create-token-info", body, step="metadata")
        try:
            return TokenInfo(token_mint=payload["tokenMint"], token_metadata=payload["tokenMetadata"])
        except (KeyError, TypeError):
            raise ExternalServiceError("Token metadata response missing tokenMint/tokenMetadata", step="metadata")

    async def create_fee_share_config(
        self,
        payer: str,
        base_mint: str,
        claimers: List[str],
        basis_points: List[int],
        partner: Optional[str] = None,
        partner_config: Optional[str] = None,
    ) -> FeeShareConfig:
        body: Dict[str, Any] = {
            "payer": payer,
            "baseMint": base_mint,
            "claimersArray": claimers,
            "basisPointsArray": basis_points,
        }
        if partner and partner_config:
            body["partner"] = partner
            body["partnerConfig"] = partner_config

        payload = await self._post("/fee-share/config", body, step="fee_share_config")
        try:
            return FeeShareConfig(
                config_key=payload["meteoraConfigKey"],
                transactions=[item["transaction"] for item in payload.get("transactions") or []],
            )
        except (KeyError, TypeError):
            raise ExternalServiceError(
                "Fee share config response missing meteoraConfigKey or transaction payloads",
                step="fee_share_config",
            )

    async def create_launch_transaction(
        self, token_metadata: str, token_mint: str, wallet: str, initial_buy_lamports: int, config_key: str
    ) -> str:
        body = {
            "ipfs": token_metadata,
            "tokenMint": token_mint,
            "wallet": wallet,
            "initialBuyLamports": initial_buy_lamports,
            "configKey": config_key,
        }
        payload = await self._post("/token-launch/create-launch-transaction", body, step="launch_tx")
        if not isinstance(payload, str) or not payload:
            raise ExternalServiceError("Launch transaction response is not a base58 transaction", step="launch_tx")
        return payload

    # --- Fee claims ---

    async def get_claimable_positions(self, wallet: str) -> List[ClaimablePosition]:
        """Positions with a non-zero claimable balance for wallet."""
        payload = await self._request("GET", "/token-launch/claimable-positions", None, params={"wallet": wallet})
        positions = []
        for item in payload if isinstance(payload, list) else []:
            try:
                position = ClaimablePosition(
                    base_mint=item["baseMint"],
                    quote_mint=item.get("quoteMint") or WRAPPED_SOL_MINT,
                    program_id=item.get("programId"),
                    is_custom_fee_vault=bool(item.get("isCustomFeeVault")),
                    claimable_lamports=int(item.get("totalClaimableLamportsUserShare") or 0),
                )
            except (KeyError, TypeError, ValueError, AttributeError, ValidationError) as e:
                logger.warning(f"Skipping malformed claimable position for {wallet}: {e}")
                continue
            if position.claimable_lamports > 0:
                positions.append(position)
        logger.info(f"Found {len(positions)} claimable position(s) for {wallet}")
        return positions

    async def create_claim_transactions(self, wallet: str, position: ClaimablePosition) -> List[ClaimTransaction]:
        """Unsigned base58 transactions that pay position's fees to wallet once it signs them."""
        body = {
            "feeClaimer": wallet,
            "feeShareProgramId": position.program_id,
            "isCustomFeeVault": position.is_custom_fee_vault,
            "tokenAMint": position.base_mint,
            "tokenBMint": position.quote_mint,
            "tokenMint": position.base_mint,
        }
        payload = await self._post("/token-launch/create-claim-txs", body, step=None)
        items = payload if isinstance(payload, list) else [payload]
        try:
            return [ClaimTransaction(transaction=item["tx"], blockhash=item.get("blockhash")) for item in items]
        except (KeyError, TypeError, AttributeError, ValidationError):
            raise ExternalServiceError("Claim transaction response missing tx payloads")

    async def submit_claim_transaction(self, signature: str) -> str:
        """Report a claim transaction the wallet signed and sent; returns the service's message."""
        payload = await self._post("/token-launch/submit-claim-tx", {"signature": signature}, step=None)
        return payload if isinstance(payload, str) else "Claim submitted"
