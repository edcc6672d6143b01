import asyncio
import logging
import httpx
from typing import Any, Dict, List, Optional
from py_clob_client.client import ClobClient
from py_clob_client.clob_types import ApiCreds, OrderArgs, OrderType
from py_clob_client.exceptions import PolyApiException

from copybot.core.interfaces import TradeSource, ExchangeProvider
from copybot.core.models import Trade, Side, Order, OrderReceipt, Credentials
from copybot.core.errors import SourceUnavailableError, TradeNotFoundError, ExchangeRejectedError
from copybot.services.rate_limiter import RequestRateLimiter

logger = logging.getLogger(__name__)


def parse_trade(raw: Dict[str, Any]) -> Optional[Trade]:
    """
    Maps one data-API trade record to a Trade. Returns None for records that
    cannot be identified or are malformed; those are skipped, not copied.
    """
    tx_id = raw.get("transactionHash") or raw.get("id")
    if not tx_id:
        return None

    side_str = str(raw.get("side") or "").upper()
    side = Side(side_str) if side_str in Side.__members__ else None
    market_id = raw.get("conditionId") or raw.get("market") or raw.get("marketId") or ""

    try:
        return Trade(
            transaction_id=str(tx_id),
            market_id=str(market_id),
            outcome=str(raw.get("outcome") or ""),
            side=side,
            size=float(raw.get("size")),
            price=float(raw.get("price")),
            timestamp=raw.get("timestamp"),
            asset_id=str(raw["asset"]) if raw.get("asset") else None,
            title=raw.get("title") or raw.get("slug"),
        )
    except (TypeError, ValueError) as e:
        logger.warning(f"Skipping malformed trade record {tx_id}: {e}")
        return None


class PolymarketTradeSource(TradeSource):
    """Recent trades of a wallet from the Polymarket data API (`/trades`)."""

    def __init__(
        self,
        base_url: str = "https://data-api.polymarket.com",
        timeout: float = 10.0,
        rate_limiter: Optional[RequestRateLimiter] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.api_url = f"{base_url.rstrip('/')}/trades"
        self.timeout = timeout
        self.rate_limiter = rate_limiter
        self._http_client = client
        self._owns_client = client is None

    async def start(self):
        if self._http_client is None:
            # Connection pooling with httpx
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=2.0),
                limits=httpx.Limits(max_connections=100, max_keepalive_connections=50)
            )
            self._owns_client = True

    async def stop(self):
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def fetch_recent_trades(self, wallet: str, limit: int) -> List[Trade]:
        if self._http_client is None:
            await self.start()

        params = {"user": wallet, "limit": str(limit)}
        try:
            if self.rate_limiter:
                async with self.rate_limiter.acquire():
                    resp = await self._http_client.get(self.api_url, params=params)
            else:
                resp = await self._http_client.get(self.api_url, params=params)
        except asyncio.TimeoutError as e:
            raise SourceUnavailableError(f"Rate limiter timeout for {wallet}: {e}")
        except httpx.HTTPError as e:
            raise SourceUnavailableError(f"Trade fetch failed for {wallet}: {e}")

        if resp.status_code == 404:
            raise TradeNotFoundError(wallet)
        if resp.status_code >= 400:
            raise SourceUnavailableError(f"Data API returned HTTP {resp.status_code} for {wallet}")

        try:
            payload = resp.json()
        except ValueError as e:
            raise SourceUnavailableError(f"Data API returned invalid JSON for {wallet}: {e}")

        if not isinstance(payload, list):
            raise SourceUnavailableError(f"Unexpected data API payload for {wallet}: {type(payload).__name__}")

        trades = []
        for raw in payload:
            if not isinstance(raw, dict):
                continue
            trade = parse_trade(raw)
            if trade is not None:
                trades.append(trade)
        return trades


class PolymarketExchange(ExchangeProvider):
    """
    Order entry on the Polymarket CLOB via py-clob-client.

    The signing key and funder are deployment-wide; API credentials are per
    user and passed in for every order. Every order is therefore paid from
    `funder`, whatever execution wallet the user has configured; the balance
    pre-check only reflects the paying account when the two match (see
    `Settings.default_execution_wallet`). py-clob-client is blocking, so
    calls run in a worker thread.
    """

    def __init__(
        self,
        host: str = "https://clob.polymarket.com",
        chain_id: int = 137,
        private_key: Optional[str] = None,
        signature_type: int = 1,
        funder: Optional[str] = None
    ):
        self.host = host
        self.chain_id = chain_id
        self.private_key = private_key
        self.signature_type = signature_type
        self.funder = funder

    def _client(self, credentials: Optional[Credentials] = None) -> ClobClient:
        client = ClobClient(
            host=self.host,
            key=self.private_key,
            chain_id=self.chain_id,
            signature_type=self.signature_type,
            funder=self.funder
        )
        if credentials is not None:
            client.set_api_creds(ApiCreds(
                api_key=credentials.api_key,
                api_secret=credentials.api_secret.get_secret_value(),
                api_passphrase=credentials.api_passphrase.get_secret_value(),
            ))
        return client

    async def derive_credentials(self) -> Optional[Credentials]:
        if not self.private_key:
            return None

        client = self._client()
        creds = await asyncio.to_thread(client.create_or_derive_api_creds)
        if not creds or not getattr(creds, "api_key", None) or not getattr(creds, "api_secret", None):
            return None
        return Credentials(
            api_key=creds.api_key,
            api_secret=creds.api_secret,
            api_passphrase=creds.api_passphrase or "",
        )

    async def submit_order(self, order: Order, credentials: Credentials) -> OrderReceipt:
        if not self.private_key:
            raise ExchangeRejectedError("No signing key configured for order placement")
        if not order.token_id:
            raise ExchangeRejectedError(f"Order for market {order.market_id} has no token id")

        order_args = OrderArgs(
            price=order.price_limit,
            size=order.size,
            side=order.side.value,
            token_id=order.token_id
        )

        try:
            resp = await asyncio.to_thread(self._post_order, credentials, order_args)
        except PolyApiException as e:
            raise ExchangeRejectedError(
                f"Polymarket API Error: {e}",
                status=getattr(e, "status_code", None),
                upstream=str(getattr(e, "error_msg", e))
            )

        order_id = resp.get("orderID") if isinstance(resp, dict) else None
        if order_id and resp.get("success", True):
            target = order.market_name or order.token_id
            logger.info(f"✅ [REAL {order.side.value}] Placed Order for {target}: {order_id}")
            return OrderReceipt(order_id=order_id, status=str(resp.get("status") or "submitted"))

        upstream = resp.get("errorMsg") if isinstance(resp, dict) else None
        raise ExchangeRejectedError(f"Order placement failed: {resp}", upstream=upstream)

    def _post_order(self, credentials: Credentials, order_args: OrderArgs):
        client = self._client(credentials)
        signed_order = client.create_order(order_args)
        return client.post_order(signed_order, OrderType.FOK)
