"""Tests for the data-API trade source and record parsing."""

import httpx
import pytest

from copybot.adapters.polymarket import PolymarketTradeSource, parse_trade
from copybot.core.errors import SourceUnavailableError, TradeNotFoundError
from copybot.core.models import Side
from copybot.services.rate_limiter import RequestRateLimiter
from conftest import WALLET

RAW_TRADE = {
    "proxyWallet": WALLET,
    "side": "BUY",
    "asset": "71321045679252212594626385532706912750332728571942532289631379312455583992563",
    "conditionId": "0xdd22472e552920b8438158ea7238bfadfa4f736aa4cee91a6b86c39ead110917",
    "size": 250.5,
    "price": 0.42,
    "timestamp": 1767268800,
    "title": "Will it rain tomorrow?",
    "outcome": "Yes",
    "transactionHash": "0xabc123",
}


def source_with(handler, **kwargs) -> PolymarketTradeSource:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return PolymarketTradeSource(base_url="https://data-api.example", client=client, **kwargs)


class TestParseTrade:

    def test_full_record(self):
        trade = parse_trade(RAW_TRADE)

        assert trade.transaction_id == "0xabc123"
        assert trade.market_id == RAW_TRADE["conditionId"]
        assert trade.side == Side.BUY
        assert trade.asset_id == RAW_TRADE["asset"]
        assert trade.timestamp.year == 2026

    def test_millisecond_timestamp(self):
        trade = parse_trade({**RAW_TRADE, "timestamp": 1767268800000})
        assert trade.timestamp == parse_trade(RAW_TRADE).timestamp

    def test_unknown_side_left_empty(self):
        assert parse_trade({**RAW_TRADE, "side": "merge"}).side is None

    def test_lowercase_side_accepted(self):
        assert parse_trade({**RAW_TRADE, "side": "sell"}).side == Side.SELL

    def test_record_without_id_skipped(self):
        raw = {k: v for k, v in RAW_TRADE.items() if k != "transactionHash"}
        assert parse_trade(raw) is None

    def test_falls_back_to_id_field(self):
        raw = {k: v for k, v in RAW_TRADE.items() if k != "transactionHash"}
        assert parse_trade({**raw, "id": "trade-7"}).transaction_id == "trade-7"

    @pytest.mark.parametrize("timestamp", [1e20, "inf", "-inf", "nan", -1e300])
    def test_out_of_range_timestamp_skipped(self, timestamp):
        assert parse_trade({**RAW_TRADE, "timestamp": timestamp}) is None

    @pytest.mark.parametrize("field", ["size", "price", "timestamp"])
    def test_missing_numeric_field_skipped(self, field):
        raw = {k: v for k, v in RAW_TRADE.items() if k != field}
        assert parse_trade(raw) is None


class TestPolymarketTradeSource:

    async def test_fetch_sends_wallet_and_limit(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json=[RAW_TRADE])

        trades = await source_with(handler).fetch_recent_trades(WALLET, 20)

        assert seen == {"path": "/trades", "params": {"user": WALLET, "limit": "20"}}
        assert [t.transaction_id for t in trades] == ["0xabc123"]

    async def test_malformed_records_are_dropped(self):
        payload = [RAW_TRADE, {"side": "BUY"}, "garbage", {**RAW_TRADE, "transactionHash": "0xdef", "price": "n/a"}]
        source = source_with(lambda request: httpx.Response(200, json=payload))

        trades = await source.fetch_recent_trades(WALLET, 20)

        assert [t.transaction_id for t in trades] == ["0xabc123"]

    async def test_bad_timestamp_does_not_hide_the_rest_of_the_page(self):
        payload = [RAW_TRADE, {**RAW_TRADE, "transactionHash": "0xbad", "timestamp": 1e20}]
        source = source_with(lambda request: httpx.Response(200, json=payload))

        trades = await source.fetch_recent_trades(WALLET, 20)

        assert [t.transaction_id for t in trades] == ["0xabc123"]

    async def test_not_found(self):
        source = source_with(lambda request: httpx.Response(404))
        with pytest.raises(TradeNotFoundError):
            await source.fetch_recent_trades(WALLET, 20)

    @pytest.mark.parametrize("response", [
        httpx.Response(500),
        httpx.Response(429),
        httpx.Response(200, content=b"<html>"),
        httpx.Response(200, json={"error": "bad"}),
    ])
    async def test_upstream_problems_are_source_unavailable(self, response):
        source = source_with(lambda request: response)
        with pytest.raises(SourceUnavailableError):
            await source.fetch_recent_trades(WALLET, 20)

    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(SourceUnavailableError):
            await source_with(handler).fetch_recent_trades(WALLET, 20)

    async def test_requests_go_through_rate_limiter(self):
        limiter = RequestRateLimiter(requests_per_second=100, max_concurrent=2)
        source = source_with(lambda request: httpx.Response(200, json=[]), rate_limiter=limiter)

        await source.fetch_recent_trades(WALLET, 20)
        await source.fetch_recent_trades(WALLET, 20)

        assert limiter.total_acquired == 2

    async def test_injected_client_is_not_closed(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json=[])))
        source = PolymarketTradeSource(client=client)

        await source.stop()

        assert not client.is_closed
        await client.aclose()
