"""Tests for the daily trade journal."""

from datetime import date

from copybot.core.models import ExecutionResult, ExecutionStage, FailureReason, Side
from copybot.services.trade_journal import TradeJournal
from conftest import WALLET


def result(success: bool = True, side: Side = Side.BUY, size: float = 10.0, price: float = 0.5, **kwargs) -> ExecutionResult:
    return ExecutionResult(
        success=success,
        stage=ExecutionStage.SUCCEEDED if success else ExecutionStage.FAILED,
        transaction_id=kwargs.pop("transaction_id", "t1"),
        market_id="0xmarket",
        side=side,
        size=size,
        price=price,
        original_size=100.0,
        original_price=price,
        **kwargs,
    )


class TestTradeJournal:

    def test_records_land_in_daily_file(self, tmp_path):
        journal = TradeJournal(log_dir=str(tmp_path))

        journal.record("u1", WALLET, result(order_id="o1"))

        entries = journal.get_trades()
        assert len(entries) == 1
        assert entries[0]["order_id"] == "o1"
        assert entries[0]["source_wallet"] == WALLET
        assert journal.path_for(date(2026, 3, 4)).endswith("trades-2026-03-04.json")

    def test_missing_day_is_empty(self, tmp_path):
        journal = TradeJournal(log_dir=str(tmp_path))
        assert journal.get_trades(date(2001, 1, 1)) == []

    def test_summary(self, tmp_path):
        journal = TradeJournal(log_dir=str(tmp_path))
        journal.record("u1", WALLET, result(size=10, price=0.5))
        journal.record("u1", WALLET, result(side=Side.SELL, size=4, price=0.5, transaction_id="t2"))
        journal.record("u2", WALLET, result(success=False, reason=FailureReason.NEEDS_CREDENTIALS))
        journal.record("u3", WALLET, result(success=False, reason=FailureReason.NEEDS_CREDENTIALS))

        summary = journal.get_summary()

        assert summary["total_attempts"] == 4
        assert summary["executed"] == 2
        assert summary["failed"] == 2
        assert summary["failed_by_reason"] == {"NeedsCredentials": 2}
        assert summary["total_buy_volume"] == 5.0

    def test_corrupt_file_reads_as_empty(self, tmp_path):
        journal = TradeJournal(log_dir=str(tmp_path))
        day = date(2026, 1, 1)
        with open(journal.path_for(day), "w") as f:
            f.write("{not json")

        assert journal.get_trades(day) == []
