"""
Trade Journal Service

Appends every copy-trade attempt (successful or not) to a daily JSON file,
`trades-YYYY-MM-DD.json`, with:
- Who it was executed for (user id, execution wallet)
- What was copied (source wallet, transaction id, market, outcome)
- What was sent (side, size, price) versus what was observed
- How it ended (order id, or failure reason and message)

The journal is a record, not a source of truth: write failures are logged
and swallowed so they never affect trade handling.
"""

import json
import os
import logging
from datetime import date, datetime, timezone
from typing import Optional, Dict, Any, List
from pydantic import BaseModel
from copybot.core.models import ExecutionResult

logger = logging.getLogger(__name__)

# Default journal directory
TRADE_JOURNAL_DIR = "copybot/logs"


class JournalEntry(BaseModel):
    """Structured journal entry."""
    recorded_at: str
    user_id: str
    source_wallet: str
    execution_wallet: Optional[str] = None

    # Trade info
    transaction_id: str
    market_id: str
    title: Optional[str] = None
    outcome: str = ""
    side: str

    # Execution details
    size: float
    price: float
    original_size: float
    original_price: float
    cost_usd: float = 0.0

    # Outcome
    success: bool
    order_id: Optional[str] = None
    reason: Optional[str] = None
    message: Optional[str] = None


class TradeJournal:

    def __init__(self, log_dir: str = TRADE_JOURNAL_DIR):
        self.log_dir = log_dir
        os.makedirs(self.log_dir, exist_ok=True)
        logger.info(f"📝 TradeJournal initialized: {self.log_dir}")

    def path_for(self, day: date) -> str:
        return os.path.join(self.log_dir, f"trades-{day.isoformat()}.json")

    def _load(self, day: date) -> List[Dict[str, Any]]:
        try:
            with open(self.path_for(day), 'r') as f:
                return json.load(f)
        except (json.JSONDecodeError, FileNotFoundError):
            return []

    def _save(self, day: date, entries: List[Dict[str, Any]]):
        try:
            with open(self.path_for(day), 'w') as f:
                json.dump(entries, f, indent=2, default=str)
        except OSError as e:
            logger.error(f"Failed to save trade journal: {e}")

    def record(self, user_id: str, source_wallet: str, result: ExecutionResult):
        now = datetime.now(timezone.utc)
        entry = JournalEntry(
            recorded_at=now.isoformat(),
            user_id=user_id,
            source_wallet=source_wallet,
            execution_wallet=result.execution_wallet,
            transaction_id=result.transaction_id,
            market_id=result.market_id,
            title=result.title,
            outcome=result.outcome,
            side=result.side.value,
            size=result.size,
            price=result.price,
            original_size=result.original_size,
            original_price=result.original_price,
            cost_usd=result.size * result.price if result.success else 0.0,
            success=result.success,
            order_id=result.order_id,
            reason=result.reason.value if result.reason else None,
            message=result.message,
        )
        day = now.date()
        entries = self._load(day)
        entries.append(entry.model_dump())
        self._save(day, entries)

        emoji = "🟢" if result.success else "🔴"
        logger.info(f"📝 Trade Journaled: {emoji} {entry.side} | user {user_id} | {entry.size:.2f} @ ${entry.price:.3f} | {result.title or result.market_id}")

    def get_trades(self, day: Optional[date] = None) -> List[Dict[str, Any]]:
        return self._load(day or datetime.now(timezone.utc).date())

    def get_summary(self, day: Optional[date] = None) -> Dict[str, Any]:
        """Counts every attempt; volume only covers executed orders."""
        entries = self.get_trades(day)
        executed = [e for e in entries if e.get('success')]
        failed = [e for e in entries if not e.get('success')]
        by_reason: Dict[str, int] = {}
        for e in failed:
            reason = e.get('reason') or "Unknown"
            by_reason[reason] = by_reason.get(reason, 0) + 1

        return {
            "total_attempts": len(entries),
            "executed": len(executed),
            "failed": len(failed),
            "failed_by_reason": by_reason,
            "total_buy_volume": sum(e.get('cost_usd', 0) or 0 for e in executed if e.get('side') == "BUY"),
        }
