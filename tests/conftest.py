"""In-memory collaborators shared by the test suite."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from copybot.core.interfaces import (
    TradeSource,
    ProcessedTradeLedger,
    SubscriptionDirectory,
    CredentialStore,
    ExchangeProvider,
    NotificationSink,
)
from copybot.core.models import BotRunState, Credentials, Order, OrderReceipt, Side, Trade
from copybot.core.events import Notification
from copybot.core.errors import LedgerUnavailableError

WALLET = "0xabc0000000000000000000000000000000000abc"
OTHER_WALLET = "0xdef0000000000000000000000000000000000def"
START = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_trade(tx_id: str = "t1", size: float = 100.0, price: float = 0.40, side: Optional[Side] = Side.BUY,
               timestamp: Optional[datetime] = None, market_id: str = "0xmarket", **extra) -> Trade:
    return Trade(
        transaction_id=tx_id,
        market_id=market_id,
        outcome=extra.pop("outcome", "Yes"),
        side=side,
        size=size,
        price=price,
        timestamp=timestamp or START + timedelta(seconds=30),
        asset_id=extra.pop("asset_id", "123456"),
        title=extra.pop("title", "Will it rain?"),
        **extra,
    )


class FakeTradeSource(TradeSource):
    def __init__(self):
        self.trades: Dict[str, List[Trade]] = {}
        self.errors: Dict[str, Exception] = {}
        self.delay = 0.0
        self.calls: List[str] = []
        self.in_flight: Dict[str, int] = {}
        self.max_in_flight: Dict[str, int] = {}

    async def fetch_recent_trades(self, wallet: str, limit: int) -> List[Trade]:
        self.calls.append(wallet)
        self.in_flight[wallet] = self.in_flight.get(wallet, 0) + 1
        self.max_in_flight[wallet] = max(self.max_in_flight.get(wallet, 0), self.in_flight[wallet])
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if wallet in self.errors:
                raise self.errors[wallet]
            return list(self.trades.get(wallet, []))[:limit]
        finally:
            self.in_flight[wallet] -= 1


class InMemoryLedger(ProcessedTradeLedger):
    def __init__(self):
        self.records: Dict[tuple, datetime] = {}
        self.available = True
        self.purge_calls: List[timedelta] = []

    async def try_mark_processed(self, wallet: str, transaction_id: str) -> bool:
        if not self.available:
            raise LedgerUnavailableError("ledger down")
        key = (wallet, transaction_id)
        if key in self.records:
            return False
        self.records[key] = datetime.now(timezone.utc)
        return True

    async def purge_older_than(self, age: timedelta) -> int:
        self.purge_calls.append(age)
        cutoff = datetime.now(timezone.utc) - age
        stale = [k for k, ts in self.records.items() if ts < cutoff]
        for k in stale:
            del self.records[k]
        return len(stale)


class InMemoryDirectory(SubscriptionDirectory):
    def __init__(self):
        self.subscriptions: Dict[str, List[str]] = {}
        self.states: Dict[str, BotRunState] = {}
        self.identities: Dict[str, str] = {}

    def subscribe(self, user_id: str, wallet: str, state: BotRunState = BotRunState.RUNNING):
        users = self.subscriptions.setdefault(wallet, [])
        if user_id not in users:
            users.append(user_id)
        self.states[user_id] = state
        self.identities.setdefault(user_id, f"0xexec{user_id}")

    async def list_wallets(self) -> List[str]:
        return [w for w, users in self.subscriptions.items() if users]

    async def subscribers_of(self, wallet: str) -> List[str]:
        return list(self.subscriptions.get(wallet, []))

    async def run_state(self, user_id: str) -> BotRunState:
        return self.states.get(user_id, BotRunState.STOPPED)

    async def execution_identity(self, user_id: str) -> Optional[str]:
        return self.identities.get(user_id)


class InMemoryCredentialStore(CredentialStore):
    def __init__(self):
        self.items: Dict[str, Credentials] = {}
        self.accept_puts = True

    async def get(self, user_id: str) -> Optional[Credentials]:
        return self.items.get(user_id)

    async def put(self, user_id: str, credentials: Credentials) -> bool:
        if not self.accept_puts:
            return False
        self.items[user_id] = credentials
        return True

    async def delete(self, user_id: str) -> bool:
        return self.items.pop(user_id, None) is not None


class RecordingExchange(ExchangeProvider):
    def __init__(self):
        self.orders: List[Order] = []
        self.error: Optional[Exception] = None
        self.derived: Optional[Credentials] = None
        self.delay = 0.0

    async def submit_order(self, order: Order, credentials: Credentials) -> OrderReceipt:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        self.orders.append(order)
        return OrderReceipt(order_id=f"order-{len(self.orders)}")

    async def derive_credentials(self) -> Optional[Credentials]:
        return self.derived


class RecordingSink(NotificationSink):
    def __init__(self):
        self.notifications: List[Notification] = []

    async def publish(self, notification: Notification) -> None:
        self.notifications.append(notification)

    def for_user(self, user_id: str) -> List[Notification]:
        return [n for n in self.notifications if n.user_id == user_id]

    def kinds_for(self, user_id: str) -> List[str]:
        return [n.kind.value for n in self.for_user(user_id)]


def creds(key: str = "key") -> Credentials:
    return Credentials(api_key=key, api_secret="secret", api_passphrase="pass")


@pytest.fixture
def source():
    return FakeTradeSource()


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def directory():
    return InMemoryDirectory()


@pytest.fixture
def credential_store():
    return InMemoryCredentialStore()


@pytest.fixture
def exchange():
    return RecordingExchange()


@pytest.fixture
def sink():
    return RecordingSink()
