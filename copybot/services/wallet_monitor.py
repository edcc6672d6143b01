import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional
from copybot.core.models import BotRunState, FailureReason, Trade, normalize_wallet
from copybot.core.events import NewTrade, WalletCheckFailed, MonitorEvent
from copybot.core.errors import SourceUnavailableError, TradeNotFoundError
from copybot.core.interfaces import TradeSource, ProcessedTradeLedger, SubscriptionDirectory

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WalletMonitor:
    """
    Polls every subscribed wallet and puts a NewTrade on `events` for each
    trade that is newer than the monitor's start, not yet in the ledger, and
    has at least one running subscriber.

    A trade is marked processed right before it is either enqueued or
    deliberately dropped, so a marked trade is never left unemitted.
    """

    def __init__(
        self,
        source: TradeSource,
        ledger: ProcessedTradeLedger,
        directory: SubscriptionDirectory,
        events: Optional["asyncio.Queue[MonitorEvent]"] = None,
        poll_interval: float = 5.0,
        fetch_limit: int = 20,
        batch_size: int = 50,
        batch_delay_ms: int = 100,
        max_concurrent: int = 20,
        call_timeout: float = 10.0,
        retention: timedelta = timedelta(days=30),
        purge_every_cycles: int = 720,
        started_at: Optional[datetime] = None,
        clock: Callable[[], datetime] = _utcnow
    ):
        self.source = source
        self.ledger = ledger
        self.directory = directory
        self.events: asyncio.Queue = events if events is not None else asyncio.Queue()
        self.poll_interval = poll_interval
        self.fetch_limit = fetch_limit
        self.call_timeout = call_timeout
        self.retention = retention
        self.purge_every_cycles = purge_every_cycles
        self.started_at = started_at
        self._clock = clock

        # Scaling configuration
        self.batch_size = batch_size
        self.batch_delay_ms = batch_delay_ms
        self._semaphore = asyncio.Semaphore(max_concurrent)

        self._wallet_locks: Dict[str, asyncio.Lock] = {}
        self._running = False
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.cycle_count = 0

        logger.info(f"👀 WalletMonitor initialized: interval={poll_interval}s, limit={fetch_limit}, batch_size={batch_size}, max_concurrent={max_concurrent}")

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        if self._running:
            return
        if self.started_at is None:
            self.started_at = self._clock()
        self._running = True
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"👀 Wallet Monitor started at {self.started_at.isoformat()}. Trades before this are ignored.")

    async def stop(self):
        """Stops scheduling cycles; an in-flight cycle is allowed to finish."""
        self._running = False
        self._stop_event.set()
        if self._task:
            await self._task
            self._task = None
        logger.info("🛑 Wallet Monitor stopped")

    async def _run_loop(self):
        while self._running:
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(f"Error in main polling loop: {e}")

            if not self._running:
                break
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def poll_once(self):
        """One cycle: reload the wallet set, check every wallet, purge the ledger when due."""
        try:
            wallets = await asyncio.wait_for(self.directory.list_wallets(), timeout=self.call_timeout)
        except Exception as e:
            logger.warning(f"Failed to load monitored wallets, skipping cycle: {e}")
            return

        # Normalize and de-duplicate while keeping order
        targets = list(dict.fromkeys(normalize_wallet(w) for w in wallets))
        self._forget_stale_locks(targets)

        for i in range(0, len(targets), self.batch_size):
            batch = targets[i:i + self.batch_size]

            tasks = [self._check_wallet_throttled(wallet) for wallet in batch]
            await asyncio.gather(*tasks, return_exceptions=True)

            # Delay between batches
            if i + self.batch_size < len(targets):
                await asyncio.sleep(self.batch_delay_ms / 1000.0)

        self.cycle_count += 1
        if self.cycle_count % self.purge_every_cycles == 0:
            await self.purge_ledger()

    def _forget_stale_locks(self, targets: List[str]):
        keep = set(targets)
        for wallet in list(self._wallet_locks):
            lock = self._wallet_locks[wallet]
            if wallet not in keep and not lock.locked():
                del self._wallet_locks[wallet]

    async def purge_ledger(self) -> int:
        try:
            removed = await self.ledger.purge_older_than(self.retention)
        except Exception as e:
            logger.warning(f"Ledger purge failed: {e}")
            return 0
        if removed:
            logger.info(f"🧹 Purged {removed} processed-trade records older than {self.retention.days} days")
        return removed

    async def _check_wallet_throttled(self, wallet: str):
        async with self._semaphore:
            await self.check_wallet(wallet)

    async def check_wallet(self, wallet: str) -> List[NewTrade]:
        """
        Checks one wallet and returns the events it emitted.

        Never runs concurrently with itself for the same wallet.
        """
        wallet = normalize_wallet(wallet)
        lock = self._wallet_locks.setdefault(wallet, asyncio.Lock())
        async with lock:
            return await self._check_wallet_locked(wallet)

    async def _check_wallet_locked(self, wallet: str) -> List[NewTrade]:
        if self.started_at is None:
            self.started_at = self._clock()

        try:
            trades = await asyncio.wait_for(
                self.source.fetch_recent_trades(wallet, self.fetch_limit),
                timeout=self.call_timeout
            )
        except TradeNotFoundError:
            return []
        except asyncio.TimeoutError:
            self._report(wallet, FailureReason.SOURCE_UNAVAILABLE, f"Trade fetch timed out after {self.call_timeout}s")
            return []
        except SourceUnavailableError as e:
            self._report(wallet, FailureReason.SOURCE_UNAVAILABLE, str(e))
            return []
        except Exception as e:
            self._report(wallet, FailureReason.INTERNAL_ERROR, f"Unexpected error fetching trades: {e}")
            return []

        fresh = sorted(
            (t for t in trades if t.timestamp >= self.started_at),
            key=lambda t: t.timestamp
        )
        if not fresh:
            return []

        try:
            active = await asyncio.wait_for(self._has_running_subscriber(wallet), timeout=self.call_timeout)
        except Exception as e:
            self._report(wallet, FailureReason.INTERNAL_ERROR, f"Subscription lookup failed: {e}")
            return []

        emitted: List[NewTrade] = []
        for trade in fresh:
            try:
                inserted = await self.ledger.try_mark_processed(wallet, trade.transaction_id)
            except Exception as e:
                # Stop here so later trades don't overtake this one next cycle
                self._report(wallet, FailureReason.INTERNAL_ERROR, f"Ledger unavailable, deferring {trade.transaction_id}: {e}")
                break

            if not inserted:
                continue

            if not active:
                logger.debug(f"Trade {trade.transaction_id} from {wallet} consumed without running subscribers")
                continue

            event = NewTrade(wallet=wallet, trade=trade)
            self.events.put_nowait(event)
            emitted.append(event)
            self._log_detection(wallet, trade)

        return emitted

    async def _has_running_subscriber(self, wallet: str) -> bool:
        for user_id in await self.directory.subscribers_of(wallet):
            if await self.directory.run_state(user_id) == BotRunState.RUNNING:
                return True
        return False

    def _report(self, wallet: str, reason: FailureReason, message: str):
        logger.warning(f"Failed to check wallet {wallet}: {message}")
        self.events.put_nowait(WalletCheckFailed(wallet=wallet, reason=reason, message=message))

    def _log_detection(self, wallet: str, trade: Trade):
        side = trade.side.value if trade.side else "UNKNOWN"
        side_emoji = "📉" if side == "SELL" else "📈"
        logger.info(f"{'='*60}")
        logger.info(f"{side_emoji} NEW {side} DETECTED")
        logger.info(f"   Wallet: {wallet}")
        logger.info(f"   Market: {trade.label}")
        logger.info(f"   Tx: {trade.transaction_id}")
        logger.info(f"   💰 Size: {trade.size:.2f} | Outcome: {trade.outcome} @ {trade.price:.3f}")
        logger.info(f"{'='*60}")
