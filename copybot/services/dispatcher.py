import asyncio
import logging
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple
from copybot.core.interfaces import SubscriptionDirectory, NotificationSink
from copybot.core.models import BotRunState, ExecutionResult, ExecutionStage, FailureReason, RiskConfig, normalize_wallet
from copybot.core.events import NewTrade, WalletCheckFailed, Notification, NotificationKind, MonitorEvent
from copybot.services.execution import TradeExecutor
from copybot.services.sizing import replica_side
from copybot.services.trade_journal import TradeJournal

logger = logging.getLogger(__name__)

EXECUTION_TIMEOUT_MARGIN = 5.0


class Dispatcher:
    """
    Binds detection to per-user execution and notification.

    For each NewTrade every subscriber gets one `trade:detected`; every
    subscriber whose bot is running at that moment gets one execution attempt
    and one `trade:executed` / `trade:execution-failed`. Attempts run
    concurrently and independently of each other.
    """

    def __init__(
        self,
        directory: SubscriptionDirectory,
        executor: TradeExecutor,
        sink: NotificationSink,
        events: Optional["asyncio.Queue[MonitorEvent]"] = None,
        journal: Optional[TradeJournal] = None,
        call_timeout: float = 10.0,
        execution_timeout: Optional[float] = None,
        detection_memory: int = 10_000
    ):
        self.directory = directory
        self.executor = executor
        self.sink = sink
        self.events: asyncio.Queue = events if events is not None else asyncio.Queue()
        self.journal = journal
        self.call_timeout = call_timeout
        # Stays above the executor's own stage timeouts so those classify first
        if execution_timeout is None:
            execution_timeout = getattr(executor, "max_duration", 30.0) + EXECUTION_TIMEOUT_MARGIN
        self.execution_timeout = execution_timeout
        self.detection_memory = detection_memory
        self._detected: "OrderedDict[Tuple[str, str, str], None]" = OrderedDict()
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        self._task = asyncio.create_task(self.run())
        logger.info("📬 Dispatcher started.")

    async def stop(self, drain_timeout: float = 5.0):
        """Gives queued events a chance to be handled, then stops consuming."""
        if self._task is None:
            return
        try:
            await asyncio.wait_for(self.events.join(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Dispatcher stopped with {self.events.qsize()} undelivered events")
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def run(self):
        """Consumes monitor events in order, one at a time."""
        while True:
            event = await self.events.get()
            try:
                await self.handle(event)
            except Exception as e:
                logger.error(f"Error dispatching event {event!r}: {e}")
            finally:
                self.events.task_done()

    async def handle(self, event: MonitorEvent):
        if isinstance(event, NewTrade):
            await self.on_new_trade(event)
        elif isinstance(event, WalletCheckFailed):
            logger.warning(f"⚠️ Monitor error for {event.wallet} [{event.reason.value}]: {event.message}")

    async def on_new_trade(self, event: NewTrade) -> Dict[str, ExecutionResult]:
        """
        Handles one detected trade. Returns the execution results keyed by user id;
        users that were not running have no entry.
        """
        wallet = normalize_wallet(event.wallet)
        try:
            subscribers = await asyncio.wait_for(self.directory.subscribers_of(wallet), timeout=self.call_timeout)
        except Exception as e:
            logger.error(f"Could not resolve subscribers of {wallet}, dropping {event.trade.transaction_id}: {e}")
            return {}

        users: List[str] = list(dict.fromkeys(str(u) for u in subscribers))
        if not users:
            logger.info(f"⚠️ No users monitoring wallet {wallet}")
            return {}

        for user_id in users:
            await self._notify_detection(user_id, wallet, event)

        logger.info(f"👥 Dispatching {event.trade.transaction_id} to {len(users)} subscriber(s)")
        outcomes = await asyncio.gather(
            *(self._execute_for_user(user_id, wallet, event) for user_id in users),
            return_exceptions=True
        )

        results: Dict[str, ExecutionResult] = {}
        for user_id, outcome in zip(users, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Execution task for user {user_id} crashed: {outcome}")
            elif outcome is not None:
                results[user_id] = outcome
        return results

    async def _notify_detection(self, user_id: str, wallet: str, event: NewTrade):
        key = (user_id, wallet, event.trade.transaction_id)
        if key in self._detected:
            return
        self._detected[key] = None
        if len(self._detected) > self.detection_memory:
            self._detected.popitem(last=False)

        await self._publish(Notification(
            kind=NotificationKind.TRADE_DETECTED,
            user_id=user_id,
            data={
                "wallet": wallet,
                "trade": event.trade.model_dump(mode="json"),
                "user_id": user_id,
            },
        ))

    async def _execute_for_user(self, user_id: str, wallet: str, event: NewTrade) -> Optional[ExecutionResult]:
        try:
            state = await asyncio.wait_for(self.directory.run_state(user_id), timeout=self.call_timeout)
        except Exception as e:
            logger.warning(f"Could not read bot state for user {user_id}, skipping execution: {e}")
            return None

        if state != BotRunState.RUNNING:
            logger.info(f"⏸️ Bot is not running for user {user_id}, skipping trade execution.")
            return None

        execution_wallet = await self._lookup(self.directory.execution_identity(user_id), "execution identity", user_id)
        risk: Optional[RiskConfig] = await self._lookup(self.directory.risk_config_for(user_id), "risk config", user_id)

        try:
            result = await asyncio.wait_for(
                self.executor.execute_copy_trade(event.trade, user_id, risk, execution_wallet),
                timeout=self.execution_timeout
            )
        except asyncio.TimeoutError:
            result = self._internal_failure(event, f"Execution timed out after {self.execution_timeout}s", execution_wallet)
        except Exception as e:
            logger.error(f"Executor raised for user {user_id}: {e}")
            result = self._internal_failure(event, str(e), execution_wallet)

        kind = NotificationKind.TRADE_EXECUTED if result.success else NotificationKind.TRADE_EXECUTION_FAILED
        await self._publish(Notification(
            kind=kind,
            user_id=user_id,
            data={**result.model_dump(mode="json"), "user_id": user_id, "wallet": wallet},
        ))
        if self.journal:
            self.journal.record(user_id, wallet, result)
        return result

    async def _lookup(self, call, what: str, user_id: str):
        try:
            return await asyncio.wait_for(call, timeout=self.call_timeout)
        except Exception as e:
            logger.warning(f"Failed to read {what} for user {user_id}, using default: {e}")
            return None

    def _internal_failure(self, event: NewTrade, message: str, execution_wallet: Optional[str]) -> ExecutionResult:
        trade = event.trade
        return ExecutionResult(
            success=False,
            stage=ExecutionStage.FAILED,
            transaction_id=trade.transaction_id,
            market_id=trade.market_id,
            title=trade.title,
            outcome=trade.outcome,
            side=replica_side(trade.side),
            price=trade.price,
            original_size=trade.size,
            original_price=trade.price,
            execution_wallet=execution_wallet,
            reason=FailureReason.INTERNAL_ERROR,
            message=message,
        )

    async def _publish(self, notification: Notification):
        try:
            await self.sink.publish(notification)
        except Exception as e:
            logger.warning(f"Failed to deliver {notification.kind.value} to {notification.topic}: {e}")
