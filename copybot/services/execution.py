import asyncio
import logging
from typing import Optional
from copybot.core.interfaces import ExchangeProvider, BalanceChecker
from copybot.core.models import Trade, RiskConfig, Order, ExecutionResult, ExecutionStage, FailureReason
from copybot.core.errors import (
    CopyTradeError,
    ExchangeRejectedError,
    InsufficientFundsError,
    NeedsCredentialsError,
)
from copybot.services import sizing
from copybot.services.credentials import CredentialResolver

logger = logging.getLogger(__name__)

TIMED_STAGES = 3


class TradeExecutor:
    """
    Turns an observed trade into one bounded replica order for one user.

    Each call walks VALIDATING -> PRICING -> RESOLVING_CREDENTIALS ->
    (CHECKING_BALANCE) -> SUBMITTING and ends in SUCCEEDED or FAILED. Nothing
    here retries: a rejected or stale-priced order is reported, not resubmitted.
    """

    def __init__(
        self,
        exchange: ExchangeProvider,
        resolver: CredentialResolver,
        risk_config: Optional[RiskConfig] = None,
        balance_checker: Optional[BalanceChecker] = None,
        balance_check_enabled: bool = False,
        call_timeout: float = 10.0
    ):
        self.exchange = exchange
        self.resolver = resolver
        self.risk_config = risk_config or RiskConfig()
        self.balance_checker = balance_checker
        self.balance_check_enabled = balance_check_enabled
        self.call_timeout = call_timeout

    @property
    def max_duration(self) -> float:
        """Upper bound of one attempt: credentials, balance and submit are each timed out separately."""
        return self.call_timeout * TIMED_STAGES

    def update_risk_config(self, **updates) -> RiskConfig:
        """Replaces the default risk parameters; unknown keys or invalid bounds raise."""
        merged = self.risk_config.model_dump()
        for key, value in updates.items():
            if key not in merged:
                raise ValueError(f"Unknown risk parameter: {key}")
            if value is not None:
                merged[key] = value
        self.risk_config = RiskConfig(**merged)
        logger.info(
            f"⚙️ Risk config updated: ratio={self.risk_config.copy_ratio}, "
            f"min={self.risk_config.min_position_size}, max={self.risk_config.max_position_size}, "
            f"slippage={self.risk_config.slippage_tolerance}"
        )
        return self.risk_config

    async def execute_copy_trade(
        self,
        trade: Trade,
        user_id: str,
        risk_config: Optional[RiskConfig] = None,
        execution_wallet: Optional[str] = None
    ) -> ExecutionResult:
        risk = risk_config or self.risk_config
        stage = ExecutionStage.VALIDATING
        order: Optional[Order] = None

        try:
            sizing.validate_trade(trade)

            stage = ExecutionStage.PRICING
            order = sizing.build_order(trade, risk)

            stage = ExecutionStage.RESOLVING_CREDENTIALS
            lookup = await asyncio.wait_for(self.resolver.resolve(user_id), timeout=self.call_timeout)
            if not lookup.found:
                raise NeedsCredentialsError(
                    f"No exchange credentials for user {user_id}; configure API credentials to enable copy trading"
                )

            if self.balance_check_enabled:
                stage = ExecutionStage.CHECKING_BALANCE
                await self._check_balance(order, execution_wallet)

            stage = ExecutionStage.SUBMITTING
            logger.info(
                f"💰 Submitting copy order for user {user_id}: {order.side.value} {order.size:.2f} "
                f"[{trade.label}] {order.outcome} @ {order.price_limit:.4f}"
            )
            receipt = await self._submit(order, lookup)

        except CopyTradeError as e:
            logger.warning(f"❌ Copy trade {trade.transaction_id} failed for user {user_id} at {stage.value}: {e.reason.value}: {e}")
            return self._failed(trade, order, stage, e.reason, str(e), getattr(e, "status", None), execution_wallet)
        except asyncio.TimeoutError:
            message = f"Timed out after {self.call_timeout}s during {stage.value}"
            logger.warning(f"❌ Copy trade {trade.transaction_id} failed for user {user_id}: {message}")
            return self._failed(trade, order, stage, FailureReason.INTERNAL_ERROR, message, None, execution_wallet)
        except Exception as e:
            logger.error(f"Unexpected error executing copy trade {trade.transaction_id} for user {user_id}: {e}")
            return self._failed(trade, order, stage, FailureReason.INTERNAL_ERROR, str(e), None, execution_wallet)

        logger.info(f"✅ Copy order placed for user {user_id} (ID: {receipt.order_id})")
        return ExecutionResult(
            success=True,
            stage=ExecutionStage.SUCCEEDED,
            transaction_id=trade.transaction_id,
            market_id=trade.market_id,
            title=trade.title,
            outcome=trade.outcome,
            side=order.side,
            size=order.size,
            price=order.price_limit,
            original_size=trade.size,
            original_price=trade.price,
            order_id=receipt.order_id,
            execution_wallet=execution_wallet,
        )

    async def _check_balance(self, order: Order, execution_wallet: Optional[str]):
        if self.balance_checker is None:
            raise RuntimeError("Balance check enabled but no balance checker configured")
        if not execution_wallet:
            raise NeedsCredentialsError("No execution wallet configured for balance check")

        balance = await asyncio.wait_for(self.balance_checker.get_balance(execution_wallet), timeout=self.call_timeout)
        required = order.size * order.price_limit
        if balance < required:
            raise InsufficientFundsError(f"Insufficient balance: {balance:.2f} < {required:.2f}")

    async def _submit(self, order: Order, lookup):
        try:
            return await asyncio.wait_for(
                self.exchange.submit_order(order, lookup.credentials),
                timeout=self.call_timeout
            )
        except CopyTradeError:
            raise
        except asyncio.TimeoutError:
            raise ExchangeRejectedError(f"Order submission timed out after {self.call_timeout}s")
        except Exception as e:
            raise ExchangeRejectedError(f"Order submission failed: {e}", upstream=str(e))

    def _failed(self, trade: Trade, order: Optional[Order], stage: ExecutionStage, reason: FailureReason,
                message: str, upstream_status: Optional[int], execution_wallet: Optional[str]) -> ExecutionResult:
        return ExecutionResult(
            success=False,
            stage=ExecutionStage.FAILED,
            failed_at=stage,
            transaction_id=trade.transaction_id,
            market_id=trade.market_id,
            title=trade.title,
            outcome=trade.outcome,
            side=order.side if order else sizing.replica_side(trade.side),
            size=order.size if order else 0.0,
            price=order.price_limit if order else trade.price,
            original_size=trade.size,
            original_price=trade.price,
            execution_wallet=execution_wallet,
            reason=reason,
            message=message,
            upstream_status=upstream_status,
        )
