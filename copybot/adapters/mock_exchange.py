import logging
import uuid
from typing import Dict, List, Optional
from copybot.core.interfaces import ExchangeProvider, BalanceChecker
from copybot.core.models import Order, OrderStatus, OrderReceipt, Credentials
from copybot.core.errors import InsufficientFundsError, ExchangeRejectedError

logger = logging.getLogger(__name__)


class MockExchangeAdapter(ExchangeProvider, BalanceChecker):
    """Dry-run exchange: fills every order that the simulated balance can pay for."""

    def __init__(self, initial_balance: float = 10000.0, derive_enabled: bool = True):
        self.balance = initial_balance
        self.derive_enabled = derive_enabled
        self.orders: Dict[str, Order] = {}
        logger.info(f"👻 Mock Exchange Initialized with ${self.balance}")

    @property
    def submitted(self) -> List[Order]:
        return list(self.orders.values())

    async def get_balance(self, wallet: str) -> float:
        return self.balance

    async def derive_credentials(self) -> Optional[Credentials]:
        if not self.derive_enabled:
            return None
        return Credentials(api_key=f"mock-key-{uuid.uuid4().hex[:8]}", api_secret="mock-secret", api_passphrase="mock-passphrase")

    async def submit_order(self, order: Order, credentials: Credentials) -> OrderReceipt:
        if order.size <= 0 or not 0 < order.price_limit <= 1:
            raise ExchangeRejectedError(f"Mock rejected order: size={order.size}, price={order.price_limit}", status=400)

        cost = order.size * order.price_limit
        if cost > self.balance:
            raise InsufficientFundsError(f"Mock Insufficient Funds: Have ${self.balance:.2f}, need ${cost:.2f}")
        self.balance -= cost

        # Simulate Order ID
        order_id = f"mock-{uuid.uuid4()}"
        filled = order.model_copy(update={"order_id": order_id, "status": OrderStatus.FILLED})
        self.orders[order_id] = filled

        target = order.market_name or order.market_id
        logger.info(f"👻 [MOCK {order.side.value}] {order.size:.2f} of {target} @ {order.price_limit:.4f}. New Bal: ${self.balance:.2f}")
        return OrderReceipt(order_id=order_id, status=OrderStatus.FILLED.value)
