from abc import ABC, abstractmethod
from datetime import timedelta
from typing import List, Optional
from .models import Trade, BotRunState, Credentials, Order, OrderReceipt, RiskConfig
from .events import Notification


class TradeSource(ABC):

    @abstractmethod
    async def fetch_recent_trades(self, wallet: str, limit: int) -> List[Trade]:
        """
        Returns the most recent trades of a wallet, newest first.

        Raises:
            TradeNotFoundError: the wallet has no trades (not an error).
            SourceUnavailableError: the endpoint failed or returned garbage.
        """
        pass

    async def start(self):
        """Optional lifecycle hook (e.g. open an HTTP connection pool)."""
        pass

    async def stop(self):
        """Optional lifecycle hook."""
        pass


class ProcessedTradeLedger(ABC):

    @abstractmethod
    async def try_mark_processed(self, wallet: str, transaction_id: str) -> bool:
        """
        Atomically records (wallet, transaction_id) as processed.

        Returns:
            bool: True if this call performed the insert, False if it was already present.

        Raises:
            LedgerUnavailableError: the backing store could not be reached.
        """
        pass

    @abstractmethod
    async def purge_older_than(self, age: timedelta) -> int:
        """Deletes records older than `age`. Returns the number removed."""
        pass


class SubscriptionDirectory(ABC):

    @abstractmethod
    async def list_wallets(self) -> List[str]:
        """Returns every wallet with at least one subscriber."""
        pass

    @abstractmethod
    async def subscribers_of(self, wallet: str) -> List[str]:
        """Returns the ids of users subscribed to a wallet."""
        pass

    @abstractmethod
    async def run_state(self, user_id: str) -> BotRunState:
        """Returns the user's bot state; users that never started are STOPPED."""
        pass

    @abstractmethod
    async def execution_identity(self, user_id: str) -> Optional[str]:
        """Returns the account the user trades through, if any."""
        pass

    async def risk_config_for(self, user_id: str) -> Optional[RiskConfig]:
        """Per-user risk override. None means the deployment default applies."""
        return None


class CredentialStore(ABC):

    @abstractmethod
    async def get(self, user_id: str) -> Optional[Credentials]:
        pass

    @abstractmethod
    async def put(self, user_id: str, credentials: Credentials) -> bool:
        pass

    @abstractmethod
    async def delete(self, user_id: str) -> bool:
        pass


class ExchangeProvider(ABC):

    @abstractmethod
    async def submit_order(self, order: Order, credentials: Credentials) -> OrderReceipt:
        """
        Places an order on the exchange on behalf of the credential owner.

        Returns:
            OrderReceipt: the exchange-assigned order id and status.

        Raises:
            ExchangeRejectedError: transport failure or non-success response.
        """
        pass

    async def derive_credentials(self) -> Optional[Credentials]:
        """Derives API credentials from a configured signing key. None when unsupported."""
        return None

    async def start(self):
        pass

    async def stop(self):
        pass


class BalanceChecker(ABC):

    @abstractmethod
    async def get_balance(self, wallet: str) -> float:
        """Returns the spendable collateral balance of a wallet."""
        pass


class NotificationSink(ABC):

    @abstractmethod
    async def publish(self, notification: Notification) -> None:
        """Best-effort delivery to the notification's topic. Must not raise."""
        pass
