import logging
from abc import ABC, abstractmethod
from typing import List, Optional
from pydantic import BaseModel, ConfigDict
from copybot.core.interfaces import CredentialStore, ExchangeProvider
from copybot.core.models import Credentials

logger = logging.getLogger(__name__)


class CredentialLookup(BaseModel):
    model_config = ConfigDict(frozen=True)

    credentials: Optional[Credentials] = None
    source: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.credentials is not None


NOT_FOUND = CredentialLookup()


class CredentialStrategy(ABC):
    name: str = "strategy"

    @abstractmethod
    async def resolve(self, user_id: str) -> CredentialLookup:
        pass


class StoredCredentials(CredentialStrategy):
    """Credentials the user (or an earlier derivation) saved in the store."""
    name = "stored"

    def __init__(self, store: CredentialStore):
        self.store = store

    async def resolve(self, user_id: str) -> CredentialLookup:
        creds = await self.store.get(user_id)
        if creds is None:
            return NOT_FOUND
        return CredentialLookup(credentials=creds, source=self.name)


class DerivedCredentials(CredentialStrategy):
    """
    Best-effort auto-provisioning: derive API credentials from the configured
    signing key, persist them, then re-read the store.

    Anything that goes wrong here only means "not found"; the caller reports
    NeedsCredentials instead.
    """
    name = "derived"

    def __init__(self, exchange: ExchangeProvider, store: CredentialStore):
        self.exchange = exchange
        self.store = store

    async def resolve(self, user_id: str) -> CredentialLookup:
        try:
            derived = await self.exchange.derive_credentials()
        except Exception as e:
            logger.warning(f"🔑 Credential derivation failed for user {user_id}: {e}")
            return NOT_FOUND

        if derived is None:
            return NOT_FOUND

        if not await self.store.put(user_id, derived):
            logger.warning(f"🔑 Derived credentials for user {user_id} could not be stored")
            return NOT_FOUND

        logger.info(f"🔑 Auto-provisioned exchange credentials for user {user_id}")
        stored = await self.store.get(user_id)
        if stored is None:
            return NOT_FOUND
        return CredentialLookup(credentials=stored, source=self.name)


class CredentialResolver:
    """Tries each strategy in order and returns the first hit."""

    def __init__(self, strategies: List[CredentialStrategy]):
        self.strategies = strategies

    async def resolve(self, user_id: str) -> CredentialLookup:
        for strategy in self.strategies:
            lookup = await strategy.resolve(user_id)
            if lookup.found:
                logger.debug(f"Credentials for user {user_id} resolved via {strategy.name}")
                return lookup
        return NOT_FOUND
