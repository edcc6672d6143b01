"""
SQL implementations of the collaborator interfaces: the processed-trade
ledger, the subscription directory and the encrypted credential store.
"""

import logging
import re
from datetime import timedelta
from typing import List, Optional
from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import select, delete, insert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from copybot.core.interfaces import ProcessedTradeLedger, SubscriptionDirectory, CredentialStore
from copybot.core.models import BotRunState, Credentials, RiskConfig, normalize_wallet
from copybot.core.errors import LedgerUnavailableError, CredentialStoreError
from copybot.db.database import build_session_maker
from copybot.db.schemas import User, UserWallet, BotStatus, ProcessedTrade, ExchangeCredential, utcnow

logger = logging.getLogger(__name__)

WALLET_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")


class SqlProcessedTradeLedger(ProcessedTradeLedger):

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self.session_maker = build_session_maker(engine)

    def _insert_ignoring_duplicates(self, values: dict):
        dialect = self.engine.dialect.name
        if dialect == "sqlite":
            return sqlite_insert(ProcessedTrade).values(**values).on_conflict_do_nothing(
                index_elements=["wallet", "transaction_id"]
            )
        if dialect == "postgresql":
            return pg_insert(ProcessedTrade).values(**values).on_conflict_do_nothing(
                index_elements=["wallet", "transaction_id"]
            )
        return None

    async def try_mark_processed(self, wallet: str, transaction_id: str) -> bool:
        values = {"wallet": normalize_wallet(wallet), "transaction_id": transaction_id, "processed_at": utcnow()}
        stmt = self._insert_ignoring_duplicates(values)
        try:
            async with self.session_maker() as session:
                if stmt is not None:
                    result = await session.execute(stmt)
                    await session.commit()
                    return result.rowcount == 1

                # Other dialects: rely on the unique constraint
                try:
                    await session.execute(insert(ProcessedTrade).values(**values))
                    await session.commit()
                    return True
                except IntegrityError:
                    await session.rollback()
                    return False
        except SQLAlchemyError as e:
            raise LedgerUnavailableError(f"Could not mark {wallet}/{transaction_id}: {e}")

    async def purge_older_than(self, age: timedelta) -> int:
        cutoff = utcnow() - age
        try:
            async with self.session_maker() as session:
                result = await session.execute(delete(ProcessedTrade).where(ProcessedTrade.processed_at < cutoff))
                await session.commit()
                return result.rowcount or 0
        except SQLAlchemyError as e:
            raise LedgerUnavailableError(f"Could not purge processed trades: {e}")

    async def contains(self, wallet: str, transaction_id: str) -> bool:
        async with self.session_maker() as session:
            result = await session.execute(
                select(ProcessedTrade.id).where(
                    ProcessedTrade.wallet == normalize_wallet(wallet),
                    ProcessedTrade.transaction_id == transaction_id
                )
            )
            return result.first() is not None


class SqlSubscriptionDirectory(SubscriptionDirectory):
    """
    Users, their monitored wallets and their bot state.

    Besides the reads the pipeline needs, this carries the management
    operations behind the user-facing settings: subscribe/unsubscribe,
    start/stop, execution wallet and risk overrides.
    """

    def __init__(self, engine: AsyncEngine, default_execution_wallet: Optional[str] = None,
                 default_risk: Optional[RiskConfig] = None):
        self.session_maker = build_session_maker(engine)
        self.default_execution_wallet = default_execution_wallet
        self.default_risk = default_risk or RiskConfig()

    # --- Reads used by the pipeline ---

    async def list_wallets(self) -> List[str]:
        async with self.session_maker() as session:
            result = await session.execute(select(UserWallet.wallet).distinct())
            return [normalize_wallet(w) for w in result.scalars().all()]

    async def subscribers_of(self, wallet: str) -> List[str]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(UserWallet.user_id).where(UserWallet.wallet == normalize_wallet(wallet)).distinct()
            )
            return [str(uid) for uid in result.scalars().all()]

    async def run_state(self, user_id: str) -> BotRunState:
        async with self.session_maker() as session:
            result = await session.execute(select(BotStatus.status).where(BotStatus.user_id == int(user_id)))
            status = result.scalar_one_or_none()
        if status == BotRunState.RUNNING.value:
            return BotRunState.RUNNING
        return BotRunState.STOPPED

    async def execution_identity(self, user_id: str) -> Optional[str]:
        async with self.session_maker() as session:
            user = await session.get(User, int(user_id))
        if user and user.execution_wallet:
            return user.execution_wallet
        return self.default_execution_wallet

    async def risk_config_for(self, user_id: str) -> Optional[RiskConfig]:
        async with self.session_maker() as session:
            user = await session.get(User, int(user_id))
        if user is None:
            return None
        overrides = {
            "copy_ratio": user.copy_ratio,
            "min_position_size": user.min_position_size,
            "max_position_size": user.max_position_size,
            "slippage_tolerance": user.slippage_tolerance,
        }
        overrides = {k: v for k, v in overrides.items() if v is not None}
        if not overrides:
            return None
        try:
            return RiskConfig(**{**self.default_risk.model_dump(), **overrides})
        except ValueError as e:
            logger.warning(f"Ignoring invalid risk overrides for user {user_id}: {e}")
            return None

    # --- Management ---

    async def add_user(self, email: str, execution_wallet: Optional[str] = None) -> str:
        if execution_wallet is not None:
            execution_wallet = self._validated_wallet(execution_wallet)
        async with self.session_maker() as session:
            user = User(email=email, execution_wallet=execution_wallet)
            session.add(user)
            await session.commit()
            await session.refresh(user)
            return str(user.id)

    async def add_subscription(self, user_id: str, wallet: str) -> bool:
        """Returns False if the user already watches this wallet."""
        wallet = self._validated_wallet(wallet)
        async with self.session_maker() as session:
            session.add(UserWallet(user_id=int(user_id), wallet=wallet))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
        logger.info(f"➕ User {user_id} now watches {wallet}")
        return True

    async def remove_subscription(self, user_id: str, wallet: str) -> bool:
        async with self.session_maker() as session:
            result = await session.execute(
                delete(UserWallet).where(
                    UserWallet.user_id == int(user_id),
                    UserWallet.wallet == normalize_wallet(wallet)
                )
            )
            await session.commit()
            return bool(result.rowcount)

    async def wallets_of(self, user_id: str) -> List[str]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(UserWallet.wallet).where(UserWallet.user_id == int(user_id)).order_by(UserWallet.created_at.desc())
            )
            return list(result.scalars().all())

    async def start_bot(self, user_id: str):
        await self._set_status(user_id, BotRunState.RUNNING)

    async def stop_bot(self, user_id: str):
        await self._set_status(user_id, BotRunState.STOPPED)

    async def _set_status(self, user_id: str, state: BotRunState):
        now = utcnow()
        async with self.session_maker() as session:
            result = await session.execute(select(BotStatus).where(BotStatus.user_id == int(user_id)))
            row = result.scalar_one_or_none()
            if row is None:
                row = BotStatus(user_id=int(user_id), status=state.value)
                session.add(row)
            row.status = state.value
            if state == BotRunState.RUNNING:
                row.started_at = now
                row.stopped_at = None
            else:
                row.stopped_at = now
            await session.commit()
        logger.info(f"{'▶️' if state == BotRunState.RUNNING else '⏹️'} Bot for user {user_id} is now {state.value}")

    async def set_execution_wallet(self, user_id: str, wallet: str) -> str:
        wallet = self._validated_wallet(wallet)
        async with self.session_maker() as session:
            user = await session.get(User, int(user_id))
            if user is None:
                raise KeyError(f"Unknown user {user_id}")
            user.execution_wallet = wallet
            await session.commit()
        return wallet

    async def set_risk_overrides(self, user_id: str, **overrides) -> Optional[RiskConfig]:
        allowed = set(RiskConfig.model_fields)
        unknown = set(overrides) - allowed
        if unknown:
            raise ValueError(f"Unknown risk parameters: {sorted(unknown)}")
        # Validate against the defaults before storing
        RiskConfig(**{**self.default_risk.model_dump(), **{k: v for k, v in overrides.items() if v is not None}})

        async with self.session_maker() as session:
            user = await session.get(User, int(user_id))
            if user is None:
                raise KeyError(f"Unknown user {user_id}")
            for key, value in overrides.items():
                setattr(user, key, value)
            await session.commit()
        return await self.risk_config_for(user_id)

    @staticmethod
    def _validated_wallet(wallet: str) -> str:
        wallet = normalize_wallet(wallet)
        if not WALLET_PATTERN.match(wallet):
            raise ValueError(f"Invalid wallet address: {wallet}")
        return wallet


class SqlCredentialStore(CredentialStore):
    """Exchange API credentials, Fernet-encrypted at rest."""

    def __init__(self, engine: AsyncEngine, encryption_key: str):
        self.session_maker = build_session_maker(engine)
        self._cipher = Fernet(encryption_key.encode())

    def _encrypt(self, raw: str) -> str:
        return self._cipher.encrypt(raw.encode()).decode()

    def _decrypt(self, enc: str) -> str:
        return self._cipher.decrypt(enc.encode()).decode()

    async def get(self, user_id: str) -> Optional[Credentials]:
        try:
            async with self.session_maker() as session:
                result = await session.execute(
                    select(ExchangeCredential).where(ExchangeCredential.user_id == int(user_id))
                )
                row = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise CredentialStoreError(f"Credential lookup failed for user {user_id}: {e}")

        if row is None:
            return None
        try:
            return Credentials(
                api_key=self._decrypt(row.encrypted_api_key),
                api_secret=self._decrypt(row.encrypted_api_secret),
                api_passphrase=self._decrypt(row.encrypted_api_passphrase),
            )
        except InvalidToken:
            logger.error(f"❌ Stored credentials for user {user_id} cannot be decrypted with the current key")
            return None

    async def put(self, user_id: str, credentials: Credentials) -> bool:
        try:
            async with self.session_maker() as session:
                result = await session.execute(
                    select(ExchangeCredential).where(ExchangeCredential.user_id == int(user_id))
                )
                row = result.scalar_one_or_none()
                if row is None:
                    row = ExchangeCredential(
                        user_id=int(user_id),
                        encrypted_api_key="",
                        encrypted_api_secret="",
                        encrypted_api_passphrase="",
                    )
                    session.add(row)
                row.encrypted_api_key = self._encrypt(credentials.api_key)
                row.encrypted_api_secret = self._encrypt(credentials.api_secret.get_secret_value())
                row.encrypted_api_passphrase = self._encrypt(credentials.api_passphrase.get_secret_value())
                row.updated_at = utcnow()
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"❌ Failed to store credentials for user {user_id}: {e}")
            return False
        logger.info(f"✅ Stored encrypted exchange credentials for user {user_id}")
        return True

    async def delete(self, user_id: str) -> bool:
        try:
            async with self.session_maker() as session:
                result = await session.execute(
                    delete(ExchangeCredential).where(ExchangeCredential.user_id == int(user_id))
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"❌ Failed to delete credentials for user {user_id}: {e}")
            return False
        return bool(result.rowcount)

    async def has(self, user_id: str) -> bool:
        return await self.get(user_id) is not None
