from typing import Optional
from datetime import datetime, timezone
from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(SQLModel, table=True):
    __tablename__: str = "users"

    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(unique=True)
    execution_wallet: Optional[str] = Field(default=None)

    # Per-user risk overrides; NULL means the deployment default
    copy_ratio: Optional[float] = Field(default=None)
    min_position_size: Optional[float] = Field(default=None)
    max_position_size: Optional[float] = Field(default=None)
    slippage_tolerance: Optional[float] = Field(default=None)

    created_at: datetime = Field(default_factory=utcnow)


class UserWallet(SQLModel, table=True):
    __tablename__: str = "user_wallets"
    __table_args__ = (UniqueConstraint("user_id", "wallet"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True, foreign_key="users.id")
    wallet: str = Field(index=True)  # lowercase
    created_at: datetime = Field(default_factory=utcnow)


class BotStatus(SQLModel, table=True):
    __tablename__: str = "bot_status"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(unique=True, foreign_key="users.id")
    status: str  # Storing as string, BotRunState in logic
    started_at: Optional[datetime] = Field(default=None)
    stopped_at: Optional[datetime] = Field(default=None)


class ProcessedTrade(SQLModel, table=True):
    __tablename__: str = "processed_trades"
    __table_args__ = (UniqueConstraint("wallet", "transaction_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    wallet: str
    transaction_id: str
    processed_at: datetime = Field(default_factory=utcnow, index=True)


class ExchangeCredential(SQLModel, table=True):
    __tablename__: str = "exchange_credentials"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(unique=True, foreign_key="users.id")
    encrypted_api_key: str
    encrypted_api_secret: str
    encrypted_api_passphrase: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
