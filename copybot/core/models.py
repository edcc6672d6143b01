import math
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator

# Raw timestamps above this are milliseconds, below are seconds.
MILLISECONDS_THRESHOLD = 1e12


def normalize_wallet(address: str) -> str:
    return address.strip().lower()


def normalize_timestamp(raw) -> datetime:
    """Converts a seconds/milliseconds epoch (or a datetime) to an aware UTC datetime."""
    if isinstance(raw, datetime):
        return raw if raw.tzinfo else raw.replace(tzinfo=timezone.utc)
    value = float(raw)
    if not math.isfinite(value):
        raise ValueError(f"Timestamp must be finite, got {raw!r}")
    if value > MILLISECONDS_THRESHOLD:
        value = value / 1000.0
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError) as e:
        raise ValueError(f"Timestamp out of range: {raw!r}") from e


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    FILLED = "FILLED"


class BotRunState(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"


class FailureReason(str, Enum):
    INVALID_TRADE_DATA = "InvalidTradeData"
    SOURCE_UNAVAILABLE = "SourceUnavailable"
    NEEDS_CREDENTIALS = "NeedsCredentials"
    INSUFFICIENT_FUNDS = "InsufficientFunds"
    EXCHANGE_REJECTED = "ExchangeRejected"
    INTERNAL_ERROR = "InternalError"


class ExecutionStage(str, Enum):
    VALIDATING = "validating"
    PRICING = "pricing"
    RESOLVING_CREDENTIALS = "resolving_credentials"
    CHECKING_BALANCE = "checking_balance"
    SUBMITTING = "submitting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Trade(BaseModel):
    """A single fill observed on a monitored wallet. Never mutated after ingestion."""
    model_config = ConfigDict(frozen=True)

    transaction_id: str
    market_id: str
    outcome: str = ""
    side: Optional[Side] = None
    size: float
    price: float
    timestamp: datetime
    asset_id: Optional[str] = None
    title: Optional[str] = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def _normalize_timestamp(cls, v):
        return normalize_timestamp(v)

    @property
    def label(self) -> str:
        return self.title or self.market_id


class RiskConfig(BaseModel):
    copy_ratio: float = Field(default=0.1, gt=0)
    min_position_size: float = Field(default=1.0, ge=0)
    max_position_size: float = Field(default=100.0, gt=0)
    slippage_tolerance: float = Field(default=0.01, ge=0)

    @model_validator(mode="after")
    def _check_bounds(self):
        if self.min_position_size > self.max_position_size:
            raise ValueError(
                f"min_position_size ({self.min_position_size}) exceeds max_position_size ({self.max_position_size})"
            )
        return self


class Credentials(BaseModel):
    """Exchange API credentials. Opaque to everything except the exchange adapter."""
    api_key: str
    api_secret: SecretStr
    api_passphrase: SecretStr = SecretStr("")


class Order(BaseModel):
    market_id: str
    token_id: Optional[str] = None
    outcome: str = ""
    market_name: str | None = None
    side: Side
    size: float
    price_limit: float
    status: OrderStatus = OrderStatus.PENDING
    order_id: Optional[str] = None


class OrderReceipt(BaseModel):
    order_id: str
    status: str = "submitted"


class ExecutionResult(BaseModel):
    success: bool
    stage: ExecutionStage
    failed_at: Optional[ExecutionStage] = None
    transaction_id: str
    market_id: str
    title: Optional[str] = None
    outcome: str = ""
    side: Side = Side.BUY
    size: float = 0.0
    price: float = 0.0
    original_size: float = 0.0
    original_price: float = 0.0
    order_id: Optional[str] = None
    execution_wallet: Optional[str] = None
    reason: Optional[FailureReason] = None
    message: Optional[str] = None
    upstream_status: Optional[int] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
