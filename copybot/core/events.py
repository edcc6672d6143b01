from enum import Enum
from typing import Any, Dict, Union
from pydantic import BaseModel, Field
from datetime import datetime, timezone
from copybot.core.models import Trade, FailureReason


class NewTrade(BaseModel):
    wallet: str
    trade: Trade


class WalletCheckFailed(BaseModel):
    wallet: str
    reason: FailureReason
    message: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


MonitorEvent = Union[NewTrade, WalletCheckFailed]


class NotificationKind(str, Enum):
    TRADE_DETECTED = "trade:detected"
    TRADE_EXECUTED = "trade:executed"
    TRADE_EXECUTION_FAILED = "trade:execution-failed"


def user_topic(user_id: str) -> str:
    return f"user:{user_id}"


class Notification(BaseModel):
    kind: NotificationKind
    user_id: str
    data: Dict[str, Any]

    @property
    def topic(self) -> str:
        return user_topic(self.user_id)

    def to_wire(self) -> Dict[str, Any]:
        return {"event": self.kind.value, "data": self.data}
