from typing import Optional
from copybot.core.models import FailureReason


class CopyTradeError(Exception):
    """
    Base exception for every anticipated failure in the copy-trading pipeline.

    Each subclass carries the FailureReason it maps to, so services can turn
    an exception into a structured ExecutionResult without string matching.
    """
    reason: FailureReason = FailureReason.INTERNAL_ERROR


class InvalidTradeDataError(CopyTradeError):
    """
    Raised when an observed trade cannot be copied sensibly.

    Examples: non-positive size, price outside (0, 1].
    """
    reason = FailureReason.INVALID_TRADE_DATA


class SourceUnavailableError(CopyTradeError):
    """
    Raised when the market-data endpoint fails or returns garbage.

    Transient: the next poll cycle retries automatically.
    """
    reason = FailureReason.SOURCE_UNAVAILABLE


class TradeNotFoundError(Exception):
    """The source has no trades for a wallet. Not an error condition."""
    pass


class NeedsCredentialsError(CopyTradeError):
    """
    Raised when no exchange credentials exist for a user and none could be derived.

    Surfaced to the user; never retried silently.
    """
    reason = FailureReason.NEEDS_CREDENTIALS


class ExchangeError(CopyTradeError):
    """Base exception for errors arising from interaction with the exchange."""
    reason = FailureReason.EXCHANGE_REJECTED


class ExchangeRejectedError(ExchangeError):
    """
    Raised when order placement fails, either by a transport error or a
    non-success response. The upstream status and message are preserved.
    """

    def __init__(self, message: str, status: Optional[int] = None, upstream: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.upstream = upstream


class InsufficientFundsError(ExchangeError):
    """Raised when the execution wallet lacks funds for the replica order."""
    reason = FailureReason.INSUFFICIENT_FUNDS


class LedgerUnavailableError(Exception):
    """
    Raised when the processed-trade ledger cannot be read or written.

    A trade whose dedup mark fails must not be emitted.
    """
    pass


class CredentialStoreError(Exception):
    """Raised when the credential store backend fails (as opposed to a missing entry)."""
    pass
