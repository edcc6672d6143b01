from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, SecretStr
from copybot.core.models import RiskConfig

class Settings(BaseSettings):
    DATABASE_URL: str = Field(default="sqlite+aiosqlite:///copybot.db", description="Async SQLAlchemy URL (sqlite+aiosqlite or postgresql+asyncpg)")
    DRY_RUN: bool = Field(default=False, description="If True, orders go to the mock exchange")

    # Monitoring
    POLL_INTERVAL_SECONDS: float = Field(default=5.0, gt=0)
    TRADE_FETCH_LIMIT: int = Field(default=20, gt=0)
    MAX_CONCURRENT_WALLETS: int = Field(default=20, gt=0)
    REQUEST_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)
    DATA_API_URL: str = Field(default="https://data-api.polymarket.com")
    DATA_API_REQUESTS_PER_SECOND: float = Field(default=10.0, gt=0)
    LEDGER_RETENTION_DAYS: int = Field(default=30, ge=30)
    LEDGER_PURGE_EVERY_CYCLES: int = Field(default=720, gt=0)

    # Risk
    COPY_RATIO: float = Field(default=0.1, gt=0)
    MIN_POSITION_SIZE: float = Field(default=1.0, ge=0)
    MAX_POSITION_SIZE: float = Field(default=100.0, gt=0)
    SLIPPAGE_TOLERANCE: float = Field(default=0.01, ge=0)

    # Balance pre-check
    BALANCE_CHECK_ENABLED: bool = Field(default=False)
    EVM_RPC_URL: str = Field(default="https://polygon-rpc.com")
    USDC_CONTRACT_ADDRESS: str = Field(default="0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174", description="USDC.e on Polygon")

    # Exchange
    CLOB_HOST: str = Field(default="https://clob.polymarket.com")
    CHAIN_ID: int = Field(default=137)
    SIGNATURE_TYPE: int = Field(default=1, description="0 EOA, 1 Magic/Email, 2 browser wallet")
    FUNDER_ADDRESS: str | None = Field(default=None, description="Polymarket proxy/profile address holding funds")
    SIGNER_PRIVATE_KEY: SecretStr | None = Field(default=None, description="Key used to auto-derive API credentials")
    DEFAULT_EXECUTION_WALLET: str | None = Field(default=None)

    # Credential custody
    CREDENTIALS_ENCRYPTION_KEY: SecretStr | None = Field(default=None, description="Fernet key for stored exchange credentials")

    # Notifications
    NOTIFY_HOST: str = Field(default="0.0.0.0")
    NOTIFY_PORT: int = Field(default=8765)
    TRADE_JOURNAL_DIR: str = Field(default="copybot/logs")

    model_config = SettingsConfigDict(env_file="copybot/.env", env_file_encoding="utf-8", extra="ignore")

    def default_execution_wallet(self) -> str | None:
        """
        Account whose balance is checked for users without their own execution wallet.
        Orders are paid from FUNDER_ADDRESS, so that is the fallback.
        """
        return self.DEFAULT_EXECUTION_WALLET or self.FUNDER_ADDRESS

    def risk_config(self) -> RiskConfig:
        return RiskConfig(
            copy_ratio=self.COPY_RATIO,
            min_position_size=self.MIN_POSITION_SIZE,
            max_position_size=self.MAX_POSITION_SIZE,
            slippage_tolerance=self.SLIPPAGE_TOLERANCE,
        )

settings = Settings()
