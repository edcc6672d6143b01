import asyncio
import logging
import sys
from datetime import timedelta
from cryptography.fernet import Fernet
from copybot.config.settings import settings
from copybot.db.database import build_engine, init_db
from copybot.db.repositories import SqlProcessedTradeLedger, SqlSubscriptionDirectory, SqlCredentialStore
from copybot.adapters.polymarket import PolymarketTradeSource
from copybot.adapters.websocket_server import NotificationServer
from copybot.services.rate_limiter import RequestRateLimiter
from copybot.services.credentials import CredentialResolver, StoredCredentials, DerivedCredentials
from copybot.services.execution import TradeExecutor
from copybot.services.wallet_monitor import WalletMonitor
from copybot.services.dispatcher import Dispatcher
from copybot.services.notifier import NotificationHub
from copybot.services.trade_journal import TradeJournal

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger("copybot")


def build_exchange():
    """Returns (exchange, balance_checker) for the configured mode."""
    if settings.DRY_RUN:
        from copybot.adapters.mock_exchange import MockExchangeAdapter
        mock = MockExchangeAdapter(initial_balance=10000.0)
        return mock, mock

    from copybot.adapters.polymarket import PolymarketExchange
    exchange = PolymarketExchange(
        host=settings.CLOB_HOST,
        chain_id=settings.CHAIN_ID,
        private_key=settings.SIGNER_PRIVATE_KEY.get_secret_value() if settings.SIGNER_PRIVATE_KEY else None,
        signature_type=settings.SIGNATURE_TYPE,
        funder=settings.FUNDER_ADDRESS
    )
    balance_checker = None
    if settings.BALANCE_CHECK_ENABLED:
        from copybot.adapters.balance import OnchainBalanceChecker
        balance_checker = OnchainBalanceChecker(settings.EVM_RPC_URL, settings.USDC_CONTRACT_ADDRESS)
    return exchange, balance_checker


async def main():
    logger.info("🚀 Copybot Starting Up...")
    logger.info(f"   Mode: {'DRY RUN (MOCK)' if settings.DRY_RUN else 'LIVE (REAL MONEY)'}")

    if settings.CREDENTIALS_ENCRYPTION_KEY:
        encryption_key = settings.CREDENTIALS_ENCRYPTION_KEY.get_secret_value()
    elif settings.DRY_RUN:
        logger.warning("   CREDENTIALS_ENCRYPTION_KEY not set; using an ephemeral key (stored credentials won't survive a restart)")
        encryption_key = Fernet.generate_key().decode()
    else:
        logger.critical("CREDENTIALS_ENCRYPTION_KEY is required in live mode")
        return

    # 1. Persistence
    engine = build_engine(settings.DATABASE_URL)
    await init_db(engine)
    risk = settings.risk_config()
    ledger = SqlProcessedTradeLedger(engine)
    directory = SqlSubscriptionDirectory(engine, settings.default_execution_wallet(), risk)
    credential_store = SqlCredentialStore(engine, encryption_key)

    # 2. Exchange and execution
    try:
        exchange, balance_checker = build_exchange()
    except Exception as e:
        logger.critical(f"Failed to initialize exchange adapter: {e}")
        await engine.dispose()
        return

    resolver = CredentialResolver([
        StoredCredentials(credential_store),
        DerivedCredentials(exchange, credential_store),
    ])
    executor = TradeExecutor(
        exchange=exchange,
        resolver=resolver,
        risk_config=risk,
        balance_checker=balance_checker,
        balance_check_enabled=settings.BALANCE_CHECK_ENABLED,
        call_timeout=settings.REQUEST_TIMEOUT_SECONDS
    )

    # 3. Detection -> dispatch -> notification
    source = PolymarketTradeSource(
        base_url=settings.DATA_API_URL,
        timeout=settings.REQUEST_TIMEOUT_SECONDS,
        rate_limiter=RequestRateLimiter(
            requests_per_second=settings.DATA_API_REQUESTS_PER_SECOND,
            max_concurrent=settings.MAX_CONCURRENT_WALLETS,
            queue_timeout=settings.REQUEST_TIMEOUT_SECONDS
        )
    )
    events: asyncio.Queue = asyncio.Queue()
    monitor = WalletMonitor(
        source=source,
        ledger=ledger,
        directory=directory,
        events=events,
        poll_interval=settings.POLL_INTERVAL_SECONDS,
        fetch_limit=settings.TRADE_FETCH_LIMIT,
        max_concurrent=settings.MAX_CONCURRENT_WALLETS,
        call_timeout=settings.REQUEST_TIMEOUT_SECONDS,
        retention=timedelta(days=settings.LEDGER_RETENTION_DAYS),
        purge_every_cycles=settings.LEDGER_PURGE_EVERY_CYCLES
    )
    hub = NotificationHub()
    server = NotificationServer(hub, host=settings.NOTIFY_HOST, port=settings.NOTIFY_PORT)
    dispatcher = Dispatcher(
        directory=directory,
        executor=executor,
        sink=hub,
        events=events,
        journal=TradeJournal(settings.TRADE_JOURNAL_DIR),
        call_timeout=settings.REQUEST_TIMEOUT_SECONDS
    )

    # 4. Run until interrupted
    try:
        await source.start()
        await exchange.start()
        await server.start()
        await dispatcher.start()
        await monitor.start()
        logger.info("🎯 All services running")
        await asyncio.Event().wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("🛑 Shutdown signal received.")
    finally:
        await monitor.stop()
        await dispatcher.stop()
        await server.stop()
        await exchange.stop()
        await source.stop()
        await engine.dispose()
        logger.info("👋 Goodnight.")

if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
