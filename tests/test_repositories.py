"""Tests for the SQL repositories, against a throwaway SQLite database."""

import asyncio
from datetime import timedelta

import pytest
from cryptography.fernet import Fernet

from copybot.core.models import BotRunState, RiskConfig
from copybot.db.database import build_engine, build_session_maker, init_db
from copybot.db.repositories import SqlProcessedTradeLedger, SqlSubscriptionDirectory, SqlCredentialStore
from copybot.db.schemas import ProcessedTrade, utcnow
from conftest import WALLET, OTHER_WALLET, creds


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'copybot.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sql_directory(engine):
    return SqlSubscriptionDirectory(engine, default_execution_wallet="0x" + "1" * 40,
                                    default_risk=RiskConfig(copy_ratio=0.1, min_position_size=1, max_position_size=100))


class TestProcessedTradeLedger:

    async def test_first_mark_wins(self, engine):
        ledger = SqlProcessedTradeLedger(engine)

        assert await ledger.try_mark_processed(WALLET, "t1") is True
        assert await ledger.try_mark_processed(WALLET, "t1") is False
        assert await ledger.contains(WALLET, "t1")

    async def test_same_transaction_on_two_wallets(self, engine):
        ledger = SqlProcessedTradeLedger(engine)

        assert await ledger.try_mark_processed(WALLET, "t1")
        assert await ledger.try_mark_processed(OTHER_WALLET, "t1")

    async def test_wallet_case_is_ignored(self, engine):
        ledger = SqlProcessedTradeLedger(engine)

        assert await ledger.try_mark_processed(WALLET.upper().replace("0X", "0x"), "t1")
        assert not await ledger.try_mark_processed(WALLET, "t1")

    async def test_purge_removes_only_old_records(self, engine):
        ledger = SqlProcessedTradeLedger(engine)
        async with build_session_maker(engine)() as session:
            session.add(ProcessedTrade(wallet=WALLET, transaction_id="old", processed_at=utcnow() - timedelta(days=31)))
            await session.commit()
        await ledger.try_mark_processed(WALLET, "new")

        removed = await ledger.purge_older_than(timedelta(days=30))

        assert removed == 1
        assert not await ledger.contains(WALLET, "old")
        assert await ledger.contains(WALLET, "new")


class TestSubscriptionDirectory:

    async def test_subscriptions_drive_wallet_set(self, sql_directory):
        u1 = await sql_directory.add_user("a@example.com")
        u2 = await sql_directory.add_user("b@example.com")

        assert await sql_directory.add_subscription(u1, WALLET.upper().replace("0X", "0x"))
        assert await sql_directory.add_subscription(u2, WALLET)
        assert not await sql_directory.add_subscription(u1, WALLET)

        assert await sql_directory.list_wallets() == [WALLET]
        assert sorted(await sql_directory.subscribers_of(WALLET)) == sorted([u1, u2])

        assert await sql_directory.remove_subscription(u1, WALLET)
        assert await sql_directory.subscribers_of(WALLET) == [u2]

    async def test_invalid_wallet_rejected(self, sql_directory):
        u1 = await sql_directory.add_user("a@example.com")
        with pytest.raises(ValueError):
            await sql_directory.add_subscription(u1, "not-a-wallet")

    async def test_run_state_defaults_to_stopped(self, sql_directory):
        u1 = await sql_directory.add_user("a@example.com")
        assert await sql_directory.run_state(u1) == BotRunState.STOPPED

        await sql_directory.start_bot(u1)
        assert await sql_directory.run_state(u1) == BotRunState.RUNNING

        await sql_directory.stop_bot(u1)
        assert await sql_directory.run_state(u1) == BotRunState.STOPPED

    async def test_execution_identity_falls_back_to_default(self, sql_directory):
        u1 = await sql_directory.add_user("a@example.com")
        assert await sql_directory.execution_identity(u1) == "0x" + "1" * 40

        await sql_directory.set_execution_wallet(u1, OTHER_WALLET)
        assert await sql_directory.execution_identity(u1) == OTHER_WALLET

    async def test_risk_overrides_merge_with_defaults(self, sql_directory):
        u1 = await sql_directory.add_user("a@example.com")
        assert await sql_directory.risk_config_for(u1) is None

        risk = await sql_directory.set_risk_overrides(u1, copy_ratio=0.5)

        assert risk.copy_ratio == 0.5
        assert risk.max_position_size == 100
        assert await sql_directory.risk_config_for(u1) == risk

    async def test_invalid_risk_overrides_rejected(self, sql_directory):
        u1 = await sql_directory.add_user("a@example.com")
        with pytest.raises(ValueError):
            await sql_directory.set_risk_overrides(u1, min_position_size=500)
        with pytest.raises(ValueError):
            await sql_directory.set_risk_overrides(u1, leverage=3)
        assert await sql_directory.risk_config_for(u1) is None


class TestCredentialStore:

    async def test_round_trip_is_encrypted(self, engine, sql_directory):
        u1 = await sql_directory.add_user("a@example.com")
        store = SqlCredentialStore(engine, Fernet.generate_key().decode())

        assert await store.get(u1) is None
        assert await store.put(u1, creds("k1"))
        loaded = await store.get(u1)

        assert loaded.api_key == "k1"
        assert loaded.api_secret.get_secret_value() == "secret"
        assert await store.has(u1)

    async def test_put_replaces_existing(self, engine, sql_directory):
        u1 = await sql_directory.add_user("a@example.com")
        store = SqlCredentialStore(engine, Fernet.generate_key().decode())

        await store.put(u1, creds("k1"))
        await store.put(u1, creds("k2"))

        assert (await store.get(u1)).api_key == "k2"

    async def test_wrong_key_reads_as_missing(self, engine, sql_directory):
        u1 = await sql_directory.add_user("a@example.com")
        await SqlCredentialStore(engine, Fernet.generate_key().decode()).put(u1, creds())

        other = SqlCredentialStore(engine, Fernet.generate_key().decode())

        assert await other.get(u1) is None

    async def test_delete(self, engine, sql_directory):
        u1 = await sql_directory.add_user("a@example.com")
        store = SqlCredentialStore(engine, Fernet.generate_key().decode())
        await store.put(u1, creds())

        assert await store.delete(u1)
        assert not await store.delete(u1)
        assert await store.get(u1) is None


class TestConcurrentMarks:

    async def test_concurrent_marks_have_exactly_one_winner(self, engine):
        """Test that racing marks of the same trade insert it exactly once."""
        ledger = SqlProcessedTradeLedger(engine)

        results = await asyncio.gather(*(ledger.try_mark_processed(WALLET, "t1") for _ in range(20)))

        assert results.count(True) == 1
        assert results.count(False) == 19

    def test_timestamps_are_timezone_aware(self):
        assert utcnow().tzinfo is not None


class TestWalletsOf:

    async def test_lists_only_that_users_wallets(self, sql_directory):
        u1 = await sql_directory.add_user("a@example.com")
        u2 = await sql_directory.add_user("b@example.com")
        await sql_directory.add_subscription(u1, WALLET)
        await sql_directory.add_subscription(u1, OTHER_WALLET)
        await sql_directory.add_subscription(u2, OTHER_WALLET)

        assert sorted(await sql_directory.wallets_of(u1)) == sorted([WALLET, OTHER_WALLET])
        assert await sql_directory.wallets_of(u2) == [OTHER_WALLET]

        await sql_directory.remove_subscription(u1, WALLET)
        assert await sql_directory.wallets_of(u1) == [OTHER_WALLET]
