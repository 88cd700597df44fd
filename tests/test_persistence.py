"""
Tests for the SQLite Persistence Layer

Dedupe stamps and usage events through the repositories and the async
adapters used by the meter.
"""

import asyncio
import sqlite3
import threading
import time
from datetime import timedelta
from decimal import Decimal

import pytest

from meter_rail import persistence
from meter_rail.billing.calculator import RuleBasedUnitCalculator
from meter_rail.billing.meter import UsageMeter
from meter_rail.billing.rules import PrefixRuleResolver
from meter_rail.core.dedupe import DedupeKeyPolicy, DedupeScope
from meter_rail.core.errors import DedupeStoreUnavailableError, SinkWriteError
from meter_rail.core.types import (
    EndpointKey,
    IdempotencyKey,
    RequestId,
    TenantId,
    UsageEvent,
)
from meter_rail.persistence.adapters import DatabaseDedupeStore, DatabaseUsageSink
from meter_rail.persistence.database import Database
from meter_rail.persistence.models import DedupeStampRecord, format_timestamp, parse_timestamp
from meter_rail.persistence.repository import DedupeRepository, UsageEventRepository

TTL = timedelta(minutes=5)
TENANT = TenantId("tenant-a")
RID = RequestId("R1")
IDEM = IdempotencyKey("I1")


@pytest.fixture
def db():
    database = Database("sqlite:///:memory:")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def file_db(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'meter.db'}")
    database.initialize()
    yield database
    database.close()


def make_event(clock, request_id="R1", units="1.72", metadata=None):
    return UsageEvent(
        event_id=UsageEvent.new_event_id(),
        tenant=TENANT,
        endpoint=EndpointKey("Loans.Amortize"),
        units=Decimal(units),
        occurred_at=clock.now(),
        request_id=RequestId(request_id),
        idempotency_key=IDEM,
        rule_id="loans",
        status_code=200,
        metadata=metadata,
    )


class TestDatabase:
    """Connection and schema handling."""

    def test_initialize_creates_tables(self, db):
        tables = {r["name"] for r in db.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}

        assert {"dedupe_stamps", "usage_events", "schema_version"} <= tables

    def test_initialize_is_idempotent(self, db):
        db.initialize()

        assert db.execute("SELECT COUNT(*) as cnt FROM schema_version")[0]["cnt"] == 1

    def test_failed_block_rolls_back(self, db):
        with pytest.raises(RuntimeError):
            with db.transaction() as conn:
                conn.execute(
                    "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (99, "now"),
                )
                raise RuntimeError("boom")

        assert db.execute("SELECT COUNT(*) as cnt FROM schema_version")[0]["cnt"] == 1

    def test_unsupported_url_rejected(self):
        with pytest.raises(ValueError):
            Database("postgresql://localhost/meter")

    def test_transaction_commits(self, db):
        with db.transaction() as conn:
            conn.execute(
                "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                (2, "now"),
            )

        assert db.execute("SELECT COUNT(*) as cnt FROM schema_version")[0]["cnt"] == 2

    def test_close_reaches_every_thread(self, file_db):
        opened = []

        def use_database():
            with file_db.transaction() as conn:
                opened.append(conn)

        worker = threading.Thread(target=use_database)
        worker.start()
        worker.join()
        asyncio.run(asyncio.to_thread(use_database))
        use_database()

        assert file_db.open_connections == 3

        file_db.close()

        assert file_db.open_connections == 0
        for conn in opened:
            with pytest.raises(sqlite3.ProgrammingError):
                conn.execute("SELECT 1")

    def test_usable_after_close(self, file_db):
        file_db.close()

        assert file_db.execute("SELECT COUNT(*) as cnt FROM usage_events")[0]["cnt"] == 0

    def test_repositories_need_a_database(self):
        with pytest.raises(TypeError):
            DedupeRepository()
        with pytest.raises(TypeError):
            UsageEventRepository()

        assert not hasattr(persistence, "get_database")
        assert not hasattr(Database, "get_instance")


class TestTimestamps:
    """Fixed-width UTC text."""

    def test_format_and_parse(self, clock):
        text = format_timestamp(clock.now())

        assert text == "2025-01-01T12:00:00.000000Z"
        assert parse_timestamp(text) == clock.now()

    def test_naive_timestamp_rejected(self, clock):
        with pytest.raises(ValueError):
            format_timestamp(clock.now().replace(tzinfo=None))


class TestDatabaseDedupeStore:
    """Conditional upsert semantics."""

    def stamp(self, store, ttl=TTL, tenant=TENANT, endpoint=None):
        return asyncio.run(store.try_stamp(tenant, RID, IDEM, ttl, endpoint=endpoint))

    def test_first_seen_then_duplicate(self, db, clock):
        store = DatabaseDedupeStore(db, clock=clock)

        assert self.stamp(store) is True
        assert self.stamp(store) is False

    def test_expired_stamp_refreshed(self, db, clock):
        store = DatabaseDedupeStore(db, clock=clock)
        self.stamp(store)

        clock.advance(TTL)

        assert self.stamp(store) is True
        assert self.stamp(store) is False

    def test_zero_ttl_is_single_use(self, db, clock):
        store = DatabaseDedupeStore(db, clock=clock)

        assert self.stamp(store, ttl=timedelta(0)) is True
        assert self.stamp(store, ttl=timedelta(0)) is True

    def test_tenants_are_isolated(self, db, clock):
        store = DatabaseDedupeStore(db, clock=clock)

        assert self.stamp(store, tenant=TenantId("a")) is True
        assert self.stamp(store, tenant=TenantId("b")) is True

    def test_endpoint_scope(self, db, clock):
        store = DatabaseDedupeStore(db, clock=clock, policy=DedupeKeyPolicy(DedupeScope.ENDPOINT))

        assert self.stamp(store, endpoint=EndpointKey("Loans.Amortize")) is True
        assert self.stamp(store, endpoint=EndpointKey("Loans.Quote")) is True
        assert self.stamp(store, endpoint=EndpointKey("Loans.Quote")) is False

    def test_release(self, db, clock):
        store = DatabaseDedupeStore(db, clock=clock)
        self.stamp(store)

        asyncio.run(store.release(TENANT, RID, IDEM))

        assert store.repository.count() == 0
        assert self.stamp(store) is True

    def test_acquire_returns_installed_stamp(self, db, clock):
        store = DatabaseDedupeStore(db, clock=clock)

        installed = asyncio.run(store.acquire(TENANT, RID, IDEM, TTL))

        assert installed.expires_at == clock.now() + TTL
        assert asyncio.run(store.acquire(TENANT, RID, IDEM, TTL)) is None

    def test_release_stamp_drops_own_stamp(self, db, clock):
        store = DatabaseDedupeStore(db, clock=clock)
        installed = asyncio.run(store.acquire(TENANT, RID, IDEM, TTL))

        assert asyncio.run(store.release_stamp(installed)) is True
        assert store.repository.count() == 0

    def test_release_stamp_keeps_newer_stamp(self, db, clock):
        store = DatabaseDedupeStore(db, clock=clock)
        stale = asyncio.run(store.acquire(TENANT, RID, IDEM, TTL))
        clock.advance(TTL + timedelta(seconds=1))
        newer = asyncio.run(store.acquire(TENANT, RID, IDEM, TTL))

        assert asyncio.run(store.release_stamp(stale)) is False

        row = store.repository.get(newer.key)
        assert parse_timestamp(row.expires_at) == newer.expires_at
        assert self.stamp(store) is False

    def test_conditional_release_matches_expiry(self, db, clock):
        repository = DedupeRepository(db)
        key = DatabaseDedupeStore(db, clock=clock).policy.build(TENANT, RID, IDEM)
        repository.try_stamp(key, clock.now(), clock.now() + TTL)

        assert repository.release(key, clock.now()) is False
        assert repository.release(key, clock.now() + TTL) is True
        assert repository.get(key) is None

    def test_purge_expired(self, db, clock):
        store = DatabaseDedupeStore(db, clock=clock)
        self.stamp(store, ttl=timedelta(seconds=1))
        asyncio.run(store.try_stamp(TENANT, RequestId("R2"), IDEM, timedelta(hours=1)))

        clock.advance(timedelta(seconds=10))

        assert store.purge_expired() == 1
        assert store.repository.count() == 1

    def test_stamp_row_contents(self, db, clock):
        store = DatabaseDedupeStore(db, clock=clock)
        self.stamp(store)
        key = store.policy.build(TENANT, RID, IDEM)

        row = store.repository.get(key)

        assert isinstance(row, DedupeStampRecord)
        assert row.tenant_id == "tenant-a"
        assert row.idempotency_key == "I1"
        assert parse_timestamp(row.expires_at) == clock.now() + TTL

    def test_driver_error_surfaces_as_unavailable(self, db, clock):
        store = DatabaseDedupeStore(db, clock=clock)
        db.execute("DROP TABLE dedupe_stamps")

        with pytest.raises(DedupeStoreUnavailableError):
            self.stamp(store)

    def test_threads_race_for_one_identity(self, file_db, clock):
        store = DatabaseDedupeStore(file_db, clock=clock)
        key = store.policy.build(TENANT, RID, IDEM)
        workers = 16
        barrier = threading.Barrier(workers)
        results = []

        def worker():
            barrier.wait()
            results.append(store.repository.try_stamp(key, clock.now(), clock.now() + TTL))

        threads = [threading.Thread(target=worker) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == workers
        assert results.count(True) == 1


class TestDatabaseUsageSink:
    """Event persistence."""

    def test_batch_written_and_read_back(self, db, clock):
        sink = DatabaseUsageSink(db)
        events = [make_event(clock, "R1"), make_event(clock, "R2", metadata={"plan": "pro"})]

        asyncio.run(sink.write(events))

        repo = UsageEventRepository(db)
        assert repo.count() == 2
        assert repo.count(tenant_id="tenant-b") == 0

        stored = repo.get(events[1].event_id).to_event()
        assert stored.units == Decimal("1.72")
        assert stored.occurred_at == clock.now()
        assert stored.request_id == RequestId("R2")
        assert dict(stored.metadata) == {"plan": "pro"}

    def test_newest_first(self, db, clock):
        sink = DatabaseUsageSink(db)
        asyncio.run(sink.write([make_event(clock, "old")]))
        clock.advance(timedelta(seconds=1))
        asyncio.run(sink.write([make_event(clock, "new")]))

        records = UsageEventRepository(db).get_by_tenant("tenant-a", limit=10)

        assert [r.request_id for r in records] == ["new", "old"]

    def test_empty_write_is_noop(self, db):
        asyncio.run(DatabaseUsageSink(db).write([]))

        assert UsageEventRepository(db).count() == 0

    def test_duplicate_event_id_rolls_back_batch(self, db, clock):
        sink = DatabaseUsageSink(db)
        event = make_event(clock)
        asyncio.run(sink.write([event]))

        with pytest.raises(SinkWriteError):
            asyncio.run(sink.write([make_event(clock, "R9"), event]))

        assert UsageEventRepository(db).count() == 1


class TestMeterOverDatabase:
    """The meter wired to the SQLite store and sink."""

    def make_meter(self, db, clock, loan_rules):
        store = DatabaseDedupeStore(db, clock=clock)
        meter = UsageMeter(
            calculator=RuleBasedUnitCalculator(PrefixRuleResolver(loan_rules)),
            dedupe_store=store,
            sink=DatabaseUsageSink(db),
            clock=clock,
            ttl=TTL,
        )
        return meter, store

    def test_records_once(self, db, clock, loan_rules, make_request):
        meter, _ = self.make_meter(db, clock, loan_rules)
        request = make_request(items={"periods": 36})

        first = asyncio.run(meter.try_record(TENANT, request, IDEM, RID))
        again = asyncio.run(meter.try_record(TENANT, request, IDEM, RID))

        assert first is not None
        assert again is None
        assert UsageEventRepository(db).count() == 1

    def test_cancellation_while_stamping_releases_stamp(
        self, db, clock, loan_rules, make_request, monkeypatch
    ):
        meter, store = self.make_meter(db, clock, loan_rules)
        request = make_request(items={"periods": 36})
        stamp_row = store.repository.try_stamp

        def slow_try_stamp(key, now, expires_at):
            won = stamp_row(key, now, expires_at)
            time.sleep(0.3)
            return won

        monkeypatch.setattr(store.repository, "try_stamp", slow_try_stamp)

        async def scenario():
            task = asyncio.create_task(meter.try_record(TENANT, request, IDEM, RID))
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            return await meter.try_record(TENANT, request, IDEM, RID)

        retried = asyncio.run(scenario())

        assert retried is not None
        assert UsageEventRepository(db).count() == 1
        assert meter.get_metrics()["cancelled"] == 1
