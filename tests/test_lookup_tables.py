"""LookupTableManager sync and rotation tests."""

from __future__ import annotations

from pathlib import Path
import sys

import pytest
from solders.pubkey import Pubkey

sys.path.insert(0, str(Path(__file__).parent.parent))

from fake_ledger import FakeLedger, FakeStake, lookup_table_op
from rebaser.control_plane.lookup_tables import LookupTableManager
from rebaser.control_plane.registry import LookupTableRegistry
from rebaser.ledger.accounts import ACTIVE_DEACTIVATION_SLOT, BoostAccounts
from rebaser.ledger.instructions import CREATE_LOOKUP_TABLE, EXTEND_LOOKUP_TABLE
from rebaser.shared.errors import PartialBatchFailure, TransportFailure


async def no_wait(seconds: float) -> None:  # noqa: ARG001
    return None


@pytest.fixture
def env(tmp_path: Path):
    program_id = Pubkey.new_unique()
    ledger = FakeLedger(program_id)
    authority = Pubkey.new_unique()
    accounts = BoostAccounts(ledger, program_id)
    registry = LookupTableRegistry(tmp_path / "luts")

    def manager(sleep=ledger.sleep) -> LookupTableManager:
        return LookupTableManager(
            gateway=ledger,
            accounts=accounts,
            registry=registry,
            authority=authority,
            sleep=sleep,
        )

    return ledger, registry, manager


def tabled_addresses(ledger: FakeLedger) -> list[Pubkey]:
    return [address for table in ledger.tables.values() for address in table.addresses]


async def test_sync_places_every_participant_in_exactly_one_table(env) -> None:
    ledger, registry, manager = env
    state = ledger.add_pool(Pubkey.new_unique(), last_rebase_time=0, participants=300)

    report = await manager().sync(state.pool)

    assert report.ok
    assert len(report.created) == 2
    assert report.extended_chunks == 10 + 2
    assert report.extended_addresses == 300
    tabled = tabled_addresses(ledger)
    assert sorted(map(str, tabled)) == sorted(str(s.address) for s in state.stakes)
    assert all(len(table.addresses) <= 256 for table in ledger.tables.values())
    assert set(registry.tables(state.pool)) == set(ledger.tables)


async def test_sync_is_a_no_op_when_everything_is_tabled(env) -> None:
    ledger, _registry, manager = env
    state = ledger.add_pool(Pubkey.new_unique(), last_rebase_time=0, participants=12)
    await manager().sync(state.pool)
    calls = list(ledger.lookup_table_calls)

    report = await manager().sync(state.pool)

    assert report.ok
    assert report.success_count == 0
    assert ledger.lookup_table_calls == calls


async def test_sync_fills_existing_table_before_creating(env) -> None:
    ledger, registry, manager = env
    state = ledger.add_pool(Pubkey.new_unique(), last_rebase_time=0, participants=30)
    await manager().sync(state.pool)

    for stake_id in range(30, 40):
        state.stakes.append(FakeStake(Pubkey.new_unique(), stake_id, Pubkey.new_unique()))
    report = await manager().sync(state.pool)

    assert report.created == []
    assert report.extended_addresses == 10
    assert len(ledger.tables) == 1
    assert len(registry.tables(state.pool)) == 1
    assert len(tabled_addresses(ledger)) == 40


async def test_failed_create_is_registered_then_pruned(env) -> None:
    ledger, registry, manager = env
    state = ledger.add_pool(Pubkey.new_unique(), last_rebase_time=0, participants=5)
    ledger.inject(TransportFailure("connection reset"), lookup_table_op(CREATE_LOOKUP_TABLE))

    report = await manager().sync(state.pool)

    assert not report.ok
    assert report.failures[0].operation == "create"
    assert ledger.tables == {}
    assert registry.tables(state.pool) == [report.failures[0].table]

    assert await manager().load_tables(state.pool) == []
    assert registry.tables(state.pool) == []


async def test_failed_extend_chunk_does_not_stop_the_rest(env) -> None:
    ledger, _registry, manager = env
    state = ledger.add_pool(Pubkey.new_unique(), last_rebase_time=0, participants=60)
    ledger.inject(TransportFailure("timeout"), lookup_table_op(EXTEND_LOOKUP_TABLE))

    report = await manager().sync(state.pool)

    assert report.failure_count == 1
    assert report.extended_chunks == 2
    assert report.extended_addresses == 60 - 26
    with pytest.raises(PartialBatchFailure) as excinfo:
        report.raise_for_failure()
    assert excinfo.value.failed == 1
    assert excinfo.value.succeeded == 3

    retry = await manager().sync(state.pool)
    assert retry.ok
    assert len(tabled_addresses(ledger)) == 60


async def test_rotate_closes_tables_after_cooldown_and_reopens(env) -> None:
    ledger, registry, manager = env
    state = ledger.add_pool(Pubkey.new_unique(), last_rebase_time=0, participants=20)
    await manager().sync(state.pool)
    old_tables = set(ledger.tables)

    report = await manager().rotate(state.pool)

    assert report.ok
    assert set(report.deactivated) == old_tables
    assert set(report.closed) == old_tables
    assert len(report.created) == 1
    assert not old_tables & set(ledger.tables)
    assert registry.tables(state.pool) == report.created
    assert len(tabled_addresses(ledger)) == 20


async def test_rotate_defers_close_until_cooldown_elapses(env) -> None:
    ledger, registry, manager = env
    state = ledger.add_pool(Pubkey.new_unique(), last_rebase_time=0, participants=20)
    await manager().sync(state.pool)
    (table,) = ledger.tables

    report = await manager(sleep=no_wait).rotate(state.pool)

    assert not report.ok
    assert report.deferred == [table]
    assert "close" not in ledger.lookup_table_calls
    assert table in registry.tables(state.pool)
    assert report.created == []

    retry = await manager().rotate(state.pool)

    assert retry.ok
    assert retry.deactivated == []
    assert retry.closed == [table]
    assert table not in registry.tables(state.pool)


async def test_rotate_with_no_tables_does_nothing(env) -> None:
    ledger, _registry, manager = env
    state = ledger.add_pool(Pubkey.new_unique(), last_rebase_time=0, participants=0)
    sleeps: list[float] = []

    async def record_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    report = await manager(sleep=record_sleep).rotate(state.pool)

    assert report.ok
    assert sleeps == []
    assert ledger.lookup_table_calls == []


async def test_rotate_only_retires_the_given_tables(env) -> None:
    ledger, registry, manager = env
    state = ledger.add_pool(Pubkey.new_unique(), last_rebase_time=0, participants=300)
    first, second = (await manager().sync(state.pool)).created

    report = await manager().rotate(state.pool, retiring=[first])

    assert report.ok
    assert report.deactivated == [first]
    assert report.closed == [first]
    assert ledger.closed == [first]
    assert ledger.tables[second].deactivation_slot == ACTIVE_DEACTIVATION_SLOT
    assert second in registry.tables(state.pool)
    assert set(registry.tables(state.pool)) == set(ledger.tables)
    assert len(tabled_addresses(ledger)) == 300
