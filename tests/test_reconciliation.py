"""
Tests for the provider reconciliation loop.
"""

import asyncio
import logging

import pytest

from conftest import ALICE, PROVIDER, FakeLedger
from depin_storage.accounting import to_base_units
from depin_storage.errors import LedgerConnectionError
from depin_storage.metadata_index import StoredFileRecord
from depin_storage.reconciliation import ReconciliationLoop


def _store(index, provider_id, cid, size):
    index.files[cid] = StoredFileRecord(
        cid=cid,
        provider_id=provider_id,
        client_address=ALICE,
        file_size=size,
        file_name=f"{cid}.bin",
        encryption_salt="AAAAAAAAAAAAAAAAAAAAAA==",
    )


@pytest.fixture
def provider_ledger(chain):
    return FakeLedger(chain, PROVIDER)


@pytest.fixture
def loop(provider_ledger, index, provider_record, registry):
    return ReconciliationLoop(
        provider_ledger,
        index,
        provider_record.provider_id,
        allocated_units=10,
        price_per_unit=10,
        registry=registry,
        reconcile_interval=300,
        reward_interval=300,
    )


@pytest.mark.asyncio
async def test_reconcile_sums_indexed_files(loop, index, provider_record, clock):
    _store(index, provider_record.provider_id, "QmA", 0.5)
    _store(index, provider_record.provider_id, "QmB", 1.25)
    _store(index, "someoneelse", "QmC", 4)
    clock.advance(60)

    snapshot = await loop.reconcile_once()

    assert snapshot.used == pytest.approx(1.75)
    assert snapshot.available == pytest.approx(8.25)
    assert snapshot.file_count == 2
    record = index.providers[provider_record.provider_id]
    assert record.available_storage == pytest.approx(8.25)
    assert record.allocated_storage == 10
    assert record.is_active
    assert record.last_updated == clock()


@pytest.mark.asyncio
async def test_reconcile_refreshes_registry(loop, registry, provider_record):
    await loop.reconcile_once()

    entry = registry.get(provider_record.provider_id)
    assert entry is not None
    assert entry.address == PROVIDER
    assert entry.storage == 10


@pytest.mark.asyncio
async def test_overcommitted_provider_reports_zero_available(loop, index, provider_record, caplog):
    _store(index, provider_record.provider_id, "QmBig", 12)

    with caplog.at_level(logging.WARNING, logger="depin_storage.reconciliation"):
        snapshot = await loop.reconcile_once()

    assert snapshot.available == 0
    assert index.providers[provider_record.provider_id].available_storage == 0
    assert "only" in caplog.text


@pytest.mark.asyncio
async def test_shrunk_disk_corrects_ledger_before_index(loop, chain, index, provider_record):
    loop.free_capacity = lambda: 3.0
    _store(index, provider_record.provider_id, "QmA", 1)
    index.calls.clear()

    snapshot = await loop.reconcile_once()

    assert snapshot.ledger_updated
    assert snapshot.allocated == 4.0
    assert chain.mutations() == ["register_provider"]
    assert chain.calls[0][1] == (4.0, 10.0)
    assert index.providers[provider_record.provider_id].allocated_storage == 4.0


@pytest.mark.asyncio
async def test_tick_with_ledger_unreachable_leaves_capacity_unchanged(loop, chain, index, provider_record):
    """A failing ledger correction aborts the tick before the index is written."""
    loop.free_capacity = lambda: 2.0
    chain.failures["register_provider"] = LedgerConnectionError("Ledger unreachable")
    before = index.providers[provider_record.provider_id]

    with pytest.raises(LedgerConnectionError):
        await loop.reconcile_once()

    assert index.providers[provider_record.provider_id] == before
    assert "update_provider_capacity" not in index.calls
    assert loop.allocated == 10


@pytest.mark.asyncio
async def test_disk_with_room_leaves_ledger_alone(loop, chain):
    loop.free_capacity = lambda: 100.0

    snapshot = await loop.reconcile_once()

    assert not snapshot.ledger_updated
    assert chain.mutations() == []


@pytest.mark.asyncio
async def test_claim_rewards_returns_new_balance(loop, chain):
    balance = await loop.claim_rewards()

    assert balance == to_base_units(1)
    assert chain.mutations() == ["distribute_mining_rewards"]


@pytest.mark.asyncio
async def test_run_keeps_ticking_through_errors(loop, chain, index, provider_record, caplog):
    loop.reconcile_interval = 0.01
    loop.reward_interval = 0.01
    loop.free_capacity = lambda: 2.0
    chain.failures["register_provider"] = LedgerConnectionError("Ledger unreachable")
    chain.failures["distribute_mining_rewards"] = LedgerConnectionError("Ledger unreachable")
    stop_event = asyncio.Event()

    with caplog.at_level(logging.ERROR, logger="depin_storage.reconciliation"):
        task = asyncio.create_task(loop.run(stop_event))
        await asyncio.sleep(0.1)
        stop_event.set()
        await asyncio.wait_for(task, timeout=1)

    attempts = [name for name, _ in chain.calls]
    assert attempts.count("register_provider") >= 2
    assert attempts.count("distribute_mining_rewards") >= 2
    assert "Error in reconcile tick" in caplog.text
    assert "Error in rewards tick" in caplog.text
    assert index.providers[provider_record.provider_id].allocated_storage == 10


@pytest.mark.asyncio
async def test_run_recovers_on_next_tick(loop, chain, index, provider_record):
    loop.reconcile_interval = 0.01
    loop.reward_interval = 60
    loop.free_capacity = lambda: 2.0
    chain.failures["register_provider"] = LedgerConnectionError("Ledger unreachable")
    stop_event = asyncio.Event()

    task = asyncio.create_task(loop.run(stop_event))
    await asyncio.sleep(0.05)
    del chain.failures["register_provider"]
    await asyncio.sleep(0.05)
    stop_event.set()
    await asyncio.wait_for(task, timeout=1)

    assert index.providers[provider_record.provider_id].allocated_storage == 2.0


@pytest.mark.asyncio
async def test_run_stops_promptly(loop):
    stop_event = asyncio.Event()
    task = asyncio.create_task(loop.run(stop_event))
    stop_event.set()

    await asyncio.wait_for(task, timeout=1)
