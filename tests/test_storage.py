import asyncio
import json
from datetime import date

import pytest

import storage as storage_module
from errors import StorageError, ValidationError
from models import Instance, MonthlyLedger, Occurrence, Role
from storage import UNCHANGED, JsonStorage


def _ledger() -> MonthlyLedger:
    return MonthlyLedger(
        month="2025-01",
        bill_instances=[
            Instance(
                role=Role.bill,
                month="2025-01",
                name="Rent",
                occurrences=[
                    Occurrence(
                        sequence=1,
                        expected_date=date(2025, 1, 15),
                        expected_amount=150000,
                        is_closed=True,
                        closed_date=date(2025, 1, 10),
                        notes="paid early",
                    )
                ],
            )
        ],
        income_instances=[
            Instance(
                role=Role.income,
                month="2025-01",
                name="Salary",
                occurrences=[
                    Occurrence(sequence=1, expected_date=date(2025, 1, 31), expected_amount=400000)
                ],
            )
        ],
        bank_balances={"checking": 250000},
    )


@pytest.mark.asyncio
async def test_missing_documents_read_as_none(tmp_path):
    store = JsonStorage(tmp_path)
    assert await store.read_month("2025-01") is None
    assert await store.read_entity("bills") == []
    assert await store.list_months() == []


@pytest.mark.asyncio
async def test_month_round_trip_is_deep_equal(tmp_path):
    store = JsonStorage(tmp_path)
    ledger = _ledger()
    await store.write_month("2025-01", ledger.to_document())

    raw = await store.read_month("2025-01")
    assert raw == ledger.to_document()
    assert MonthlyLedger.model_validate(raw) == ledger
    assert (tmp_path / "months" / "2025-01.json").exists()


@pytest.mark.asyncio
async def test_concurrent_updates_on_one_key_are_all_kept(tmp_path):
    store = JsonStorage(tmp_path)
    await store.write_entity("bills", [])

    def append(value):
        def mutate(items):
            return items + [value], None

        return mutate

    await asyncio.gather(*(store.update_entity("bills", append(i)) for i in range(25)))
    assert sorted(await store.read_entity("bills")) == list(range(25))


@pytest.mark.asyncio
async def test_each_writer_observes_a_complete_prior_state(tmp_path):
    store = JsonStorage(tmp_path)
    await store.write_month("2025-01", {"counter": 0})
    observed = []

    def increment(current):
        observed.append(current["counter"])
        return {"counter": current["counter"] + 1}, None

    await asyncio.gather(*(store.update_month("2025-01", increment) for _ in range(20)))
    assert sorted(observed) == list(range(20))
    assert await store.read_month("2025-01") == {"counter": 20}


@pytest.mark.asyncio
async def test_different_keys_do_not_block_each_other(tmp_path):
    store = JsonStorage(tmp_path)
    async with store._lock("months/2025-01"):
        await asyncio.wait_for(store.write_entity("bills", [{"id": "a"}]), timeout=5)
    assert await store.read_entity("bills") == [{"id": "a"}]


@pytest.mark.asyncio
async def test_failed_mutation_writes_nothing(tmp_path):
    store = JsonStorage(tmp_path)
    await store.write_month("2025-01", {"counter": 1})

    def explode(current):
        raise ValidationError("bad input")

    with pytest.raises(ValidationError):
        await store.update_month("2025-01", explode)
    assert await store.read_month("2025-01") == {"counter": 1}


@pytest.mark.asyncio
async def test_unchanged_result_skips_write(tmp_path):
    store = JsonStorage(tmp_path)
    path = tmp_path / "months" / "2025-01.json"
    await store.write_month("2025-01", {"counter": 1})
    before = path.stat().st_mtime_ns

    result = await store.update_month("2025-01", lambda current: (UNCHANGED, "kept"))
    assert result == "kept"
    assert path.stat().st_mtime_ns == before


@pytest.mark.asyncio
async def test_io_failure_keeps_previous_file(tmp_path, monkeypatch):
    store = JsonStorage(tmp_path)
    await store.write_month("2025-01", {"counter": 1})

    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(storage_module.os, "replace", broken_replace)
    with pytest.raises(StorageError) as excinfo:
        await store.write_month("2025-01", {"counter": 2})
    monkeypatch.undo()

    assert excinfo.value.path.endswith("2025-01.json")
    assert json.loads((tmp_path / "months" / "2025-01.json").read_text()) == {"counter": 1}
    assert list((tmp_path / "months").glob("*.tmp")) == []


@pytest.mark.asyncio
async def test_corrupt_document_raises_storage_error(tmp_path):
    store = JsonStorage(tmp_path)
    (tmp_path / "months").mkdir()
    (tmp_path / "months" / "2025-01.json").write_text("{not json")
    with pytest.raises(StorageError):
        await store.read_month("2025-01")


@pytest.mark.asyncio
async def test_undecodable_document_raises_storage_error(tmp_path):
    store = JsonStorage(tmp_path)
    (tmp_path / "months").mkdir()
    (tmp_path / "months" / "2025-01.json").write_bytes(b'{"month": "\xff\xfe"}')
    with pytest.raises(StorageError) as excinfo:
        await store.read_month("2025-01")
    assert excinfo.value.path.endswith("2025-01.json")


@pytest.mark.asyncio
async def test_month_keys_are_validated(tmp_path):
    store = JsonStorage(tmp_path)
    with pytest.raises(ValidationError):
        await store.read_month("../entities/bills")
    with pytest.raises(ValidationError):
        await store.write_month("2025-00", {})


@pytest.mark.asyncio
async def test_list_months_is_sorted_and_delete_removes(tmp_path):
    store = JsonStorage(tmp_path)
    for month in ("2025-03", "2024-12", "2025-01"):
        await store.write_month(month, {"month": month})
    assert await store.list_months() == ["2024-12", "2025-01", "2025-03"]
    assert await store.delete_month("2025-01") is True
    assert await store.delete_month("2025-01") is False
    assert await store.list_months() == ["2024-12", "2025-03"]
