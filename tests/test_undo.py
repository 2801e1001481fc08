from datetime import date
from pathlib import Path

import pytest

from config import Settings
from errors import ConflictError, NotFoundError
from models import BillingPeriod, CategoryType, Role, UndoEntityType
from schemas import CategoryIn, CloseOccurrenceIn, TemplateIn
from services import build_services


def make_services(tmp_path: Path, today: date = date(2025, 1, 20)):
    settings = Settings(data_dir=tmp_path, timezone="UTC", undo_limit=5, scheduler_enabled=False)
    services = build_services(settings)
    services.months.today = lambda: today
    return services


def _rent(**overrides) -> TemplateIn:
    values = dict(name="Rent", amount=15000, billing_period=BillingPeriod.monthly, day_of_month=15)
    values.update(overrides)
    return TemplateIn(**values)


@pytest.mark.asyncio
async def test_undo_template_create_removes_it(tmp_path):
    services = make_services(tmp_path)
    rent = await services.bills.create(_rent())

    entry = await services.undo.undo()
    assert entry.entity_type == UndoEntityType.bill
    assert entry.entity_id == rent.id
    assert await services.bills.list_all() == []
    assert await services.undo.list_entries() == []


@pytest.mark.asyncio
async def test_undo_template_update_restores_previous_values(tmp_path):
    services = make_services(tmp_path)
    rent = await services.bills.create(_rent())
    await services.bills.update(rent.id, _rent(amount=16000))

    await services.undo.undo()
    restored = await services.bills.get(rent.id)
    assert restored.amount == 15000
    assert len(await services.undo.list_entries()) == 1


@pytest.mark.asyncio
async def test_undo_occurrence_close_reopens_it(tmp_path):
    services = make_services(tmp_path)
    await services.bills.create(_rent())
    await services.undo.clear()
    ledger = await services.months.generate_month("2025-01")
    rent = ledger.bill_instances[0]
    await services.months.close_occurrence(
        "2025-01", Role.bill, rent.id, rent.occurrences[0].id, CloseOccurrenceIn()
    )

    entry = await services.undo.undo()
    assert entry.entity_type == UndoEntityType.bill_instance
    ledger = await services.months.require_month("2025-01")
    restored = ledger.find_instance(Role.bill, rent.id)
    assert restored.is_closed is False
    assert restored.total_paid == 0
    assert ledger.summary.total_paid == 0


@pytest.mark.asyncio
async def test_undo_instance_delete_restores_and_clears_tombstone(tmp_path):
    services = make_services(tmp_path)
    template = await services.bills.create(_rent())
    ledger = await services.months.generate_month("2025-01")
    rent = ledger.bill_instances[0]
    await services.months.delete_instance("2025-01", Role.bill, rent.id)

    await services.undo.undo()
    ledger = await services.months.require_month("2025-01")
    assert [i.id for i in ledger.bill_instances] == [rent.id]
    assert template.id not in ledger.deleted_template_ids
    assert await services.months.sync_month("2025-01") == []


@pytest.mark.asyncio
async def test_undo_stack_keeps_only_most_recent_entries(tmp_path):
    services = make_services(tmp_path)
    created = []
    for index in range(7):
        category = await services.categories.create(
            CategoryIn(name=f"Category {index}", type=CategoryType.bill)
        )
        created.append(category.id)

    entries = await services.undo.list_entries()
    assert [e.entity_id for e in entries] == created[-5:]


@pytest.mark.asyncio
async def test_undo_with_empty_stack_conflicts(tmp_path):
    services = make_services(tmp_path)
    with pytest.raises(ConflictError):
        await services.undo.undo()


@pytest.mark.asyncio
async def test_undo_fails_when_month_is_gone_and_keeps_entry(tmp_path):
    services = make_services(tmp_path)
    await services.bills.create(_rent())
    await services.undo.clear()
    ledger = await services.months.generate_month("2025-01")
    rent = ledger.bill_instances[0]
    await services.months.close_occurrence(
        "2025-01", Role.bill, rent.id, rent.occurrences[0].id, CloseOccurrenceIn()
    )
    await services.months.delete_month("2025-01")

    with pytest.raises(NotFoundError):
        await services.undo.undo()
    assert len(await services.undo.list_entries()) == 1


@pytest.mark.asyncio
async def test_undo_refuses_to_overwrite_later_changes(tmp_path):
    services = make_services(tmp_path)
    await services.bills.create(_rent())
    await services.undo.clear()
    ledger = await services.months.generate_month("2025-01")
    rent = ledger.bill_instances[0]
    await services.months.close_occurrence(
        "2025-01", Role.bill, rent.id, rent.occurrences[0].id, CloseOccurrenceIn()
    )

    def rename(raw):
        raw["bill_instances"][0]["name"] = "Rent (edited elsewhere)"
        return raw, None

    await services.storage.update_month("2025-01", rename)

    with pytest.raises(ConflictError):
        await services.undo.undo()
    ledger = await services.months.require_month("2025-01")
    assert ledger.bill_instances[0].is_closed is True


@pytest.mark.asyncio
async def test_clear_empties_the_stack(tmp_path):
    services = make_services(tmp_path)
    await services.bills.create(_rent())
    await services.undo.clear()
    assert await services.undo.list_entries() == []
