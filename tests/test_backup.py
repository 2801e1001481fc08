from datetime import date
from pathlib import Path

import pytest

from config import Settings
from errors import ValidationError
from models import BillingPeriod, CategoryType, Role
from schemas import CategoryIn, CloseOccurrenceIn, PaymentSourceIn, TemplateIn
from services import build_services


def make_services(tmp_path: Path, today: date = date(2025, 1, 20)):
    settings = Settings(data_dir=tmp_path, timezone="UTC", undo_limit=5, scheduler_enabled=False)
    services = build_services(settings)
    services.months.today = lambda: today
    return services


async def _populate(services) -> None:
    housing = await services.categories.create(CategoryIn(name="Housing", type=CategoryType.bill))
    await services.payment_sources.create(
        PaymentSourceIn(name="Checking", type="bank_account", balance=120000)
    )
    await services.bills.create(
        TemplateIn(
            name="Rent",
            amount=15000,
            billing_period=BillingPeriod.monthly,
            day_of_month=15,
            category_id=housing.id,
        )
    )
    await services.incomes.create(
        TemplateIn(
            name="Salary",
            amount=200000,
            billing_period=BillingPeriod.bi_weekly,
            start_date=date(2025, 1, 2),
        )
    )
    ledger = await services.months.generate_month("2025-01")
    rent = ledger.bill_instances[0]
    await services.months.close_occurrence(
        "2025-01", Role.bill, rent.id, rent.occurrences[0].id, CloseOccurrenceIn()
    )
    await services.months.generate_month("2025-02")


def _without_export_date(data: dict) -> dict:
    return {key: value for key, value in data.items() if key != "export_date"}


@pytest.mark.asyncio
async def test_export_then_import_reproduces_the_store(tmp_path):
    source = make_services(tmp_path / "source")
    await _populate(source)
    exported = await source.backup.export()
    assert [m["month"] for m in exported["months"]] == ["2025-01", "2025-02"]

    target = make_services(tmp_path / "target")
    await target.months.generate_month("2024-06")
    counts = await target.backup.import_data(exported)
    assert counts == {
        "bills": 1,
        "incomes": 1,
        "payment_sources": 1,
        "categories": 1,
        "months": 2,
    }

    again = await target.backup.export()
    assert _without_export_date(again) == _without_export_date(exported)
    assert await target.undo.list_entries() == []


@pytest.mark.asyncio
async def test_invalid_backup_writes_nothing(tmp_path):
    services = make_services(tmp_path)
    await _populate(services)
    before = await services.backup.export()

    with pytest.raises(ValidationError):
        await services.backup.import_data(
            {"bills": [{"name": "Broken", "billing_period": "fortnightly"}], "months": []}
        )

    after = await services.backup.export()
    assert _without_export_date(after) == _without_export_date(before)
