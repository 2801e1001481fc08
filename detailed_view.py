from datetime import date
from typing import Optional

from leftover import build_tallies, leftover_for_month
from models import Category, CategoryType, Instance, MonthlyLedger, PaymentSource
from recurrence import is_extra_occurrence_month
from schemas import (
    CategoryRef,
    CategorySection,
    DetailedInstance,
    DetailedMonth,
    PaymentSourceRef,
    PayoffPayment,
    PayoffSummary,
    SectionSubtotal,
)


UNCATEGORIZED_ID = "__uncategorized__"
UNCATEGORIZED = CategoryRef(
    id=UNCATEGORIZED_ID, name="Uncategorized", color="#6b7280", sort_order=999
)


def days_overdue(instance: Instance, today: date) -> Optional[int]:
    overdue = [
        o.expected_date
        for o in instance.occurrences
        if not o.is_closed and o.expected_date < today
    ]
    if not overdue:
        return None
    return (today - min(overdue)).days


def _next_due(instance: Instance) -> date:
    dates = [o.expected_date for o in instance.open_occurrences()] or [
        o.expected_date for o in instance.occurrences
    ]
    return min(dates, default=date.max)


def _sort_key(instance: Instance) -> tuple:
    return (instance.is_adhoc, instance.is_closed, _next_due(instance), instance.name.lower())


def detail_instance(
    instance: Instance, sources: dict[str, PaymentSource], today: date
) -> DetailedInstance:
    overdue = days_overdue(instance, today)
    source = sources.get(instance.payment_source_id or "")
    return DetailedInstance(
        **instance.to_document(),
        occurrence_count=len(instance.occurrences),
        is_extra_occurrence_month=is_extra_occurrence_month(
            instance.billing_period, len(instance.occurrences)
        ),
        is_overdue=overdue is not None,
        days_overdue=overdue,
        payment_source=PaymentSourceRef(id=source.id, name=source.name) if source else None,
    )


def _category_ref(category: Category) -> CategoryRef:
    return CategoryRef(
        id=category.id,
        name=category.name,
        type=category.type,
        color=category.color,
        sort_order=category.sort_order,
    )


def build_sections(
    instances: list[Instance],
    categories: list[Category],
    sources: dict[str, PaymentSource],
    today: date,
) -> list[CategorySection]:
    by_category: dict[str, list[Instance]] = {}
    known = {category.id for category in categories}
    for instance in instances:
        key = instance.category_id if instance.category_id in known else UNCATEGORIZED_ID
        by_category.setdefault(key, []).append(instance)

    ordered = sorted(
        categories,
        key=lambda c: (c.type == CategoryType.variable, c.sort_order, c.name.lower()),
    )
    refs = [_category_ref(category) for category in ordered] + [UNCATEGORIZED]

    sections = []
    for ref in refs:
        items = by_category.get(ref.id)
        if not items:
            continue
        items = sorted(items, key=_sort_key)
        sections.append(
            CategorySection(
                category=ref,
                items=[detail_instance(item, sources, today) for item in items],
                subtotal=SectionSubtotal(
                    expected=sum(item.expected_amount for item in items),
                    actual=sum(item.total_settled for item in items),
                ),
            )
        )
    return sections


def build_payoff_summaries(
    ledger: MonthlyLedger, sources: dict[str, PaymentSource]
) -> list[PayoffSummary]:
    summaries = []
    for instance in ledger.bill_instances:
        if not instance.is_payoff_bill or not instance.payoff_source_id:
            continue
        source = sources.get(instance.payoff_source_id)
        summaries.append(
            PayoffSummary(
                payment_source_id=instance.payoff_source_id,
                payment_source_name=source.name if source else instance.name,
                instance_id=instance.id,
                balance=ledger.bank_balances.get(instance.payoff_source_id),
                total_paid=instance.total_settled,
                remaining=instance.remaining,
                payments=[
                    PayoffPayment(amount=o.expected_amount, paid_date=o.closed_date)
                    for o in instance.occurrences
                    if o.is_closed
                ],
            )
        )
    return summaries


def build_detailed_month(
    ledger: MonthlyLedger,
    categories: list[Category],
    payment_sources: list[PaymentSource],
    today: date,
) -> DetailedMonth:
    sources = {source.id: source for source in payment_sources}
    breakdown = leftover_for_month(ledger, payment_sources)
    return DetailedMonth(
        month=ledger.month,
        bill_sections=build_sections(ledger.bill_instances, categories, sources, today),
        income_sections=build_sections(ledger.income_instances, categories, sources, today),
        tallies=build_tallies(ledger),
        leftover=breakdown.leftover,
        leftover_breakdown=breakdown,
        payoff_summaries=build_payoff_summaries(ledger, sources),
        bank_balances=dict(ledger.bank_balances),
        variable_expenses=[expense.to_document() for expense in ledger.variable_expenses],
        is_read_only=ledger.is_read_only,
        last_updated=ledger.updated_at,
    )
