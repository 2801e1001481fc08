from typing import Iterable, Mapping, Optional

from models import Instance, MonthlyLedger, PaymentSource
from schemas import LeftoverBreakdown, MonthTallies, SectionTally


def compute_leftover(
    ledger: MonthlyLedger,
    bank_balances: Mapping[str, int],
    required_source_ids: Iterable[str],
    *,
    excluded_source_ids: Iterable[str] = (),
    source_names: Optional[Mapping[str, str]] = None,
) -> LeftoverBreakdown:
    """Project the month's cash position.

    leftover = balances of non-excluded sources + income still to receive
    - bills still to pay. When any required source has no balance entry the
    result is flagged invalid and every number is zero.
    """
    missing = [
        source_id
        for source_id in dict.fromkeys(required_source_ids)
        if source_id not in bank_balances
    ]
    if missing:
        names = source_names or {}
        labels = ", ".join(names.get(source_id, source_id) for source_id in missing)
        return LeftoverBreakdown(
            is_valid=False,
            missing_balances=missing,
            error_message=f"Enter bank balances to calculate leftover. Missing: {labels}",
        )

    excluded = set(excluded_source_ids)
    bank_total = sum(
        balance for source_id, balance in bank_balances.items() if source_id not in excluded
    )
    remaining_income = sum(i.remaining for i in ledger.income_instances if not i.is_closed)
    remaining_expenses = sum(i.remaining for i in ledger.bill_instances if not i.is_closed)
    return LeftoverBreakdown(
        bank_balances=bank_total,
        remaining_income=remaining_income,
        remaining_expenses=remaining_expenses,
        leftover=bank_total + remaining_income - remaining_expenses,
    )


def referenced_source_ids(ledger: MonthlyLedger) -> set[str]:
    referenced = set()
    for instance in ledger.all_instances():
        if instance.payment_source_id:
            referenced.add(instance.payment_source_id)
        for occurrence in instance.occurrences:
            if occurrence.payment_source_id:
                referenced.add(occurrence.payment_source_id)
    return referenced


def required_source_ids(
    ledger: MonthlyLedger, payment_sources: Iterable[PaymentSource]
) -> list[str]:
    referenced = referenced_source_ids(ledger)
    return [
        source.id
        for source in payment_sources
        if not source.excluded_from_leftover
        and (source.is_active or source.id in referenced)
    ]


def leftover_for_month(
    ledger: MonthlyLedger, payment_sources: list[PaymentSource]
) -> LeftoverBreakdown:
    return compute_leftover(
        ledger,
        ledger.bank_balances,
        required_source_ids(ledger, payment_sources),
        excluded_source_ids=[s.id for s in payment_sources if s.excluded_from_leftover],
        source_names={s.id: s.name for s in payment_sources},
    )


def tally(instances: Iterable[Instance]) -> SectionTally:
    result = SectionTally()
    for instance in instances:
        result.expected += instance.expected_amount
        result.actual += instance.total_settled
        if not instance.is_closed:
            result.remaining += instance.remaining
    return result


def build_tallies(ledger: MonthlyLedger) -> MonthTallies:
    bills = ledger.bill_instances
    incomes = ledger.income_instances
    return MonthTallies(
        bills=tally(i for i in bills if not i.is_adhoc and not i.is_payoff_bill),
        adhoc_bills=tally(i for i in bills if i.is_adhoc and not i.is_payoff_bill),
        cc_payoffs=tally(i for i in bills if i.is_payoff_bill),
        total_expenses=tally(bills),
        income=tally(i for i in incomes if not i.is_adhoc),
        adhoc_income=tally(i for i in incomes if i.is_adhoc),
        total_income=tally(incomes),
    )
