from collections import defaultdict
from datetime import date, timedelta

from errors import ValidationError
from leftover import leftover_for_month
from models import Instance, MonthlyLedger, PaymentSource
from periods import resolve_month
from schemas import OverdueBill, Projection, ProjectionDay, ProjectionEvent


def _instance_events(
    instance: Instance,
    event_type: str,
    balance_start: date,
    events: dict[date, list[ProjectionEvent]],
    overdue: list[OverdueBill],
) -> None:
    for occurrence in instance.occurrences:
        amount = occurrence.expected_amount
        if amount <= 0:
            continue
        if occurrence.is_closed or instance.is_closed:
            when = occurrence.closed_date or occurrence.expected_date
            events[when].append(
                ProjectionEvent(name=instance.name, amount=amount, type=event_type, kind="actual")
            )
            continue
        when = occurrence.expected_date
        if when < balance_start:
            if event_type == "expense":
                overdue.append(
                    OverdueBill(name=instance.name, amount=amount, due_date=occurrence.expected_date)
                )
            when = balance_start
        events[when].append(
            ProjectionEvent(name=instance.name, amount=amount, type=event_type, kind="scheduled")
        )


def build_projection(
    ledger: MonthlyLedger, payment_sources: list[PaymentSource], today: date
) -> Projection:
    """Walk the month day by day from the entered bank balances.

    Balances start on today (or the first of the month when today lies
    elsewhere). Settled occurrences are listed as actual events but do not
    move the balance, since the bank balances already include them. Open
    occurrences due before the balance start are applied on that day; overdue
    bills are applied there exactly once.
    """
    breakdown = leftover_for_month(ledger, payment_sources)
    if not breakdown.is_valid:
        raise ValidationError(
            breakdown.error_message or "Enter bank balances to calculate projections",
            field="bank_balances",
        )
    period = resolve_month(ledger.month)
    balance_start = today if period.contains(today) else period.start

    events: dict[date, list[ProjectionEvent]] = defaultdict(list)
    overdue: list[OverdueBill] = []
    for instance in ledger.bill_instances:
        _instance_events(instance, "expense", balance_start, events, overdue)
    for instance in ledger.income_instances:
        _instance_events(instance, "income", balance_start, events, overdue)

    balance = breakdown.bank_balances
    days = []
    day = period.start
    while day <= period.end:
        todays = events.get(day, [])
        income = sum(e.amount for e in todays if e.type == "income")
        expense = sum(e.amount for e in todays if e.type == "expense")
        has_balance = day >= balance_start
        if has_balance:
            balance += sum(
                e.amount if e.type == "income" else -e.amount
                for e in todays
                if e.kind == "scheduled"
            )
        days.append(
            ProjectionDay(
                date=day,
                balance=balance if has_balance else None,
                has_balance=has_balance,
                income=income,
                expense=expense,
                events=todays,
                is_deficit=has_balance and balance < 0,
            )
        )
        day += timedelta(days=1)

    return Projection(
        start_date=period.start,
        end_date=period.end,
        starting_balance=breakdown.bank_balances,
        days=days,
        overdue_bills=overdue,
    )
