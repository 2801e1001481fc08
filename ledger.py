from datetime import date, datetime
from typing import Optional

from errors import ValidationError
from models import Instance, Occurrence, utcnow
from periods import resolve_month


def _check_amount(amount: int, field: str = "expected_amount") -> None:
    if amount < 0:
        raise ValidationError("Amount cannot be negative", field=field)


def _check_in_month(instance: Instance, value: date, field: str = "expected_date") -> None:
    period = resolve_month(instance.month)
    if not period.contains(value):
        raise ValidationError(
            f"Date {value.isoformat()} is outside {instance.month}", field=field
        )


def _settle(instance: Instance, now: Optional[datetime]) -> None:
    instance.refresh_totals()
    instance.touch(now)


def resequence(instance: Instance, *, by_date: bool = False) -> None:
    if by_date:
        instance.occurrences.sort(key=lambda o: (o.expected_date, o.sequence))
    for index, occurrence in enumerate(instance.occurrences, start=1):
        occurrence.sequence = index


def close_occurrence(
    instance: Instance,
    occurrence_id: str,
    *,
    closed_date: date,
    payment_source_id: Optional[str] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Occurrence:
    occurrence = instance.find_occurrence(occurrence_id)
    occurrence.is_closed = True
    occurrence.closed_date = closed_date
    if payment_source_id is not None:
        occurrence.payment_source_id = payment_source_id
    if notes is not None:
        occurrence.notes = notes
    occurrence.touch(now)
    _settle(instance, now)
    return occurrence


def reopen_occurrence(
    instance: Instance, occurrence_id: str, *, now: Optional[datetime] = None
) -> Occurrence:
    occurrence = instance.find_occurrence(occurrence_id)
    occurrence.is_closed = False
    occurrence.closed_date = None
    occurrence.touch(now)
    _settle(instance, now)
    return occurrence


def update_occurrence(
    instance: Instance,
    occurrence_id: str,
    *,
    expected_amount: Optional[int] = None,
    expected_date: Optional[date] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Occurrence:
    occurrence = instance.find_occurrence(occurrence_id)
    if expected_amount is not None:
        _check_amount(expected_amount)
        occurrence.expected_amount = expected_amount
    if notes is not None:
        occurrence.notes = notes
    if expected_date is not None and expected_date != occurrence.expected_date:
        _check_in_month(instance, expected_date)
        occurrence.expected_date = expected_date
        resequence(instance, by_date=True)
    occurrence.touch(now)
    _settle(instance, now)
    return occurrence


def add_adhoc_occurrence(
    instance: Instance,
    *,
    expected_date: date,
    expected_amount: int,
    notes: Optional[str] = None,
    payment_source_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Occurrence:
    _check_amount(expected_amount)
    _check_in_month(instance, expected_date)
    now = now or utcnow()
    occurrence = Occurrence(
        sequence=len(instance.occurrences) + 1,
        expected_date=expected_date,
        expected_amount=expected_amount,
        notes=notes,
        payment_source_id=payment_source_id or instance.payment_source_id,
        is_adhoc=True,
        created_at=now,
        updated_at=now,
    )
    instance.occurrences.append(occurrence)
    _settle(instance, now)
    return occurrence


def remove_occurrence(
    instance: Instance, occurrence_id: str, *, now: Optional[datetime] = None
) -> Occurrence:
    occurrence = instance.find_occurrence(occurrence_id)
    instance.occurrences.remove(occurrence)
    resequence(instance)
    _settle(instance, now)
    return occurrence


def split_occurrence(
    instance: Instance,
    occurrence_id: str,
    *,
    paid_amount: int,
    closed_date: date,
    payment_source_id: Optional[str] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> tuple[Occurrence, Occurrence]:
    """Settle part of an open occurrence and carry the rest as a new one.

    The original occurrence is closed at ``paid_amount``; the remainder becomes
    an ad-hoc open occurrence due on the last day of the month.
    """
    occurrence = instance.find_occurrence(occurrence_id)
    if occurrence.is_closed:
        raise ValidationError("Cannot split a closed occurrence", field="occurrence_id")
    if paid_amount <= 0 or paid_amount >= occurrence.expected_amount:
        raise ValidationError(
            "Paid amount must be greater than 0 and less than the expected amount",
            field="paid_amount",
        )
    now = now or utcnow()
    remainder_amount = occurrence.expected_amount - paid_amount
    occurrence.expected_amount = paid_amount
    occurrence.is_closed = True
    occurrence.closed_date = closed_date
    if payment_source_id is not None:
        occurrence.payment_source_id = payment_source_id
    if notes is not None:
        occurrence.notes = notes
    occurrence.touch(now)
    remainder = Occurrence(
        sequence=len(instance.occurrences) + 1,
        expected_date=resolve_month(instance.month).end,
        expected_amount=remainder_amount,
        payment_source_id=occurrence.payment_source_id,
        notes=f"Remaining balance from partial payment of {paid_amount}",
        is_adhoc=True,
        created_at=now,
        updated_at=now,
    )
    instance.occurrences.append(remainder)
    _settle(instance, now)
    return occurrence, remainder


def close_instance(
    instance: Instance,
    *,
    closed_date: date,
    payment_source_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Instance:
    if not instance.occurrences:
        raise ValidationError("Instance has no occurrences to close", field="instance_id")
    for occurrence in instance.open_occurrences():
        occurrence.is_closed = True
        occurrence.closed_date = closed_date
        if payment_source_id is not None:
            occurrence.payment_source_id = payment_source_id
        occurrence.touch(now)
    _settle(instance, now)
    return instance


def reopen_instance(instance: Instance, *, now: Optional[datetime] = None) -> Instance:
    for occurrence in instance.occurrences:
        if occurrence.is_closed:
            occurrence.is_closed = False
            occurrence.closed_date = None
            occurrence.touch(now)
    _settle(instance, now)
    return instance


def reconcile_payoff_balance(
    instance: Instance,
    remaining_balance: int,
    *,
    due_date: date,
    today: date,
    now: Optional[datetime] = None,
) -> None:
    """Make the open payoff occurrence reflect the card balance still owed."""
    now = now or utcnow()
    open_occurrences = instance.open_occurrences()
    if open_occurrences:
        current = open_occurrences[0]
        current.expected_amount = remaining_balance
        if remaining_balance == 0:
            current.is_closed = True
            current.closed_date = today
        current.touch(now)
    elif remaining_balance > 0:
        instance.occurrences.append(
            Occurrence(
                sequence=len(instance.occurrences) + 1,
                expected_date=due_date,
                expected_amount=remaining_balance,
                payment_source_id=instance.payment_source_id,
                created_at=now,
                updated_at=now,
            )
        )
    _settle(instance, now)


def record_payoff_payment(
    instance: Instance,
    amount: int,
    *,
    paid_date: date,
    remaining_balance: int,
    due_date: date,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Occurrence:
    if amount <= 0:
        raise ValidationError("Payment amount must be greater than 0", field="amount")
    now = now or utcnow()
    open_occurrences = instance.open_occurrences()
    if open_occurrences:
        payment = open_occurrences[0]
        payment.expected_amount = amount
        payment.is_closed = True
        payment.closed_date = paid_date
        if notes is not None:
            payment.notes = notes
        payment.touch(now)
    else:
        payment = Occurrence(
            sequence=len(instance.occurrences) + 1,
            expected_date=paid_date,
            expected_amount=amount,
            is_closed=True,
            closed_date=paid_date,
            payment_source_id=instance.payment_source_id,
            notes=notes,
            is_adhoc=True,
            created_at=now,
            updated_at=now,
        )
        instance.occurrences.append(payment)
    if remaining_balance > 0:
        instance.occurrences.append(
            Occurrence(
                sequence=len(instance.occurrences) + 1,
                expected_date=max(due_date, paid_date),
                expected_amount=remaining_balance,
                payment_source_id=instance.payment_source_id,
                created_at=now,
                updated_at=now,
            )
        )
    _settle(instance, now)
    return payment
