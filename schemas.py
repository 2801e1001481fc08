from datetime import date, datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from errors import ValidationError
from models import (
    BillingPeriod,
    Category,
    CategoryType,
    LedgerSummary,
    MonthlyLedger,
    PaymentSource,
    PaymentSourceType,
    RecurringTemplate,
)


def check_template_anchor(
    billing_period: BillingPeriod,
    day_of_month: Optional[int],
    recurrence_week: Optional[int],
    recurrence_day: Optional[int],
    start_date: Optional[date],
) -> None:
    weekday_anchor = recurrence_week is not None or recurrence_day is not None
    if weekday_anchor and (recurrence_week is None or recurrence_day is None):
        raise ValidationError(
            "recurrence_week and recurrence_day must be set together",
            field="recurrence_week",
        )
    if weekday_anchor and day_of_month is not None:
        raise ValidationError(
            "Use either day_of_month or recurrence_week/recurrence_day, not both",
            field="day_of_month",
        )
    if billing_period == BillingPeriod.monthly:
        if day_of_month is None and not weekday_anchor:
            raise ValidationError(
                "Monthly templates need day_of_month or recurrence_week/recurrence_day",
                field="day_of_month",
            )
    elif start_date is None:
        raise ValidationError(
            f"start_date is required for {billing_period.value} templates",
            field="start_date",
        )


class TemplateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=100)
    amount: int = Field(..., gt=0)
    billing_period: BillingPeriod
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    recurrence_week: Optional[int] = Field(default=None, ge=1, le=5)
    recurrence_day: Optional[int] = Field(default=None, ge=0, le=6)
    start_date: Optional[date] = None
    payment_source_id: Optional[str] = None
    category_id: Optional[str] = None
    is_active: bool = True
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Name is required")
        return value

    @model_validator(mode="after")
    def _anchor(self) -> "TemplateIn":
        check_template_anchor(
            self.billing_period,
            self.day_of_month,
            self.recurrence_week,
            self.recurrence_day,
            self.start_date,
        )
        return self


class PaymentSourceIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=100)
    type: PaymentSourceType
    balance: int = 0
    is_active: bool = True
    exclude_from_leftover: bool = False
    pay_off_monthly: bool = False


class CategoryIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=100)
    type: CategoryType
    color: str = Field(default="#6b7280", pattern=r"^#[0-9a-fA-F]{6}$")
    sort_order: int = 0


class CloseOccurrenceIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    closed_date: Optional[date] = None
    payment_source_id: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=500)


class CloseInstanceIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    closed_date: Optional[date] = None
    payment_source_id: Optional[str] = None


class OccurrenceUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    expected_amount: Optional[int] = Field(default=None, ge=0)
    expected_date: Optional[date] = None
    notes: Optional[str] = Field(default=None, max_length=500)


class AdhocOccurrenceIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    expected_date: date
    expected_amount: int = Field(..., ge=0)
    notes: Optional[str] = Field(default=None, max_length=500)
    payment_source_id: Optional[str] = None


class SplitOccurrenceIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    paid_amount: int = Field(..., gt=0)
    closed_date: Optional[date] = None
    payment_source_id: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=500)


class AdhocInstanceIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=100)
    amount: int = Field(..., ge=0)
    expected_date: Optional[date] = None
    is_closed: bool = False
    closed_date: Optional[date] = None
    category_id: Optional[str] = None
    payment_source_id: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=500)


class MakeRegularIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    billing_period: BillingPeriod
    amount: Optional[int] = Field(default=None, gt=0)
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    recurrence_week: Optional[int] = Field(default=None, ge=1, le=5)
    recurrence_day: Optional[int] = Field(default=None, ge=0, le=6)
    start_date: Optional[date] = None
    category_id: Optional[str] = None
    payment_source_id: Optional[str] = None

    @model_validator(mode="after")
    def _anchor(self) -> "MakeRegularIn":
        check_template_anchor(
            self.billing_period,
            self.day_of_month,
            self.recurrence_week,
            self.recurrence_day,
            self.start_date,
        )
        return self


class BankBalancesIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    balances: dict[str, int]


class PayoffPaymentIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: int = Field(..., gt=0)
    paid_date: Optional[date] = None
    new_balance: Optional[int] = None
    notes: Optional[str] = Field(default=None, max_length=500)


class VariableExpenseIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=100)
    amount: int = Field(..., ge=0)
    expense_date: date
    category_id: Optional[str] = None
    payment_source_id: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=500)


class BackupPayload(BaseModel):
    export_date: Optional[datetime] = None
    bills: list[RecurringTemplate] = Field(default_factory=list)
    incomes: list[RecurringTemplate] = Field(default_factory=list)
    payment_sources: list[PaymentSource] = Field(default_factory=list)
    categories: list[Category] = Field(default_factory=list)
    months: list[MonthlyLedger] = Field(default_factory=list)


# Read models


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class LeftoverBreakdown(CamelModel):
    bank_balances: int = 0
    remaining_income: int = 0
    remaining_expenses: int = 0
    leftover: int = 0
    is_valid: bool = True
    missing_balances: list[str] = Field(default_factory=list)
    error_message: Optional[str] = None


class SectionTally(BaseModel):
    expected: int = 0
    actual: int = 0
    remaining: int = 0


class MonthTallies(CamelModel):
    bills: SectionTally
    adhoc_bills: SectionTally
    cc_payoffs: SectionTally
    total_expenses: SectionTally
    income: SectionTally
    adhoc_income: SectionTally
    total_income: SectionTally


class SectionSubtotal(BaseModel):
    expected: int = 0
    actual: int = 0


class PaymentSourceRef(BaseModel):
    id: str
    name: str


class DetailedInstance(BaseModel):
    # Carries every stored instance field alongside the derived ones below.
    model_config = ConfigDict(extra="allow")

    id: str
    occurrence_count: int
    is_extra_occurrence_month: bool
    is_overdue: bool
    days_overdue: Optional[int] = None
    payment_source: Optional[PaymentSourceRef] = None


class CategoryRef(BaseModel):
    id: str
    name: str
    type: Optional[CategoryType] = None
    color: str
    sort_order: int


class CategorySection(BaseModel):
    category: CategoryRef
    items: list[DetailedInstance]
    subtotal: SectionSubtotal


class PayoffPayment(BaseModel):
    amount: int
    paid_date: Optional[date] = None


class PayoffSummary(CamelModel):
    payment_source_id: str
    payment_source_name: str
    instance_id: str
    balance: Optional[int] = None
    total_paid: int
    remaining: int
    payments: list[PayoffPayment] = Field(default_factory=list)


class DetailedMonth(CamelModel):
    month: str
    bill_sections: list[CategorySection]
    income_sections: list[CategorySection]
    tallies: MonthTallies
    leftover: int
    leftover_breakdown: LeftoverBreakdown
    payoff_summaries: list[PayoffSummary]
    bank_balances: dict[str, int]
    variable_expenses: list[dict[str, Any]]
    is_read_only: bool
    last_updated: datetime


class MonthSummaryOut(CamelModel):
    month: str
    is_read_only: bool
    created_at: datetime
    updated_at: datetime
    totals: LedgerSummary
    leftover: LeftoverBreakdown


class ProjectionEvent(BaseModel):
    name: str
    amount: int
    type: Literal["income", "expense"]
    kind: Literal["actual", "scheduled"]


class ProjectionDay(BaseModel):
    date: date
    balance: Optional[int] = None
    has_balance: bool
    income: int = 0
    expense: int = 0
    events: list[ProjectionEvent] = Field(default_factory=list)
    is_deficit: bool = False


class OverdueBill(BaseModel):
    name: str
    amount: int
    due_date: date


class Projection(BaseModel):
    start_date: date
    end_date: date
    starting_balance: int
    days: list[ProjectionDay]
    overdue_bills: list[OverdueBill] = Field(default_factory=list)
