from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_serializer, model_validator

from errors import NotFoundError


def new_id() -> str:
    return str(uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    bill = "bill"
    income = "income"


class BillingPeriod(str, Enum):
    monthly = "monthly"
    bi_weekly = "bi_weekly"
    weekly = "weekly"
    semi_annually = "semi_annually"


class PaymentSourceType(str, Enum):
    bank_account = "bank_account"
    credit_card = "credit_card"
    line_of_credit = "line_of_credit"
    cash = "cash"


class CategoryType(str, Enum):
    bill = "bill"
    income = "income"
    variable = "variable"


class UndoEntityType(str, Enum):
    bill = "bill"
    income = "income"
    payment_source = "payment_source"
    category = "category"
    bill_instance = "bill_instance"
    income_instance = "income_instance"


ROLE_COLLECTIONS = {Role.bill: "bills", Role.income: "incomes"}
ROLE_TEMPLATE_ENTITY = {Role.bill: UndoEntityType.bill, Role.income: UndoEntityType.income}
ROLE_INSTANCE_ENTITY = {
    Role.bill: UndoEntityType.bill_instance,
    Role.income: UndoEntityType.income_instance,
}

PAYOFF_CATEGORY_ID = "credit-card-payoffs"
ADHOC_CATEGORY_ID = "ad-hoc"


class Document(BaseModel):
    # Unknown keys are kept so documents written by newer versions survive a rewrite.
    model_config = ConfigDict(extra="allow")

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class TimestampedDocument(Document):
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def touch(self, now: Optional[datetime] = None) -> None:
        self.updated_at = now or utcnow()


class RecurringTemplate(TimestampedDocument):
    id: str = Field(default_factory=new_id)
    role: Role
    name: str
    amount: int
    billing_period: BillingPeriod
    day_of_month: Optional[int] = None
    recurrence_week: Optional[int] = None
    recurrence_day: Optional[int] = None
    start_date: Optional[date] = None
    payment_source_id: Optional[str] = None
    category_id: Optional[str] = None
    is_active: bool = True
    metadata: dict[str, Any] = Field(default_factory=dict)


class PaymentSource(TimestampedDocument):
    id: str = Field(default_factory=new_id)
    name: str
    type: PaymentSourceType
    balance: int = 0
    is_active: bool = True
    exclude_from_leftover: bool = False
    pay_off_monthly: bool = False

    @property
    def excluded_from_leftover(self) -> bool:
        return self.exclude_from_leftover or self.pay_off_monthly


class Category(TimestampedDocument):
    id: str = Field(default_factory=new_id)
    name: str
    type: CategoryType
    color: str = "#6b7280"
    sort_order: int = 0
    is_predefined: bool = False


class Occurrence(TimestampedDocument):
    id: str = Field(default_factory=new_id)
    sequence: int
    expected_date: date
    expected_amount: int
    is_closed: bool = False
    closed_date: Optional[date] = None
    payment_source_id: Optional[str] = None
    notes: Optional[str] = None
    is_adhoc: bool = False


class Instance(TimestampedDocument):
    id: str = Field(default_factory=new_id)
    role: Role
    template_id: Optional[str] = None
    month: str
    name: str
    billing_period: BillingPeriod = BillingPeriod.monthly
    category_id: Optional[str] = None
    payment_source_id: Optional[str] = None
    expected_amount: int = 0
    total_settled: int = 0
    remaining: int = 0
    is_closed: bool = False
    closed_date: Optional[date] = None
    is_adhoc: bool = False
    is_payoff_bill: bool = False
    payoff_source_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    occurrences: list[Occurrence] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _settled_from_document(cls, data: Any) -> Any:
        if isinstance(data, dict) and (
            "total_paid" in data or "total_received" in data
        ):
            data = dict(data)
            paid = data.pop("total_paid", None)
            received = data.pop("total_received", None)
            if "total_settled" not in data:
                data["total_settled"] = paid if paid is not None else received
        return data

    @model_validator(mode="after")
    def _derive_totals(self) -> "Instance":
        self.refresh_totals()
        return self

    @model_serializer(mode="wrap")
    def _settled_to_document(self, handler):
        data = handler(self)
        settled = data.pop("total_settled", 0)
        key = "total_paid" if self.role == Role.bill else "total_received"
        data[key] = settled
        return data

    @property
    def total_paid(self) -> int:
        return self.total_settled

    @property
    def total_received(self) -> int:
        return self.total_settled

    def refresh_totals(self) -> None:
        # Totals and the closed flag are always projections of the occurrences.
        self.expected_amount = sum(o.expected_amount for o in self.occurrences)
        self.total_settled = sum(o.expected_amount for o in self.occurrences if o.is_closed)
        self.remaining = max(0, self.expected_amount - self.total_settled)
        self.is_closed = bool(self.occurrences) and all(o.is_closed for o in self.occurrences)
        if self.is_closed:
            self.closed_date = max(
                (o.closed_date for o in self.occurrences if o.closed_date), default=None
            )
        else:
            self.closed_date = None

    def find_occurrence(self, occurrence_id: str) -> Occurrence:
        for occurrence in self.occurrences:
            if occurrence.id == occurrence_id:
                return occurrence
        raise NotFoundError("Occurrence", occurrence_id)

    def open_occurrences(self) -> list[Occurrence]:
        return [o for o in self.occurrences if not o.is_closed]


class VariableExpense(TimestampedDocument):
    id: str = Field(default_factory=new_id)
    name: str
    amount: int
    expense_date: date
    category_id: Optional[str] = None
    payment_source_id: Optional[str] = None
    notes: Optional[str] = None


class LedgerSummary(Document):
    total_expected_expenses: int = 0
    total_paid: int = 0
    remaining_expenses: int = 0
    total_expected_income: int = 0
    total_received: int = 0
    remaining_income: int = 0
    total_variable_expenses: int = 0


class MonthlyLedger(TimestampedDocument):
    month: str
    bill_instances: list[Instance] = Field(default_factory=list)
    income_instances: list[Instance] = Field(default_factory=list)
    variable_expenses: list[VariableExpense] = Field(default_factory=list)
    bank_balances: dict[str, int] = Field(default_factory=dict)
    summary: LedgerSummary = Field(default_factory=LedgerSummary)
    is_read_only: bool = False
    deleted_template_ids: list[str] = Field(default_factory=list)
    deleted_payoff_source_ids: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _derive_summary(self) -> "MonthlyLedger":
        self.refresh_summary()
        return self

    def instances(self, role: Role) -> list[Instance]:
        return self.bill_instances if role == Role.bill else self.income_instances

    def all_instances(self) -> list[Instance]:
        return [*self.bill_instances, *self.income_instances]

    def find_instance(self, role: Role, instance_id: str) -> Instance:
        for instance in self.instances(role):
            if instance.id == instance_id:
                return instance
        raise NotFoundError(f"{role.value.capitalize()} instance", instance_id)

    def payoff_instance_for(self, source_id: str) -> Optional[Instance]:
        for instance in self.bill_instances:
            if instance.is_payoff_bill and instance.payoff_source_id == source_id:
                return instance
        return None

    def refresh_summary(self) -> None:
        bills = self.bill_instances
        incomes = self.income_instances
        self.summary = LedgerSummary(
            total_expected_expenses=sum(i.expected_amount for i in bills),
            total_paid=sum(i.total_settled for i in bills),
            remaining_expenses=sum(i.remaining for i in bills if not i.is_closed),
            total_expected_income=sum(i.expected_amount for i in incomes),
            total_received=sum(i.total_settled for i in incomes),
            remaining_income=sum(i.remaining for i in incomes if not i.is_closed),
            total_variable_expenses=sum(e.amount for e in self.variable_expenses),
        )


class UndoEntry(Document):
    id: str = Field(default_factory=new_id)
    entity_type: UndoEntityType
    entity_id: str
    old_value: Optional[dict[str, Any]] = None
    new_value: Optional[dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=utcnow)
