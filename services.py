from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from functools import partial
from typing import Any, Awaitable, Callable, Optional, TypeVar

from pydantic import ValidationError as SchemaValidationError

from config import Settings
from detailed_view import build_detailed_month
from errors import ConflictError, NotFoundError, ReadOnlyError, StorageError, ValidationError
from ledger import (
    add_adhoc_occurrence,
    close_instance,
    close_occurrence,
    reconcile_payoff_balance,
    record_payoff_payment,
    remove_occurrence,
    reopen_instance,
    reopen_occurrence,
    split_occurrence,
    update_occurrence,
)
from leftover import leftover_for_month
from models import (
    ADHOC_CATEGORY_ID,
    PAYOFF_CATEGORY_ID,
    ROLE_COLLECTIONS,
    ROLE_INSTANCE_ENTITY,
    ROLE_TEMPLATE_ENTITY,
    BillingPeriod,
    Category,
    CategoryType,
    Instance,
    MonthlyLedger,
    Occurrence,
    PaymentSource,
    RecurringTemplate,
    Role,
    UndoEntityType,
    UndoEntry,
    VariableExpense,
    utcnow,
)
from periods import local_today, resolve_month
from projections import build_projection
from recurrence import generate_occurrences, monthly_contribution
from schemas import (
    AdhocInstanceIn,
    AdhocOccurrenceIn,
    BackupPayload,
    CategoryIn,
    CloseInstanceIn,
    CloseOccurrenceIn,
    DetailedMonth,
    MakeRegularIn,
    MonthSummaryOut,
    OccurrenceUpdateIn,
    PaymentSourceIn,
    PayoffPaymentIn,
    Projection,
    SplitOccurrenceIn,
    TemplateIn,
    VariableExpenseIn,
)
from storage import UNCHANGED, JsonStorage, entity_key, month_key


logger = logging.getLogger(__name__)

T = TypeVar("T")

PAYOFF_DUE_DAY = 28


def payoff_due_date(month: str) -> date:
    period = resolve_month(month)
    return period.start.replace(day=min(PAYOFF_DUE_DAY, period.end.day))


def parse_document(model: type, raw: Any, key: str):
    try:
        return model.model_validate(raw)
    except SchemaValidationError as exc:
        logger.exception(f"document_invalid: key={key} model={model.__name__}")
        raise StorageError(f"Stored document {key} is malformed", key) from exc


class EntityCollection:
    """One JSON collection of documents keyed by ``id``."""

    def __init__(self, storage: JsonStorage, collection: str, model: type, label: str) -> None:
        self.storage = storage
        self.collection = collection
        self.model = model
        self.label = label
        self.key = entity_key(collection)

    async def list(self) -> list:
        items = await self.storage.read_entity(self.collection)
        return [parse_document(self.model, raw, self.key) for raw in items]

    async def get(self, entity_id: str):
        for raw in await self.storage.read_entity(self.collection):
            if raw.get("id") == entity_id:
                return parse_document(self.model, raw, self.key)
        raise NotFoundError(self.label, entity_id)

    async def insert(self, item, check: Optional[Callable[[list], None]] = None) -> None:
        """Append ``item``; ``check`` sees the stored documents under the same lock."""

        def apply(items: list[dict]):
            if any(raw.get("id") == item.id for raw in items):
                raise ConflictError(f"{self.label} {item.id} already exists")
            if check is not None:
                check([parse_document(self.model, raw, self.key) for raw in items])
            items.append(item.to_document())
            return items, None

        await self.storage.update_entity(self.collection, apply)

    async def replace(
        self,
        entity_id: str,
        build: Callable[[Any], Any],
        check: Optional[Callable[[list], None]] = None,
    ) -> tuple[dict, Any]:
        def apply(items: list[dict]):
            for index, raw in enumerate(items):
                if raw.get("id") == entity_id:
                    if check is not None:
                        check([parse_document(self.model, other, self.key) for other in items])
                    updated = build(parse_document(self.model, raw, self.key))
                    items[index] = updated.to_document()
                    return items, (raw, updated)
            raise NotFoundError(self.label, entity_id)

        return await self.storage.update_entity(self.collection, apply)

    async def remove(self, entity_id: str, check: Optional[Callable[[Any], None]] = None) -> dict:
        def apply(items: list[dict]):
            for index, raw in enumerate(items):
                if raw.get("id") == entity_id:
                    if check is not None:
                        check(parse_document(self.model, raw, self.key))
                    del items[index]
                    return items, raw
            raise NotFoundError(self.label, entity_id)

        return await self.storage.update_entity(self.collection, apply)

    async def restore(self, entry: UndoEntry) -> None:
        def apply(items: list[dict]):
            index = next(
                (i for i, raw in enumerate(items) if raw.get("id") == entry.entity_id), None
            )
            current = items[index] if index is not None else None
            if current is None and entry.new_value is not None:
                raise NotFoundError(self.label, entry.entity_id)
            if current != entry.new_value:
                raise ConflictError(
                    f"{self.label} {entry.entity_id} has changed since; cannot undo"
                )
            if entry.old_value is None:
                del items[index]
            elif index is None:
                items.append(entry.old_value)
            else:
                items[index] = entry.old_value
            return items, None

        await self.storage.update_entity(self.collection, apply)


class UndoService:
    def __init__(self, storage: JsonStorage, limit: int = 5) -> None:
        self.storage = storage
        self.limit = limit
        self._restorers: dict[UndoEntityType, Callable[[UndoEntry], Awaitable[None]]] = {}

    def register(
        self, entity_type: UndoEntityType, restorer: Callable[[UndoEntry], Awaitable[None]]
    ) -> None:
        self._restorers[entity_type] = restorer

    async def list_entries(self) -> list[UndoEntry]:
        raw_entries = await self.storage.read_entity("undo")
        return [parse_document(UndoEntry, raw, "entities/undo") for raw in raw_entries]

    async def record(
        self,
        entity_type: UndoEntityType,
        entity_id: str,
        old_value: Optional[dict],
        new_value: Optional[dict],
    ) -> UndoEntry:
        entry = UndoEntry(
            entity_type=entity_type,
            entity_id=entity_id,
            old_value=old_value,
            new_value=new_value,
        )

        def push(stack: list[dict]):
            stack.append(entry.to_document())
            return stack[-self.limit :], entry

        return await self.storage.update_entity("undo", push)

    async def clear(self) -> None:
        await self.storage.write_entity("undo", [])

    async def undo(self) -> UndoEntry:
        entries = await self.list_entries()
        if not entries:
            raise ConflictError("Nothing to undo")
        entry = entries[-1]
        restorer = self._restorers.get(entry.entity_type)
        if restorer is None:
            raise ConflictError(f"Cannot undo {entry.entity_type.value} changes")
        await restorer(entry)

        def pop(stack: list[dict]):
            return [raw for raw in stack if raw.get("id") != entry.id], None

        await self.storage.update_entity("undo", pop)
        logger.info(
            f"undo_applied: entity_type={entry.entity_type.value} entity_id={entry.entity_id}"
        )
        return entry


class _UndoRecording:
    undo: Optional[UndoService]

    async def _record(
        self,
        entity_type: UndoEntityType,
        entity_id: str,
        old_value: Optional[dict],
        new_value: Optional[dict],
    ) -> None:
        if self.undo is not None:
            await self.undo.record(entity_type, entity_id, old_value, new_value)


class CategoryService(_UndoRecording):
    PREDEFINED = {
        PAYOFF_CATEGORY_ID: ("Credit Card Payoffs", CategoryType.bill, "#f97316", 900),
        ADHOC_CATEGORY_ID: ("Ad-hoc", CategoryType.variable, "#a855f7", 950),
    }

    def __init__(self, storage: JsonStorage, undo: Optional[UndoService] = None) -> None:
        self.items = EntityCollection(storage, "categories", Category, "Category")
        self.undo = undo

    async def list_all(self) -> list[Category]:
        categories = await self.items.list()
        return sorted(categories, key=lambda c: (c.type.value, c.sort_order, c.name.lower()))

    async def get(self, category_id: str) -> Category:
        return await self.items.get(category_id)

    @staticmethod
    def _unique_name(data: CategoryIn, exclude_id: Optional[str] = None):
        def check(categories: list[Category]) -> None:
            for category in categories:
                if (
                    category.id != exclude_id
                    and category.type == data.type
                    and category.name.lower() == data.name.strip().lower()
                ):
                    raise ValidationError("Category with this name already exists", field="name")

        return check

    async def create(self, data: CategoryIn) -> Category:
        category = Category(
            name=data.name.strip(),
            type=data.type,
            color=data.color,
            sort_order=data.sort_order,
        )
        await self.items.insert(category, check=self._unique_name(data))
        await self._record(UndoEntityType.category, category.id, None, category.to_document())
        return category

    async def update(self, category_id: str, data: CategoryIn) -> Category:
        def build(category: Category) -> Category:
            updated = category.model_copy(
                update={
                    "name": data.name.strip(),
                    "type": data.type,
                    "color": data.color,
                    "sort_order": data.sort_order,
                }
            )
            updated.touch()
            return updated

        old, category = await self.items.replace(
            category_id, build, check=self._unique_name(data, exclude_id=category_id)
        )
        await self._record(UndoEntityType.category, category_id, old, category.to_document())
        return category

    async def delete(self, category_id: str) -> None:
        def check(category: Category) -> None:
            if category.is_predefined:
                raise ValidationError("Predefined categories cannot be deleted", field="id")

        old = await self.items.remove(category_id, check)
        await self._record(UndoEntityType.category, category_id, old, None)

    async def ensure_predefined(self, category_id: str) -> Category:
        name, category_type, color, sort_order = self.PREDEFINED[category_id]
        category = Category(
            id=category_id,
            name=name,
            type=category_type,
            color=color,
            sort_order=sort_order,
            is_predefined=True,
        )

        def apply(items: list[dict]):
            for raw in items:
                if raw.get("id") == category_id:
                    return UNCHANGED, parse_document(Category, raw, "entities/categories")
            items.append(category.to_document())
            return items, category

        return await self.items.storage.update_entity("categories", apply)


class PaymentSourceService(_UndoRecording):
    def __init__(self, storage: JsonStorage, undo: Optional[UndoService] = None) -> None:
        self.items = EntityCollection(storage, "payment-sources", PaymentSource, "Payment source")
        self.undo = undo

    async def list_all(self, active_only: bool = False) -> list[PaymentSource]:
        sources = await self.items.list()
        if active_only:
            sources = [source for source in sources if source.is_active]
        return sources

    async def get(self, source_id: str) -> PaymentSource:
        return await self.items.get(source_id)

    async def create(self, data: PaymentSourceIn) -> PaymentSource:
        source = PaymentSource(**data.model_dump())
        source.name = source.name.strip()
        await self.items.insert(source)
        await self._record(UndoEntityType.payment_source, source.id, None, source.to_document())
        return source

    async def update(self, source_id: str, data: PaymentSourceIn) -> PaymentSource:
        def build(source: PaymentSource) -> PaymentSource:
            updated = source.model_copy(update=data.model_dump())
            updated.name = updated.name.strip()
            updated.touch()
            return updated

        old, source = await self.items.replace(source_id, build)
        await self._record(UndoEntityType.payment_source, source_id, old, source.to_document())
        return source

    async def delete(self, source_id: str) -> None:
        old = await self.items.remove(source_id)
        await self._record(UndoEntityType.payment_source, source_id, old, None)


class TemplateService(_UndoRecording):
    def __init__(
        self,
        storage: JsonStorage,
        role: Role,
        *,
        categories: CategoryService,
        payment_sources: PaymentSourceService,
        undo: Optional[UndoService] = None,
    ) -> None:
        self.role = role
        self.items = EntityCollection(
            storage, ROLE_COLLECTIONS[role], RecurringTemplate, role.value.capitalize()
        )
        self.categories = categories
        self.payment_sources = payment_sources
        self.undo = undo

    @property
    def entity_type(self) -> UndoEntityType:
        return ROLE_TEMPLATE_ENTITY[self.role]

    async def list_all(self, active_only: bool = False) -> list[RecurringTemplate]:
        templates = await self.items.list()
        if active_only:
            templates = [template for template in templates if template.is_active]
        return templates

    async def get(self, template_id: str) -> RecurringTemplate:
        return await self.items.get(template_id)

    async def _check_references(self, data: TemplateIn) -> None:
        if data.category_id:
            try:
                await self.categories.get(data.category_id)
            except NotFoundError as exc:
                raise ValidationError(str(exc), field="category_id") from exc
        if data.payment_source_id:
            try:
                await self.payment_sources.get(data.payment_source_id)
            except NotFoundError as exc:
                raise ValidationError(str(exc), field="payment_source_id") from exc

    async def prepare(self, data: TemplateIn) -> RecurringTemplate:
        """Validate references and build a template without storing it."""
        await self._check_references(data)
        return RecurringTemplate(role=self.role, **data.model_dump())

    async def create(self, data: TemplateIn) -> RecurringTemplate:
        return await self.store(await self.prepare(data))

    async def store(self, template: RecurringTemplate) -> RecurringTemplate:
        await self.items.insert(template)
        await self._record(self.entity_type, template.id, None, template.to_document())
        logger.info(f"template_created: role={self.role.value} id={template.id}")
        return template

    async def update(self, template_id: str, data: TemplateIn) -> RecurringTemplate:
        await self._check_references(data)

        def build(template: RecurringTemplate) -> RecurringTemplate:
            if (
                template.billing_period != BillingPeriod.monthly
                and data.billing_period != BillingPeriod.monthly
                and template.start_date is not None
                and data.start_date != template.start_date
            ):
                raise ValidationError(
                    "start_date cannot be changed; create a new template instead",
                    field="start_date",
                )
            updated = template.model_copy(update=data.model_dump())
            updated.touch()
            return updated

        old, template = await self.items.replace(template_id, build)
        await self._record(self.entity_type, template_id, old, template.to_document())
        return template

    async def delete(self, template_id: str) -> None:
        old = await self.items.remove(template_id)
        await self._record(self.entity_type, template_id, old, None)
        logger.info(f"template_deleted: role={self.role.value} id={template_id}")

    async def get_statistics(self) -> dict[str, object]:
        templates = await self.list_all()
        active = [template for template in templates if template.is_active]
        return {
            "count": len(templates),
            "active_count": len(active),
            "monthly_total": sum(
                monthly_contribution(t.amount, t.billing_period) for t in active
            ),
            "by_billing_period": {
                period.value: sum(1 for t in active if t.billing_period == period)
                for period in {t.billing_period for t in active}
            },
        }


def _metadata_snapshot(template: RecurringTemplate) -> dict[str, Any]:
    return {
        **template.metadata,
        "name": template.name,
        "amount": template.amount,
        "billing_period": template.billing_period.value,
        "category_id": template.category_id,
        "payment_source_id": template.payment_source_id,
    }


class MonthService(_UndoRecording):
    def __init__(
        self,
        storage: JsonStorage,
        *,
        bills: TemplateService,
        incomes: TemplateService,
        payment_sources: PaymentSourceService,
        categories: CategoryService,
        undo: Optional[UndoService] = None,
        today: Callable[[], date] = local_today,
    ) -> None:
        self.storage = storage
        self.templates = {Role.bill: bills, Role.income: incomes}
        self.payment_sources = payment_sources
        self.categories = categories
        self.undo = undo
        self.today = today

    # Building instances

    def _instance_from_template(
        self, template: RecurringTemplate, month: str, now
    ) -> Optional[Instance]:
        occurrences = generate_occurrences(template, month, now=now)
        if not occurrences:
            return None
        return Instance(
            role=template.role,
            template_id=template.id,
            month=month,
            name=template.name,
            billing_period=template.billing_period,
            category_id=template.category_id,
            payment_source_id=template.payment_source_id,
            metadata=_metadata_snapshot(template),
            occurrences=occurrences,
            created_at=now,
            updated_at=now,
        )

    def _payoff_instance(
        self, source: PaymentSource, month: str, amount: int, now
    ) -> Instance:
        return Instance(
            role=Role.bill,
            month=month,
            name=f"{source.name} Payoff",
            category_id=PAYOFF_CATEGORY_ID,
            payment_source_id=source.id,
            is_payoff_bill=True,
            payoff_source_id=source.id,
            metadata={"name": source.name, "payment_source_type": source.type.value},
            occurrences=[
                Occurrence(
                    sequence=1,
                    expected_date=payoff_due_date(month),
                    expected_amount=amount,
                    payment_source_id=source.id,
                    created_at=now,
                    updated_at=now,
                )
            ],
            created_at=now,
            updated_at=now,
        )

    async def _payoff_sources(self) -> list[PaymentSource]:
        sources = await self.payment_sources.list_all(active_only=True)
        return [source for source in sources if source.pay_off_monthly]

    async def _ensure_payoff_category(self, instances: list[Instance]) -> None:
        """Create the payoff category once a payoff bill has been written."""
        if any(instance.is_payoff_bill for instance in instances):
            await self.categories.ensure_predefined(PAYOFF_CATEGORY_ID)

    # Storage paths

    @staticmethod
    def _load(month: str, raw: Optional[dict]) -> MonthlyLedger:
        if raw is None:
            raise NotFoundError("Month", month)
        return parse_document(MonthlyLedger, raw, month_key(month))

    async def _mutate(self, month: str, change: Callable[[MonthlyLedger], T]) -> T:
        resolve_month(month)

        def apply(raw: Optional[dict]):
            ledger = self._load(month, raw)
            if ledger.is_read_only:
                raise ReadOnlyError(month)
            before = ledger.to_document()
            result = change(ledger)
            ledger.refresh_summary()
            if ledger.to_document() == before:
                return UNCHANGED, result
            ledger.touch()
            return ledger.to_document(), result

        return await self.storage.update_month(month, apply)

    async def _mutate_instance(
        self,
        month: str,
        role: Role,
        instance_id: str,
        change: Callable[[MonthlyLedger, Instance], Any],
    ) -> Instance:
        def apply(ledger: MonthlyLedger):
            instance = ledger.find_instance(role, instance_id)
            before = instance.to_document()
            change(ledger, instance)
            return before, instance

        before, instance = await self._mutate(month, apply)
        after = instance.to_document()
        if after != before:
            await self._record(ROLE_INSTANCE_ENTITY[role], instance_id, before, after)
        return instance

    # Month lifecycle

    async def generate_month(self, month: str) -> MonthlyLedger:
        resolve_month(month)
        now = utcnow()
        instances: dict[Role, list[Instance]] = {}
        for role, service in self.templates.items():
            instances[role] = [
                instance
                for template in await service.list_all(active_only=True)
                if (instance := self._instance_from_template(template, month, now)) is not None
            ]
        payoffs = [
            self._payoff_instance(source, month, abs(source.balance), now)
            for source in await self._payoff_sources()
        ]
        ledger = MonthlyLedger(
            month=month,
            bill_instances=instances[Role.bill] + payoffs,
            income_instances=instances[Role.income],
            created_at=now,
            updated_at=now,
        )

        def create(raw: Optional[dict]):
            if raw is not None:
                raise ConflictError(f"Month {month} already exists; sync it instead")
            return ledger.to_document(), ledger

        await self.storage.update_month(month, create)
        await self._ensure_payoff_category(payoffs)
        logger.info(
            f"month_generated: month={month} bills={len(instances[Role.bill])} "
            f"incomes={len(instances[Role.income])} payoffs={len(payoffs)}"
        )
        return ledger

    async def get_month(self, month: str) -> Optional[MonthlyLedger]:
        raw = await self.storage.read_month(month)
        if raw is None:
            return None
        return parse_document(MonthlyLedger, raw, month_key(month))

    async def require_month(self, month: str) -> MonthlyLedger:
        return self._load(month, await self.storage.read_month(month))

    async def list_months(self) -> list[MonthSummaryOut]:
        sources = await self.payment_sources.list_all()
        summaries = []
        for month in reversed(await self.storage.list_months()):
            ledger = await self.get_month(month)
            if ledger is None:
                continue
            summaries.append(
                MonthSummaryOut(
                    month=ledger.month,
                    is_read_only=ledger.is_read_only,
                    created_at=ledger.created_at,
                    updated_at=ledger.updated_at,
                    totals=ledger.summary,
                    leftover=leftover_for_month(ledger, sources),
                )
            )
        return summaries

    async def get_detailed_month(self, month: str) -> DetailedMonth:
        ledger = await self.require_month(month)
        return build_detailed_month(
            ledger,
            await self.categories.list_all(),
            await self.payment_sources.list_all(),
            self.today(),
        )

    async def get_projection(self, month: str) -> Projection:
        ledger = await self.require_month(month)
        return build_projection(ledger, await self.payment_sources.list_all(), self.today())

    async def _set_read_only(self, month: str, read_only: bool) -> MonthlyLedger:
        def apply(raw: Optional[dict]):
            ledger = self._load(month, raw)
            if ledger.is_read_only == read_only:
                return UNCHANGED, ledger
            ledger.is_read_only = read_only
            ledger.touch()
            return ledger.to_document(), ledger

        ledger = await self.storage.update_month(month, apply)
        logger.info(f"month_read_only: month={month} read_only={read_only}")
        return ledger

    async def lock_month(self, month: str) -> MonthlyLedger:
        return await self._set_read_only(month, True)

    async def unlock_month(self, month: str) -> MonthlyLedger:
        return await self._set_read_only(month, False)

    async def delete_month(self, month: str) -> None:
        def check(raw: Optional[dict]) -> None:
            if self._load(month, raw).is_read_only:
                raise ReadOnlyError(month)

        await self.storage.delete_month(month, check)
        logger.info(f"month_deleted: month={month}")

    # Reconciliation

    async def sync_month(self, month: str) -> list[Instance]:
        resolve_month(month)
        now = utcnow()
        templates = {
            role: await service.list_all(active_only=True)
            for role, service in self.templates.items()
        }
        payoff_sources = await self._payoff_sources()

        def apply(ledger: MonthlyLedger) -> list[Instance]:
            added = []
            for role, active in templates.items():
                represented = {i.template_id for i in ledger.instances(role) if i.template_id}
                for template in active:
                    if template.id in represented or template.id in ledger.deleted_template_ids:
                        continue
                    instance = self._instance_from_template(template, month, now)
                    if instance is not None:
                        ledger.instances(role).append(instance)
                        added.append(instance)
            for source in payoff_sources:
                if (
                    ledger.payoff_instance_for(source.id) is not None
                    or source.id in ledger.deleted_payoff_source_ids
                ):
                    continue
                amount = abs(ledger.bank_balances.get(source.id, source.balance))
                instance = self._payoff_instance(source, month, amount, now)
                ledger.bill_instances.append(instance)
                added.append(instance)
            return added

        added = await self._mutate(month, apply)
        await self._ensure_payoff_category(added)
        logger.info(f"month_synced: month={month} added={len(added)}")
        return added

    async def refresh_metadata(self, month: str) -> int:
        templates = {
            template.id: template
            for service in self.templates.values()
            for template in await service.list_all()
        }

        def apply(ledger: MonthlyLedger) -> int:
            refreshed = 0
            for instance in ledger.all_instances():
                template = templates.get(instance.template_id or "")
                if template is None or instance.is_closed:
                    continue
                snapshot = _metadata_snapshot(template)
                if (
                    instance.name == template.name
                    and instance.category_id == template.category_id
                    and instance.payment_source_id == template.payment_source_id
                    and instance.metadata == snapshot
                ):
                    continue
                instance.name = template.name
                instance.category_id = template.category_id
                instance.payment_source_id = template.payment_source_id
                instance.metadata = snapshot
                instance.touch()
                refreshed += 1
            return refreshed

        refreshed = await self._mutate(month, apply)
        logger.info(f"month_metadata_refreshed: month={month} instances={refreshed}")
        return refreshed

    # Balances and payoff bills

    async def update_bank_balances(self, month: str, balances: dict[str, int]) -> MonthlyLedger:
        payoff_sources = {source.id: source for source in await self._payoff_sources()}
        today = self.today()
        now = utcnow()

        def apply(ledger: MonthlyLedger) -> MonthlyLedger:
            ledger.bank_balances = dict(balances)
            for source_id, source in payoff_sources.items():
                if source_id not in balances:
                    continue
                owed = abs(balances[source_id])
                instance = ledger.payoff_instance_for(source_id)
                if instance is None:
                    if source_id not in ledger.deleted_payoff_source_ids:
                        ledger.bill_instances.append(
                            self._payoff_instance(source, month, owed, now)
                        )
                    continue
                reconcile_payoff_balance(
                    instance, owed, due_date=payoff_due_date(month), today=today, now=now
                )
            return ledger

        ledger = await self._mutate(month, apply)
        await self._ensure_payoff_category(ledger.bill_instances)
        return ledger

    async def add_payoff_payment(
        self, month: str, instance_id: str, data: PayoffPaymentIn
    ) -> Instance:
        paid_date = data.paid_date or self.today()

        def change(ledger: MonthlyLedger, instance: Instance) -> None:
            if not instance.is_payoff_bill or not instance.payoff_source_id:
                raise ValidationError("Instance is not a payoff bill", field="instance_id")
            source_id = instance.payoff_source_id
            if data.new_balance is not None:
                owed = abs(data.new_balance)
            else:
                current = ledger.bank_balances.get(source_id)
                if current is None:
                    current = sum(o.expected_amount for o in instance.open_occurrences())
                owed = max(0, abs(current) - data.amount)
            record_payoff_payment(
                instance,
                data.amount,
                paid_date=paid_date,
                remaining_balance=owed,
                due_date=payoff_due_date(month),
                notes=data.notes,
            )
            ledger.bank_balances[source_id] = -owed

        return await self._mutate_instance(month, Role.bill, instance_id, change)

    # Instance operations

    async def close_instance(
        self, month: str, role: Role, instance_id: str, data: CloseInstanceIn
    ) -> Instance:
        closed_date = data.closed_date or self.today()
        return await self._mutate_instance(
            month,
            role,
            instance_id,
            lambda _ledger, instance: close_instance(
                instance, closed_date=closed_date, payment_source_id=data.payment_source_id
            ),
        )

    async def reopen_instance(self, month: str, role: Role, instance_id: str) -> Instance:
        return await self._mutate_instance(
            month, role, instance_id, lambda _ledger, instance: reopen_instance(instance)
        )

    async def create_adhoc_instance(
        self, month: str, role: Role, data: AdhocInstanceIn
    ) -> Instance:
        period = resolve_month(month)
        name = data.name.strip()
        if not name:
            raise ValidationError("Name is required", field="name")
        today = self.today()
        expected_date = data.expected_date or min(max(today, period.start), period.end)
        if not period.contains(expected_date):
            raise ValidationError(
                f"Date {expected_date.isoformat()} is outside {month}", field="expected_date"
            )
        closed =data.is_closed or data.closed_date is not None
        now = utcnow()
        instance = Instance(
            role=role,
            month=month,
            name=name,
            category_id=data.category_id or ADHOC_CATEGORY_ID,
            payment_source_id=data.payment_source_id,
            is_adhoc=True,
            metadata={"name": name},
            occurrences=[
                Occurrence(
                    sequence=1,
                    expected_date=expected_date,
                    expected_amount=data.amount,
                    is_closed=closed,
                    closed_date=(data.closed_date or today) if closed else None,
                    payment_source_id=data.payment_source_id,
                    notes=data.notes,
                    is_adhoc=True,
                    created_at=now,
                    updated_at=now,
                )
            ],
            created_at=now,
            updated_at=now,
        )
        await self._mutate(month, lambda ledger: ledger.instances(role).append(instance))
        if data.category_id is None:
            await self.categories.ensure_predefined(ADHOC_CATEGORY_ID)
        await self._record(ROLE_INSTANCE_ENTITY[role], instance.id, None, instance.to_document())
        return instance

    async def delete_instance(self, month: str, role: Role, instance_id: str) -> None:
        def apply(ledger: MonthlyLedger) -> dict:
            instance = ledger.find_instance(role, instance_id)
            ledger.instances(role).remove(instance)
            if instance.template_id and instance.template_id not in ledger.deleted_template_ids:
                ledger.deleted_template_ids.append(instance.template_id)
            if (
                instance.payoff_source_id
                and instance.payoff_source_id not in ledger.deleted_payoff_source_ids
            ):
                ledger.deleted_payoff_source_ids.append(instance.payoff_source_id)
            return instance.to_document()

        old = await self._mutate(month, apply)
        await self._record(ROLE_INSTANCE_ENTITY[role], instance_id, old, None)
        logger.info(f"instance_deleted: month={month} role={role.value} id={instance_id}")

    async def reset_instance(self, month: str, role: Role, instance_id: str) -> Instance:
        ledger = await self.require_month(month)
        current = ledger.find_instance(role, instance_id)
        if current.is_adhoc or current.is_payoff_bill or not current.template_id:
            raise ValidationError(
                "Only instances created from a template can be reset", field="instance_id"
            )
        template = await self.templates[role].get(current.template_id)
        now = utcnow()

        def change(_ledger: MonthlyLedger, instance: Instance) -> None:
            occurrences = generate_occurrences(template, month, now=now)
            if not occurrences:
                raise ValidationError(
                    f"Template {template.name} has no occurrences in {month}",
                    field="instance_id",
                )
            instance.occurrences = occurrences
            instance.billing_period = template.billing_period
            instance.refresh_totals()
            instance.touch(now)

        return await self._mutate_instance(month, role, instance_id, change)

    async def make_regular(
        self, month: str, role: Role, instance_id: str, data: MakeRegularIn
    ) -> RecurringTemplate:
        ledger = await self.require_month(month)
        if ledger.is_read_only:
            raise ReadOnlyError(month)
        instance = ledger.find_instance(role, instance_id)
        if not instance.is_adhoc or instance.is_payoff_bill:
            raise ValidationError("Only ad-hoc instances can be made regular", field="instance_id")
        amount = data.amount or instance.expected_amount
        if amount <= 0:
            raise ValidationError("Amount must be greater than 0", field="amount")
        category_id = data.category_id or instance.category_id
        if category_id == ADHOC_CATEGORY_ID:
            category_id = None
        try:
            template_in = TemplateIn(
                name=instance.name,
                amount=amount,
                billing_period=data.billing_period,
                day_of_month=data.day_of_month,
                recurrence_week=data.recurrence_week,
                recurrence_day=data.recurrence_day,
                start_date=data.start_date,
                category_id=category_id,
                payment_source_id=data.payment_source_id or instance.payment_source_id,
            )
        except SchemaValidationError as exc:
            raise ValidationError(str(exc)) from exc
        service = self.templates[role]
        template = await service.prepare(template_in)

        def link(current: MonthlyLedger) -> tuple[dict, Instance]:
            target = current.find_instance(role, instance_id)
            if not target.is_adhoc or target.is_payoff_bill:
                raise ValidationError(
                    "Only ad-hoc instances can be made regular", field="instance_id"
                )
            before = target.to_document()
            target.template_id = template.id
            target.is_adhoc = False
            target.billing_period = template.billing_period
            target.category_id = template.category_id
            target.metadata = _metadata_snapshot(template)
            target.touch()
            return before, target

        # The template is stored only once the month accepted the link.
        before, linked = await self._mutate(month, link)
        await service.store(template)
        await self._record(ROLE_INSTANCE_ENTITY[role], instance_id, before, linked.to_document())
        return template

    # Occurrence operations

    async def close_occurrence(
        self,
        month: str,
        role: Role,
        instance_id: str,
        occurrence_id: str,
        data: CloseOccurrenceIn,
    ) -> Instance:
        closed_date = data.closed_date or self.today()
        return await self._mutate_instance(
            month,
            role,
            instance_id,
            lambda _ledger, instance: close_occurrence(
                instance,
                occurrence_id,
                closed_date=closed_date,
                payment_source_id=data.payment_source_id,
                notes=data.notes,
            ),
        )

    async def reopen_occurrence(
        self, month: str, role: Role, instance_id: str, occurrence_id: str
    ) -> Instance:
        return await self._mutate_instance(
            month,
            role,
            instance_id,
            lambda _ledger, instance: reopen_occurrence(instance, occurrence_id),
        )

    async def update_occurrence(
        self,
        month: str,
        role: Role,
        instance_id: str,
        occurrence_id: str,
        data: OccurrenceUpdateIn,
    ) -> Instance:
        return await self._mutate_instance(
            month,
            role,
            instance_id,
            lambda _ledger, instance: update_occurrence(
                instance,
                occurrence_id,
                expected_amount=data.expected_amount,
                expected_date=data.expected_date,
                notes=data.notes,
            ),
        )

    async def update_occurrence_amount(
        self, month: str, role: Role, instance_id: str, occurrence_id: str, amount: int
    ) -> Instance:
        if amount < 0:
            raise ValidationError("Amount cannot be negative", field="expected_amount")
        return await self.update_occurrence(
            month, role, instance_id, occurrence_id, OccurrenceUpdateIn(expected_amount=amount)
        )

    async def add_adhoc_occurrence(
        self, month: str, role: Role, instance_id: str, data: AdhocOccurrenceIn
    ) -> Instance:
        return await self._mutate_instance(
            month,
            role,
            instance_id,
            lambda _ledger, instance: add_adhoc_occurrence(
                instance,
                expected_date=data.expected_date,
                expected_amount=data.expected_amount,
                notes=data.notes,
                payment_source_id=data.payment_source_id,
            ),
        )

    async def remove_occurrence(
        self, month: str, role: Role, instance_id: str, occurrence_id: str
    ) -> Instance:
        return await self._mutate_instance(
            month,
            role,
            instance_id,
            lambda _ledger, instance: remove_occurrence(instance, occurrence_id),
        )

    async def split_occurrence(
        self,
        month: str,
        role: Role,
        instance_id: str,
        occurrence_id: str,
        data: SplitOccurrenceIn,
    ) -> Instance:
        closed_date = data.closed_date or self.today()
        return await self._mutate_instance(
            month,
            role,
            instance_id,
            lambda _ledger, instance: split_occurrence(
                instance,
                occurrence_id,
                paid_amount=data.paid_amount,
                closed_date=closed_date,
                payment_source_id=data.payment_source_id,
                notes=data.notes,
            ),
        )

    # Variable expenses

    async def add_variable_expense(self, month: str, data: VariableExpenseIn) -> VariableExpense:
        if not resolve_month(month).contains(data.expense_date):
            raise ValidationError(
                f"Date {data.expense_date.isoformat()} is outside {month}",
                field="expense_date",
            )
        expense = VariableExpense(**data.model_dump())
        await self._mutate(month, lambda ledger: ledger.variable_expenses.append(expense))
        return expense

    async def delete_variable_expense(self, month: str, expense_id: str) -> None:
        def apply(ledger: MonthlyLedger) -> None:
            for expense in ledger.variable_expenses:
                if expense.id == expense_id:
                    ledger.variable_expenses.remove(expense)
                    return
            raise NotFoundError("Variable expense", expense_id)

        await self._mutate(month, apply)

    # Undo

    async def restore_instance(self, entry: UndoEntry) -> None:
        role = Role.bill if entry.entity_type == UndoEntityType.bill_instance else Role.income
        month = (entry.old_value or entry.new_value or {}).get("month")
        if not month:
            raise ConflictError("Undo entry does not name a month")

        def apply(ledger: MonthlyLedger) -> None:
            instances = ledger.instances(role)
            index = next(
                (i for i, inst in enumerate(instances) if inst.id == entry.entity_id), None
            )
            current = instances[index].to_document() if index is not None else None
            if current is None and entry.new_value is not None:
                raise NotFoundError(f"{role.value.capitalize()} instance", entry.entity_id)
            if current != entry.new_value:
                raise ConflictError(
                    f"{role.value.capitalize()} instance {entry.entity_id} has changed since; "
                    "cannot undo"
                )
            if entry.old_value is None:
                del instances[index]
                return
            restored = Instance.model_validate(entry.old_value)
            if index is not None:
                instances[index] = restored
                return
            instances.append(restored)
            if restored.template_id in ledger.deleted_template_ids:
                ledger.deleted_template_ids.remove(restored.template_id)
            if restored.payoff_source_id in ledger.deleted_payoff_source_ids:
                ledger.deleted_payoff_source_ids.remove(restored.payoff_source_id)

        await self._mutate(month, apply)


class BackupService:
    def __init__(self, storage: JsonStorage) -> None:
        self.storage = storage

    async def export(self) -> dict[str, Any]:
        months = []
        for month in await self.storage.list_months():
            raw = await self.storage.read_month(month)
            if raw is not None:
                months.append(raw)
        return {
            "export_date": utcnow().isoformat(),
            "bills": await self.storage.read_entity("bills"),
            "incomes": await self.storage.read_entity("incomes"),
            "payment_sources": await self.storage.read_entity("payment-sources"),
            "categories": await self.storage.read_entity("categories"),
            "months": months,
        }

    async def import_data(self, payload: dict[str, Any]) -> dict[str, int]:
        try:
            backup = BackupPayload.model_validate(payload)
        except SchemaValidationError as exc:
            raise ValidationError(f"Invalid backup file: {exc.error_count()} errors") from exc

        await self.storage.write_entity("bills", [t.to_document() for t in backup.bills])
        await self.storage.write_entity("incomes", [t.to_document() for t in backup.incomes])
        await self.storage.write_entity(
            "payment-sources", [s.to_document() for s in backup.payment_sources]
        )
        await self.storage.write_entity(
            "categories", [c.to_document() for c in backup.categories]
        )
        imported = {ledger.month for ledger in backup.months}
        for month in await self.storage.list_months():
            if month not in imported:
                await self.storage.delete_month(month)
        for ledger in backup.months:
            await self.storage.write_month(ledger.month, ledger.to_document())
        await self.storage.write_entity("undo", [])
        counts = {
            "bills": len(backup.bills),
            "incomes": len(backup.incomes),
            "payment_sources": len(backup.payment_sources),
            "categories": len(backup.categories),
            "months": len(backup.months),
        }
        logger.info(f"backup_imported: {counts}")
        return counts


@dataclass
class ServiceContainer:
    settings: Settings
    storage: JsonStorage
    undo: UndoService
    categories: CategoryService
    payment_sources: PaymentSourceService
    bills: TemplateService
    incomes: TemplateService
    months: MonthService
    backup: BackupService

    def templates(self, role: Role) -> TemplateService:
        return self.bills if role == Role.bill else self.incomes


def build_services(settings: Settings, storage: Optional[JsonStorage] = None) -> ServiceContainer:
    storage = storage or JsonStorage(settings.data_dir)
    undo = UndoService(storage, limit=settings.undo_limit)
    categories = CategoryService(storage, undo)
    payment_sources = PaymentSourceService(storage, undo)
    bills = TemplateService(
        storage, Role.bill, categories=categories, payment_sources=payment_sources, undo=undo
    )
    incomes = TemplateService(
        storage, Role.income, categories=categories, payment_sources=payment_sources, undo=undo
    )
    months = MonthService(
        storage,
        bills=bills,
        incomes=incomes,
        payment_sources=payment_sources,
        categories=categories,
        undo=undo,
        today=partial(local_today, settings.timezone),
    )

    undo.register(UndoEntityType.bill, bills.items.restore)
    undo.register(UndoEntityType.income, incomes.items.restore)
    undo.register(UndoEntityType.payment_source, payment_sources.items.restore)
    undo.register(UndoEntityType.category, categories.items.restore)
    undo.register(UndoEntityType.bill_instance, months.restore_instance)
    undo.register(UndoEntityType.income_instance, months.restore_instance)

    return ServiceContainer(
        settings=settings,
        storage=storage,
        undo=undo,
        categories=categories,
        payment_sources=payment_sources,
        bills=bills,
        incomes=incomes,
        months=months,
        backup=BackupService(storage),
    )
