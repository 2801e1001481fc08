import logging
from enum import Enum
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse

from config import get_settings
from errors import (
    ConflictError,
    LedgerError,
    NotFoundError,
    ReadOnlyError,
    StorageError,
    ValidationError,
    format_error_for_user,
)
from models import Role
from scheduler import SchedulerManager
from schemas import (
    AdhocInstanceIn,
    AdhocOccurrenceIn,
    BankBalancesIn,
    CategoryIn,
    CloseInstanceIn,
    CloseOccurrenceIn,
    MakeRegularIn,
    OccurrenceUpdateIn,
    PaymentSourceIn,
    PayoffPaymentIn,
    SplitOccurrenceIn,
    TemplateIn,
    VariableExpenseIn,
)
from services import ServiceContainer, build_services


logger = logging.getLogger(__name__)

ERROR_STATUS = (
    (ReadOnlyError, 423),
    (NotFoundError, 404),
    (ConflictError, 409),
    (ValidationError, 400),
    (StorageError, 500),
)


class Kind(str, Enum):
    bills = "bills"
    incomes = "incomes"

    @property
    def role(self) -> Role:
        return Role.bill if self == Kind.bills else Role.income


router = APIRouter(prefix="/api")


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    status_code = next(
        (code for error_type, code in ERROR_STATUS if isinstance(exc, error_type)), 400
    )
    if isinstance(exc, StorageError):
        logger.error(f"request_failed: path={request.url.path} storage_path={exc.path}")
    content: dict[str, Any] = {"detail": format_error_for_user(exc)}
    if isinstance(exc, ValidationError) and exc.field:
        content["field"] = exc.field
    return JSONResponse(status_code=status_code, content=content)


# Templates


@router.get("/templates/{kind}")
async def list_templates(
    kind: Kind, active_only: bool = False, services: ServiceContainer = Depends(get_services)
):
    templates = await services.templates(kind.role).list_all(active_only=active_only)
    return [template.to_document() for template in templates]


@router.get("/templates/{kind}/stats")
async def template_statistics(kind: Kind, services: ServiceContainer = Depends(get_services)):
    return await services.templates(kind.role).get_statistics()


@router.post("/templates/{kind}", status_code=201)
async def create_template(
    kind: Kind, data: TemplateIn, services: ServiceContainer = Depends(get_services)
):
    template = await services.templates(kind.role).create(data)
    return template.to_document()


@router.get("/templates/{kind}/{template_id}")
async def get_template(
    kind: Kind, template_id: str, services: ServiceContainer = Depends(get_services)
):
    return (await services.templates(kind.role).get(template_id)).to_document()


@router.put("/templates/{kind}/{template_id}")
async def update_template(
    kind: Kind,
    template_id: str,
    data: TemplateIn,
    services: ServiceContainer = Depends(get_services),
):
    template = await services.templates(kind.role).update(template_id, data)
    return template.to_document()


@router.delete("/templates/{kind}/{template_id}", status_code=204)
async def delete_template(
    kind: Kind, template_id: str, services: ServiceContainer = Depends(get_services)
):
    await services.templates(kind.role).delete(template_id)
    return Response(status_code=204)


# Payment sources and categories


@router.get("/payment-sources")
async def list_payment_sources(services: ServiceContainer = Depends(get_services)):
    return [source.to_document() for source in await services.payment_sources.list_all()]


@router.post("/payment-sources", status_code=201)
async def create_payment_source(
    data: PaymentSourceIn, services: ServiceContainer = Depends(get_services)
):
    return (await services.payment_sources.create(data)).to_document()


@router.put("/payment-sources/{source_id}")
async def update_payment_source(
    source_id: str, data: PaymentSourceIn, services: ServiceContainer = Depends(get_services)
):
    return (await services.payment_sources.update(source_id, data)).to_document()


@router.delete("/payment-sources/{source_id}", status_code=204)
async def delete_payment_source(
    source_id: str, services: ServiceContainer = Depends(get_services)
):
    await services.payment_sources.delete(source_id)
    return Response(status_code=204)


@router.get("/categories")
async def list_categories(services: ServiceContainer = Depends(get_services)):
    return [category.to_document() for category in await services.categories.list_all()]


@router.post("/categories", status_code=201)
async def create_category(data: CategoryIn, services: ServiceContainer = Depends(get_services)):
    return (await services.categories.create(data)).to_document()


@router.put("/categories/{category_id}")
async def update_category(
    category_id: str, data: CategoryIn, services: ServiceContainer = Depends(get_services)
):
    return (await services.categories.update(category_id, data)).to_document()


@router.delete("/categories/{category_id}", status_code=204)
async def delete_category(category_id: str, services: ServiceContainer = Depends(get_services)):
    await services.categories.delete(category_id)
    return Response(status_code=204)


# Months


@router.get("/months")
async def list_months(services: ServiceContainer = Depends(get_services)):
    return [summary.to_wire() for summary in await services.months.list_months()]


@router.post("/months/{month}", status_code=201)
async def generate_month(month: str, services: ServiceContainer = Depends(get_services)):
    return (await services.months.generate_month(month)).to_document()


@router.get("/months/{month}")
async def get_month(month: str, services: ServiceContainer = Depends(get_services)):
    return (await services.months.require_month(month)).to_document()


@router.get("/months/{month}/detailed")
async def get_detailed_month(month: str, services: ServiceContainer = Depends(get_services)):
    return (await services.months.get_detailed_month(month)).to_wire()


@router.get("/months/{month}/projection")
async def get_projection(month: str, services: ServiceContainer = Depends(get_services)):
    return (await services.months.get_projection(month)).model_dump(mode="json")


@router.delete("/months/{month}", status_code=204)
async def delete_month(month: str, services: ServiceContainer = Depends(get_services)):
    await services.months.delete_month(month)
    return Response(status_code=204)


@router.post("/months/{month}/sync")
async def sync_month(month: str, services: ServiceContainer = Depends(get_services)):
    added = await services.months.sync_month(month)
    return {"added": [instance.to_document() for instance in added]}


@router.post("/months/{month}/refresh-metadata")
async def refresh_metadata(month: str, services: ServiceContainer = Depends(get_services)):
    return {"refreshed": await services.months.refresh_metadata(month)}


@router.post("/months/{month}/lock")
async def lock_month(month: str, services: ServiceContainer = Depends(get_services)):
    return (await services.months.lock_month(month)).to_document()


@router.post("/months/{month}/unlock")
async def unlock_month(month: str, services: ServiceContainer = Depends(get_services)):
    return (await services.months.unlock_month(month)).to_document()


@router.put("/months/{month}/bank-balances")
async def update_bank_balances(
    month: str, data: BankBalancesIn, services: ServiceContainer = Depends(get_services)
):
    ledger = await services.months.update_bank_balances(month, data.balances)
    return ledger.to_document()


@router.post("/months/{month}/variable-expenses", status_code=201)
async def add_variable_expense(
    month: str, data: VariableExpenseIn, services: ServiceContainer = Depends(get_services)
):
    return (await services.months.add_variable_expense(month, data)).to_document()


@router.delete("/months/{month}/variable-expenses/{expense_id}", status_code=204)
async def delete_variable_expense(
    month: str, expense_id: str, services: ServiceContainer = Depends(get_services)
):
    await services.months.delete_variable_expense(month, expense_id)
    return Response(status_code=204)


# Instances


@router.post("/months/{month}/{kind}/adhoc", status_code=201)
async def create_adhoc_instance(
    month: str,
    kind: Kind,
    data: AdhocInstanceIn,
    services: ServiceContainer = Depends(get_services),
):
    return (await services.months.create_adhoc_instance(month, kind.role, data)).to_document()


@router.delete("/months/{month}/{kind}/{instance_id}", status_code=204)
async def delete_instance(
    month: str, kind: Kind, instance_id: str, services: ServiceContainer = Depends(get_services)
):
    await services.months.delete_instance(month, kind.role, instance_id)
    return Response(status_code=204)


@router.post("/months/{month}/{kind}/{instance_id}/close")
async def close_instance(
    month: str,
    kind: Kind,
    instance_id: str,
    data: Optional[CloseInstanceIn] = None,
    services: ServiceContainer = Depends(get_services),
):
    instance = await services.months.close_instance(
        month, kind.role, instance_id, data or CloseInstanceIn()
    )
    return instance.to_document()


@router.post("/months/{month}/{kind}/{instance_id}/reopen")
async def reopen_instance(
    month: str, kind: Kind, instance_id: str, services: ServiceContainer = Depends(get_services)
):
    return (await services.months.reopen_instance(month, kind.role, instance_id)).to_document()


@router.post("/months/{month}/{kind}/{instance_id}/reset")
async def reset_instance(
    month: str, kind: Kind, instance_id: str, services: ServiceContainer = Depends(get_services)
):
    return (await services.months.reset_instance(month, kind.role, instance_id)).to_document()


@router.post("/months/{month}/{kind}/{instance_id}/make-regular", status_code=201)
async def make_regular(
    month: str,
    kind: Kind,
    instance_id: str,
    data: MakeRegularIn,
    services: ServiceContainer = Depends(get_services),
):
    template = await services.months.make_regular(month, kind.role, instance_id, data)
    return template.to_document()


@router.post("/months/{month}/bills/{instance_id}/payoff-payment")
async def add_payoff_payment(
    month: str,
    instance_id: str,
    data: PayoffPaymentIn,
    services: ServiceContainer = Depends(get_services),
):
    return (await services.months.add_payoff_payment(month, instance_id, data)).to_document()


# Occurrences


@router.post("/months/{month}/{kind}/{instance_id}/occurrences", status_code=201)
async def add_adhoc_occurrence(
    month: str,
    kind: Kind,
    instance_id: str,
    data: AdhocOccurrenceIn,
    services: ServiceContainer = Depends(get_services),
):
    instance = await services.months.add_adhoc_occurrence(month, kind.role, instance_id, data)
    return instance.to_document()


@router.patch("/months/{month}/{kind}/{instance_id}/occurrences/{occurrence_id}")
async def update_occurrence(
    month: str,
    kind: Kind,
    instance_id: str,
    occurrence_id: str,
    data: OccurrenceUpdateIn,
    services: ServiceContainer = Depends(get_services),
):
    instance = await services.months.update_occurrence(
        month, kind.role, instance_id, occurrence_id, data
    )
    return instance.to_document()


@router.delete("/months/{month}/{kind}/{instance_id}/occurrences/{occurrence_id}")
async def remove_occurrence(
    month: str,
    kind: Kind,
    instance_id: str,
    occurrence_id: str,
    services: ServiceContainer = Depends(get_services),
):
    instance = await services.months.remove_occurrence(
        month, kind.role, instance_id, occurrence_id
    )
    return instance.to_document()


@router.post("/months/{month}/{kind}/{instance_id}/occurrences/{occurrence_id}/close")
async def close_occurrence(
    month: str,
    kind: Kind,
    instance_id: str,
    occurrence_id: str,
    data: Optional[CloseOccurrenceIn] = None,
    services: ServiceContainer = Depends(get_services),
):
    instance = await services.months.close_occurrence(
        month, kind.role, instance_id, occurrence_id, data or CloseOccurrenceIn()
    )
    return instance.to_document()


@router.post("/months/{month}/{kind}/{instance_id}/occurrences/{occurrence_id}/reopen")
async def reopen_occurrence(
    month: str,
    kind: Kind,
    instance_id: str,
    occurrence_id: str,
    services: ServiceContainer = Depends(get_services),
):
    instance = await services.months.reopen_occurrence(
        month, kind.role, instance_id, occurrence_id
    )
    return instance.to_document()


@router.post("/months/{month}/{kind}/{instance_id}/occurrences/{occurrence_id}/split")
async def split_occurrence(
    month: str,
    kind: Kind,
    instance_id: str,
    occurrence_id: str,
    data: SplitOccurrenceIn,
    services: ServiceContainer = Depends(get_services),
):
    instance = await services.months.split_occurrence(
        month, kind.role, instance_id, occurrence_id, data
    )
    return instance.to_document()


# Undo and backup


@router.get("/undo")
async def list_undo(services: ServiceContainer = Depends(get_services)):
    return [entry.to_document() for entry in await services.undo.list_entries()]


@router.post("/undo")
async def undo(services: ServiceContainer = Depends(get_services)):
    return (await services.undo.undo()).to_document()


@router.delete("/undo", status_code=204)
async def clear_undo(services: ServiceContainer = Depends(get_services)):
    await services.undo.clear()
    return Response(status_code=204)


@router.get("/backup")
async def export_backup(services: ServiceContainer = Depends(get_services)):
    return await services.backup.export()


@router.post("/backup")
async def import_backup(
    payload: dict[str, Any], services: ServiceContainer = Depends(get_services)
):
    return {"imported": await services.backup.import_data(payload)}


def create_app(
    services: Optional[ServiceContainer] = None, *, enable_scheduler: Optional[bool] = None
) -> FastAPI:
    services = services or build_services(get_settings())
    app = FastAPI(title="Budget Ledger")
    app.state.services = services
    app.include_router(router)
    app.add_exception_handler(LedgerError, ledger_error_handler)

    if enable_scheduler is None:
        enable_scheduler = services.settings.scheduler_enabled
    if enable_scheduler:
        scheduler_manager = SchedulerManager(services)
        app.add_event_handler("startup", scheduler_manager.start)
        app.add_event_handler("shutdown", scheduler_manager.stop)
    return app


app = create_app()


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
