from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlmodel import Session

from src.api.common.errors import InvoiceEngineError, UnsupportedCurrencyPairError, to_http_exception
from src.api.common.utils.auth import require_api_key
from src.api.common.utils.database import get_db
from src.api.exchange_rates.schemas.exchange_rate import CacheStatus, ExchangeRateSnapshot
from src.api.exchange_rates.services.exchange_rate_cache import ExchangeRateCache
from src.api.invoices.constants import InvoiceKind, PaymentStatus
from src.api.invoices.dependencies import get_invoice_service, get_rate_cache
from src.api.invoices.schemas.invoice import (
    CancelRequest,
    CancelResponse,
    InvoiceList,
    InvoiceRead,
    InvoiceStatusRead,
    IssueProformaRequest,
    IssueProformaResponse,
    MarkPaidRequest,
    MarkPaidResponse,
)
from src.api.invoices.services.invoice_service import InvoiceLifecycleService
from src.api.numbering.schemas.series_counter import CounterRead
from src.api.side_effects.schemas.side_effect import SideEffectFailureRead, SideEffectFailureResolve
from src.api.side_effects.services.side_effect_failure_service import SideEffectFailureService

router = APIRouter(prefix="/invoices", tags=["invoices"], dependencies=[Depends(require_api_key)])


def get_side_effect_failure_service(db: Session = Depends(get_db)):
    return SideEffectFailureService(db)


def _not_found(message: str, invoice_id: Optional[str] = None) -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={"success": False, "error": message, "step": None, "invoice_id": invoice_id})


@router.get("/counters", response_model=List[CounterRead])
async def get_counters(
    invoice_service: InvoiceLifecycleService = Depends(get_invoice_service)
):
    """Get the current value of every invoice series"""
    return await invoice_service.get_counters()


@router.get("/counters/{series}", response_model=CounterRead)
async def get_counter(
    series: str,
    invoice_service: InvoiceLifecycleService = Depends(get_invoice_service)
):
    """Get the counter of one invoice series"""
    counter = await invoice_service.get_counter(series)
    if not counter:
        raise _not_found(f"Invoice series {series} not found")
    return counter


@router.get("/exchange-rates", response_model=ExchangeRateSnapshot)
async def get_exchange_rate(
    from_currency: str = Query(..., alias="from", pattern=r"^[A-Za-z]{3}$"),
    to_currency: str = Query(..., alias="to", pattern=r"^[A-Za-z]{3}$"),
    rate_cache: ExchangeRateCache = Depends(get_rate_cache)
):
    """Get the exchange rate for 1 unit of `from` in `to`"""
    try:
        snapshot = await rate_cache.get_rate(from_currency, to_currency)
    except InvoiceEngineError as e:
        raise to_http_exception(e)
    if snapshot is None:
        raise to_http_exception(UnsupportedCurrencyPairError(
            f"Unsupported currency conversion: {from_currency.upper()} to {to_currency.upper()}",
            step="exchange_rate"))
    return snapshot


@router.get("/exchange-rates/cache", response_model=CacheStatus)
def get_exchange_rate_cache_status(
    rate_cache: ExchangeRateCache = Depends(get_rate_cache)
):
    """Get the status of the exchange rate cache"""
    return rate_cache.get_cache_status()


@router.post("/exchange-rates/cache/clear")
def clear_exchange_rate_cache(
    rate_cache: ExchangeRateCache = Depends(get_rate_cache)
):
    """Drop every cached exchange rate"""
    rate_cache.clear_cache()
    return {"success": True, "message": "Exchange rate cache cleared"}


@router.get("", response_model=InvoiceList)
def get_invoices(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    invoice_service: InvoiceLifecycleService = Depends(get_invoice_service)
):
    """Get a list of invoices, newest first"""
    try:
        return invoice_service.list_invoices(limit=limit, offset=offset)
    except InvoiceEngineError as e:
        raise to_http_exception(e)


@router.get("/type/{kind}", response_model=InvoiceList)
def get_invoices_by_kind(
    kind: InvoiceKind,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    invoice_service: InvoiceLifecycleService = Depends(get_invoice_service)
):
    """Get proforma or fiscal invoices"""
    try:
        return invoice_service.list_by_kind(kind, limit=limit, offset=offset)
    except InvoiceEngineError as e:
        raise to_http_exception(e)


@router.get("/payment-status/{payment_status}", response_model=InvoiceList)
def get_invoices_by_payment_status(
    payment_status: PaymentStatus,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    invoice_service: InvoiceLifecycleService = Depends(get_invoice_service)
):
    """Get pending or paid invoices"""
    try:
        return invoice_service.list_by_payment_status(payment_status, limit=limit, offset=offset)
    except InvoiceEngineError as e:
        raise to_http_exception(e)


@router.post("/proforma", response_model=IssueProformaResponse, status_code=201)
async def issue_proforma_invoice(
    request: IssueProformaRequest,
    invoice_service: InvoiceLifecycleService = Depends(get_invoice_service)
):
    """Issue a proforma invoice for a package purchase"""
    try:
        data = await invoice_service.issue_proforma(request)
    except InvoiceEngineError as e:
        raise to_http_exception(e)
    return IssueProformaResponse(data=data)


@router.get("/side-effects/unresolved", response_model=List[SideEffectFailureRead])
def get_unresolved_side_effect_failures(
    failure_service: SideEffectFailureService = Depends(get_side_effect_failure_service)
):
    """Get every side effect failure that still needs attention"""
    return failure_service.get_unresolved_failures()


@router.post("/side-effects/{failure_id}/resolve", response_model=SideEffectFailureRead)
def resolve_side_effect_failure(
    failure_id: int,
    resolution: SideEffectFailureResolve,
    failure_service: SideEffectFailureService = Depends(get_side_effect_failure_service)
):
    """Mark a side effect failure as handled"""
    failure = failure_service.resolve_failure(failure_id, resolution)
    if not failure:
        raise _not_found(f"Side effect failure {failure_id} not found")
    return failure


@router.get("/{invoice_id}/status", response_model=InvoiceStatusRead)
def get_invoice_status(
    invoice_id: str,
    invoice_service: InvoiceLifecycleService = Depends(get_invoice_service)
):
    """Get the lifecycle state of an invoice"""
    try:
        status = invoice_service.get_status(invoice_id)
    except InvoiceEngineError as e:
        raise to_http_exception(e)
    if not status:
        raise _not_found(f"Invoice {invoice_id} not found", invoice_id)
    return status


@router.get("/{invoice_id}/side-effects", response_model=List[SideEffectFailureRead])
def get_invoice_side_effect_failures(
    invoice_id: str,
    failure_service: SideEffectFailureService = Depends(get_side_effect_failure_service)
):
    """Get the recorded side effect failures of an invoice"""
    return failure_service.get_failures_by_invoice(invoice_id)


@router.get("/{invoice_id}", response_model=InvoiceRead)
def get_invoice(
    invoice_id: str,
    invoice_service: InvoiceLifecycleService = Depends(get_invoice_service)
):
    """Get an invoice by ID"""
    try:
        invoice = invoice_service.get_details(invoice_id)
    except InvoiceEngineError as e:
        raise to_http_exception(e)
    if not invoice:
        raise _not_found(f"Invoice {invoice_id} not found", invoice_id)
    return invoice


@router.post("/{invoice_id}/cancel", response_model=CancelResponse)
async def cancel_invoice(
    invoice_id: str,
    request: CancelRequest,
    invoice_service: InvoiceLifecycleService = Depends(get_invoice_service)
):
    """Cancel a pending proforma invoice"""
    try:
        data = await invoice_service.cancel(invoice_id, request.reason)
    except InvoiceEngineError as e:
        raise to_http_exception(e)
    return CancelResponse(data=data)


@router.post("/{invoice_id}/mark-paid", response_model=MarkPaidResponse)
async def mark_invoice_paid(
    invoice_id: str,
    request: Optional[MarkPaidRequest] = None,
    invoice_service: InvoiceLifecycleService = Depends(get_invoice_service)
):
    """Mark a proforma invoice as paid and issue its fiscal invoice"""
    try:
        data = await invoice_service.mark_paid(invoice_id, request)
    except InvoiceEngineError as e:
        raise to_http_exception(e)
    return MarkPaidResponse(data=data)
