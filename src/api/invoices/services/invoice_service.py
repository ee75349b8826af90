import asyncio
import logging
from typing import List, Optional

from src.api.common.errors import (
    ConflictError,
    ExchangeRateUnavailableError,
    InvoiceEngineError,
    InvoiceValidationError,
    NotFoundError,
)
from src.api.common.utils.datetime import ensure_utc, get_current_datetime
from src.api.common.utils.encryption import encrypt_json
from src.api.common.utils.money import MonetaryBreakdown, compute_breakdown, to_decimal
from src.api.exchange_rates.schemas.exchange_rate import ConvertedAmounts, ExchangeRateSnapshot
from src.api.exchange_rates.services.exchange_rate_cache import ExchangeRateCache, convert_amounts
from src.api.invoices.config import InvoiceConfig
from src.api.invoices.constants import (
    ConversionSkipReason,
    InvoiceKind,
    InvoiceStatus,
    PaymentStatus,
    SideEffectsMode,
    describe_state,
)
from src.api.invoices.models.invoice import Invoice
from src.api.invoices.schemas.invoice import (
    CancelData,
    InvoiceList,
    InvoiceRead,
    InvoiceStatusRead,
    IssuedInvoiceData,
    IssueProformaRequest,
    MarkPaidData,
    MarkPaidRequest,
)
from src.api.invoices.services.invoice_repository import InvoiceRepository
from src.api.numbering.schemas.series_counter import CounterRead, CounterSource
from src.api.numbering.services.numbering_service import NumberingService
from src.api.side_effects.schemas.side_effect import SideEffectReport
from src.api.side_effects.services.orchestrator import BackgroundSideEffects, SideEffectOrchestrator

logger = logging.getLogger(__name__)

STATUS_MESSAGES = {
    "proforma/pending": "Proforma invoice issued, waiting for payment",
    "proforma/paid": "Proforma invoice paid, fiscal invoice issued",
    "proforma/cancelled": "Proforma invoice cancelled",
    "fiscal/paid": "Fiscal invoice issued for a paid proforma invoice",
    "fiscal/cancelled": "Fiscal invoice cancelled",
}


class Conversion:
    """Outcome of the optional currency conversion of an issuance"""

    def __init__(self, requested: bool = False, target_currency: Optional[str] = None):
        self.requested = requested
        self.target_currency = target_currency
        self.skip_reason: Optional[ConversionSkipReason] = None
        self.snapshot: Optional[ExchangeRateSnapshot] = None
        self.amounts: Optional[ConvertedAmounts] = None

    @property
    def skipped(self) -> bool:
        return self.skip_reason is not None


class InvoiceLifecycleService:
    """
    Issues proforma invoices and moves them through their lifecycle.

    States: ``proforma/pending`` -> ``proforma/paid`` -> (derivation) ->
    ``fiscal/paid``, plus ``proforma/cancelled`` from ``proforma/pending``.

    Monetary, numbering and persistence failures abort the command.
    Conversion and side-effect failures only degrade the response.

    The repository is synchronous. The coroutines run it in worker threads
    and the read methods are meant for sync endpoints.
    """

    def __init__(
        self,
        repository: InvoiceRepository,
        rate_cache: ExchangeRateCache,
        numbering: NumberingService,
        orchestrator: SideEffectOrchestrator,
        config: Optional[InvoiceConfig] = None,
        background: Optional[BackgroundSideEffects] = None,
    ):
        self.repository = repository
        self.rate_cache = rate_cache
        self.numbering = numbering
        self.orchestrator = orchestrator
        self.config = config or InvoiceConfig()
        self.background = background or BackgroundSideEffects()

    async def issue_proforma(self, request: IssueProformaRequest) -> IssuedInvoiceData:
        """
        Issue a proforma invoice for a purchase.

        Args:
            request: Purchase command

        Returns:
            IssuedInvoiceData: The persisted invoice with its side effect report

        Raises:
            InvoiceValidationError: Invalid VAT percentage or amounts
            NumberingError: No number could be allocated
            PersistenceError: The invoice could not be stored
        """
        currency = (request.currency or self.config.default_currency).upper()
        vat_percentage = (request.vat_percentage if request.vat_percentage is not None
                          else self.config.vat_percentage)
        prices_include_vat = (request.prices_include_vat if request.prices_include_vat is not None
                              else self.config.prices_include_vat)

        breakdown = compute_breakdown(request.total_price, vat_percentage, prices_include_vat)
        logger.info(
            f"Computed amounts for package {request.package_id}: subtotal {breakdown.subtotal}, "
            f"VAT {breakdown.vat_amount}, total {breakdown.total_amount} {currency}")

        conversion = await self._resolve_conversion(request, currency, breakdown)

        allocated = await self.numbering.allocate(self.config.proforma_series)

        invoice = Invoice(
            invoice_number=allocated.invoice_number,
            series=allocated.series,
            sequence_number=allocated.value,
            kind=InvoiceKind.PROFORMA,
            status=InvoiceStatus.ISSUED,
            payment_status=PaymentStatus.PENDING,
            user_id=request.user_id,
            package_id=request.package_id,
            package_name=request.package_name,
            hours=request.hours,
            price_per_hour=request.price_per_hour,
            validity_days=request.validity_days,
            payment_method=request.payment_method,
            encrypted_buyer_data=encrypt_json(request.buyer.model_dump(exclude_none=True)),
            subtotal=breakdown.subtotal,
            vat_percentage=to_decimal(vat_percentage),
            vat_amount=breakdown.vat_amount,
            total_amount=breakdown.total_amount,
            prices_include_vat=prices_include_vat,
            currency=currency,
            target_currency=conversion.target_currency,
            conversion_requested=conversion.requested,
            conversion_skipped=conversion.skipped,
            conversion_skip_reason=conversion.skip_reason.value if conversion.skip_reason else None,
            converted_amounts=conversion.amounts.model_dump(mode="json") if conversion.amounts else None,
            exchange_rate_snapshot=conversion.snapshot.model_dump(mode="json") if conversion.snapshot else None,
        )
        issued = await asyncio.to_thread(self.repository.add, invoice)
        logger.info(f"Proforma invoice {issued.invoice_number} issued: {issued.id}")

        report = await self._dispatch_side_effects(issued, include_payment_link=request.payment_link)
        return self._to_issued_data(issued, allocated.source, report)

    async def _resolve_conversion(self, request: IssueProformaRequest, currency: str,
                                  breakdown: MonetaryBreakdown) -> Conversion:
        target_currency = (request.target_currency or self.config.local_currency).upper()
        if not request.convert_currency:
            return Conversion()
        conversion = Conversion(requested=True, target_currency=target_currency)
        if target_currency == currency:
            return conversion

        try:
            snapshot = await self.rate_cache.get_rate(currency, target_currency)
        except ExchangeRateUnavailableError as e:
            logger.warning(f"Skipping conversion {currency} to {target_currency}: {e}")
            conversion.skip_reason = ConversionSkipReason.RATE_UNAVAILABLE
            return conversion
        except Exception as e:
            logger.error(f"Unexpected error converting {currency} to {target_currency}, skipping conversion: {e}")
            conversion.skip_reason = ConversionSkipReason.RATE_UNAVAILABLE
            return conversion

        if snapshot is None:
            conversion.skip_reason = ConversionSkipReason.UNSUPPORTED_PAIR
            return conversion

        conversion.snapshot = snapshot
        conversion.amounts = convert_amounts(breakdown, snapshot)
        logger.info(
            f"Converted total {breakdown.total_amount} {currency} to {conversion.amounts.total_amount} "
            f"{target_currency} at rate {snapshot.rate} (cached: {snapshot.is_cached}, stale: {snapshot.is_stale})")
        return conversion

    async def mark_paid(self, invoice_id: str, request: Optional[MarkPaidRequest] = None) -> MarkPaidData:
        """
        Mark a pending proforma invoice as paid and derive its fiscal invoice.

        The proforma invoice is claimed as paid before the fiscal number is
        allocated, so a concurrent second call is rejected without spending
        a fiscal number. If the fiscal invoice cannot be created the claim
        is reverted.

        Raises:
            NotFoundError: Unknown invoice id
            ConflictError: Invoice is not a pending proforma invoice
            NumberingError: No fiscal number could be allocated
            PersistenceError: The fiscal invoice could not be stored
        """
        request = request or MarkPaidRequest()
        proforma = await self._get_or_raise(invoice_id, "mark_paid")
        self._ensure_pending_proforma(proforma, "mark as paid")

        paid_at = ensure_utc(request.paid_at) or get_current_datetime()
        payment_details = request.model_dump(mode="json", exclude_none=True)

        claimed = await asyncio.to_thread(
            self.repository.mark_paid_if_pending, invoice_id, paid_at, payment_details)
        if not claimed:
            current = await self._get_or_raise(invoice_id, "mark_paid")
            raise self._conflict(current, "mark as paid")
        logger.info(f"Proforma invoice {proforma.invoice_number} marked as paid")

        try:
            allocated = await self.numbering.allocate(self.config.fiscal_series)
            fiscal = self._derive_fiscal(proforma, allocated.invoice_number, allocated.series,
                                         allocated.value, paid_at, payment_details,
                                         request.payment_method)
            fiscal_read = await asyncio.to_thread(self.repository.add_fiscal, fiscal, proforma.id)
        except Exception as e:
            logger.error(f"Fiscal invoice derivation failed for proforma {invoice_id}, reverting payment: {e}")
            try:
                await asyncio.to_thread(self.repository.revert_paid, invoice_id)
            except InvoiceEngineError as revert_error:
                logger.error(f"Could not revert paid state of proforma {invoice_id}: {revert_error}")
            if isinstance(e, InvoiceEngineError) and e.invoice_id is None:
                e.invoice_id = invoice_id
            raise

        logger.info(f"Fiscal invoice {fiscal_read.invoice_number} issued for proforma {proforma.invoice_number}")
        report = await self._dispatch_side_effects(fiscal_read, include_payment_link=False)

        return MarkPaidData(
            proforma_invoice_id=proforma.id,
            proforma_invoice_number=proforma.invoice_number,
            paid_at=paid_at,
            fiscal_invoice=self._to_issued_data(fiscal_read, allocated.source, report),
        )

    def _derive_fiscal(self, proforma: InvoiceRead, invoice_number: str, series: str,
                       sequence_number: Optional[int], paid_at, payment_details,
                       payment_method: Optional[str]) -> Invoice:
        # Amounts and the exchange rate snapshot are copied, never recomputed
        return Invoice(
            invoice_number=invoice_number,
            series=series,
            sequence_number=sequence_number,
            kind=InvoiceKind.FISCAL,
            status=InvoiceStatus.ISSUED,
            payment_status=PaymentStatus.PAID,
            user_id=proforma.user_id,
            package_id=proforma.package_id,
            package_name=proforma.package_name,
            hours=proforma.hours,
            price_per_hour=proforma.price_per_hour,
            payment_method=payment_method or proforma.payment_method,
            encrypted_buyer_data=encrypt_json(proforma.buyer.model_dump(exclude_none=True)),
            subtotal=proforma.subtotal,
            vat_percentage=proforma.vat_percentage,
            vat_amount=proforma.vat_amount,
            total_amount=proforma.total_amount,
            prices_include_vat=proforma.prices_include_vat,
            currency=proforma.currency,
            target_currency=proforma.target_currency,
            conversion_requested=proforma.conversion_requested,
            conversion_skipped=proforma.conversion_skipped,
            conversion_skip_reason=proforma.conversion_skip_reason,
            converted_amounts=(proforma.converted_amounts.model_dump(mode="json")
                               if proforma.converted_amounts else None),
            exchange_rate_snapshot=(proforma.exchange_rate_snapshot.model_dump(mode="json")
                                    if proforma.exchange_rate_snapshot else None),
            proforma_invoice_id=proforma.id,
            paid_at=paid_at,
            payment_details=payment_details,
        )

    async def cancel(self, invoice_id: str, reason: str) -> CancelData:
        """
        Cancel a pending proforma invoice. No side effects are triggered.

        Raises:
            InvoiceValidationError: Missing reason
            NotFoundError: Unknown invoice id
            ConflictError: Invoice is not a pending proforma invoice
        """
        if not reason or not reason.strip():
            raise InvoiceValidationError("A cancellation reason is required",
                                         invoice_id=invoice_id, step="cancel")

        invoice = await self._get_or_raise(invoice_id, "cancel")
        self._ensure_pending_proforma(invoice, "cancel")

        cancelled_at = get_current_datetime()
        cancelled = await asyncio.to_thread(
            self.repository.cancel_if_pending, invoice_id, reason.strip(), cancelled_at)
        if not cancelled:
            raise self._conflict(await self._get_or_raise(invoice_id, "cancel"), "cancel")

        logger.info(f"Invoice {invoice.invoice_number} cancelled: {reason}")
        return CancelData(
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            status=InvoiceStatus.CANCELLED,
            cancelled_at=cancelled_at,
            cancellation_reason=reason.strip(),
        )

    def get_details(self, invoice_id: str) -> Optional[InvoiceRead]:
        return self.repository.get(invoice_id)

    def get_status(self, invoice_id: str) -> Optional[InvoiceStatusRead]:
        invoice = self.repository.get(invoice_id)
        if invoice is None:
            return None
        state = describe_state(invoice.kind, invoice.status, invoice.payment_status)
        return InvoiceStatusRead(
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            kind=invoice.kind,
            status=invoice.status,
            payment_status=invoice.payment_status,
            message=STATUS_MESSAGES.get(state, state),
            updated_at=invoice.updated_at,
        )

    def list_invoices(self, kind: Optional[InvoiceKind] = None, payment_status: Optional[PaymentStatus] = None,
                      limit: int = 50, offset: int = 0) -> InvoiceList:
        invoices, total = self.repository.list_invoices(
            kind=kind, payment_status=payment_status, limit=limit, offset=offset)
        return InvoiceList(invoices=invoices, total=total, limit=limit, offset=offset)

    def list_by_kind(self, kind: InvoiceKind, limit: int = 50, offset: int = 0) -> InvoiceList:
        return self.list_invoices(kind=kind, limit=limit, offset=offset)

    def list_by_payment_status(self, payment_status: PaymentStatus, limit: int = 50,
                               offset: int = 0) -> InvoiceList:
        return self.list_invoices(payment_status=payment_status, limit=limit, offset=offset)

    async def get_counters(self) -> List[CounterRead]:
        return await self.numbering.get_counters()

    async def get_counter(self, series: str) -> Optional[CounterRead]:
        return await self.numbering.get_counter(series)

    async def _get_or_raise(self, invoice_id: str, step: str) -> InvoiceRead:
        invoice = await asyncio.to_thread(self.repository.get, invoice_id)
        if invoice is None:
            raise NotFoundError(f"Invoice {invoice_id} not found", invoice_id=invoice_id, step=step)
        return invoice

    def _conflict(self, invoice: InvoiceRead, action: str) -> ConflictError:
        state = describe_state(invoice.kind, invoice.status, invoice.payment_status)
        if invoice.kind == InvoiceKind.FISCAL:
            message = f"Cannot {action} invoice {invoice.invoice_number}: it is a fiscal invoice"
        elif invoice.status == InvoiceStatus.CANCELLED:
            message = f"Cannot {action} invoice {invoice.invoice_number}: it is already cancelled"
        elif invoice.payment_status == PaymentStatus.PAID:
            message = f"Cannot {action} invoice {invoice.invoice_number}: it is already paid"
        else:
            message = f"Cannot {action} invoice {invoice.invoice_number} in state {state}"
        return ConflictError(message, current_state=state, invoice_id=invoice.id, step=action.replace(" ", "_"))

    def _ensure_pending_proforma(self, invoice: InvoiceRead, action: str) -> None:
        if (invoice.kind != InvoiceKind.PROFORMA
                or invoice.status != InvoiceStatus.ISSUED
                or invoice.payment_status != PaymentStatus.PENDING):
            raise self._conflict(invoice, action)

    async def _dispatch_side_effects(self, invoice: InvoiceRead, include_payment_link: bool) -> SideEffectReport:
        if self.config.side_effects_mode == SideEffectsMode.BACKGROUND:
            self.background.schedule(invoice.id, self._run_side_effects(invoice, include_payment_link))
            return SideEffectReport.pending(include_payment_link)
        return await self._run_side_effects(invoice, include_payment_link)

    async def _run_side_effects(self, invoice: InvoiceRead, include_payment_link: bool) -> SideEffectReport:
        report = await self.orchestrator.run(invoice, include_payment_link=include_payment_link)
        try:
            await asyncio.to_thread(self.repository.record_side_effects, invoice.id, report)
        except InvoiceEngineError as e:
            logger.error(f"Could not store side effect results for invoice {invoice.id}: {e}")
        return report

    def _to_issued_data(self, invoice: InvoiceRead, numbering_source: CounterSource,
                        report: SideEffectReport) -> IssuedInvoiceData:
        return IssuedInvoiceData(
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            kind=invoice.kind,
            status=invoice.status,
            payment_status=invoice.payment_status,
            subtotal=invoice.subtotal,
            vat_percentage=invoice.vat_percentage,
            vat_amount=invoice.vat_amount,
            total_amount=invoice.total_amount,
            currency=invoice.currency,
            numbering_source=numbering_source,
            conversion_requested=invoice.conversion_requested,
            conversion_skipped=invoice.conversion_skipped,
            conversion_skip_reason=invoice.conversion_skip_reason,
            converted_amounts=invoice.converted_amounts,
            exchange_rate_snapshot=invoice.exchange_rate_snapshot,
            payment_url=report.payment_link.value if report.payment_link.succeeded else invoice.payment_url,
            payment_link_generated=report.payment_link.succeeded,
            document_generated=report.document.succeeded,
            notification_sent=report.notification.succeeded,
            side_effects=report,
        )
