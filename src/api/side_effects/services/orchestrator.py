import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Set

from src.api.invoices.schemas.invoice import InvoiceRead
from src.api.side_effects.interfaces import DocumentRenderer, NotificationSender, PaymentLinkProvider
from src.api.side_effects.notifications.messages import compose_notification
from src.api.side_effects.schemas.side_effect import (
    DocumentHandle,
    SideEffectReport,
    SideEffectStep,
    StepOutcome,
    StepStatus,
)
from src.api.side_effects.utils.error_logger import log_side_effect_failure

logger = logging.getLogger(__name__)

FailureLogger = Callable[..., None]


class SideEffectOrchestrator:
    """
    Runs the side effects that accompany an issued invoice.

    Steps run in order: payment link, document, notification. The payment
    URL is embedded in the document and the document is attached to the
    notification. A failed step never raises; it is logged, recorded
    through ``failure_logger`` and reported, and later steps run with
    whatever data is available.
    """

    def __init__(
        self,
        payment_links: Optional[PaymentLinkProvider] = None,
        renderer: Optional[DocumentRenderer] = None,
        sender: Optional[NotificationSender] = None,
        failure_logger: FailureLogger = log_side_effect_failure,
        company_name: str = "Invoice Engine",
        step_timeout_seconds: Optional[float] = None,
    ):
        self.payment_links = payment_links
        self.renderer = renderer
        self.sender = sender
        self.failure_logger = failure_logger
        self.company_name = company_name
        self.step_timeout_seconds = step_timeout_seconds

    async def run(self, invoice: InvoiceRead, include_payment_link: bool = False) -> SideEffectReport:
        report = SideEffectReport()

        payment_url = invoice.payment_url
        if include_payment_link:
            report.payment_link = await self._attempt(
                invoice, SideEffectStep.PAYMENT_LINK, self.payment_links,
                lambda: self._create_payment_link(invoice))
            if report.payment_link.status == StepStatus.OK:
                payment_url = report.payment_link.value

        document: Optional[DocumentHandle] = None

        async def render() -> str:
            nonlocal document
            document = await self.renderer.render(invoice, payment_url)
            return document.reference

        report.document = await self._attempt(invoice, SideEffectStep.DOCUMENT, self.renderer, render)

        report.notification = await self._attempt(
            invoice, SideEffectStep.NOTIFICATION, self.sender,
            lambda: self._notify(invoice, payment_url, document))

        if report.failed_steps:
            logger.warning(
                f"Side effects for invoice {invoice.id} completed with failures: "
                f"{', '.join(step.value for step in report.failed_steps)}")
        return report

    async def _create_payment_link(self, invoice: InvoiceRead) -> str:
        amount, currency = invoice.total_amount, invoice.currency
        if invoice.converted_amounts is not None:
            amount, currency = invoice.converted_amounts.total_amount, invoice.converted_amounts.currency
        return await self.payment_links.create_link(
            invoice.id,
            amount,
            currency,
            invoice.buyer.email,
            description=f"{invoice.package_name} - Invoice {invoice.invoice_number}",
        )

    async def _notify(self, invoice: InvoiceRead, payment_url: Optional[str],
                      document: Optional[DocumentHandle]) -> str:
        subject, body = compose_notification(
            invoice,
            payment_url=payment_url,
            has_attachment=document is not None,
            company_name=self.company_name,
        )
        return await self.sender.send(invoice.buyer.email, subject, body, attachment=document)

    async def _attempt(self, invoice: InvoiceRead, step: SideEffectStep, collaborator: Any,
                       action: Callable[[], Awaitable[str]]) -> StepOutcome:
        if collaborator is None:
            logger.info(f"Skipping {step.value} for invoice {invoice.id}: not configured")
            return StepOutcome(step=step, status=StepStatus.NOT_CONFIGURED)

        try:
            if self.step_timeout_seconds:
                value = await asyncio.wait_for(action(), timeout=self.step_timeout_seconds)
            else:
                value = await action()
        except Exception as e:
            error_message = str(e) or e.__class__.__name__
            logger.error(f"Side effect {step.value} failed for invoice {invoice.id}: {error_message}")
            await self._record_failure(invoice, step, error_message, e)
            return StepOutcome(step=step, status=StepStatus.FAILED, error=error_message)

        logger.info(f"Side effect {step.value} completed for invoice {invoice.id}")
        return StepOutcome(step=step, status=StepStatus.OK, value=value)

    async def _record_failure(self, invoice: InvoiceRead, step: SideEffectStep,
                              error_message: str, error: Exception) -> None:
        try:
            await asyncio.to_thread(
                self.failure_logger,
                invoice.id,
                step,
                error_message,
                invoice_number=invoice.invoice_number,
                error_details={"error_type": error.__class__.__name__},
            )
        except Exception as e:
            logger.error(f"Could not record {step.value} failure for invoice {invoice.id}: {e}")


class BackgroundSideEffects:
    """
    Schedules side effects as background tasks.

    Task references are kept until the task finishes so it is not garbage
    collected mid-run. ``drain`` waits for everything still scheduled.
    """

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def schedule(self, invoice_id: str, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(lambda finished: self._on_done(invoice_id, finished))
        logger.info(f"Side effects for invoice {invoice_id} scheduled in background")
        return task

    def _on_done(self, invoice_id: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning(f"Background side effects for invoice {invoice_id} were cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background side effects for invoice {invoice_id} failed: {error}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
