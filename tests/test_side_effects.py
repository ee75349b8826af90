import asyncio
import pytest
from decimal import Decimal
from unittest.mock import Mock, patch
import httpx

from src.api.common.errors import SideEffectError
from src.api.exchange_rates.schemas.exchange_rate import ConvertedAmounts
from src.api.invoices.constants import InvoiceKind, PaymentStatus
from src.api.side_effects.documents.config import DocumentConfig
from src.api.side_effects.documents.renderer import PdfDocumentRenderer
from src.api.side_effects.notifications.config import SmtpConfig
from src.api.side_effects.notifications.messages import compose_notification
from src.api.side_effects.notifications.sender import SmtpNotificationSender, build_notification_sender
from src.api.side_effects.payments.client import PaymentLinkClient
from src.api.side_effects.payments.config import PaymentGatewayConfig
from src.api.side_effects.schemas.side_effect import (
    DocumentHandle,
    SideEffectFailureCreate,
    SideEffectFailureResolve,
    SideEffectReport,
    SideEffectStep,
    StepStatus,
)
from src.api.side_effects.services.orchestrator import BackgroundSideEffects, SideEffectOrchestrator
from src.api.side_effects.services.side_effect_failure_service import SideEffectFailureService
from src.api.side_effects.utils.error_logger import log_side_effect_failure


class TestSideEffectOrchestrator:
    """Test ordering and failure isolation of side effects"""

    @pytest.mark.asyncio
    async def test_all_steps_succeed_in_order(self, orchestrator, payment_links, renderer, sender,
                                              test_data_factory):
        invoice = test_data_factory.invoice_read()

        report = await orchestrator.run(invoice, include_payment_link=True)

        assert report.payment_link.status == StepStatus.OK
        assert report.payment_link.value == f"https://pay.test/{invoice.id}"
        assert report.document.value == "invoice-PROF-1001.pdf"
        assert report.notification.value == "<message-1@test>"
        assert report.failed_steps == []

        assert renderer.calls[0]["payment_url"] == f"https://pay.test/{invoice.id}"
        assert sender.calls[0]["recipient"] == "buyer@example.com"
        assert sender.calls[0]["attachment"].filename == "invoice-PROF-1001.pdf"
        assert f"https://pay.test/{invoice.id}" in sender.calls[0]["body"]

    @pytest.mark.asyncio
    async def test_payment_link_not_requested(self, orchestrator, payment_links, renderer,
                                              test_data_factory):
        report = await orchestrator.run(test_data_factory.invoice_read())

        assert report.payment_link.status == StepStatus.NOT_REQUESTED
        assert report.payment_link.succeeded is None
        assert payment_links.calls == []
        assert renderer.calls[0]["payment_url"] is None

    @pytest.mark.asyncio
    async def test_existing_payment_url_is_reused(self, orchestrator, renderer, test_data_factory):
        invoice = test_data_factory.invoice_read(payment_url="https://pay.test/existing")

        await orchestrator.run(invoice)

        assert renderer.calls[0]["payment_url"] == "https://pay.test/existing"

    @pytest.mark.asyncio
    async def test_document_failure_does_not_stop_notification(self, orchestrator, renderer, sender,
                                                                failure_recorder, test_data_factory):
        renderer.error = RuntimeError("disk full")
        invoice = test_data_factory.invoice_read()

        report = await orchestrator.run(invoice)

        assert report.document.status == StepStatus.FAILED
        assert report.document.error == "disk full"
        assert report.document.succeeded is False
        assert report.notification.status == StepStatus.OK
        assert sender.calls[0]["attachment"] is None
        assert "attached" not in sender.calls[0]["body"]

        assert len(failure_recorder.failures) == 1
        failure = failure_recorder.failures[0]
        assert failure["invoice_id"] == invoice.id
        assert failure["step"] == SideEffectStep.DOCUMENT
        assert failure["invoice_number"] == "PROF-1001"
        assert failure["error_details"] == {"error_type": "RuntimeError"}

    @pytest.mark.asyncio
    async def test_payment_link_failure_continues_without_url(self, orchestrator, payment_links, renderer,
                                                               sender, test_data_factory):
        payment_links.error = SideEffectError("gateway down")

        report = await orchestrator.run(test_data_factory.invoice_read(), include_payment_link=True)

        assert report.payment_link.status == StepStatus.FAILED
        assert report.document.status == StepStatus.OK
        assert report.notification.status == StepStatus.OK
        assert renderer.calls[0]["payment_url"] is None

    @pytest.mark.asyncio
    async def test_every_step_failing_never_raises(self, orchestrator, payment_links, renderer, sender,
                                                   failure_recorder, test_data_factory):
        payment_links.error = RuntimeError("gateway down")
        renderer.error = RuntimeError("disk full")
        sender.error = RuntimeError("smtp down")

        report = await orchestrator.run(test_data_factory.invoice_read(), include_payment_link=True)

        assert report.failed_steps == [
            SideEffectStep.PAYMENT_LINK, SideEffectStep.DOCUMENT, SideEffectStep.NOTIFICATION]
        assert [failure["step"] for failure in failure_recorder.failures] == report.failed_steps

    @pytest.mark.asyncio
    async def test_missing_collaborators_are_not_configured(self, failure_recorder, test_data_factory):
        orchestrator = SideEffectOrchestrator(failure_logger=failure_recorder)

        report = await orchestrator.run(test_data_factory.invoice_read(), include_payment_link=True)

        assert report.payment_link.status == StepStatus.NOT_CONFIGURED
        assert report.document.status == StepStatus.NOT_CONFIGURED
        assert report.notification.status == StepStatus.NOT_CONFIGURED
        assert report.notification.succeeded is False
        assert failure_recorder.failures == []

    @pytest.mark.asyncio
    async def test_converted_total_is_charged(self, orchestrator, payment_links, test_data_factory):
        invoice = test_data_factory.invoice_read().model_copy(update={
            "converted_amounts": ConvertedAmounts(
                currency="RON",
                subtotal=Decimal("500.00"),
                vat_amount=Decimal("95.00"),
                total_amount=Decimal("595.00"),
            ),
        })

        await orchestrator.run(invoice, include_payment_link=True)

        assert payment_links.calls[0]["amount"] == Decimal("595.00")
        assert payment_links.calls[0]["currency"] == "RON"
        assert payment_links.calls[0]["description"] == "10 Hour Flight Package - Invoice PROF-1001"

    @pytest.mark.asyncio
    async def test_slow_step_times_out(self, payment_links, sender, failure_recorder, test_data_factory):
        class SlowRenderer:
            async def render(self, invoice, payment_url=None):
                await asyncio.sleep(1)

        orchestrator = SideEffectOrchestrator(
            payment_links=payment_links,
            renderer=SlowRenderer(),
            sender=sender,
            failure_logger=failure_recorder,
            step_timeout_seconds=0.05,
        )

        report = await orchestrator.run(test_data_factory.invoice_read())

        assert report.document.status == StepStatus.FAILED
        assert report.notification.status == StepStatus.OK

    @pytest.mark.asyncio
    async def test_failure_logger_errors_are_swallowed(self, payment_links, renderer, sender, test_data_factory):
        def broken_logger(*args, **kwargs):
            raise RuntimeError("database down")

        renderer.error = RuntimeError("disk full")
        orchestrator = SideEffectOrchestrator(
            payment_links=payment_links, renderer=renderer, sender=sender, failure_logger=broken_logger)

        report = await orchestrator.run(test_data_factory.invoice_read())

        assert report.document.status == StepStatus.FAILED
        assert report.notification.status == StepStatus.OK


class TestBackgroundSideEffects:
    @pytest.mark.asyncio
    async def test_drain_waits_for_scheduled_tasks(self):
        background = BackgroundSideEffects()
        results = []

        async def work(value):
            await asyncio.sleep(0.01)
            results.append(value)

        background.schedule("inv-1", work(1))
        background.schedule("inv-2", work(2))
        assert background.pending == 2

        await background.drain()

        assert sorted(results) == [1, 2]
        assert background.pending == 0

    @pytest.mark.asyncio
    async def test_failed_task_is_released(self):
        background = BackgroundSideEffects()

        async def fail():
            raise RuntimeError("boom")

        background.schedule("inv-1", fail())
        await background.drain()

        assert background.pending == 0


class TestSideEffectReport:
    def test_pending_report(self):
        report = SideEffectReport.pending(include_payment_link=False)

        assert report.payment_link.status == StepStatus.NOT_REQUESTED
        assert report.document.status == StepStatus.PENDING
        assert report.document.succeeded is None

    def test_pending_report_with_payment_link(self):
        report = SideEffectReport.pending(include_payment_link=True)
        assert report.payment_link.status == StepStatus.PENDING


class TestSideEffectFailureService:
    """Test recording and resolving failed side effects"""

    def _failure(self, **kwargs):
        data = {
            "invoice_id": "inv-1",
            "invoice_number": "PROF-1001",
            "step": SideEffectStep.NOTIFICATION,
            "error_message": "smtp down",
            "error_details": {"error_type": "SMTPException"},
        }
        data.update(kwargs)
        return SideEffectFailureCreate(**data)

    def test_create_failure(self, test_session):
        service = SideEffectFailureService(test_session)

        failure = service.create_failure(self._failure())

        assert failure.id is not None
        assert failure.step == "notification"
        assert failure.is_resolved is False
        assert failure.error_details == {"error_type": "SMTPException"}

    def test_unresolved_failure_is_updated_in_place(self, test_session):
        service = SideEffectFailureService(test_session)
        first = service.create_failure(self._failure())

        second = service.create_failure(self._failure(error_message="smtp still down"))

        assert second.id == first.id
        assert second.error_message == "smtp still down"
        assert len(service.get_failures_by_invoice("inv-1")) == 1

    def test_failures_by_invoice(self, test_session):
        service = SideEffectFailureService(test_session)
        service.create_failure(self._failure())
        service.create_failure(self._failure(step=SideEffectStep.DOCUMENT))
        service.create_failure(self._failure(invoice_id="inv-2"))

        failures = service.get_failures_by_invoice("inv-1")

        assert {failure.step for failure in failures} == {"notification", "document"}

    def test_resolve_failure(self, test_session):
        service = SideEffectFailureService(test_session)
        failure = service.create_failure(self._failure())

        resolved = service.resolve_failure(failure.id, SideEffectFailureResolve(resolution_notes="Resent by hand"))

        assert resolved.is_resolved is True
        assert resolved.resolved_at is not None
        assert resolved.resolution_notes == "Resent by hand"
        assert service.get_unresolved_failures() == []

        # A new failure after resolution is a new record
        again = service.create_failure(self._failure())
        assert again.id != failure.id

    def test_resolve_unknown_failure(self, test_session):
        service = SideEffectFailureService(test_session)
        assert service.resolve_failure(999, SideEffectFailureResolve()) is None

    def test_log_side_effect_failure(self, test_engine, test_session, monkeypatch):
        monkeypatch.setattr("src.api.common.utils.database.engine", test_engine)

        log_side_effect_failure("inv-9", SideEffectStep.DOCUMENT, "disk full", invoice_number="PROF-1009")

        failures = SideEffectFailureService(test_session).get_failures_by_invoice("inv-9")
        assert len(failures) == 1
        assert failures[0].invoice_number == "PROF-1009"
        assert failures[0].step == "document"

    def test_log_side_effect_failure_never_raises(self):
        with patch("src.api.side_effects.utils.error_logger.Session", side_effect=RuntimeError("db down")):
            log_side_effect_failure("inv-9", SideEffectStep.DOCUMENT, "disk full")


class TestNotificationMessages:
    def test_proforma_message(self, test_data_factory):
        invoice = test_data_factory.invoice_read()

        subject, body = compose_notification(invoice, payment_url="https://pay.test/x", has_attachment=True)

        assert subject == "Invoice PROF-1001 - 10 Hour Flight Package"
        assert "Total Amount: 119.00 EUR" in body
        assert "Payment Link: https://pay.test/x" in body
        assert "attached to this email" in body
        assert "Currency Conversion" not in body

    def test_fiscal_message(self, test_data_factory):
        invoice = test_data_factory.invoice_read(
            invoice_number="FISC-1001", series="FISC", kind=InvoiceKind.FISCAL,
            payment_status=PaymentStatus.PAID)

        subject, body = compose_notification(invoice, company_name="Sky School")

        assert subject == "FISCAL INVOICE FISC-1001 - 10 Hour Flight Package (PAID)"
        assert "Status: PAID" in body
        assert "Sky School" in body
        assert "Payment Link" not in body


class TestPdfDocumentRenderer:
    @patch('src.api.side_effects.documents.renderer.html_to_pdf')
    @pytest.mark.asyncio
    async def test_render_writes_pdf(self, mock_html_to_pdf, tmp_path, test_data_factory):
        mock_html_to_pdf.return_value = b"%PDF-1.7 invoice"
        renderer = PdfDocumentRenderer(DocumentConfig(upload_path=str(tmp_path / "docs"), company_name="Sky School"))
        invoice = test_data_factory.invoice_read()

        document = await renderer.render(invoice, payment_url="https://pay.test/x")

        assert document.filename == "invoice-PROF-1001.pdf"
        assert document.mime_type == "application/pdf"
        assert document.content == b"%PDF-1.7 invoice"
        assert document.path == str(tmp_path / "docs" / "invoice-PROF-1001.pdf")
        assert (tmp_path / "docs" / "invoice-PROF-1001.pdf").read_bytes() == b"%PDF-1.7 invoice"

        html = mock_html_to_pdf.call_args[0][0]
        assert "Proforma invoice PROF-1001" in html
        assert "Sky School" in html
        assert "https://pay.test/x" in html
        assert "Total: 119.00 EUR" in html

    @patch('src.api.side_effects.documents.renderer.html_to_pdf')
    @pytest.mark.asyncio
    async def test_fiscal_document_filename(self, mock_html_to_pdf, tmp_path, test_data_factory):
        mock_html_to_pdf.return_value = b"%PDF-1.7"
        renderer = PdfDocumentRenderer(DocumentConfig(upload_path=str(tmp_path)))
        invoice = test_data_factory.invoice_read(
            invoice_number="FISC-1001", kind=InvoiceKind.FISCAL, payment_status=PaymentStatus.PAID)

        document = await renderer.render(invoice)

        assert document.filename == "fiscal-invoice-FISC-1001.pdf"

    @patch('src.api.side_effects.documents.renderer.html_to_pdf')
    @pytest.mark.asyncio
    async def test_pdf_failure_propagates(self, mock_html_to_pdf, tmp_path, test_data_factory):
        mock_html_to_pdf.side_effect = RuntimeError("no fonts")
        renderer = PdfDocumentRenderer(DocumentConfig(upload_path=str(tmp_path)))

        with pytest.raises(RuntimeError):
            await renderer.render(test_data_factory.invoice_read())

        assert list(tmp_path.iterdir()) == []

    def test_fiscal_document(self, tmp_path, test_data_factory):
        renderer = PdfDocumentRenderer(DocumentConfig(upload_path=str(tmp_path)))
        invoice = test_data_factory.invoice_read(
            invoice_number="FISC-1001", kind=InvoiceKind.FISCAL, payment_status=PaymentStatus.PAID)

        html = renderer.render_html(invoice, payment_url="https://pay.test/x")

        assert "Fiscal invoice FISC-1001" in html
        assert "PAID" in html
        assert "https://pay.test/x" not in html

    def test_buyer_data_is_escaped(self, tmp_path, test_data_factory):
        renderer = PdfDocumentRenderer(DocumentConfig(upload_path=str(tmp_path)))
        invoice = test_data_factory.invoice_read(buyer={"email": "buyer@example.com", "name": "<script>x</script>"})

        html = renderer.render_html(invoice)

        assert "<script>x</script>" not in html
        assert "&lt;script&gt;" in html


class TestPaymentLinkClient:
    @pytest.mark.asyncio
    async def test_mock_link_without_credentials(self):
        client = PaymentLinkClient(PaymentGatewayConfig(base_url=None, api_key=None))

        url = await client.create_link("inv-1", Decimal("119.00"), "EUR", "buyer@example.com")

        assert url == "https://mock-payment.example.com/pay/inv-1"

    @patch('httpx.AsyncClient.post')
    @pytest.mark.asyncio
    async def test_create_link(self, mock_post):
        mock_response = Mock()
        mock_response.json.return_value = {"url": "https://gateway.test/l/abc"}
        mock_response.raise_for_status.return_value = None
        mock_post.return_value = mock_response
        client = PaymentLinkClient(PaymentGatewayConfig(base_url="https://gateway.test", api_key="secret"))

        url = await client.create_link("inv-1", Decimal("119.005"), "EUR", "buyer@example.com",
                                       description="Invoice PROF-1001")

        assert url == "https://gateway.test/l/abc"
        args, kwargs = mock_post.call_args
        assert args[0] == "https://gateway.test/payment-links"
        assert kwargs["headers"]["Authorization"] == "Bearer secret"
        assert kwargs["json"]["amount"] == 11901
        assert kwargs["json"]["currency"] == "eur"
        assert kwargs["json"]["metadata"] == {"invoice_id": "inv-1"}

    @patch('httpx.AsyncClient.post')
    @pytest.mark.asyncio
    async def test_gateway_error(self, mock_post):
        mock_post.side_effect = httpx.ConnectError("connection refused")
        client = PaymentLinkClient(PaymentGatewayConfig(base_url="https://gateway.test", api_key="secret"))

        with pytest.raises(SideEffectError) as exc_info:
            await client.create_link("inv-1", Decimal("119.00"), "EUR", "buyer@example.com")

        assert exc_info.value.step == "payment_link"
        assert exc_info.value.invoice_id == "inv-1"

    @patch('httpx.AsyncClient.post')
    @pytest.mark.asyncio
    async def test_response_without_url(self, mock_post):
        mock_response = Mock()
        mock_response.json.return_value = {}
        mock_response.raise_for_status.return_value = None
        mock_post.return_value = mock_response
        client = PaymentLinkClient(PaymentGatewayConfig(base_url="https://gateway.test", api_key="secret"))

        with pytest.raises(SideEffectError):
            await client.create_link("inv-1", Decimal("119.00"), "EUR", "buyer@example.com")


class TestSmtpNotificationSender:
    def _config(self, **kwargs):
        data = {
            "host": "smtp.test",
            "port": 587,
            "username": "mailer",
            "password": "secret",
            "use_tls": True,
            "from_email": "invoices@example.com",
            "from_name": "Sky School",
        }
        data.update(kwargs)
        return SmtpConfig(**data)

    def test_unconfigured_sender_is_none(self):
        assert build_notification_sender(self._config(host=None)) is None
        assert isinstance(build_notification_sender(self._config()), SmtpNotificationSender)

    @patch('src.api.side_effects.notifications.sender.smtplib.SMTP')
    @pytest.mark.asyncio
    async def test_send_with_attachment(self, mock_smtp):
        server = mock_smtp.return_value
        server.__enter__.return_value = server
        sender = SmtpNotificationSender(self._config())
        attachment = DocumentHandle(filename="invoice-PROF-1001.pdf", mime_type="application/pdf",
                                    content=b"%PDF-1.7")

        message_id = await sender.send("buyer@example.com", "Invoice PROF-1001", "Hello", attachment=attachment)

        mock_smtp.assert_called_once_with("smtp.test", 587, timeout=10.0)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("mailer", "secret")
        message = server.send_message.call_args[0][0]
        assert message["To"] == "buyer@example.com"
        assert "invoices@example.com" in message["From"]
        assert message["Message-ID"] == message_id
        assert [part.get_filename() for part in message.iter_attachments()] == ["invoice-PROF-1001.pdf"]

    @patch('src.api.side_effects.notifications.sender.smtplib.SMTP_SSL')
    @pytest.mark.asyncio
    async def test_send_over_ssl(self, mock_smtp_ssl):
        server = mock_smtp_ssl.return_value
        server.__enter__.return_value = server
        sender = SmtpNotificationSender(self._config(port=465, use_tls=False))

        await sender.send("buyer@example.com", "Invoice PROF-1001", "Hello")

        server.send_message.assert_called_once()
