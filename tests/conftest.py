import os

from cryptography.fernet import Fernet

# Must be set before the application modules read them at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENV", "test")
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())

import asyncio  # noqa: E402
import threading  # noqa: E402
from datetime import date, datetime, timedelta, timezone  # noqa: E402
from decimal import Decimal  # noqa: E402
from typing import Dict, List, Optional  # noqa: E402

import pytest  # noqa: E402
from sqlmodel import Session, SQLModel  # noqa: E402

# Import all models to ensure they're registered with SQLModel
from src.api.invoices.models.invoice import Invoice  # noqa: E402
from src.api.numbering.models.series_counter import SeriesCounter  # noqa: E402,F401
from src.api.side_effects.models.side_effect_failure import SideEffectFailure  # noqa: E402,F401
from src.api.common.errors import PersistenceError  # noqa: E402
from src.api.common.utils.database import build_engine  # noqa: E402
from src.api.common.utils.datetime import get_current_datetime  # noqa: E402
from src.api.exchange_rates.config import ExchangeRateConfig  # noqa: E402
from src.api.exchange_rates.schemas.exchange_rate import FeedRate  # noqa: E402
from src.api.exchange_rates.services.exchange_rate_cache import ExchangeRateCache  # noqa: E402
from src.api.invoices.config import InvoiceConfig  # noqa: E402
from src.api.invoices.constants import InvoiceKind, InvoiceStatus, PaymentStatus, SideEffectsMode  # noqa: E402
from src.api.invoices.schemas.invoice import InvoiceRead, IssueProformaRequest  # noqa: E402
from src.api.invoices.services.invoice_service import InvoiceLifecycleService  # noqa: E402
from src.api.numbering.config import NumberingConfig  # noqa: E402
from src.api.numbering.services.numbering_service import NumberingService  # noqa: E402
from src.api.side_effects.schemas.side_effect import DocumentHandle  # noqa: E402
from src.api.side_effects.services.orchestrator import BackgroundSideEffects, SideEffectOrchestrator  # noqa: E402

FIXED_NOW = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def test_engine(tmp_path):
    """
    File based SQLite database.

    The counter store runs in worker threads, each with its own connection,
    so an in-memory database shared through StaticPool would not do.
    """
    engine = build_engine(f"sqlite:///{tmp_path / 'invoices.db'}", timeout_seconds=10)
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def test_session(test_engine):
    """Create a test database session"""
    with Session(test_engine) as session:
        yield session


class FakeClock:
    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeRateFeed:
    """Rate feed returning a fixed EUR/RON rate"""

    def __init__(self, rate: Decimal = Decimal("5.00")):
        self.rate = rate
        self.error: Optional[Exception] = None
        self.delay = 0.0
        self.calls = 0

    async def fetch_rate(self, pair):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return FeedRate(rate=self.rate, as_of=date(2024, 1, 15))


class FakePaymentLinks:
    def __init__(self):
        self.calls: List[dict] = []
        self.error: Optional[Exception] = None

    async def create_link(self, invoice_id, amount, currency, buyer_email, description=None):
        self.calls.append({
            "invoice_id": invoice_id,
            "amount": amount,
            "currency": currency,
            "buyer_email": buyer_email,
            "description": description,
        })
        if self.error is not None:
            raise self.error
        return f"https://pay.test/{invoice_id}"


class FakeRenderer:
    def __init__(self):
        self.calls: List[dict] = []
        self.error: Optional[Exception] = None

    async def render(self, invoice, payment_url=None):
        self.calls.append({"invoice": invoice, "payment_url": payment_url})
        if self.error is not None:
            raise self.error
        return DocumentHandle(
            filename=f"invoice-{invoice.invoice_number}.pdf",
            mime_type="application/pdf",
            content=b"%PDF-1.7",
        )


class FakeSender:
    def __init__(self):
        self.calls: List[dict] = []
        self.error: Optional[Exception] = None

    async def send(self, recipient, subject, body, attachment=None):
        self.calls.append({
            "recipient": recipient,
            "subject": subject,
            "body": body,
            "attachment": attachment,
        })
        if self.error is not None:
            raise self.error
        return f"<message-{len(self.calls)}@test>"


class FailureRecorder:
    """Stands in for the database failure log"""

    def __init__(self):
        self.failures: List[dict] = []

    def __call__(self, invoice_id, step, error_message, invoice_number=None, error_details=None):
        self.failures.append({
            "invoice_id": invoice_id,
            "step": step,
            "error_message": error_message,
            "invoice_number": invoice_number,
            "error_details": error_details,
        })


class InMemoryInvoiceRepository:
    """Process-local repository with the same conditional transitions as the SQL one"""

    def __init__(self):
        self._invoices: Dict[str, InvoiceRead] = {}
        self._lock = threading.Lock()
        self.add_fiscal_error: Optional[Exception] = None

    def _store(self, invoice: Invoice) -> InvoiceRead:
        read = InvoiceRead.model_validate(invoice)
        if any(existing.invoice_number == read.invoice_number for existing in self._invoices.values()):
            raise PersistenceError(f"Duplicate invoice number {read.invoice_number}",
                                   invoice_id=read.id, step="persistence")
        self._invoices[read.id] = read
        return read

    def add(self, invoice: Invoice) -> InvoiceRead:
        with self._lock:
            return self._store(invoice)

    def add_fiscal(self, fiscal: Invoice, proforma_id: str) -> InvoiceRead:
        with self._lock:
            if self.add_fiscal_error is not None:
                raise self.add_fiscal_error
            read = self._store(fiscal)
            self._update(proforma_id, fiscal_invoice_id=read.id)
            return read

    def get(self, invoice_id: str) -> Optional[InvoiceRead]:
        return self._invoices.get(invoice_id)

    def list_invoices(self, kind=None, payment_status=None, limit=50, offset=0):
        invoices = [
            invoice for invoice in self._invoices.values()
            if (kind is None or invoice.kind == kind)
            and (payment_status is None or invoice.payment_status == payment_status)
        ]
        invoices.sort(key=lambda invoice: (invoice.created_at, invoice.invoice_number), reverse=True)
        return invoices[offset:offset + limit], len(invoices)

    def _update(self, invoice_id: str, **values) -> None:
        values["updated_at"] = get_current_datetime()
        self._invoices[invoice_id] = self._invoices[invoice_id].model_copy(update=values)

    def _is_pending_proforma(self, invoice_id: str) -> bool:
        invoice = self._invoices.get(invoice_id)
        return (invoice is not None
                and invoice.kind == InvoiceKind.PROFORMA
                and invoice.status == InvoiceStatus.ISSUED
                and invoice.payment_status == PaymentStatus.PENDING)

    def mark_paid_if_pending(self, invoice_id, paid_at, payment_details) -> bool:
        with self._lock:
            if not self._is_pending_proforma(invoice_id):
                return False
            self._update(invoice_id, payment_status=PaymentStatus.PAID, paid_at=paid_at,
                         payment_details=payment_details)
            return True

    def revert_paid(self, invoice_id) -> bool:
        with self._lock:
            invoice = self._invoices.get(invoice_id)
            if (invoice is None or invoice.payment_status != PaymentStatus.PAID
                    or invoice.fiscal_invoice_id is not None):
                return False
            self._update(invoice_id, payment_status=PaymentStatus.PENDING, paid_at=None,
                         payment_details=None)
            return True

    def cancel_if_pending(self, invoice_id, reason, cancelled_at) -> bool:
        with self._lock:
            if not self._is_pending_proforma(invoice_id):
                return False
            self._update(invoice_id, status=InvoiceStatus.CANCELLED, cancelled_at=cancelled_at,
                         cancellation_reason=reason)
            return True

    def record_side_effects(self, invoice_id, report) -> None:
        with self._lock:
            values = {"side_effects": report}
            if report.payment_link.value:
                values["payment_url"] = report.payment_link.value
            if report.document.value:
                values["document_ref"] = report.document.value
            if report.notification.value:
                values["notification_id"] = report.notification.value
            self._update(invoice_id, **values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rate_feed():
    return FakeRateFeed()


@pytest.fixture
def rate_config():
    return ExchangeRateConfig(
        feed_url="https://rates.test/nbrfxrates.xml",
        provider="BNR",
        local_currency="RON",
        currencies=["EUR"],
        ttl_hours=24,
        timeout_seconds=1,
    )


@pytest.fixture
def rate_cache(rate_config, rate_feed, clock):
    return ExchangeRateCache(rate_config, rate_feed, clock=clock)


@pytest.fixture
def numbering_config():
    return NumberingConfig(
        proforma_series="PROF",
        fiscal_series="FISC",
        proforma_start_number=1000,
        fiscal_start_number=1000,
        store="memory",
        timeout_seconds=10,
        allow_in_process_fallback=True,
        require_durable_store=False,
    )


@pytest.fixture
def numbering_service(numbering_config):
    return NumberingService(numbering_config)


@pytest.fixture
def invoice_config():
    return InvoiceConfig(
        vat_percentage=Decimal("19"),
        prices_include_vat=False,
        default_currency="EUR",
        local_currency="RON",
        proforma_series="PROF",
        fiscal_series="FISC",
        side_effects_mode=SideEffectsMode.INLINE,
        side_effect_timeout_seconds=5,
    )


@pytest.fixture
def payment_links():
    return FakePaymentLinks()


@pytest.fixture
def renderer():
    return FakeRenderer()


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def failure_recorder():
    return FailureRecorder()


@pytest.fixture
def orchestrator(payment_links, renderer, sender, failure_recorder):
    return SideEffectOrchestrator(
        payment_links=payment_links,
        renderer=renderer,
        sender=sender,
        failure_logger=failure_recorder,
    )


@pytest.fixture
def invoice_repository():
    return InMemoryInvoiceRepository()


@pytest.fixture
def invoice_service(invoice_repository, rate_cache, numbering_service, orchestrator, invoice_config):
    return InvoiceLifecycleService(
        invoice_repository,
        rate_cache,
        numbering_service,
        orchestrator,
        config=invoice_config,
        background=BackgroundSideEffects(),
    )


# Test data factories
class TestDataFactory:
    @staticmethod
    def proforma_request(**kwargs) -> IssueProformaRequest:
        """Build a purchase command"""
        data = {
            "user_id": "user-123",
            "package_id": "pkg-10h",
            "package_name": "10 Hour Flight Package",
            "hours": Decimal("10"),
            "price_per_hour": Decimal("10"),
            "total_price": Decimal("100"),
            "currency": "EUR",
            "vat_percentage": Decimal("19"),
            "prices_include_vat": False,
            "buyer": {
                "email": "buyer@example.com",
                "name": "Ana Pop",
                "address": "Str. Aviatorilor 1",
                "city": "Bucharest",
                "country": "RO",
            },
        }
        data.update(kwargs)
        return IssueProformaRequest(**data)

    @staticmethod
    def invoice(**kwargs) -> Invoice:
        """Build an unsaved proforma invoice record"""
        data = {
            "invoice_number": "PROF-1001",
            "series": "PROF",
            "sequence_number": 1001,
            "kind": InvoiceKind.PROFORMA,
            "status": InvoiceStatus.ISSUED,
            "payment_status": PaymentStatus.PENDING,
            "user_id": "user-123",
            "package_id": "pkg-10h",
            "package_name": "10 Hour Flight Package",
            "subtotal": Decimal("100.00"),
            "vat_percentage": Decimal("19"),
            "vat_amount": Decimal("19.00"),
            "total_amount": Decimal("119.00"),
            "currency": "EUR",
        }
        buyer = kwargs.pop("buyer", {"email": "buyer@example.com", "name": "Ana Pop"})
        data.update(kwargs)
        invoice = Invoice(**data)
        invoice.buyer = buyer
        return invoice

    @staticmethod
    def invoice_read(**kwargs) -> InvoiceRead:
        return InvoiceRead.model_validate(TestDataFactory.invoice(**kwargs))


@pytest.fixture
def test_data_factory():
    """Provide test data factory"""
    return TestDataFactory
