from functools import lru_cache
from fastapi import Depends

from src.api.common.utils import database
from src.api.exchange_rates.client import RateFeedClient
from src.api.exchange_rates.config import ExchangeRateConfig
from src.api.exchange_rates.services.exchange_rate_cache import ExchangeRateCache
from src.api.invoices.config import InvoiceConfig
from src.api.invoices.services.invoice_repository import SqlInvoiceRepository
from src.api.invoices.services.invoice_service import InvoiceLifecycleService
from src.api.numbering.config import NumberingConfig
from src.api.numbering.services.counter_store import SqlCounterStore
from src.api.numbering.services.numbering_service import NumberingService
from src.api.side_effects.documents.config import DocumentConfig
from src.api.side_effects.documents.renderer import PdfDocumentRenderer
from src.api.side_effects.notifications.config import SmtpConfig
from src.api.side_effects.notifications.sender import build_notification_sender
from src.api.side_effects.payments.client import PaymentLinkClient
from src.api.side_effects.payments.config import PaymentGatewayConfig
from src.api.side_effects.services.orchestrator import BackgroundSideEffects, SideEffectOrchestrator

# Process-wide singletons. The rate cache, the in-process counters and the
# background tasks keep state that must outlive a single request.


@lru_cache()
def get_invoice_config() -> InvoiceConfig:
    return InvoiceConfig()


@lru_cache()
def get_rate_cache() -> ExchangeRateCache:
    config = ExchangeRateConfig()
    return ExchangeRateCache(config, RateFeedClient(config))


@lru_cache()
def get_numbering_service() -> NumberingService:
    config = NumberingConfig()
    store = SqlCounterStore(database.engine) if config.store == "database" else None
    return NumberingService(config, store)


@lru_cache()
def get_background_side_effects() -> BackgroundSideEffects:
    return BackgroundSideEffects()


@lru_cache()
def get_side_effect_orchestrator() -> SideEffectOrchestrator:
    document_config = DocumentConfig()
    return SideEffectOrchestrator(
        payment_links=PaymentLinkClient(PaymentGatewayConfig()),
        renderer=PdfDocumentRenderer(document_config),
        sender=build_notification_sender(SmtpConfig()),
        company_name=document_config.company_name,
        step_timeout_seconds=get_invoice_config().side_effect_timeout_seconds,
    )


def get_invoice_repository() -> SqlInvoiceRepository:
    return SqlInvoiceRepository(database.engine)


def get_invoice_service(
    repository: SqlInvoiceRepository = Depends(get_invoice_repository),
    rate_cache: ExchangeRateCache = Depends(get_rate_cache),
    numbering: NumberingService = Depends(get_numbering_service),
    orchestrator: SideEffectOrchestrator = Depends(get_side_effect_orchestrator),
    background: BackgroundSideEffects = Depends(get_background_side_effects),
) -> InvoiceLifecycleService:
    return InvoiceLifecycleService(
        repository,
        rate_cache,
        numbering,
        orchestrator,
        config=get_invoice_config(),
        background=background,
    )
