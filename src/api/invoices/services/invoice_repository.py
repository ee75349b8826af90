import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Protocol, Tuple
from sqlalchemy import func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.api.common.errors import PersistenceError
from src.api.common.utils.datetime import get_current_datetime
from src.api.invoices.constants import InvoiceKind, InvoiceStatus, PaymentStatus
from src.api.invoices.models.invoice import Invoice
from src.api.invoices.schemas.invoice import InvoiceRead
from src.api.side_effects.schemas.side_effect import SideEffectReport

logger = logging.getLogger(__name__)


class InvoiceRepository(Protocol):
    def add(self, invoice: Invoice) -> InvoiceRead:
        ...

    def add_fiscal(self, fiscal: Invoice, proforma_id: str) -> InvoiceRead:
        ...

    def get(self, invoice_id: str) -> Optional[InvoiceRead]:
        ...

    def list_invoices(self, kind: Optional[InvoiceKind] = None, payment_status: Optional[PaymentStatus] = None,
                      limit: int = 50, offset: int = 0) -> Tuple[List[InvoiceRead], int]:
        ...

    def mark_paid_if_pending(self, invoice_id: str, paid_at: datetime,
                             payment_details: Dict[str, Any]) -> bool:
        ...

    def revert_paid(self, invoice_id: str) -> bool:
        ...

    def cancel_if_pending(self, invoice_id: str, reason: str, cancelled_at: datetime) -> bool:
        ...

    def record_side_effects(self, invoice_id: str, report: SideEffectReport) -> None:
        ...


class SqlInvoiceRepository:
    """
    Invoices stored in the database.

    State transitions are conditional UPDATEs keyed on the expected prior
    state. When two callers race on the same invoice only one UPDATE matches
    a row, and the other caller sees a rowcount of 0.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    @contextmanager
    def _session(self, action: str, invoice_id: Optional[str] = None) -> Iterator[Session]:
        session = Session(self.engine, expire_on_commit=False)
        try:
            yield session
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database error while trying to {action} (invoice {invoice_id}): {e}")
            raise PersistenceError(f"Could not {action}: {e}", invoice_id=invoice_id, step="persistence")
        finally:
            session.close()

    def add(self, invoice: Invoice) -> InvoiceRead:
        with self._session("persist invoice", invoice.id) as session:
            session.add(invoice)
            session.commit()
            session.refresh(invoice)
            logger.info(f"Invoice {invoice.invoice_number} ({invoice.id}) persisted")
            return InvoiceRead.model_validate(invoice)

    def add_fiscal(self, fiscal: Invoice, proforma_id: str) -> InvoiceRead:
        """Insert a fiscal invoice and link its proforma in one transaction."""
        with self._session("persist fiscal invoice", fiscal.id) as session:
            session.add(fiscal)
            session.flush()
            session.execute(
                update(Invoice)
                .where(Invoice.id == proforma_id)
                .values(fiscal_invoice_id=fiscal.id, updated_at=get_current_datetime())
            )
            session.commit()
            session.refresh(fiscal)
            logger.info(f"Fiscal invoice {fiscal.invoice_number} ({fiscal.id}) persisted for proforma {proforma_id}")
            return InvoiceRead.model_validate(fiscal)

    def get(self, invoice_id: str) -> Optional[InvoiceRead]:
        with self._session("read invoice", invoice_id) as session:
            invoice = session.get(Invoice, invoice_id)
            return InvoiceRead.model_validate(invoice) if invoice else None

    def list_invoices(self, kind: Optional[InvoiceKind] = None, payment_status: Optional[PaymentStatus] = None,
                      limit: int = 50, offset: int = 0) -> Tuple[List[InvoiceRead], int]:
        """Newest first, with the total count of matching invoices"""
        filters = []
        if kind is not None:
            filters.append(Invoice.kind == kind)
        if payment_status is not None:
            filters.append(Invoice.payment_status == payment_status)

        with self._session("list invoices") as session:
            total = session.scalar(select(func.count()).select_from(Invoice).where(*filters))
            invoices = session.scalars(
                select(Invoice)
                .where(*filters)
                .order_by(Invoice.created_at.desc(), Invoice.invoice_number.desc())
                .offset(offset)
                .limit(limit)
            ).all()
            return [InvoiceRead.model_validate(invoice) for invoice in invoices], total or 0

    def mark_paid_if_pending(self, invoice_id: str, paid_at: datetime,
                             payment_details: Dict[str, Any]) -> bool:
        with self._session("mark invoice as paid", invoice_id) as session:
            result = session.execute(
                update(Invoice)
                .where(
                    Invoice.id == invoice_id,
                    Invoice.kind == InvoiceKind.PROFORMA,
                    Invoice.status == InvoiceStatus.ISSUED,
                    Invoice.payment_status == PaymentStatus.PENDING,
                )
                .values(
                    payment_status=PaymentStatus.PAID,
                    paid_at=paid_at,
                    payment_details=payment_details,
                    updated_at=get_current_datetime(),
                )
            )
            session.commit()
            return result.rowcount == 1

    def revert_paid(self, invoice_id: str) -> bool:
        """Undo a paid claim whose fiscal invoice could not be created."""
        with self._session("revert paid invoice", invoice_id) as session:
            result = session.execute(
                update(Invoice)
                .where(
                    Invoice.id == invoice_id,
                    Invoice.payment_status == PaymentStatus.PAID,
                    Invoice.fiscal_invoice_id.is_(None),
                )
                .values(
                    payment_status=PaymentStatus.PENDING,
                    paid_at=None,
                    payment_details=None,
                    updated_at=get_current_datetime(),
                )
            )
            session.commit()
            return result.rowcount == 1

    def cancel_if_pending(self, invoice_id: str, reason: str, cancelled_at: datetime) -> bool:
        with self._session("cancel invoice", invoice_id) as session:
            result = session.execute(
                update(Invoice)
                .where(
                    Invoice.id == invoice_id,
                    Invoice.kind == InvoiceKind.PROFORMA,
                    Invoice.status == InvoiceStatus.ISSUED,
                    Invoice.payment_status == PaymentStatus.PENDING,
                )
                .values(
                    status=InvoiceStatus.CANCELLED,
                    cancelled_at=cancelled_at,
                    cancellation_reason=reason,
                    updated_at=get_current_datetime(),
                )
            )
            session.commit()
            return result.rowcount == 1

    def record_side_effects(self, invoice_id: str, report: SideEffectReport) -> None:
        values = {
            "side_effects": report.model_dump(mode="json"),
            "updated_at": get_current_datetime(),
        }
        if report.payment_link.value:
            values["payment_url"] = report.payment_link.value
        if report.document.value:
            values["document_ref"] = report.document.value
        if report.notification.value:
            values["notification_id"] = report.notification.value

        with self._session("record side effects", invoice_id) as session:
            session.execute(update(Invoice).where(Invoice.id == invoice_id).values(**values))
            session.commit()
