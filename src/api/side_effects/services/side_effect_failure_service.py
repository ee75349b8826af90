from typing import List, Optional
from sqlmodel import Session, select
from src.api.side_effects.models.side_effect_failure import SideEffectFailure
from src.api.side_effects.schemas.side_effect import SideEffectFailureCreate, SideEffectFailureResolve
from src.api.common.utils.datetime import get_current_datetime


class SideEffectFailureService:
    """Service class for managing failed side effects"""

    def __init__(self, db: Session):
        self.db = db

    def create_failure(self, failure_data: SideEffectFailureCreate) -> SideEffectFailure:
        """
        Record a failed side effect.

        An unresolved failure for the same invoice and step is updated in
        place instead of creating a duplicate.

        Args:
            failure_data: Data for the failure

        Returns:
            SideEffectFailure: The created or updated failure
        """
        existing = self.db.exec(
            select(SideEffectFailure).where(
                SideEffectFailure.invoice_id == failure_data.invoice_id,
                SideEffectFailure.step == failure_data.step.value,
                SideEffectFailure.is_resolved == False,  # noqa: E712
            )
        ).first()

        if existing:
            existing.error_message = failure_data.error_message
            existing.error_details = failure_data.error_details or {}
            existing.touch()
            self.db.add(existing)
            self.db.commit()
            self.db.refresh(existing)
            return existing

        failure = SideEffectFailure(
            invoice_id=failure_data.invoice_id,
            invoice_number=failure_data.invoice_number,
            step=failure_data.step.value,
            error_message=failure_data.error_message,
            error_details=failure_data.error_details or {},
        )
        self.db.add(failure)
        self.db.commit()
        self.db.refresh(failure)
        return failure

    def get_failures_by_invoice(self, invoice_id: str) -> List[SideEffectFailure]:
        """Get every recorded failure of an invoice, newest first"""
        return self.db.exec(
            select(SideEffectFailure)
            .where(SideEffectFailure.invoice_id == invoice_id)
            .order_by(SideEffectFailure.created_at.desc(), SideEffectFailure.id.desc())
        ).all()

    def get_unresolved_failures(self) -> List[SideEffectFailure]:
        return self.db.exec(
            select(SideEffectFailure)
            .where(SideEffectFailure.is_resolved == False)  # noqa: E712
            .order_by(SideEffectFailure.created_at.desc(), SideEffectFailure.id.desc())
        ).all()

    def resolve_failure(self, failure_id: int, resolve_data: SideEffectFailureResolve) -> Optional[SideEffectFailure]:
        """Mark a failure as handled"""
        failure = self.db.get(SideEffectFailure, failure_id)
        if not failure:
            return None

        failure.is_resolved = True
        failure.resolved_at = get_current_datetime()
        failure.resolution_notes = resolve_data.resolution_notes
        failure.touch()
        self.db.add(failure)
        self.db.commit()
        self.db.refresh(failure)
        return failure
