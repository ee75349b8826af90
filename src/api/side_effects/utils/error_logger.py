import logging
from typing import Optional, Dict, Any
from sqlmodel import Session
from src.api.side_effects.services.side_effect_failure_service import SideEffectFailureService
from src.api.side_effects.schemas.side_effect import SideEffectFailureCreate, SideEffectStep
from src.api.common.utils import database

logger = logging.getLogger(__name__)


def log_side_effect_failure(
    invoice_id: str,
    step: SideEffectStep,
    error_message: str,
    invoice_number: Optional[str] = None,
    error_details: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Record a failed side effect in the database

    Uses its own session because side effects may run after the request
    that issued the invoice has finished.

    Args:
        invoice_id: Invoice the side effect was run for
        step: Side effect that failed
        error_message: Human-readable error message
        invoice_number: Human-facing invoice number (optional)
        error_details: Additional error details as JSON
    """
    try:
        with Session(database.engine) as db:
            SideEffectFailureService(db).create_failure(SideEffectFailureCreate(
                invoice_id=invoice_id,
                invoice_number=invoice_number,
                step=step,
                error_message=error_message,
                error_details=error_details or {},
            ))
    except Exception as e:
        # The failure is still in the logs and in the issuance report
        logger.error(
            f"Failed to record side effect failure for invoice {invoice_id} "
            f"step {step.value}: {e}. Original error: {error_message}")
