from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field


class SideEffectStep(str, Enum):
    PAYMENT_LINK = "payment_link"
    DOCUMENT = "document"
    NOTIFICATION = "notification"


class StepStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"
    NOT_CONFIGURED = "not_configured"
    NOT_REQUESTED = "not_requested"
    PENDING = "pending"


class StepOutcome(BaseModel):
    """Result of one side effect"""
    step: SideEffectStep
    status: StepStatus
    value: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> Optional[bool]:
        """True/False once attempted, None when not requested or still running"""
        if self.status == StepStatus.OK:
            return True
        if self.status in (StepStatus.FAILED, StepStatus.NOT_CONFIGURED):
            return False
        return None


class SideEffectReport(BaseModel):
    """Outcome of every side effect run for one invoice"""
    payment_link: StepOutcome = Field(default_factory=lambda: StepOutcome(
        step=SideEffectStep.PAYMENT_LINK, status=StepStatus.NOT_REQUESTED))
    document: StepOutcome = Field(default_factory=lambda: StepOutcome(
        step=SideEffectStep.DOCUMENT, status=StepStatus.NOT_REQUESTED))
    notification: StepOutcome = Field(default_factory=lambda: StepOutcome(
        step=SideEffectStep.NOTIFICATION, status=StepStatus.NOT_REQUESTED))

    @classmethod
    def pending(cls, include_payment_link: bool) -> "SideEffectReport":
        report = cls(
            document=StepOutcome(step=SideEffectStep.DOCUMENT, status=StepStatus.PENDING),
            notification=StepOutcome(step=SideEffectStep.NOTIFICATION, status=StepStatus.PENDING),
        )
        if include_payment_link:
            report.payment_link = StepOutcome(step=SideEffectStep.PAYMENT_LINK, status=StepStatus.PENDING)
        return report

    @property
    def failed_steps(self):
        return [outcome.step for outcome in (self.payment_link, self.document, self.notification)
                if outcome.status == StepStatus.FAILED]


class DocumentHandle(BaseModel):
    """A rendered invoice document"""
    filename: str
    mime_type: str
    content: bytes
    path: Optional[str] = None

    @property
    def reference(self) -> str:
        return self.path or self.filename


class SideEffectFailureCreate(BaseModel):
    """Schema for recording a failed side effect"""
    invoice_id: str = Field(..., description="Invoice the side effect was run for")
    invoice_number: Optional[str] = Field(default=None, description="Human-facing invoice number")
    step: SideEffectStep = Field(..., description="Side effect that failed")
    error_message: str = Field(..., description="Human-readable error message")
    error_details: Optional[Dict[str, Any]] = Field(default={}, description="Additional error details")


class SideEffectFailureRead(BaseModel):
    """Schema for reading a failed side effect"""
    id: int
    invoice_id: str
    invoice_number: Optional[str] = None
    step: str
    error_message: str
    error_details: Dict[str, Any] = {}
    is_resolved: bool
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SideEffectFailureResolve(BaseModel):
    resolution_notes: Optional[str] = Field(default=None, description="Notes about how the failure was handled")
