from enum import Enum


class InvoiceKind(str, Enum):
    PROFORMA = "proforma"
    FISCAL = "fiscal"


class InvoiceStatus(str, Enum):
    ISSUED = "issued"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


class ConversionSkipReason(str, Enum):
    UNSUPPORTED_PAIR = "unsupported_pair"
    RATE_UNAVAILABLE = "rate_unavailable"


class SideEffectsMode(str, Enum):
    INLINE = "inline"
    BACKGROUND = "background"


def describe_state(kind: InvoiceKind, status: InvoiceStatus, payment_status: PaymentStatus) -> str:
    """State label used in conflict errors, e.g. ``proforma/paid``"""
    if status == InvoiceStatus.CANCELLED:
        return f"{kind.value}/{status.value}"
    return f"{kind.value}/{payment_status.value}"
