"""Ledger errors and invariant checks."""
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable

from payledger.models.payment import PaymentRecord
from payledger.models.invoice import InvoiceSnapshot


class LedgerError(Exception):
    """Base error for ledger operations. Carries a stable code and a detail string."""
    code = "ledger_error"
    retryable = False

    def __init__(self, detail: str = ""):
        self.detail = detail or self.__class__.__doc__ or self.code
        super().__init__(self.detail)


class InvalidAmount(LedgerError):
    """Amount must be a positive number of cents."""
    code = "invalid_amount"


class InsufficientBalance(LedgerError):
    """Requested settlement exceeds the client's unallocated balance."""
    code = "insufficient_balance"


class InvoiceNotFound(LedgerError):
    """Invoice not found."""
    code = "invoice_not_found"


class PaymentNotFound(LedgerError):
    """Payment not found."""
    code = "payment_not_found"


class ConcurrentModification(LedgerError):
    """Client payment records changed during the operation."""
    code = "concurrent_modification"
    retryable = True


class StoreUnavailable(LedgerError):
    """Payment store is temporarily unavailable."""
    code = "store_unavailable"
    retryable = True


class StoreRejected(LedgerError):
    """Payment store rejected the operation."""
    code = "store_rejected"


class LedgerInvariantError(LedgerError):
    """A planned change would break a ledger invariant."""
    code = "invariant_violation"


def validate_amount(amount_cents) -> int:
    """Return amount_cents if it is a positive int, else raise InvalidAmount."""
    # bool is an int subclass
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        raise InvalidAmount(f"Amount must be an integer number of cents, got {amount_cents!r}")
    if amount_cents <= 0:
        raise InvalidAmount(f"Amount must be greater than 0, got {amount_cents}")
    return amount_cents


def to_cents(value: Any) -> int:
    """Convert a legacy float amount in currency units to integer cents."""
    if value is None:
        return 0
    return int((Decimal(str(value)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def total_cents(records: Iterable[PaymentRecord]) -> int:
    return sum(r.amount_cents for r in records)


def ensure_positive_amounts(records: Iterable[PaymentRecord]) -> None:
    for record in records:
        if record.amount_cents <= 0:
            raise LedgerInvariantError(
                f"Payment {record.id} would hold a non-positive amount ({record.amount_cents})"
            )


def ensure_conserved(
    before: Iterable[PaymentRecord],
    after: Iterable[PaymentRecord],
    delta: int = 0
) -> None:
    """
    The client's money total after a change must equal the total before
    plus delta (delta is the newly received amount, 0 for rebalancing).
    """
    before_total = total_cents(before)
    after_total = total_cents(after)
    if after_total != before_total + delta:
        raise LedgerInvariantError(
            f"Money not conserved: {before_total} + {delta} != {after_total}"
        )


def ensure_within_outstanding(
    invoice: InvoiceSnapshot,
    allocated_cents: int,
    tolerance_cents: int = 0
) -> None:
    """Allocated money on an invoice must never exceed its total (plus tolerance)."""
    if allocated_cents > invoice.total_cents + tolerance_cents:
        raise LedgerInvariantError(
            f"Invoice {invoice.id} would be over-allocated: "
            f"{allocated_cents} > {invoice.total_cents}"
        )
