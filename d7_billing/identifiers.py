"""
D7 Billing Identifiers

Merchant transaction/order ids and per-month sequential invoice numbers.
"""

import secrets
import string
from datetime import datetime
from typing import Callable, Optional

from core.exceptions import DuplicateError, PersistenceFailureError
from core.logging import get_logger

from .models import PaymentRecord
from .payment_store import PaymentStore

logger = get_logger("d7_billing.identifiers")

BASE36_ALPHABET = string.digits + string.ascii_uppercase
RANDOM_SUFFIX_LENGTH = 6
INVOICE_SEQUENCE_WIDTH = 6
DEFAULT_MAX_RETRIES = 5


def invoice_prefix(now: datetime) -> str:
    return f"INV-{now:%Y%m}-"


def parse_invoice_sequence(invoice_number: str) -> int:
    """INV-202501-000042 -> 42"""
    return int(invoice_number.rsplit("-", 1)[1])


class IdentifierFactory:
    """Generates gateway-facing identifiers and invoice numbers"""

    def __init__(
        self,
        clock: Optional[Callable[[], datetime]] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ):
        self.clock = clock or datetime.utcnow
        self.max_retries = max_retries

    def _random_suffix(self) -> str:
        return "".join(secrets.choice(BASE36_ALPHABET) for _ in range(RANDOM_SUFFIX_LENGTH))

    def _timestamped(self, prefix: str) -> str:
        return f"{prefix}_{self.clock():%Y%m%d%H%M%S}_{self._random_suffix()}"

    def new_transaction_id(self) -> str:
        """TXN_YYYYMMDDHHMMSS_XXXXXX"""
        return self._timestamped("TXN")

    def new_order_id(self) -> str:
        """ORD_YYYYMMDDHHMMSS_XXXXXX"""
        return self._timestamped("ORD")

    def next_invoice_number(self, store: PaymentStore, now: Optional[datetime] = None) -> str:
        """Next candidate in the month's sequence, INV-YYYYMM-000001 when empty"""
        prefix = invoice_prefix(now or self.clock())
        highest = store.highest_invoice_number(prefix)
        sequence = parse_invoice_sequence(highest) + 1 if highest else 1
        return f"{prefix}{sequence:0{INVOICE_SEQUENCE_WIDTH}d}"

    def allocate_invoice_number(
        self, store: PaymentStore, record: PaymentRecord, now: Optional[datetime] = None
    ) -> str:
        """
        Reserve the next invoice number for a claimed record.

        The UNIQUE constraint arbitrates concurrent allocations; on a clash the
        sequence is re-read and the write retried.
        """
        now = now or self.clock()
        for attempt in range(1, self.max_retries + 1):
            candidate = self.next_invoice_number(store, now)
            try:
                store.assign_invoice_number(record, candidate)
                return candidate
            except DuplicateError:
                logger.warning(
                    f"Invoice number {candidate} taken, retrying ({attempt}/{self.max_retries})"
                )

        raise PersistenceFailureError(
            "Could not allocate an invoice number",
            operation="allocate_invoice_number",
            attempts=self.max_retries,
        )
