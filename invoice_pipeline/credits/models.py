from dataclasses import dataclass
from enum import Enum


class TransactionType(str, Enum):
    PURCHASE = "PURCHASE"
    USAGE = "USAGE"
    REFUND = "REFUND"
    ADMIN_CREDIT = "ADMIN_CREDIT"
    ADMIN_DEBIT = "ADMIN_DEBIT"
    BONUS = "BONUS"

    @property
    def is_debit(self) -> bool:
        return self in (TransactionType.USAGE, TransactionType.ADMIN_DEBIT)


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


@dataclass(frozen=True)
class ChargeResult:
    """Outcome of a usage charge.

    ``insufficient`` and ``duplicate`` are the two ways a charge can be
    declined; in both cases nothing was written.
    """

    charged: bool
    balance: int
    insufficient: bool = False
    duplicate: bool = False


@dataclass(frozen=True)
class Reconciliation:
    user_id: int
    balance: int
    ledger_sum: int

    @property
    def ok(self) -> bool:
        return self.balance == self.ledger_sum
