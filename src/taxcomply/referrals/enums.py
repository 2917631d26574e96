from enum import StrEnum


class EarningStatus(StrEnum):
    """Lifecycle of a single commission entitlement."""

    PENDING = "pending"
    AVAILABLE = "available"
    WITHDRAWN = "withdrawn"


class WithdrawalStatus(StrEnum):
    """Withdrawal request status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_final(self) -> bool:
        return self in {
            WithdrawalStatus.COMPLETED,
            WithdrawalStatus.FAILED,
            WithdrawalStatus.CANCELLED,
        }
