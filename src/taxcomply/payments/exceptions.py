from __future__ import annotations


class PayoutError(RuntimeError):
    """Base class for payout domain errors."""


class PayoutConfigurationError(PayoutError):
    """Raised when the payout integration is not properly configured."""


class PayoutGatewayError(PayoutError):
    """Raised when the payout provider rejects or fails a request."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PayoutSignatureError(PayoutError):
    """Raised when an incoming webhook fails signature verification."""
