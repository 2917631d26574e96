from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import NotRequired, TypedDict

__all__ = [
    "DisbursementPayload",
    "DisbursementRequest",
    "DisbursementResult",
    "MonnifyDisbursementBody",
    "MonnifyEnvelope",
    "MonnifyWebhookEvent",
]


class DisbursementPayload(TypedDict):
    """Body of a single-disbursement request as Monnify expects it."""

    amount: float
    reference: str
    narration: str
    destinationBankCode: str
    destinationAccountNumber: str
    destinationAccountName: str
    sourceAccountNumber: str
    currencyCode: str


class MonnifyDisbursementBody(TypedDict, total=False):
    transactionReference: str
    reference: str
    paymentReference: str
    amount: float
    fee: float
    status: str
    destinationAccountNumber: str
    destinationAccountName: str
    destinationBankCode: str
    destinationBankName: str
    dateCreated: str


class MonnifyEnvelope(TypedDict):
    requestSuccessful: bool
    responseMessage: NotRequired[str]
    responseCode: NotRequired[str]
    responseBody: NotRequired[MonnifyDisbursementBody]


class MonnifyWebhookEvent(TypedDict):
    eventType: str
    eventData: MonnifyDisbursementBody


@dataclass(slots=True, frozen=True)
class DisbursementRequest:
    amount: Decimal
    reference: str
    narration: str
    destination_bank_code: str
    destination_account_number: str
    destination_account_name: str
    currency_code: str = "NGN"


@dataclass(slots=True, frozen=True)
class DisbursementResult:
    """Normalised outcome of a disbursement call or status query."""

    transaction_reference: str | None
    reference: str
    status: str
    amount: Decimal | None = None
    fee: Decimal | None = None
