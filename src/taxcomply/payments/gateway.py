from __future__ import annotations

import hashlib
import hmac
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol, cast

import httpx
import structlog

from taxcomply.core.config import MonnifySettings
from taxcomply.core.logging import mask_account_number

from .exceptions import PayoutConfigurationError, PayoutGatewayError
from .types import (
    DisbursementPayload,
    DisbursementRequest,
    DisbursementResult,
    MonnifyDisbursementBody,
    MonnifyEnvelope,
)

logger = structlog.get_logger(__name__)

AUTH_PATH = "/api/v1/auth/login"
DISBURSEMENT_PATH = "/api/v2/disbursements/single"
DISBURSEMENT_SUMMARY_PATH = "/api/v2/disbursements/single/summary"

REJECTED_STATUSES = frozenset({"FAILED", "REVERSED", "EXPIRED"})
# Refresh the bearer token slightly before Monnify expires it.
_TOKEN_EXPIRY_MARGIN_SECONDS = 30.0


class PayoutGateway(Protocol):
    """Operations the settlement engine needs from a payout provider."""

    async def initiate_disbursement(
        self, request: DisbursementRequest
    ) -> DisbursementResult:
        """Send money to a bank account or raise ``PayoutGatewayError``."""

    async def get_disbursement_status(self, reference: str) -> DisbursementResult:
        """Return the provider's current view of a disbursement."""


class MonnifyGateway:
    """Asynchronous client for the Monnify disbursement API."""

    def __init__(
        self,
        *,
        api_key: str,
        secret_key: str,
        base_url: str = "https://api.monnify.com",
        source_account_number: str | None = None,
        auth_timeout_seconds: float = 10.0,
        disbursement_timeout_seconds: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key:
            raise PayoutConfigurationError("api_key must be provided")
        if not secret_key:
            raise PayoutConfigurationError("secret_key must be provided")

        self._api_key = api_key
        self._secret_key = secret_key
        self._source_account_number = source_account_number or ""
        self._auth_timeout = auth_timeout_seconds
        self._disbursement_timeout = disbursement_timeout_seconds
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(base_url=base_url.rstrip("/"))
        self._token: str | None = None
        self._token_expires_at = 0.0

    @classmethod
    def from_settings(
        cls,
        settings: MonnifySettings,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> MonnifyGateway:
        if not settings.is_configured:
            raise PayoutConfigurationError("Monnify integration is not configured")
        assert settings.api_key is not None and settings.secret_key is not None
        return cls(
            api_key=settings.api_key.get_secret_value(),
            secret_key=settings.secret_key.get_secret_value(),
            base_url=settings.base_url,
            source_account_number=settings.source_account_number,
            auth_timeout_seconds=settings.auth_timeout_seconds,
            disbursement_timeout_seconds=settings.disbursement_timeout_seconds,
            http_client=http_client,
        )

    async def authenticate(self) -> str:
        """Exchange the API credentials for a bearer token."""

        if self._token is not None and time.monotonic() < self._token_expires_at:
            return self._token

        try:
            response = await self._http.post(
                AUTH_PATH,
                auth=httpx.BasicAuth(self._api_key, self._secret_key),
                json={},
                timeout=self._auth_timeout,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            logger.error("monnify_auth_failed", status_code=status_code)
            if status_code == 401:
                raise PayoutGatewayError(
                    "Invalid Monnify authentication credentials",
                    status_code=status_code,
                ) from exc
            raise PayoutGatewayError(
                _response_message(exc.response) or "Failed to authenticate with Monnify",
                status_code=status_code,
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("monnify_auth_unreachable", error=str(exc))
            raise PayoutGatewayError("Failed to authenticate with Monnify") from exc

        envelope = self._parse(response)
        body = cast(dict[str, Any], envelope.get("responseBody") or {})
        token = body.get("accessToken")
        if not envelope.get("requestSuccessful") or not isinstance(token, str):
            raise PayoutGatewayError(
                envelope.get("responseMessage")
                or "Failed to get Monnify authentication token"
            )

        expires_in = float(body.get("expiresIn") or 0)
        self._token = token
        self._token_expires_at = time.monotonic() + max(
            expires_in - _TOKEN_EXPIRY_MARGIN_SECONDS, 0.0
        )
        logger.info("monnify_auth_token_obtained")
        return token

    async def initiate_disbursement(
        self, request: DisbursementRequest
    ) -> DisbursementResult:
        token = await self.authenticate()
        payload: DisbursementPayload = {
            "amount": float(request.amount),
            "reference": request.reference,
            "narration": request.narration,
            "destinationBankCode": request.destination_bank_code,
            "destinationAccountNumber": request.destination_account_number,
            "destinationAccountName": request.destination_account_name,
            "sourceAccountNumber": self._source_account_number,
            "currencyCode": request.currency_code,
        }

        logger.info(
            "monnify_disbursement_initiating",
            reference=request.reference,
            amount=str(request.amount),
            destination_account_number=mask_account_number(
                request.destination_account_number
            ),
        )

        response = await self._send(
            "POST",
            DISBURSEMENT_PATH,
            token=token,
            json=payload,
            reference=request.reference,
        )
        envelope = self._parse(response)
        if not envelope.get("requestSuccessful"):
            raise PayoutGatewayError(
                envelope.get("responseMessage") or "Failed to initiate disbursement"
            )

        result = self._to_result(envelope.get("responseBody"), request.reference)
        if result.status in REJECTED_STATUSES:
            raise PayoutGatewayError(
                envelope.get("responseMessage")
                or f"Disbursement rejected with status {result.status}"
            )

        logger.info(
            "monnify_disbursement_initiated",
            reference=request.reference,
            transaction_reference=result.transaction_reference,
            status=result.status,
        )
        return result

    async def get_disbursement_status(self, reference: str) -> DisbursementResult:
        token = await self.authenticate()
        response = await self._send(
            "GET",
            DISBURSEMENT_SUMMARY_PATH,
            token=token,
            params={"reference": reference},
            reference=reference,
        )
        envelope = self._parse(response)
        if not envelope.get("requestSuccessful"):
            raise PayoutGatewayError(
                envelope.get("responseMessage")
                or "Failed to fetch disbursement status"
            )
        return self._to_result(envelope.get("responseBody"), reference)

    def verify_webhook_signature(self, raw_body: bytes, signature: str | None) -> bool:
        """Check the HMAC-SHA512 Monnify attaches to webhook calls."""

        if not signature:
            return False
        expected = hmac.new(
            self._secret_key.encode("utf-8"), raw_body, hashlib.sha512
        ).hexdigest()
        return hmac.compare_digest(expected, signature.strip().lower())

    async def close(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def _send(
        self,
        method: str,
        path: str,
        *,
        token: str,
        reference: str,
        json: DisbursementPayload | None = None,
        params: dict[str, str] | None = None,
    ) -> httpx.Response:
        try:
            response = await self._http.request(
                method,
                path,
                headers={"Authorization": f"Bearer {token}"},
                json=json,
                params=params,
                timeout=self._disbursement_timeout,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "monnify_request_failed",
                path=path,
                reference=reference,
                status_code=exc.response.status_code,
            )
            raise PayoutGatewayError(
                _response_message(exc.response) or "Monnify request failed",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            logger.error(
                "monnify_request_unreachable",
                path=path,
                reference=reference,
                error=str(exc),
            )
            raise PayoutGatewayError("Monnify is unreachable") from exc
        return response

    @staticmethod
    def _parse(response: httpx.Response) -> MonnifyEnvelope:
        try:
            data = response.json()
        except ValueError as exc:
            raise PayoutGatewayError("Received invalid response from Monnify") from exc
        if not isinstance(data, dict):
            raise PayoutGatewayError("Received invalid response from Monnify")
        return cast(MonnifyEnvelope, data)

    @staticmethod
    def _to_result(
        body: MonnifyDisbursementBody | None, reference: str
    ) -> DisbursementResult:
        body = body or {}
        return DisbursementResult(
            transaction_reference=body.get("transactionReference"),
            reference=body.get("reference") or reference,
            status=str(body.get("status") or "PENDING").upper(),
            amount=_to_decimal(body.get("amount")),
            fee=_to_decimal(body.get("fee")),
        )


def _response_message(response: httpx.Response) -> str | None:
    try:
        data = response.json()
    except ValueError:
        return None
    if isinstance(data, dict):
        message = data.get("responseMessage")
        if isinstance(message, str) and message:
            return message
    return None


def _to_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None
