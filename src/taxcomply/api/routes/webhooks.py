from __future__ import annotations

import json
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status

from taxcomply.api.schemas.referrals import WebhookAck
from taxcomply.core.constants import MONNIFY_SIGNATURE_HEADER
from taxcomply.payments.dependencies import get_payout_gateway
from taxcomply.payments.gateway import MonnifyGateway
from taxcomply.referrals.dependencies import get_withdrawal_service
from taxcomply.referrals.exceptions import WithdrawalNotFoundError
from taxcomply.referrals.withdrawals import WithdrawalService

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])

logger = structlog.get_logger(__name__)

SUCCESS_EVENTS = frozenset({"SUCCESSFUL_DISBURSEMENT"})
FAILURE_EVENTS = frozenset({"FAILED_DISBURSEMENT", "REVERSED_DISBURSEMENT"})


@router.post(
    "/monnify/disbursement",
    response_model=WebhookAck,
    status_code=status.HTTP_200_OK,
    summary="Handle Monnify disbursement callbacks",
)
async def handle_monnify_disbursement(
    request: Request,
    gateway: MonnifyGateway = Depends(get_payout_gateway),
    withdrawal_service: WithdrawalService = Depends(get_withdrawal_service),
) -> WebhookAck:
    raw_body = await request.body()
    signature = request.headers.get(MONNIFY_SIGNATURE_HEADER)

    if not gateway.verify_webhook_signature(raw_body, signature):
        logger.warning("webhook_signature_error", provider="monnify")
        raise HTTPException(
            status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature"
        )

    try:
        payload: Any = json.loads(raw_body.decode("utf-8")) if raw_body else {}
    except ValueError as exc:
        logger.warning("webhook_payload_invalid", error=str(exc))
        raise HTTPException(
            status.HTTP_400_BAD_REQUEST, detail="Invalid webhook payload"
        ) from exc
    if not isinstance(payload, dict):
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail="Invalid webhook payload")

    event_type = str(payload.get("eventType") or "")
    data = payload.get("eventData") or {}
    reference = data.get("reference") if isinstance(data, dict) else None

    if event_type not in SUCCESS_EVENTS | FAILURE_EVENTS:
        logger.info("webhook_event_ignored", event_type=event_type)
        return WebhookAck(status="ignored")
    if not reference:
        raise HTTPException(
            status.HTTP_400_BAD_REQUEST, detail="Webhook payload missing reference"
        )

    try:
        if event_type in SUCCESS_EVENTS:
            await withdrawal_service.complete_withdrawal(
                reference,
                transaction_reference=data.get("transactionReference"),
            )
        else:
            reason = (
                data.get("transactionDescription")
                or data.get("message")
                or event_type.replace("_", " ").lower()
            )
            await withdrawal_service.fail_withdrawal(reference, str(reason))
    except WithdrawalNotFoundError as exc:
        logger.warning("webhook_withdrawal_missing", reference=reference)
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    logger.info("webhook_processed", event_type=event_type, reference=reference)
    return WebhookAck()
