from __future__ import annotations

from fastapi import Depends, HTTPException, status

from taxcomply.core.config import Settings, get_settings
from taxcomply.payments.exceptions import PayoutConfigurationError
from taxcomply.payments.gateway import MonnifyGateway

_GATEWAY: MonnifyGateway | None = None


def get_payout_gateway(settings: Settings = Depends(get_settings)) -> MonnifyGateway:
    """Return the process-wide Monnify gateway, creating it on first use."""

    global _GATEWAY
    if _GATEWAY is not None:
        return _GATEWAY

    try:
        _GATEWAY = MonnifyGateway.from_settings(settings.monnify)
    except PayoutConfigurationError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Monnify integration is not configured",
        ) from exc
    return _GATEWAY


async def close_payout_gateway() -> None:
    global _GATEWAY
    if _GATEWAY is not None:
        await _GATEWAY.close()
        _GATEWAY = None


def reset_payment_dependencies() -> None:
    """Reset cached singletons to allow reconfiguration during tests."""

    global _GATEWAY
    _GATEWAY = None
