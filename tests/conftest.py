"""Shared fixtures for the referral ledger tests."""

from __future__ import annotations

import hashlib
import hmac
from collections.abc import AsyncIterator, Iterator
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import taxcomply.referrals.models  # noqa: F401 - register referral tables
import taxcomply.users.models  # noqa: F401 - register user tables
from taxcomply.app import create_app
from taxcomply.core.config import PaginationSettings, ReferralSettings, get_settings
from taxcomply.db.base import Base
from taxcomply.db.session import build_engine, dispose_engine, use_engine
from taxcomply.payments.dependencies import (
    get_payout_gateway,
    reset_payment_dependencies,
)
from taxcomply.payments.exceptions import PayoutGatewayError
from taxcomply.payments.types import DisbursementRequest, DisbursementResult

TEST_MONNIFY_SECRET = "monnify-test-secret"


@dataclass(slots=True)
class StubPayoutGateway:
    """Deterministic payout gateway that records every call."""

    fail_with: BaseException | None = None
    statuses: dict[str, str] = field(default_factory=dict)
    requests: list[DisbursementRequest] = field(default_factory=list)
    status_lookups: list[str] = field(default_factory=list)
    secret_key: str = TEST_MONNIFY_SECRET

    async def initiate_disbursement(
        self, request: DisbursementRequest
    ) -> DisbursementResult:
        self.requests.append(request)
        if self.fail_with is not None:
            raise self.fail_with
        return DisbursementResult(
            transaction_reference=f"MFDS-{len(self.requests):04d}",
            reference=request.reference,
            status="PENDING",
            amount=request.amount,
            fee=Decimal("10.75"),
        )

    async def get_disbursement_status(self, reference: str) -> DisbursementResult:
        self.status_lookups.append(reference)
        if reference not in self.statuses:
            raise PayoutGatewayError("Disbursement not found", status_code=404)
        return DisbursementResult(
            transaction_reference=None,
            reference=reference,
            status=self.statuses[reference],
        )

    def verify_webhook_signature(self, raw_body: bytes, signature: str | None) -> bool:
        if not signature:
            return False
        return hmac.compare_digest(sign_webhook(raw_body, self.secret_key), signature)


def sign_webhook(raw_body: bytes, secret: str = TEST_MONNIFY_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


@pytest.fixture(autouse=True)
def configure_settings(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.setenv("DATABASE__URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.setenv("APP__BASE_URL", "https://app.taxcomply.test")
    monkeypatch.setenv("MONNIFY__BASE_URL", "https://sandbox.monnify.test")
    monkeypatch.setenv("MONNIFY__API_KEY", "MK_TEST_KEY")
    monkeypatch.setenv("MONNIFY__SECRET_KEY", TEST_MONNIFY_SECRET)
    monkeypatch.setenv("MONNIFY__SOURCE_ACCOUNT_NUMBER", "3934178936")
    monkeypatch.setenv("REFERRAL__COMPENSATION_BACKOFF_SECONDS", "[0]")

    reset_payment_dependencies()
    get_settings.cache_clear()
    try:
        yield
    finally:
        reset_payment_dependencies()
        get_settings.cache_clear()


@pytest.fixture
def referral_settings() -> ReferralSettings:
    return ReferralSettings(
        commission_percentage=Decimal("0.15"),
        min_withdrawal_amount=Decimal("1000"),
        compensation_max_attempts=3,
        compensation_backoff_seconds=(0.0,),
        pagination=PaginationSettings(default_limit=20, max_limit=50),
    )


@pytest.fixture
def stub_gateway() -> StubPayoutGateway:
    return StubPayoutGateway()


@pytest_asyncio.fixture
async def session_factory(
    tmp_path: Path,
    configure_settings: None,
) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    db_path = tmp_path / "referrals-tests.db"
    engine = build_engine(f"sqlite+aiosqlite:///{db_path}")

    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)

    factory = use_engine(engine)

    try:
        yield factory
    finally:
        await dispose_engine()


@pytest_asyncio.fixture()
async def app(
    session_factory: async_sessionmaker[AsyncSession],
    stub_gateway: StubPayoutGateway,
) -> AsyncIterator[FastAPI]:
    application = create_app()
    application.dependency_overrides[get_payout_gateway] = lambda: stub_gateway

    try:
        async with application.router.lifespan_context(application):
            yield application
    finally:
        application.dependency_overrides.clear()


@pytest_asyncio.fixture()
async def async_client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport, base_url="http://testserver"
    ) as http_client:
        yield http_client
