from __future__ import annotations

from decimal import Decimal
from enum import StrEnum
from functools import lru_cache
from urllib.parse import quote_plus

from pydantic import (
    AliasChoices,
    AnyUrl,
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    TypeAdapter,
    computed_field,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from taxcomply.core.constants import (
    DEFAULT_ENV_FILE,
    NGN_CURRENCY,
    SECRETS_DIR,
    SERVICE_NAME,
)


class Environment(StrEnum):
    """Deployment environments supported by the service."""

    DEVELOPMENT = "development"
    TEST = "test"
    STAGING = "staging"
    PRODUCTION = "production"


class DatabaseSettings(BaseModel):
    """Database connectivity configuration."""

    model_config = ConfigDict(extra="ignore")

    url: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "DATABASE__URL", "database__url", "DATABASE_URL", "database_url", "url"
        ),
    )
    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: SecretStr = SecretStr("postgres")
    name: str = "taxcomply"
    echo: bool = False

    def _build_dsn(self) -> str:
        if self.url is not None:
            return self.url

        password = quote_plus(self.password.get_secret_value())
        return (
            f"postgresql+asyncpg://{self.user}:{password}"
            f"@{self.host}:{self.port}/{self.name}"
        )

    @computed_field
    @property
    def dsn(self) -> str:
        """Assemble the SQLAlchemy async DSN."""
        return self._build_dsn()


class PaginationSettings(BaseModel):
    """Server-side bounds applied to every paginated referral query."""

    model_config = ConfigDict(extra="ignore")

    default_page: int = Field(default=1, ge=1)
    min_page: int = Field(default=1, ge=1)
    default_limit: int = Field(default=50, ge=1)
    min_limit: int = Field(default=1, ge=1)
    max_limit: int = Field(default=100, ge=1)

    @model_validator(mode="after")
    def _check_bounds(self) -> PaginationSettings:
        if self.max_limit < self.min_limit:
            raise ValueError("max_limit must be greater than or equal to min_limit")
        self.default_limit = max(self.min_limit, min(self.default_limit, self.max_limit))
        self.default_page = max(self.min_page, self.default_page)
        return self


class ReferralSettings(BaseModel):
    """Commission, withdrawal and settlement configuration."""

    model_config = ConfigDict(extra="ignore")

    commission_percentage: Decimal = Field(
        default=Decimal("0.15"), ge=Decimal("0"), le=Decimal("1")
    )
    min_withdrawal_amount: Decimal = Field(default=Decimal("1000"), gt=Decimal("0"))
    max_withdrawal_amount: Decimal | None = Field(default=None, gt=Decimal("0"))
    currency_code: str = Field(default=NGN_CURRENCY, min_length=3, max_length=3)
    pagination: PaginationSettings = Field(default_factory=PaginationSettings)
    settlement_batch_size: int = Field(default=100, ge=1, le=1_000)
    compensation_max_attempts: int = Field(default=3, ge=1, le=10)
    compensation_backoff_seconds: tuple[float, ...] = (1.0, 2.0, 4.0)
    stale_processing_minutes: int = Field(default=30, ge=1)

    @model_validator(mode="after")
    def _normalise(self) -> ReferralSettings:
        self.currency_code = self.currency_code.upper()
        if (
            self.max_withdrawal_amount is not None
            and self.max_withdrawal_amount < self.min_withdrawal_amount
        ):
            raise ValueError(
                "max_withdrawal_amount must not be lower than min_withdrawal_amount"
            )
        if not self.compensation_backoff_seconds:
            self.compensation_backoff_seconds = (0.0,)
        return self


class MonnifySettings(BaseSettings):
    """Credentials and timeouts for the Monnify disbursement API."""

    model_config = SettingsConfigDict(
        env_prefix="MONNIFY__",
        extra="ignore",
        case_sensitive=False,
    )

    enabled: bool = True
    base_url: str = "https://api.monnify.com"
    api_key: SecretStr | None = None
    secret_key: SecretStr | None = None
    contract_code: str | None = None
    source_account_number: str | None = None
    auth_timeout_seconds: float = Field(default=10.0, gt=0)
    disbursement_timeout_seconds: float = Field(default=30.0, gt=0)

    @computed_field
    @property
    def is_configured(self) -> bool:
        return self.enabled and self.api_key is not None and self.secret_key is not None


_ANY_URL_ADAPTER = TypeAdapter(AnyUrl)


def _default_app_base_url() -> AnyUrl:
    return _ANY_URL_ADAPTER.validate_python("http://localhost:3000")


class Settings(BaseSettings):
    """Application settings loaded from the environment or secret stores."""

    model_config = SettingsConfigDict(
        env_file=DEFAULT_ENV_FILE,
        env_nested_delimiter="__",
        secrets_dir=SECRETS_DIR,
        extra="ignore",
        validate_default=True,
        case_sensitive=False,
    )

    environment: Environment = Environment.DEVELOPMENT
    debug: bool = False
    log_level: str = "INFO"

    project_name: str = "TaxComply Referrals"
    project_description: str = "Referral earnings, bank details and withdrawals"
    project_version: str = "0.1.0"
    docs_url: str | None = "/docs"
    redoc_url: str | None = "/redoc"
    openapi_url: str = "/openapi.json"

    cors_allow_origins: list[str] = Field(default_factory=list)
    app_base_url: AnyUrl = Field(
        default_factory=_default_app_base_url,
        validation_alias=AliasChoices(
            "APP__BASE_URL",
            "app__base_url",
            "APP_BASE_URL",
            "NEXT_PUBLIC_APP_URL",
        ),
    )

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    referral: ReferralSettings = Field(default_factory=ReferralSettings)
    monnify: MonnifySettings = Field(default_factory=MonnifySettings)

    @model_validator(mode="after")
    def _normalize(self) -> Settings:
        self.log_level = self.log_level.upper()

        if self.environment in {Environment.DEVELOPMENT, Environment.TEST}:
            self.debug = True

        return self

    @computed_field
    @property
    def service_name(self) -> str:
        return SERVICE_NAME

    @computed_field
    @property
    def is_testing(self) -> bool:
        return self.environment is Environment.TEST

    @computed_field
    @property
    def is_production(self) -> bool:
        return self.environment is Environment.PRODUCTION

    def referral_link(self, referral_id: str | None) -> str | None:
        if not referral_id:
            return None
        return f"{str(self.app_base_url).rstrip('/')}/sign-up/{referral_id}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached instance of the application settings."""

    return Settings()
