"""
Configuration — typed, validated settings loaded from environment/.env.

Uses pydantic-settings to:
  - Load from environment variables (12-factor app)
  - Fall back to .env file
  - Validate types and constraints at startup
  - Keep secrets (HMAC secret, database password) out of source control and logs

A retention table that would delete fiscal records fails here, when the
settings are loaded, with PolicyViolation.

Architecture: Only AppSettings is a BaseSettings instance. Sub-settings are plain
BaseModel classes populated by AppSettings via env_nested_delimiter="__", so the env
var SIGNING__HMAC_SECRET maps to signing.hmac_secret, DATABASE__HOST maps to
database.host, etc. Structured values (tenants, retention, registrations) are
given as JSON: TENANTS='{"acme": {"tax_id": "B12345678", ...}}'.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from fiscal_ledger.domain.models import (
    CertificateUsage,
    LogCategory,
    Regime,
    RetentionAction,
    RetentionPolicy,
    TaxpayerProfile,
)
from fiscal_ledger.regimes.base import RegimeEndpoint
from fiscal_ledger.retention import load_policies

# Resolve the .env file relative to the project root (two levels above this file),
# so settings load correctly regardless of the working directory at runtime.
_ENV_FILE = Path(__file__).parent.parent.parent / ".env"

_AEAT_TEST = "https://www7.aeat.es/wlpl/TIKE-CONT"


class SigningSettings(BaseModel):
    """Secret for the internal HMAC integrity signature. Never logged."""

    hmac_secret: SecretStr = Field(description="HMAC-SHA256 key, at least 32 characters")

    @field_validator("hmac_secret")
    @classmethod
    def validate_length(cls, value: SecretStr) -> SecretStr:
        if len(value.get_secret_value()) < 32:
            raise ValueError("HMAC secret must be at least 32 characters")
        return value

    def secret_bytes(self) -> bytes:
        return self.hmac_secret.get_secret_value().encode("utf-8")


class DatabaseSettings(BaseModel):
    """
    PostgreSQL connection configuration.

    Accepts either a full connection string via DATABASE__DSN or individual
    components (DATABASE__HOST, DATABASE__PORT, DATABASE__NAME,
    DATABASE__USERNAME, DATABASE__PASSWORD). DATABASE__DSN takes priority when
    both are provided. The DSN is always available via `dsn` after construction.
    """

    # Option 1: full connection string (takes priority)
    dsn: SecretStr | None = Field(
        default=None,
        description="Full PostgreSQL connection string (overrides individual fields)",
    )

    # Option 2: individual components
    host: str | None = Field(default=None, description="PostgreSQL host")
    port: int = Field(default=5432, ge=1, le=65535, description="PostgreSQL port")
    name: str | None = Field(default=None, description="PostgreSQL database name")
    username: str | None = Field(default=None, description="PostgreSQL username")
    password: SecretStr | None = Field(default=None, description="PostgreSQL password")

    @model_validator(mode="after")
    def resolve_dsn(self) -> DatabaseSettings:
        """
        Ensure `dsn` is always populated.

        If DATABASE__DSN is not set, build the DSN from the individual
        component fields. Raises ValueError at startup if neither a full DSN
        nor all required components are provided.
        """
        if self.dsn is not None:
            return self
        missing = [f for f, v in [
            ("DATABASE__HOST", self.host),
            ("DATABASE__NAME", self.name),
            ("DATABASE__USERNAME", self.username),
            ("DATABASE__PASSWORD", self.password),
        ] if not v]
        if missing:
            raise ValueError(
                "Set DATABASE__DSN or provide all of: "
                + ", ".join(missing)
            )
        dsn_value = (
            f"postgresql://{self.username}:{self.password.get_secret_value()}"  # type: ignore[union-attr]
            f"@{self.host}:{self.port}/{self.name}"
        )
        object.__setattr__(self, "dsn", SecretStr(dsn_value))
        return self

    def get_dsn(self) -> str:
        """Return the active database DSN as a plain string."""
        assert self.dsn is not None  # guaranteed by resolve_dsn validator
        return self.dsn.get_secret_value()


class CertificateRegistrationSettings(BaseModel):
    thumbprint: str = Field(description="SHA-1 thumbprint, 40 hex characters")
    usages: list[CertificateUsage] = Field(min_length=1)

    @field_validator("thumbprint")
    @classmethod
    def normalize_thumbprint(cls, value: str) -> str:
        return value.replace(" ", "").replace(":", "").upper()


class CertificateStoreSettings(BaseModel):
    """
    OS certificate store access.

    On hosts without the store (Linux containers, CI) the store reports
    itself unavailable and certificate signing is disabled, whatever
    `enabled` says.
    """

    enabled: bool = Field(default=True)
    store_name: str = Field(default="MY")
    powershell_executable: str = Field(default="powershell.exe")
    export_timeout_seconds: float = Field(default=10.0, gt=0)
    signing_timeout_seconds: float = Field(default=15.0, gt=0)
    registrations: list[CertificateRegistrationSettings] = Field(default_factory=list)

    def registration_map(self) -> dict[str, list[CertificateUsage]]:
        return {r.thumbprint: r.usages for r in self.registrations}


class RegimeSettings(BaseModel):
    """Fiscal authority endpoints for one regime."""

    submit_url: str
    query_url: str | None = None
    cancel_url: str | None = None
    verification_base_url: str | None = None
    timeout_seconds: float = Field(default=30.0, gt=0)
    software_name: str = Field(default="fiscal-ledger")
    software_version: str = Field(default="0.1.0")

    def endpoint(self) -> RegimeEndpoint:
        return RegimeEndpoint(
            submit_url=self.submit_url,
            query_url=self.query_url,
            cancel_url=self.cancel_url,
            verification_base_url=self.verification_base_url,
            software_name=self.software_name,
            software_version=self.software_version,
        )


def _verifactu_test_endpoints() -> RegimeSettings:
    return RegimeSettings(
        submit_url=f"{_AEAT_TEST}/ws/SuministroFactEmitidas/PresentacionEmitidasPruebas",
        query_url=f"{_AEAT_TEST}/ws/SuministroFactEmitidas/ConsultaEmitidasPruebas",
        cancel_url=f"{_AEAT_TEST}/ws/SuministroFactEmitidas/BajaEmitidasPruebas",
        verification_base_url=f"{_AEAT_TEST}/ValidarQR",
    )


class TenantSettings(BaseModel):
    """Per-tenant taxpayer identity, regime enablement and certificate pins."""

    tax_id: str
    legal_name: str
    regimes: list[Regime] = Field(default_factory=list)
    certificates: dict[Regime, str] = Field(default_factory=dict)

    def to_profile(self, tenant_id: str) -> TaxpayerProfile:
        return TaxpayerProfile(
            tenant_id=tenant_id,
            tax_id=self.tax_id,
            legal_name=self.legal_name,
            regimes=frozenset(self.regimes),
            certificates={
                regime: thumbprint.replace(" ", "").upper()
                for regime, thumbprint in self.certificates.items()
            },
        )


class RetentionPolicySettings(BaseModel):
    category: LogCategory
    minimum_days: int
    action: RetentionAction

    def to_policy(self) -> RetentionPolicy:
        return RetentionPolicy(
            category=self.category,
            minimum_days=self.minimum_days,
            action=self.action,
        )


class SchedulerSettings(BaseModel):
    """
    Retention sweep schedule using a standard 5-field cron expression.

    Format: minute hour day-of-month month day-of-week
    Examples:
      "0 3 * * *"    — daily at 03:00 (default)
      "0 3 * * 0"    — every Sunday at 03:00
      "0 */6 * * *"  — every 6 hours

    With apply_retention off the job only reports what would be archived
    or deleted.
    """

    cron: str = Field(
        default="0 3 * * *",
        description="Cron expression (5 fields: minute hour dom month dow)",
    )
    apply_retention: bool = Field(default=False)

    @field_validator("cron")
    @classmethod
    def validate_cron(cls, value: str) -> str:
        """Reject expressions that don't have exactly 5 space-separated fields."""
        fields = value.strip().split()
        if len(fields) != 5:
            raise ValueError(
                f"Cron expression must have exactly 5 fields "
                f"(minute hour dom month dow), got {len(fields)}: {value!r}"
            )
        return value.strip()


class AppSettings(BaseSettings):
    """
    Root application settings — aggregates all sub-settings.

    Load order (highest priority first):
      1. Environment variables (Kubernetes ConfigMap / Secret)
      2. .env file
      3. Default values

    Without a database section the ledger lives in memory, which is only
    meant for development.
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    signing: SigningSettings
    database: DatabaseSettings | None = None
    certificate_store: CertificateStoreSettings = Field(
        default_factory=lambda: CertificateStoreSettings()
    )
    ticketbai: RegimeSettings | None = None
    verifactu: RegimeSettings = Field(default_factory=_verifactu_test_endpoints)
    tenants: dict[str, TenantSettings] = Field(default_factory=dict)
    retention: list[RetentionPolicySettings] = Field(default_factory=list)
    scheduler: SchedulerSettings = Field(default_factory=lambda: SchedulerSettings())

    run_on_startup: bool = Field(default=True)
    log_level: str = Field(default="INFO")

    @field_validator("retention")
    @classmethod
    def validate_retention(
        cls, value: list[RetentionPolicySettings]
    ) -> list[RetentionPolicySettings]:
        """Raises PolicyViolation for a table that would delete fiscal records."""
        load_policies(p.to_policy() for p in value)
        return value

    def retention_policies(self) -> list[RetentionPolicy]:
        return [p.to_policy() for p in self.retention]

    def profiles(self) -> dict[str, TaxpayerProfile]:
        return {tenant_id: t.to_profile(tenant_id) for tenant_id, t in self.tenants.items()}
