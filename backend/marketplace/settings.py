from __future__ import annotations

from decimal import Decimal
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore")

    # Runtime
    environment: str = Field(default="development", validation_alias="NODE_ENV")
    port: int = Field(default=8080, validation_alias="PORT")

    # AWS / data
    aws_region: str = Field(default="us-east-1", validation_alias="AWS_REGION")
    ddb_table_name: str | None = Field(default=None, validation_alias="DDB_TABLE_NAME")
    ddb_connect_timeout_s: float = Field(default=2.0, validation_alias="DDB_CONNECT_TIMEOUT_S")
    ddb_read_timeout_s: float = Field(default=10.0, validation_alias="DDB_READ_TIMEOUT_S")
    # DynamoDB caps TransactWriteItems at 100 items.
    ddb_max_transaction_items: int = Field(default=100, validation_alias="DDB_MAX_TRANSACTION_ITEMS")

    # Optimistic concurrency: attempts per mutating call before ConcurrencyError.
    occ_max_attempts: int = Field(default=4, validation_alias="OCC_MAX_ATTEMPTS")

    # Bidding rules
    bid_expiry_days: int = Field(default=30, validation_alias="BID_EXPIRY_DAYS")
    milestone_abs_tolerance: Decimal = Field(default=Decimal("0.01"), validation_alias="MILESTONE_ABS_TOLERANCE")
    expiry_sweep_limit: int = Field(default=200, validation_alias="EXPIRY_SWEEP_LIMIT")

    # Company verification (comma-separated document keys)
    verification_required_docs: str = Field(
        default="secp_certificate,ntn_certificate,incorporation_certificate,owner_cnic_front,owner_cnic_back",
        validation_alias="VERIFICATION_REQUIRED_DOCS",
    )
    verification_optional_docs: str = Field(
        default="owner_photo,utility_bill,office_photos",
        validation_alias="VERIFICATION_OPTIONAL_DOCS",
    )

    # Auth (Cognito)
    cognito_user_pool_id: str | None = Field(
        default=None, validation_alias="COGNITO_USER_POOL_ID"
    )
    cognito_client_id: str | None = Field(
        default=None, validation_alias="COGNITO_CLIENT_ID"
    )
    cognito_region: str = Field(default="us-east-1", validation_alias="COGNITO_REGION")

    # Seals pagination cursors (AES-GCM); rotating it invalidates outstanding tokens.
    pagination_token_key: str | None = Field(default=None, validation_alias="PAGINATION_TOKEN_KEY")

    # ---- helpers / derived flags ----
    @property
    def normalized_environment(self) -> str:
        v = (self.environment or "").strip().lower()
        if v in ("prod", "production"):
            return "production"
        if v in ("stage", "staging"):
            return "staging"
        if v in ("dev", "development"):
            return "development"
        if v in ("test", "testing"):
            return "test"
        return v or "development"

    @property
    def is_production(self) -> bool:
        return self.normalized_environment == "production"

    @property
    def required_doc_keys(self) -> tuple[str, ...]:
        return _csv(self.verification_required_docs)

    @property
    def optional_doc_keys(self) -> tuple[str, ...]:
        return _csv(self.verification_optional_docs)

    def require_in_production(self) -> None:
        """
        Enforce required settings in production.

        Development/staging are allowed to run with partial config for local work,
        but production must be fully configured.
        """
        if not self.is_production:
            return

        missing: list[str] = []

        if not self.ddb_table_name:
            missing.append("DDB_TABLE_NAME")
        if not self.cognito_user_pool_id:
            missing.append("COGNITO_USER_POOL_ID")
        if not self.cognito_client_id:
            missing.append("COGNITO_CLIENT_ID")
        if not self.pagination_token_key:
            missing.append("PAGINATION_TOKEN_KEY")

        if missing:
            raise RuntimeError(
                "Missing required production environment variables: "
                + ", ".join(missing)
            )

    def to_log_safe_dict(self) -> dict[str, object]:
        """
        A redacted representation safe for structured logs / diagnostics.
        """
        return {
            "environment": self.normalized_environment,
            "port": self.port,
            "aws": {
                "aws_region": self.aws_region,
                "ddb_table_name": self.ddb_table_name,
                "ddb_max_transaction_items": self.ddb_max_transaction_items,
            },
            "auth": {
                "cognito_user_pool_id": self.cognito_user_pool_id,
                "cognito_client_id": self.cognito_client_id,
                "cognito_region": self.cognito_region,
                "pagination_token_key_set": bool(self.pagination_token_key),
            },
            "bidding": {
                "occ_max_attempts": self.occ_max_attempts,
                "bid_expiry_days": self.bid_expiry_days,
                "milestone_abs_tolerance": str(self.milestone_abs_tolerance),
                "required_doc_keys": list(self.required_doc_keys),
            },
        }


def _csv(raw: str | None) -> tuple[str, ...]:
    out: list[str] = []
    for part in str(raw or "").split(","):
        s = part.strip()
        if s and s not in out:
            out.append(s)
    return tuple(out)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    s = Settings()
    s.require_in_production()
    return s


# Module-level instance imported across the package.
settings = get_settings()
