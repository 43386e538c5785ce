from decimal import Decimal
from functools import lru_cache
from typing import Annotated

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _split_csv_value(value) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        if value.strip() == "":
            return []
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item).strip() for item in value if str(item).strip()]


# Comma-separated in the environment, split by _split_csv.
CsvList = Annotated[list[str], NoDecode]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="ignore",
        validate_by_name=True,
        populate_by_name=True,
    )
    database_url: str = ""
    storage_timeout_seconds: float = 5.0

    docs_enabled: bool = Field(default=True)
    openapi_enabled: bool = Field(default=True)
    expose_error_details: bool = Field(
        default=False,
        validation_alias=AliasChoices("EXPOSE_ERROR_DETAILS"),
    )

    jwt_secret: str = ""
    jwt_audience: str = "authenticated"

    # Review routing
    review_confidence_threshold: float = Field(
        default=0.70,
        validation_alias=AliasChoices("REVIEW_CONFIDENCE_THRESHOLD", "REVIEW_THRESHOLD"),
    )
    unrecognized_floor: float = Field(
        default=0.30,
        validation_alias=AliasChoices("UNRECOGNIZED_FLOOR"),
    )

    # Reports
    balance_tolerance: Decimal = Decimal("0.01")

    # External AI service
    external_retry_attempts: int = Field(default=3, ge=1)
    external_retry_backoff_seconds: float = Field(default=0.5, ge=0)
    ai_timeout_seconds: float = 20.0
    ai_temperature: float = 0.1
    ai_max_tokens: int = 1500
    ai_classify_provider: str = ""
    ai_classify_model: str = ""
    ai_extract_provider: str = ""
    ai_extract_model: str = ""
    ai_allowed_providers: CsvList = Field(default_factory=lambda: ["mock", "openai", "claude"])
    ai_debug_store_raw: bool = False
    openai_api_key: str = ""
    anthropic_api_key: str = ""

    audit_redaction_fields: CsvList = Field(default_factory=lambda: ["vendor_tax_id"])

    cors_allow_origins: CsvList = Field(default_factory=list)
    cors_allow_methods: CsvList = Field(default_factory=lambda: [
        "GET",
        "POST",
        "PUT",
        "OPTIONS",
    ])
    cors_allow_headers: CsvList = Field(default_factory=lambda: [
        "Authorization",
        "Content-Type",
        "Accept",
    ])

    @field_validator(
        "ai_allowed_providers",
        "audit_redaction_fields",
        "cors_allow_origins",
        "cors_allow_methods",
        "cors_allow_headers",
        mode="before",
    )
    @classmethod
    def _split_csv(cls, value):
        return _split_csv_value(value)

    @field_validator("ai_allowed_providers", mode="after")
    @classmethod
    def _lower_providers(cls, value: list[str]) -> list[str]:
        return [item.lower() for item in value]

    @model_validator(mode="after")
    def _check_thresholds(self):
        if not 0.0 <= self.unrecognized_floor <= self.review_confidence_threshold <= 1.0:
            raise ValueError(
                "expected 0 <= UNRECOGNIZED_FLOOR <= REVIEW_CONFIDENCE_THRESHOLD <= 1"
            )
        if self.balance_tolerance < 0:
            raise ValueError("BALANCE_TOLERANCE must not be negative")
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
