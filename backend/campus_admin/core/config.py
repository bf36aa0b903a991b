from functools import lru_cache
import json
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _parse_list_value(value: str) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        raw = value.strip()
        if raw == "":
            return []
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, list):
                return [str(item).strip() for item in parsed if str(item).strip()]
        except Exception:
            pass
        return [item.strip() for item in raw.split(",") if item.strip()]
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    return []


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="forbid",
        validate_by_name=True,
        populate_by_name=True,
    )
    upstream_base_url: str = Field(
        default="",
        validation_alias=AliasChoices("UPSTREAM_BASE_URL", "SERVER_BASE_URL"),
    )
    upstream_timeout_seconds: float = 15.0
    audit_timeout_seconds: float = 10.0

    jwt_secret: str = ""
    jwt_audience: str = "authenticated"

    default_page_size: int = 10
    max_page_size: int = 100
    max_entity_id: int = 2147483647
    required_activities: int = Field(
        default=10,
        validation_alias=AliasChoices("REQUIRED_ACTIVITIES", "required_activities"),
    )

    report_date_format: str = "%d/%m/%Y %H:%M"
    report_timestamp_format: str = "%Y-%m-%d_%H%M"
    report_yes_token: str = "Yes"
    report_no_token: str = "No"
    report_null_placeholder: str = "N/A"

    audit_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("AUDIT_ENABLED", "audit_enabled"),
    )

    docs_enabled: bool = Field(default=True)
    openapi_enabled: bool = Field(default=True)
    expose_error_details: bool = False

    security_headers_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("SECURITY_HEADERS_ENABLED", "SECURE_HEADERS_ENABLED"),
    )

    cors_allow_origins_raw: str = Field(
        default="",
        validation_alias=AliasChoices("CORS_ALLOW_ORIGINS"),
    )
    cors_allow_methods: list[str] = Field(default_factory=lambda: [
        "GET",
        "POST",
        "PATCH",
        "DELETE",
        "OPTIONS",
    ])
    cors_allow_headers: list[str] = Field(default_factory=lambda: [
        "Authorization",
        "Content-Type",
        "Accept",
    ])

    @field_validator(
        "cors_allow_methods",
        "cors_allow_headers",
        mode="before",
    )
    @classmethod
    def _split_csv(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            if value.strip() == "":
                return []
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @property
    def cors_allow_origins(self) -> list[str]:
        return _parse_list_value(self.cors_allow_origins_raw)

@lru_cache

def get_settings() -> Settings:
    return Settings()
