from __future__ import annotations

import re
from typing import Annotated, Literal

from pydantic import AnyHttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

SHOP_DOMAIN_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]*[a-z0-9])?(?:\.[a-z0-9](?:[a-z0-9-]*[a-z0-9])?)+$")


class Settings(BaseSettings):
    SHOPIFY_API_KEY: str
    SHOPIFY_API_SECRET: str
    SHOPIFY_SCOPES: str
    SHOPIFY_REDIRECT_URI: AnyHttpUrl | None = None
    SHOPIFY_SHOP: str | None = None
    SHOPIFY_ACCESS_TOKEN: str | None = None
    SHOPIFY_ADMIN_API_VERSION: str = "2025-10"
    SHOPIFY_REQUEST_TIMEOUT_SECONDS: float = 20.0
    SHOPIFY_DEPLOYMENT_MODE: Literal["single_tenant", "multi_tenant"] = "single_tenant"

    CREDENTIAL_STORE_BACKEND: Literal["memory", "redis", "sql"] = "memory"
    KV_URL: str | None = None
    KV_TOKEN: str | None = None
    DATABASE_URL: str = "sqlite:///./coa_app.db"

    COA_METAOBJECT_TYPE: str = "certificates_of_analysis"
    COA_PAGE_SIZE: int = 50
    FETCH_MAX_ATTEMPTS: int = 3
    FETCH_RETRY_BASE_DELAY_SECONDS: float = 1.0

    ENABLE_UNSIGNED_COA_API: bool = False
    INTERNAL_API_TOKEN: str | None = None
    PURGE_CREDENTIAL_ON_UNINSTALL: bool = False
    INSTALL_SUCCESS_REDIRECT_URL: AnyHttpUrl | None = None
    CORS_ALLOW_ORIGINS: Annotated[list[str], NoDecode] = []

    APP_ENV: Literal["development", "production"] = "development"
    LOG_LEVEL: str = "INFO"

    @field_validator("SHOPIFY_API_KEY", "SHOPIFY_API_SECRET")
    @classmethod
    def validate_required_secret(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Shopify API credentials must not be empty")
        return value

    @field_validator("SHOPIFY_SCOPES")
    @classmethod
    def validate_scopes(cls, value: str) -> str:
        scopes = [scope.strip() for scope in value.split(",") if scope.strip()]
        if not scopes:
            raise ValueError("SHOPIFY_SCOPES must include at least one scope")
        return ",".join(scopes)

    @field_validator("SHOPIFY_SHOP")
    @classmethod
    def validate_shop(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        normalized = value.strip().lower()
        if not SHOP_DOMAIN_RE.fullmatch(normalized):
            raise ValueError("SHOPIFY_SHOP must be a shop domain such as example.myshopify.com")
        return normalized

    @field_validator("SHOPIFY_ACCESS_TOKEN", "KV_TOKEN", "INTERNAL_API_TOKEN")
    @classmethod
    def blank_as_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @field_validator("CORS_ALLOW_ORIGINS", mode="before")
    @classmethod
    def split_origins(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("COA_PAGE_SIZE")
    @classmethod
    def validate_page_size(cls, value: int) -> int:
        if not 1 <= value <= 250:
            raise ValueError("COA_PAGE_SIZE must be between 1 and 250")
        return value

    @field_validator("FETCH_MAX_ATTEMPTS")
    @classmethod
    def validate_max_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("FETCH_MAX_ATTEMPTS must be at least 1")
        return value

    @model_validator(mode="after")
    def validate_deployment(self) -> "Settings":
        if self.SHOPIFY_DEPLOYMENT_MODE == "multi_tenant" and self.CREDENTIAL_STORE_BACKEND == "memory":
            raise ValueError(
                "SHOPIFY_DEPLOYMENT_MODE=multi_tenant requires CREDENTIAL_STORE_BACKEND=redis or sql"
            )
        if self.CREDENTIAL_STORE_BACKEND == "redis" and not self.KV_URL:
            raise ValueError("KV_URL is required when CREDENTIAL_STORE_BACKEND=redis")
        if self.SHOPIFY_ACCESS_TOKEN and not self.SHOPIFY_SHOP:
            raise ValueError("SHOPIFY_SHOP is required when SHOPIFY_ACCESS_TOKEN is set")
        if self.ENABLE_UNSIGNED_COA_API:
            if not self.SHOPIFY_SHOP:
                raise ValueError("SHOPIFY_SHOP is required when ENABLE_UNSIGNED_COA_API=true")
            if self.APP_ENV == "production" and not self.INTERNAL_API_TOKEN:
                raise ValueError(
                    "INTERNAL_API_TOKEN is required when ENABLE_UNSIGNED_COA_API=true in production"
                )
        return self

    @property
    def scopes_csv(self) -> str:
        return self.SHOPIFY_SCOPES

    @property
    def persists_installs(self) -> bool:
        return self.SHOPIFY_DEPLOYMENT_MODE == "multi_tenant"

    def admin_graphql_url(self, shop_domain: str) -> str:
        return f"https://{shop_domain}/admin/api/{self.SHOPIFY_ADMIN_API_VERSION}/graphql.json"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", frozen=True)
