from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class AnalysisRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    date: str = Field(min_length=1)
    product: str = Field(min_length=1)
    batchNumber: str | None = None
    pdfLink: str | None = None
    bestByDate: str | None = None


class CoaPage(BaseModel):
    nodes: list[dict] = Field(default_factory=list)
    hasNextPage: bool = False
    endCursor: str | None = None


class CredentialStoreHealth(BaseModel):
    ok: bool
    error: str | None = None


class HealthResponse(BaseModel):
    ok: bool
    shopConfigured: bool
    accessTokenConfigured: bool
    credentialStoreBackend: str
    credentialStore: CredentialStoreHealth | None = None


class AuthCallbackResponse(BaseModel):
    ok: bool
    shopDomain: str
    accessToken: str | None = None
    next: str | None = None


class WebhookAck(BaseModel):
    received: bool = True
    credentialPurged: bool = False
