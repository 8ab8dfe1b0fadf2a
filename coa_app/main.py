from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from urllib.parse import urlencode

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse

from coa_app.config import Settings
from coa_app.credential_store import CredentialStore, build_credential_store
from coa_app.errors import CoaAppError
from coa_app.fetcher import CoaFetcher
from coa_app.oauth import OAuthExchange
from coa_app.retry import RetryPolicy
from coa_app.schemas import (
    AnalysisRecord,
    AuthCallbackResponse,
    CredentialStoreHealth,
    HealthResponse,
    WebhookAck,
)
from coa_app.security import (
    normalize_shop_domain,
    require_internal_api_token,
    require_proxy_signature,
    require_webhook_signature,
    verify_oauth_hmac,
)
from coa_app.shopify_api import ShopifyApiClient

logger = logging.getLogger(__name__)


def get_credential_store(request: Request) -> CredentialStore:
    return request.app.state.credential_store


def get_fetcher(request: Request) -> CoaFetcher:
    return request.app.state.fetcher


def get_oauth_exchange(request: Request) -> OAuthExchange:
    return request.app.state.oauth_exchange


def _build_shopify_oauth_url(*, settings: Settings, shop_domain: str, redirect_uri: str) -> str:
    query = urlencode(
        {
            "client_id": settings.SHOPIFY_API_KEY,
            "scope": settings.scopes_csv,
            "redirect_uri": redirect_uri,
            "state": str(int(datetime.now(timezone.utc).timestamp())),
        }
    )
    return f"https://{shop_domain}/admin/oauth/authorize?{query}"


def _resolve_proxy_shop(request: Request) -> str:
    shop = request.query_params.get("shop")
    if not shop:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing shop query parameter")
    return normalize_shop_domain(shop)


def create_app(
    settings: Settings | None = None,
    *,
    credential_store: CredentialStore | None = None,
    shopify_api: ShopifyApiClient | None = None,
    retry_policy: RetryPolicy | None = None,
) -> FastAPI:
    settings = settings or Settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    credential_store = credential_store or build_credential_store(settings)
    shopify_api = shopify_api or ShopifyApiClient(settings)
    retry_policy = retry_policy or RetryPolicy.from_settings(settings)

    @asynccontextmanager
    async def _app_lifespan(_app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "Starting COA proxy mode=%s credential_store=%s",
            settings.SHOPIFY_DEPLOYMENT_MODE,
            credential_store.backend_name,
        )
        try:
            yield
        finally:
            await credential_store.close()

    app = FastAPI(
        title="COA Proxy App",
        lifespan=_app_lifespan,
    )
    app.state.settings = settings
    app.state.credential_store = credential_store
    app.state.oauth_exchange = OAuthExchange(shopify_api=shopify_api, credential_store=credential_store)
    app.state.fetcher = CoaFetcher(
        shopify_api=shopify_api,
        credential_store=credential_store,
        retry_policy=retry_policy,
        page_size=settings.COA_PAGE_SIZE,
    )

    if settings.CORS_ALLOW_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=sorted(set(settings.CORS_ALLOW_ORIGINS)),
            allow_credentials=False,
            allow_methods=["GET", "POST"],
            allow_headers=["*"],
        )

    @app.exception_handler(CoaAppError)
    async def coa_app_error_handler(_request: Request, exc: CoaAppError) -> JSONResponse:
        if exc.__cause__ is not None:
            logger.exception("Request failed: %s", exc.message, exc_info=exc)
        else:
            logger.warning("Request failed: %s", exc.message)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(_request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled server exception", exc_info=exc)
        return JSONResponse(status_code=500, content={"detail": "Internal server error."})

    @app.get("/health", response_model=HealthResponse)
    async def health(
        probe: bool = False,
        store: CredentialStore = Depends(get_credential_store),
    ) -> HealthResponse:
        store_health = None
        if probe:
            try:
                await store.ping()
                store_health = CredentialStoreHealth(ok=True)
            except CoaAppError as exc:
                store_health = CredentialStoreHealth(ok=False, error=exc.message)
        return HealthResponse(
            ok=store_health.ok if store_health else True,
            shopConfigured=bool(settings.SHOPIFY_SHOP),
            accessTokenConfigured=bool(settings.SHOPIFY_ACCESS_TOKEN),
            credentialStoreBackend=store.backend_name,
            credentialStore=store_health,
        )

    @app.get("/")
    def install(request: Request, shop: str | None = None):
        target = shop or settings.SHOPIFY_SHOP
        if not target:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing shop query parameter")
        shop_domain = normalize_shop_domain(target)
        redirect_uri = (
            str(settings.SHOPIFY_REDIRECT_URI) if settings.SHOPIFY_REDIRECT_URI else str(request.url_for("auth_callback"))
        )
        return RedirectResponse(
            url=_build_shopify_oauth_url(settings=settings, shop_domain=shop_domain, redirect_uri=redirect_uri),
            status_code=302,
        )

    @app.get("/auth/callback", name="auth_callback")
    async def auth_callback(
        request: Request,
        oauth_exchange: OAuthExchange = Depends(get_oauth_exchange),
    ):
        query_items = list(request.query_params.multi_items())
        if not verify_oauth_hmac(query_items, secret=settings.SHOPIFY_API_SECRET):
            logger.warning("Rejected OAuth callback with invalid HMAC")
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid OAuth HMAC")

        shop = request.query_params.get("shop")
        code = request.query_params.get("code")
        if not shop or not code:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Missing required OAuth callback params: shop, code",
            )
        shop_domain = normalize_shop_domain(shop)

        access_token = await oauth_exchange.exchange(shop_domain, code)

        if not settings.persists_installs:
            return AuthCallbackResponse(
                ok=True,
                shopDomain=shop_domain,
                accessToken=access_token,
                next="Set SHOPIFY_ACCESS_TOKEN to this value and restart the service.",
            )
        if settings.INSTALL_SUCCESS_REDIRECT_URL:
            success_url = f"{str(settings.INSTALL_SUCCESS_REDIRECT_URL).rstrip('/')}?shop={shop_domain}"
            return RedirectResponse(url=success_url, status_code=302)
        return AuthCallbackResponse(ok=True, shopDomain=shop_domain)

    async def proxy_coas(
        request: Request,
        fetcher: CoaFetcher = Depends(get_fetcher),
    ) -> list[AnalysisRecord]:
        shop_domain = _resolve_proxy_shop(request)
        return await fetcher.fetch_all(shop_domain)

    for path in ("/coas", "/proxy/coas"):
        app.add_api_route(
            path,
            proxy_coas,
            methods=["GET", "POST"],
            response_model=list[AnalysisRecord],
            dependencies=[Depends(require_proxy_signature)],
        )

    if settings.ENABLE_UNSIGNED_COA_API:

        @app.get(
            "/api/coas",
            response_model=list[AnalysisRecord],
            dependencies=[Depends(require_internal_api_token)],
        )
        async def unsigned_coas(fetcher: CoaFetcher = Depends(get_fetcher)) -> list[AnalysisRecord]:
            return await fetcher.fetch_all(settings.SHOPIFY_SHOP or "")

    @app.post(
        "/webhooks/app/uninstalled",
        response_model=WebhookAck,
        dependencies=[Depends(require_webhook_signature)],
    )
    async def app_uninstalled_webhook(
        request: Request,
        store: CredentialStore = Depends(get_credential_store),
    ) -> WebhookAck:
        shop_header = request.headers.get("x-shopify-shop-domain")
        logger.info("Received app/uninstalled webhook shop=%s", shop_header or "")
        if not settings.PURGE_CREDENTIAL_ON_UNINSTALL or not shop_header:
            return WebhookAck()
        try:
            shop_domain = normalize_shop_domain(shop_header)
        except HTTPException:
            logger.warning("Ignoring app/uninstalled webhook with invalid shop header=%r", shop_header)
            return WebhookAck()
        await store.delete(shop_domain)
        return WebhookAck(credentialPurged=True)

    @app.post(
        "/webhooks/app/scopes_updated",
        response_model=WebhookAck,
        dependencies=[Depends(require_webhook_signature)],
    )
    async def app_scopes_updated_webhook(request: Request) -> WebhookAck:
        logger.info(
            "Received app/scopes_update webhook shop=%s",
            request.headers.get("x-shopify-shop-domain") or "",
        )
        return WebhookAck()

    return app


app = create_app()
