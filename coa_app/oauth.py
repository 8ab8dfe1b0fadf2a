from __future__ import annotations

import logging

from coa_app.credential_store import CredentialStore
from coa_app.errors import OAuthError
from coa_app.shopify_api import ShopifyApiClient, ShopifyApiError

logger = logging.getLogger(__name__)


class OAuthExchange:
    """Trades a one-time authorization code for a shop's offline access token.

    Authorization codes are single use, so the exchange is attempted exactly
    once. A successful exchange overwrites any token already stored for the
    shop.
    """

    def __init__(self, *, shopify_api: ShopifyApiClient, credential_store: CredentialStore) -> None:
        self._shopify_api = shopify_api
        self._credential_store = credential_store

    async def exchange(self, shop_domain: str, code: str) -> str:
        try:
            access_token, scopes = await self._shopify_api.exchange_code_for_access_token(
                shop_domain=shop_domain,
                code=code,
            )
        except ShopifyApiError as exc:
            logger.exception("OAuth token exchange failed shop=%s", shop_domain)
            raise OAuthError(message=f"OAuth token exchange failed for {shop_domain}") from exc

        await self._credential_store.set(shop_domain, access_token)
        logger.info("Stored access credential shop=%s scopes=%s", shop_domain, scopes or "")
        return access_token
