from __future__ import annotations

from typing import Any

import httpx

from coa_app.config import Settings
from coa_app.schemas import CoaPage

COA_METAOBJECTS_QUERY = """
query coaMetaobjects($type: String!, $first: Int!, $after: String) {
    metaobjects(type: $type, first: $first, after: $after, sortKey: "updated_at", reverse: true) {
        edges {
            node {
                id
                fields {
                    key
                    value
                }
            }
        }
        pageInfo {
            hasNextPage
            endCursor
        }
    }
}
"""


class ShopifyApiError(RuntimeError):
    def __init__(self, *, message: str, status_code: int = 502) -> None:
        super().__init__(message)
        self.status_code = status_code


class ShopifyTransportError(ShopifyApiError):
    """Network failure, non-2xx status or unreadable body; safe to retry."""


class ShopifyGraphQLError(ShopifyApiError):
    """The query reached Shopify and was rejected with an ``errors`` payload."""

    def __init__(self, *, message: str, errors: Any) -> None:
        super().__init__(message=message)
        self.errors = errors


class ShopifyApiClient:
    def __init__(self, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._timeout = settings.SHOPIFY_REQUEST_TIMEOUT_SECONDS
        self._transport = transport

    async def exchange_code_for_access_token(self, *, shop_domain: str, code: str) -> tuple[str, str | None]:
        url = f"https://{shop_domain}/admin/oauth/access_token"
        payload = {
            "client_id": self._settings.SHOPIFY_API_KEY,
            "client_secret": self._settings.SHOPIFY_API_SECRET,
            "code": code,
        }
        response = await self._post_json(url=url, payload=payload)
        access_token = response.get("access_token")
        scopes = response.get("scope")
        if not isinstance(access_token, str) or not access_token:
            raise ShopifyApiError(message="OAuth token exchange response is missing access_token")
        if scopes is not None and not isinstance(scopes, str):
            scopes = None
        return access_token, scopes

    async def fetch_coa_page(
        self,
        *,
        shop_domain: str,
        access_token: str,
        after: str | None = None,
        first: int | None = None,
    ) -> CoaPage:
        payload = {
            "query": COA_METAOBJECTS_QUERY,
            "variables": {
                "type": self._settings.COA_METAOBJECT_TYPE,
                "first": first or self._settings.COA_PAGE_SIZE,
                "after": after,
            },
        }
        response = await self._admin_graphql(
            shop_domain=shop_domain,
            access_token=access_token,
            payload=payload,
        )
        metaobjects = response.get("metaobjects")
        if not isinstance(metaobjects, dict):
            raise ShopifyApiError(message="Metaobject list response is missing metaobjects")
        edges = metaobjects.get("edges") or []
        if not isinstance(edges, list):
            raise ShopifyApiError(message="Metaobject list response is invalid")

        nodes: list[dict[str, Any]] = []
        for edge in edges:
            if not isinstance(edge, dict):
                continue
            node = edge.get("node")
            if isinstance(node, dict):
                nodes.append(node)

        page_info = metaobjects.get("pageInfo") or {}
        if not isinstance(page_info, dict):
            raise ShopifyApiError(message="Metaobject list response has invalid pageInfo")
        end_cursor = page_info.get("endCursor")
        return CoaPage(
            nodes=nodes,
            hasNextPage=page_info.get("hasNextPage") is True,
            endCursor=end_cursor if isinstance(end_cursor, str) and end_cursor else None,
        )

    async def _admin_graphql(
        self,
        *,
        shop_domain: str,
        access_token: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        url = self._settings.admin_graphql_url(shop_domain)
        headers = {
            "Content-Type": "application/json",
            "X-Shopify-Access-Token": access_token,
        }
        response = await self._post_json(url=url, payload=payload, headers=headers)
        data = response.get("data")
        errors = response.get("errors")
        if errors:
            raise ShopifyGraphQLError(message=f"Admin GraphQL errors: {errors}", errors=errors)
        if not isinstance(data, dict):
            raise ShopifyApiError(message="Admin GraphQL response is missing data")
        return data

    async def _post_json(
        self,
        *,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.RequestError as exc:
            raise ShopifyTransportError(message=f"Network error while calling Shopify: {exc}") from exc

        if response.status_code >= 400:
            raise ShopifyTransportError(
                message=f"Shopify API call failed ({response.status_code})",
                status_code=502,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise ShopifyTransportError(message="Shopify API returned invalid JSON") from exc

        if not isinstance(body, dict):
            raise ShopifyApiError(message="Shopify API response must be a JSON object")
        return body
