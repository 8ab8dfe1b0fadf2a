from __future__ import annotations

import logging

from coa_app.credential_store import CredentialStore
from coa_app.errors import (
    CredentialNotFoundError,
    RemoteRejectedError,
    RetriesExhaustedError,
    UnauthenticatedError,
)
from coa_app.normalizer import normalize_coa_node, sort_records_by_date_desc
from coa_app.retry import RetryPolicy
from coa_app.schemas import AnalysisRecord, CoaPage
from coa_app.shopify_api import ShopifyApiClient, ShopifyApiError, ShopifyTransportError

logger = logging.getLogger(__name__)


class CoaFetcher:
    """Walks every page of a shop's COA metaobjects.

    The walk is all-or-nothing: any failure abandons it and nothing from the
    pages already read is returned.
    """

    def __init__(
        self,
        *,
        shopify_api: ShopifyApiClient,
        credential_store: CredentialStore,
        retry_policy: RetryPolicy | None = None,
        page_size: int = 50,
    ) -> None:
        self._shopify_api = shopify_api
        self._credential_store = credential_store
        self._retry_policy = retry_policy or RetryPolicy()
        self._page_size = page_size

    async def fetch_all(self, shop_domain: str) -> list[AnalysisRecord]:
        try:
            access_token = await self._credential_store.get(shop_domain)
        except CredentialNotFoundError as exc:
            raise UnauthenticatedError(
                message=f"Shop {shop_domain} has not installed the app"
            ) from exc

        records: list[AnalysisRecord] = []
        seen_cursors: set[str] = set()
        cursor: str | None = None
        pages = 0
        while True:
            page = await self._fetch_page(shop_domain=shop_domain, access_token=access_token, after=cursor)
            pages += 1
            for node in page.nodes:
                record = normalize_coa_node(node)
                if record is not None:
                    records.append(record)

            if not page.hasNextPage:
                break
            if not page.endCursor or page.endCursor in seen_cursors:
                logger.error("Pagination cursor did not advance shop=%s page=%d", shop_domain, pages)
                raise RemoteRejectedError(message="Shopify returned an invalid pagination cursor")
            seen_cursors.add(page.endCursor)
            cursor = page.endCursor

        logger.info("Fetched COA records shop=%s pages=%d records=%d", shop_domain, pages, len(records))
        return sort_records_by_date_desc(records)

    async def _fetch_page(self, *, shop_domain: str, access_token: str, after: str | None) -> CoaPage:
        policy = self._retry_policy
        last_error: ShopifyTransportError | None = None
        for attempt in range(1, policy.max_attempts + 1):
            if last_error is not None:
                delay = policy.delay_for(attempt - 1)
                logger.warning(
                    "Transient Shopify failure shop=%s attempt=%d retry_in=%.2fs error=%s",
                    shop_domain,
                    attempt - 1,
                    delay,
                    last_error,
                )
                await policy.sleep(delay)
            try:
                return await self._shopify_api.fetch_coa_page(
                    shop_domain=shop_domain,
                    access_token=access_token,
                    after=after,
                    first=self._page_size,
                )
            except ShopifyTransportError as exc:
                last_error = exc
            except ShopifyApiError as exc:
                logger.error("Shopify rejected COA query shop=%s error=%s", shop_domain, exc)
                raise RemoteRejectedError(message="Shopify rejected the COA query") from exc

        logger.error(
            "Giving up on COA page shop=%s attempts=%d error=%s",
            shop_domain,
            policy.max_attempts,
            last_error,
        )
        raise RetriesExhaustedError(
            message=f"Fetching COA records failed after {policy.max_attempts} attempts",
            attempts=policy.max_attempts,
        ) from last_error
