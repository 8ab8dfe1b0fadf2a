from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from collections.abc import Sequence

from fastapi import Header, HTTPException, Request, status

from coa_app.config import SHOP_DOMAIN_RE, Settings

logger = logging.getLogger(__name__)

WEBHOOK_HMAC_HEADER = "x-shopify-hmac-sha256"


def normalize_shop_domain(shop: str) -> str:
    normalized = shop.strip().lower()
    if not SHOP_DOMAIN_RE.fullmatch(normalized):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="shop must be a valid shop domain",
        )
    return normalized


def _hmac_sha256(secret: str, message: bytes) -> hmac.HMAC:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256)


def _digests_match(expected: str, supplied: str) -> bool:
    expected_bytes = expected.encode("utf-8")
    supplied_bytes = supplied.encode("utf-8")
    if len(expected_bytes) != len(supplied_bytes):
        return False
    return hmac.compare_digest(expected_bytes, supplied_bytes)


def build_proxy_signature_message(query_items: Sequence[tuple[str, str]]) -> str:
    """Build the string Shopify signs for app proxy requests.

    Every parameter except ``signature`` is grouped by key (repeated keys keep
    their arrival order and are joined with commas), sorted by key and
    concatenated as ``key=value`` with no separator between pairs.
    """
    grouped: dict[str, list[str]] = {}
    for key, value in query_items:
        if key == "signature":
            continue
        grouped.setdefault(key, []).append(value)
    return "".join(f"{key}={','.join(values)}" for key, values in sorted(grouped.items()))


def verify_proxy_signature(query_items: Sequence[tuple[str, str]], *, secret: str) -> bool:
    if not secret:
        return False
    supplied_signature = None
    for key, value in query_items:
        if key == "signature":
            supplied_signature = value
    if not supplied_signature:
        return False

    message = build_proxy_signature_message(query_items)
    digest = _hmac_sha256(secret, message.encode("utf-8")).hexdigest()
    return _digests_match(digest, supplied_signature)


def verify_oauth_hmac(query_items: Sequence[tuple[str, str]], *, secret: str) -> bool:
    if not secret:
        return False
    supplied_hmac = None
    filtered: list[tuple[str, str]] = []
    for key, value in query_items:
        if key == "hmac":
            supplied_hmac = value
            continue
        if key == "signature":
            continue
        filtered.append((key, value))

    if not supplied_hmac:
        return False

    filtered.sort(key=lambda item: item[0])
    message = "&".join(f"{key}={value}" for key, value in filtered)
    digest = _hmac_sha256(secret, message.encode("utf-8")).hexdigest()
    return _digests_match(digest, supplied_hmac)


def verify_webhook_hmac(*, body: bytes, supplied_hmac: str | None, secret: str) -> bool:
    if not secret or not supplied_hmac:
        return False
    digest = _hmac_sha256(secret, body).digest()
    encoded = base64.b64encode(digest).decode("utf-8")
    return _digests_match(encoded, supplied_hmac)


def _settings_from(request: Request) -> Settings:
    return request.app.state.settings


def require_proxy_signature(request: Request) -> None:
    settings = _settings_from(request)
    query_items = list(request.query_params.multi_items())
    if not verify_proxy_signature(query_items, secret=settings.SHOPIFY_API_SECRET):
        logger.warning("Rejected app proxy request with invalid signature path=%s", request.url.path)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid proxy signature")


async def require_webhook_signature(request: Request) -> None:
    settings = _settings_from(request)
    body = await request.body()
    if not verify_webhook_hmac(
        body=body,
        supplied_hmac=request.headers.get(WEBHOOK_HMAC_HEADER),
        secret=settings.SHOPIFY_API_SECRET,
    ):
        logger.warning("Rejected webhook with invalid HMAC path=%s", request.url.path)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook HMAC")


def require_internal_api_token(
    request: Request,
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> None:
    expected = _settings_from(request).INTERNAL_API_TOKEN
    if not expected:
        return
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Bearer authorization header",
        )
    token = authorization[7:].strip()
    if not _digests_match(expected, token):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid internal API token",
        )
