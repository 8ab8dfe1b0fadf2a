from __future__ import annotations

import base64
import hashlib
import hmac

import pytest
from fastapi import HTTPException

import coa_app.security as security_module
from coa_app.security import (
    build_proxy_signature_message,
    normalize_shop_domain,
    verify_oauth_hmac,
    verify_proxy_signature,
    verify_webhook_hmac,
)

SECRET = "test_secret"


def _proxy_signature(query_items: list[tuple[str, str]], secret: str = SECRET) -> str:
    grouped: dict[str, list[str]] = {}
    for key, value in query_items:
        grouped.setdefault(key, []).append(value)
    message = "".join(f"{key}={','.join(values)}" for key, values in sorted(grouped.items()))
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def _oauth_hmac(query_items: list[tuple[str, str]], secret: str = SECRET) -> str:
    pairs = sorted(query_items, key=lambda item: item[0])
    message = "&".join(f"{key}={value}" for key, value in pairs)
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


PROXY_ITEMS = [
    ("shop", "acme.example.com"),
    ("path_prefix", "/apps/coas"),
    ("timestamp", "1710000000"),
    ("logged_in_customer_id", ""),
]


def test_normalize_shop_domain_accepts_valid_domain():
    assert normalize_shop_domain(" Example-Shop.myshopify.com ") == "example-shop.myshopify.com"
    assert normalize_shop_domain("acme.example.com") == "acme.example.com"


@pytest.mark.parametrize("shop", ["", "acme", "https://acme.example.com", "acme.example.com/admin", "-acme.com"])
def test_normalize_shop_domain_rejects_invalid_domain(shop):
    with pytest.raises(HTTPException) as exc_info:
        normalize_shop_domain(shop)
    assert exc_info.value.status_code == 400


def test_build_proxy_signature_message_sorts_and_joins_multi_values():
    message = build_proxy_signature_message(
        [
            ("shop", "acme.example.com"),
            ("extra", "1"),
            ("signature", "ignored"),
            ("extra", "2"),
        ]
    )

    assert message == "extra=1,2shop=acme.example.com"


def test_verify_proxy_signature_accepts_valid_signature():
    query_items = PROXY_ITEMS + [("signature", _proxy_signature(PROXY_ITEMS))]

    assert verify_proxy_signature(query_items, secret=SECRET)


def test_verify_proxy_signature_accepts_signature_in_any_position():
    query_items = [("signature", _proxy_signature(PROXY_ITEMS))] + list(reversed(PROXY_ITEMS))

    assert verify_proxy_signature(query_items, secret=SECRET)


@pytest.mark.parametrize("index", range(len(PROXY_ITEMS)))
def test_verify_proxy_signature_rejects_any_mutated_value(index):
    signature = _proxy_signature(PROXY_ITEMS)
    mutated = list(PROXY_ITEMS)
    key, value = mutated[index]
    mutated[index] = (key, value + "x")

    assert not verify_proxy_signature(mutated + [("signature", signature)], secret=SECRET)


def test_verify_proxy_signature_rejects_missing_signature():
    assert not verify_proxy_signature(PROXY_ITEMS, secret=SECRET)


def test_verify_proxy_signature_rejects_when_secret_unset():
    query_items = PROXY_ITEMS + [("signature", _proxy_signature(PROXY_ITEMS, secret=""))]

    assert not verify_proxy_signature(query_items, secret="")


@pytest.mark.parametrize("signature", ["abc", "0" * 200, "é" * 64])
def test_verify_proxy_signature_rejects_wrong_length_without_raising(signature):
    assert not verify_proxy_signature(PROXY_ITEMS + [("signature", signature)], secret=SECRET)


def test_signature_comparison_uses_constant_time_compare(monkeypatch):
    calls: list[tuple[bytes, bytes]] = []
    real_compare = hmac.compare_digest

    def recording_compare(left, right):
        calls.append((left, right))
        return real_compare(left, right)

    monkeypatch.setattr(security_module.hmac, "compare_digest", recording_compare)
    signature = _proxy_signature(PROXY_ITEMS)
    early_mismatch = ("f" if signature[0] != "f" else "0") + signature[1:]
    late_mismatch = signature[:-1] + ("f" if signature[-1] != "f" else "0")

    assert not verify_proxy_signature(PROXY_ITEMS + [("signature", early_mismatch)], secret=SECRET)
    assert not verify_proxy_signature(PROXY_ITEMS + [("signature", late_mismatch)], secret=SECRET)
    assert len(calls) == 2
    assert all(isinstance(left, bytes) and isinstance(right, bytes) for left, right in calls)


def test_verify_webhook_hmac_accepts_valid_signature():
    body = b'{"id": 1, "domain": "acme.example.com"}'
    digest = hmac.new(SECRET.encode("utf-8"), body, hashlib.sha256).digest()

    assert verify_webhook_hmac(
        body=body,
        supplied_hmac=base64.b64encode(digest).decode("utf-8"),
        secret=SECRET,
    )


def test_verify_webhook_hmac_rejects_tampered_body_and_missing_header():
    body = b'{"id": 1}'
    supplied = base64.b64encode(hmac.new(SECRET.encode("utf-8"), body, hashlib.sha256).digest()).decode("utf-8")

    assert not verify_webhook_hmac(body=b'{"id": 2}', supplied_hmac=supplied, secret=SECRET)
    assert not verify_webhook_hmac(body=body, supplied_hmac=None, secret=SECRET)
    assert not verify_webhook_hmac(body=body, supplied_hmac=supplied, secret="")


def test_verify_oauth_hmac_accepts_valid_signature():
    query_items = [
        ("code", "abc"),
        ("shop", "acme.example.com"),
        ("state", "1710000000"),
        ("timestamp", "1710000000"),
    ]
    digest = _oauth_hmac(query_items)
    query_items.append(("hmac", digest))

    assert verify_oauth_hmac(query_items, secret=SECRET)


def test_verify_oauth_hmac_rejects_invalid_signature():
    query_items = [
        ("code", "abc"),
        ("shop", "acme.example.com"),
        ("timestamp", "1710000000"),
        ("hmac", "invalid"),
    ]

    assert not verify_oauth_hmac(query_items, secret=SECRET)
