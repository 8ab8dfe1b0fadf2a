import os
import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT_DIR))

os.environ.setdefault("SHOPIFY_API_KEY", "test_key")
os.environ.setdefault("SHOPIFY_API_SECRET", "test_secret")
os.environ.setdefault("SHOPIFY_SCOPES", "read_metaobjects,read_products")
os.environ.setdefault("SHOPIFY_SHOP", "acme.example.com")
os.environ.setdefault("SHOPIFY_REDIRECT_URI", "https://example.ngrok.app/auth/callback")
os.environ.setdefault("CREDENTIAL_STORE_BACKEND", "memory")


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture()
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def make_settings():
    from coa_app.config import Settings

    def _make(**overrides):
        values = {
            "SHOPIFY_API_KEY": "test_key",
            "SHOPIFY_API_SECRET": "test_secret",
            "SHOPIFY_SCOPES": "read_metaobjects",
            "SHOPIFY_SHOP": "acme.example.com",
            "CREDENTIAL_STORE_BACKEND": "memory",
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make
