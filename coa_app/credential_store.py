"""Per-shop storage of Shopify Admin API access tokens.

Every backend raises ``CredentialNotFoundError`` for a shop that never
completed OAuth and ``StoreUnavailableError`` when the backend itself fails,
so callers can tell "not installed" apart from "store down".
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from uuid import uuid4

import redis.asyncio as redis
from redis.exceptions import RedisError
from sqlalchemy import delete, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from coa_app.config import Settings
from coa_app.db import build_engine, build_session_factory, init_db
from coa_app.errors import CredentialNotFoundError, StoreUnavailableError
from coa_app.models import ShopCredential, utcnow

logger = logging.getLogger(__name__)

_HEALTHCHECK_KEY_PREFIX = "__healthcheck__"


class CredentialStore(ABC):
    backend_name: str = "abstract"

    @abstractmethod
    async def get(self, shop_domain: str) -> str: ...

    @abstractmethod
    async def set(self, shop_domain: str, access_token: str) -> None: ...

    @abstractmethod
    async def delete(self, shop_domain: str) -> None: ...

    async def ping(self) -> None:
        """Round-trip a throwaway key through the backend."""
        probe_key = f"{_HEALTHCHECK_KEY_PREFIX}{uuid4().hex}"
        probe_value = uuid4().hex
        await self.set(probe_key, probe_value)
        try:
            stored = await self.get(probe_key)
        finally:
            await self.delete(probe_key)
        if stored != probe_value:
            raise StoreUnavailableError(message="Credential store returned an unexpected probe value")

    async def close(self) -> None:
        return None


class InMemoryCredentialStore(CredentialStore):
    backend_name = "memory"

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._tokens: dict[str, str] = dict(initial or {})

    async def get(self, shop_domain: str) -> str:
        token = self._tokens.get(shop_domain)
        if not token:
            raise CredentialNotFoundError(shop_domain=shop_domain)
        return token

    async def set(self, shop_domain: str, access_token: str) -> None:
        self._tokens[shop_domain] = access_token

    async def delete(self, shop_domain: str) -> None:
        self._tokens.pop(shop_domain, None)


class RedisCredentialStore(CredentialStore):
    backend_name = "redis"
    key_prefix = "shopify:access_token:"

    def __init__(self, redis_client: redis.Redis) -> None:
        self.redis = redis_client

    @classmethod
    def from_url(cls, url: str, *, token: str | None = None) -> "RedisCredentialStore":
        kwargs = {"decode_responses": True}
        if token:
            kwargs["password"] = token
        return cls(redis.from_url(url, **kwargs))

    def _key(self, shop_domain: str) -> str:
        return f"{self.key_prefix}{shop_domain}"

    async def get(self, shop_domain: str) -> str:
        try:
            token = await self.redis.get(self._key(shop_domain))
        except (RedisError, OSError) as exc:
            logger.exception("Redis credential lookup failed shop=%s", shop_domain)
            raise StoreUnavailableError(message="Credential store is unavailable") from exc
        if not token:
            raise CredentialNotFoundError(shop_domain=shop_domain)
        return token

    async def set(self, shop_domain: str, access_token: str) -> None:
        try:
            await self.redis.set(self._key(shop_domain), access_token)
        except (RedisError, OSError) as exc:
            logger.exception("Redis credential write failed shop=%s", shop_domain)
            raise StoreUnavailableError(message="Credential store is unavailable") from exc

    async def delete(self, shop_domain: str) -> None:
        try:
            await self.redis.delete(self._key(shop_domain))
        except (RedisError, OSError) as exc:
            logger.exception("Redis credential delete failed shop=%s", shop_domain)
            raise StoreUnavailableError(message="Credential store is unavailable") from exc

    async def close(self) -> None:
        await self.redis.aclose()


class SqlCredentialStore(CredentialStore):
    backend_name = "sql"

    def __init__(self, session_factory: sessionmaker, engine: Engine | None = None) -> None:
        self._session_factory = session_factory
        self.engine = engine

    @classmethod
    def from_url(cls, database_url: str) -> "SqlCredentialStore":
        engine = build_engine(database_url)
        init_db(engine)
        return cls(build_session_factory(engine), engine=engine)

    async def get(self, shop_domain: str) -> str:
        try:
            with self._session_factory() as session:
                credential = session.scalars(
                    select(ShopCredential).where(ShopCredential.shop_domain == shop_domain)
                ).first()
        except SQLAlchemyError as exc:
            logger.exception("SQL credential lookup failed shop=%s", shop_domain)
            raise StoreUnavailableError(message="Credential store is unavailable") from exc
        if credential is None or not credential.access_token:
            raise CredentialNotFoundError(shop_domain=shop_domain)
        return credential.access_token

    async def set(self, shop_domain: str, access_token: str) -> None:
        try:
            with self._session_factory() as session:
                credential = session.scalars(
                    select(ShopCredential).where(ShopCredential.shop_domain == shop_domain)
                ).first()
                if credential is None:
                    session.add(ShopCredential(shop_domain=shop_domain, access_token=access_token))
                else:
                    credential.access_token = access_token
                    credential.updated_at = utcnow()
                session.commit()
        except SQLAlchemyError as exc:
            logger.exception("SQL credential write failed shop=%s", shop_domain)
            raise StoreUnavailableError(message="Credential store is unavailable") from exc

    async def delete(self, shop_domain: str) -> None:
        try:
            with self._session_factory() as session:
                session.execute(delete(ShopCredential).where(ShopCredential.shop_domain == shop_domain))
                session.commit()
        except SQLAlchemyError as exc:
            logger.exception("SQL credential delete failed shop=%s", shop_domain)
            raise StoreUnavailableError(message="Credential store is unavailable") from exc

    async def close(self) -> None:
        if self.engine is not None:
            self.engine.dispose()


def build_credential_store(settings: Settings) -> CredentialStore:
    if settings.CREDENTIAL_STORE_BACKEND == "redis":
        return RedisCredentialStore.from_url(settings.KV_URL or "", token=settings.KV_TOKEN)
    if settings.CREDENTIAL_STORE_BACKEND == "sql":
        return SqlCredentialStore.from_url(settings.DATABASE_URL)

    initial: dict[str, str] = {}
    if settings.SHOPIFY_SHOP and settings.SHOPIFY_ACCESS_TOKEN:
        initial[settings.SHOPIFY_SHOP] = settings.SHOPIFY_ACCESS_TOKEN
    return InMemoryCredentialStore(initial)
