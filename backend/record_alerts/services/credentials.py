"""
Access/refresh token lifecycle for the two external auth domains:

* Nadeo live services (leaderboards): Basic login -> ``nadeo_v1`` token, refreshed with the refresh token.
* Trackmania public API (display names): OAuth2 client credentials -> Bearer token.

A store is an explicitly owned object (one per domain, injected into the leaderboard client).
Renewal is single-flight: concurrent callers holding the same stale token queue on one lock,
the first one renews and the rest reuse its result.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from record_alerts.config import settings
from record_alerts.core.errors import AuthError
from record_alerts.core.metrics import TOKEN_REFRESHES
from record_alerts.db.base import as_utc
from record_alerts.models.api_token import ApiToken
from record_alerts.services.crypto import decrypt_token, encrypt_token
from record_alerts.services.http_client import get_http_client

logger = logging.getLogger(__name__)

PROVIDER_NADEO = "nadeo"
PROVIDER_OAUTH2 = "oauth2"


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str | None
    issued_at: float  # epoch seconds


class TokenPersistence:
    """Shares tokens between worker processes through the api_tokens table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    async def load(self, provider: str) -> TokenPair | None:
        async with self._session_maker() as session:
            r = await session.execute(select(ApiToken).where(ApiToken.provider == provider))
            row = r.scalar_one_or_none()
        if row is None:
            return None
        access = decrypt_token(row.encrypted_access_token)
        if not access:
            return None
        return TokenPair(
            access_token=access,
            refresh_token=decrypt_token(row.encrypted_refresh_token) or None,
            issued_at=as_utc(row.issued_at).timestamp(),
        )

    async def save(self, provider: str, tokens: TokenPair) -> None:
        async with self._session_maker() as session:
            r = await session.execute(select(ApiToken).where(ApiToken.provider == provider))
            row = r.scalar_one_or_none()
            issued = datetime.fromtimestamp(tokens.issued_at, tz=timezone.utc)
            if row is None:
                session.add(
                    ApiToken(
                        provider=provider,
                        encrypted_access_token=encrypt_token(tokens.access_token),
                        encrypted_refresh_token=encrypt_token(tokens.refresh_token) or None,
                        issued_at=issued,
                    )
                )
            else:
                row.encrypted_access_token = encrypt_token(tokens.access_token)
                if tokens.refresh_token:
                    row.encrypted_refresh_token = encrypt_token(tokens.refresh_token)
                row.issued_at = issued
            await session.commit()


class CredentialStore:
    provider = "base"

    def __init__(
        self,
        *,
        max_age_seconds: int | None = None,
        persistence: TokenPersistence | None = None,
        http: httpx.AsyncClient | None = None,
        clock=time.time,
    ) -> None:
        self.max_age_seconds = max_age_seconds if max_age_seconds is not None else settings.token_max_age_seconds
        self._persistence = persistence
        self._http = http
        self._clock = clock
        self._tokens: TokenPair | None = None
        self._loaded = False
        self._lock = asyncio.Lock()

    @property
    def http(self) -> httpx.AsyncClient:
        return self._http or get_http_client()

    def auth_header(self, access_token: str) -> str:
        raise NotImplementedError

    async def _login(self) -> TokenPair:
        raise NotImplementedError

    async def _refresh(self, refresh_token: str) -> TokenPair:
        raise NotImplementedError

    def _is_fresh(self, tokens: TokenPair | None) -> bool:
        return tokens is not None and (self._clock() - tokens.issued_at) < self.max_age_seconds

    async def get_access_token(self) -> str:
        """Current access token, renewing (refresh, then login) when missing or older than max age."""
        tokens = self._tokens
        if self._is_fresh(tokens):
            return tokens.access_token
        return await self._renew(tokens.access_token if tokens else None)

    async def force_refresh(self, stale_token: str | None) -> str:
        """After a 401: refresh (falling back to full login). No-op if another caller already replaced the token."""
        return await self._renew(stale_token, rejected=True)

    async def _renew(self, stale_token: str | None, *, rejected: bool = False) -> str:
        async with self._lock:
            current = self._tokens
            if current is not None and current.access_token != stale_token and self._is_fresh(current):
                return current.access_token

            if self._persistence is not None and (not self._loaded or rejected):
                self._loaded = True
                persisted = await self._persistence.load(self.provider)
                if persisted is not None:
                    usable = persisted.access_token != stale_token and self._is_fresh(persisted)
                    if self._tokens is None or usable:
                        self._tokens = persisted
                    if usable:
                        logger.debug("Using persisted %s access token", self.provider)
                        return persisted.access_token

            tokens = await self._obtain()
            self._tokens = tokens
            if self._persistence is not None:
                await self._persistence.save(self.provider, tokens)
            return tokens.access_token

    async def _obtain(self) -> TokenPair:
        refresh_token = self._tokens.refresh_token if self._tokens else None
        if refresh_token:
            try:
                tokens = await self._refresh(refresh_token)
                TOKEN_REFRESHES.labels(provider=self.provider, kind="refresh").inc()
                logger.info("%s access token refreshed", self.provider)
                return tokens
            except (httpx.HTTPError, KeyError, ValueError) as e:
                logger.warning("%s token refresh failed (%s); performing full login", self.provider, type(e).__name__)
        try:
            tokens = await self._login()
        except (httpx.HTTPError, KeyError, ValueError) as e:
            TOKEN_REFRESHES.labels(provider=self.provider, kind="login_failed").inc()
            logger.error("%s login failed: %s", self.provider, type(e).__name__)
            raise AuthError(f"{self.provider} login failed") from e
        TOKEN_REFRESHES.labels(provider=self.provider, kind="login").inc()
        logger.info("%s full login successful", self.provider)
        return tokens


class NadeoCredentialStore(CredentialStore):
    provider = PROVIDER_NADEO

    def auth_header(self, access_token: str) -> str:
        return f"nadeo_v1 t={access_token}"

    async def _login(self) -> TokenPair:
        if not settings.nadeo_basic_authorization:
            raise ValueError("NADEO_BASIC_AUTHORIZATION is not configured")
        r = await self.http.post(
            settings.nadeo_auth_url,
            json={"audience": settings.nadeo_audience},
            headers={
                "Authorization": f"Basic {settings.nadeo_basic_authorization}",
                "Content-Type": "application/json",
                "User-Agent": settings.nadeo_user_agent,
            },
        )
        r.raise_for_status()
        data = r.json()
        access, refresh = data["accessToken"], data.get("refreshToken")
        if not access or not refresh:
            raise ValueError("Missing tokens in Nadeo login response")
        return TokenPair(access_token=access, refresh_token=refresh, issued_at=self._clock())

    async def _refresh(self, refresh_token: str) -> TokenPair:
        r = await self.http.post(
            settings.nadeo_refresh_url,
            json={},
            headers={
                "Authorization": f"nadeo_v1 t={refresh_token}",
                "Content-Type": "application/json",
                "User-Agent": settings.nadeo_user_agent,
            },
        )
        r.raise_for_status()
        data = r.json()
        return TokenPair(
            access_token=data["accessToken"],
            refresh_token=data.get("refreshToken") or refresh_token,
            issued_at=self._clock(),
        )


class OAuthCredentialStore(CredentialStore):
    provider = PROVIDER_OAUTH2

    @property
    def token_url(self) -> str:
        return f"{settings.trackmania_oauth_base_url.rstrip('/')}/api/access_token"

    def auth_header(self, access_token: str) -> str:
        return f"Bearer {access_token}"

    async def _login(self) -> TokenPair:
        if not settings.trackmania_oauth_client_id:
            raise ValueError("TRACKMANIA_OAUTH_CLIENT_ID is not configured")
        r = await self.http.post(
            self.token_url,
            data={
                "grant_type": "client_credentials",
                "client_id": settings.trackmania_oauth_client_id,
                "client_secret": settings.trackmania_oauth_client_secret,
            },
        )
        r.raise_for_status()
        data = r.json()
        if not data.get("access_token"):
            raise ValueError("Missing access token in OAuth2 response")
        return TokenPair(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            issued_at=self._clock(),
        )

    async def _refresh(self, refresh_token: str) -> TokenPair:
        r = await self.http.post(
            self.token_url,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": settings.trackmania_oauth_client_id,
                "client_secret": settings.trackmania_oauth_client_secret,
            },
        )
        r.raise_for_status()
        data = r.json()
        return TokenPair(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or refresh_token,
            issued_at=self._clock(),
        )
