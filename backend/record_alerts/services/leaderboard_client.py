"""
Leaderboard client: Nadeo live-services leaderboards, Trackmania OAuth display names, Trackmania Exchange map listing.

All API calls go through _request(), which spaces calls (shared 2 req/s budget), retries 429/5xx/network
errors with exponential backoff and renews the token once on a 401 (refresh, falling back to login).
Calls within one client are sequential; token endpoints are not spaced.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, overload

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from record_alerts.config import settings
from record_alerts.core.errors import (
    AuthError,
    LeaderboardApiError,
    PipelineError,
    RateLimitError,
    TransientApiError,
    ValidationError,
)
from record_alerts.core.metrics import LEADERBOARD_REQUESTS
from record_alerts.core.rate_limit import RequestSpacer, get_request_spacer
from record_alerts.schemas.leaderboard import LeaderboardEntry, MapInfo
from record_alerts.services import leaderboard_cache
from record_alerts.services.credentials import (
    CredentialStore,
    NadeoCredentialStore,
    OAuthCredentialStore,
    TokenPersistence,
)
from record_alerts.services.http_client import get_http_client

logger = logging.getLogger(__name__)


def _retry_after_seconds(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class LeaderboardClient:
    def __init__(
        self,
        nadeo: NadeoCredentialStore,
        oauth: OAuthCredentialStore | None = None,
        *,
        http: httpx.AsyncClient | None = None,
        spacer: RequestSpacer | None = None,
        max_retries: int | None = None,
        retry_base_delay: float | None = None,
        use_cache: bool = True,
        sleep=asyncio.sleep,
    ) -> None:
        self.nadeo = nadeo
        self.oauth = oauth
        self._http = http
        self.spacer = spacer or get_request_spacer()
        self.max_retries = settings.leaderboard_max_retries if max_retries is None else max_retries
        self.retry_base_delay = (
            settings.leaderboard_retry_base_delay_seconds if retry_base_delay is None else retry_base_delay
        )
        self.use_cache = use_cache
        self._sleep = sleep

    @property
    def http(self) -> httpx.AsyncClient:
        return self._http or get_http_client()

    async def _backoff(self, attempt: int, retry_after: float | None) -> None:
        delay = self.retry_base_delay * (2 ** (attempt - 1))
        if retry_after is not None:
            delay = max(delay, retry_after)
        logger.info("Retrying external API call in %.1fs (attempt %s/%s)", delay, attempt, self.max_retries)
        await self._sleep(delay)

    async def _request(
        self,
        url: str,
        *,
        endpoint: str,
        params: Any = None,
        store: CredentialStore | None = None,
    ) -> Any:
        """GET ``url`` and return the decoded JSON body."""
        token = await store.get_access_token() if store is not None else None
        auth_failures = 0
        attempt = 0
        while True:
            headers = {"Authorization": store.auth_header(token)} if store is not None else {}
            try:
                async with self.spacer:
                    r = await self.http.get(url, params=params, headers=headers)
            except httpx.TransportError as e:
                attempt += 1
                LEADERBOARD_REQUESTS.labels(endpoint=endpoint, outcome="network_error").inc()
                if attempt > self.max_retries:
                    raise TransientApiError(f"{endpoint}: network error ({type(e).__name__})") from e
                await self._backoff(attempt, None)
                continue

            if r.status_code == 401 and store is not None:
                auth_failures += 1
                LEADERBOARD_REQUESTS.labels(endpoint=endpoint, outcome="unauthorized").inc()
                if auth_failures > 1:
                    raise AuthError(f"{endpoint}: still unauthorized after token renewal", status_code=401)
                logger.warning("%s: 401, renewing %s token", endpoint, store.provider)
                token = await store.force_refresh(token)
                continue

            if r.status_code == 429 or r.status_code >= 500:
                attempt += 1
                outcome = "rate_limited" if r.status_code == 429 else "server_error"
                LEADERBOARD_REQUESTS.labels(endpoint=endpoint, outcome=outcome).inc()
                if attempt > self.max_retries:
                    if r.status_code == 429:
                        raise RateLimitError(f"{endpoint}: rate limited", status_code=429)
                    raise TransientApiError(f"{endpoint}: HTTP {r.status_code}", status_code=r.status_code)
                await self._backoff(attempt, _retry_after_seconds(r.headers.get("Retry-After")))
                continue

            if r.status_code in (400, 404):
                LEADERBOARD_REQUESTS.labels(endpoint=endpoint, outcome="rejected").inc()
                raise ValidationError(f"{endpoint}: HTTP {r.status_code}")
            if r.status_code >= 400:
                LEADERBOARD_REQUESTS.labels(endpoint=endpoint, outcome="error").inc()
                raise LeaderboardApiError(f"{endpoint}: HTTP {r.status_code}", status_code=r.status_code)

            LEADERBOARD_REQUESTS.labels(endpoint=endpoint, outcome="ok").inc()
            return r.json()

    # --- leaderboards ---

    async def _leaderboard_page(self, map_uid: str, group: str, length: int, offset: int) -> list[LeaderboardEntry]:
        url = f"{settings.nadeo_live_base_url.rstrip('/')}/api/token/leaderboard/group/{group}/map/{map_uid}/top"
        data = await self._request(
            url,
            endpoint="leaderboard",
            params={"onlyWorld": "true", "length": length, "offset": offset},
            store=self.nadeo,
        )
        tops = (data or {}).get("tops") or []
        if not tops:
            return []
        return [LeaderboardEntry.from_api(item) for item in tops[0].get("top") or []]

    async def _fetch_leaderboard(self, map_uid: str, group: str, length: int | None) -> list[LeaderboardEntry]:
        if not map_uid or not map_uid.strip():
            raise ValidationError("Empty map uid")
        if self.use_cache:
            cached = await leaderboard_cache.get_cached(group, map_uid, length)
            if cached is not None:
                return cached

        page_size = settings.leaderboard_page_size
        entries: list[LeaderboardEntry] = []
        offset = 0
        pages = 0
        while True:
            want = page_size if length is None else min(page_size, length - len(entries))
            if want <= 0:
                break
            batch = await self._leaderboard_page(map_uid, group, want, offset)
            pages += 1
            entries.extend(batch)
            if len(batch) < want:
                break
            offset += len(batch)
            if pages >= settings.pagination_max_pages:
                logger.warning("Leaderboard %s: pagination cap (%s pages) reached", map_uid, pages)
                break

        entries.sort(key=lambda e: e.position)
        if self.use_cache:
            await leaderboard_cache.set_cached(group, map_uid, length, entries)
        return entries

    @overload
    async def get_leaderboard(
        self, map_uids: str, group: str | None = None, length: int | None = None
    ) -> list[LeaderboardEntry]: ...

    @overload
    async def get_leaderboard(
        self, map_uids: list[str], group: str | None = None, length: int | None = None
    ) -> dict[str, list[LeaderboardEntry]]: ...

    async def get_leaderboard(self, map_uids, group=None, length=None):
        """
        Top entries of one map (list) or several maps (dict map_uid -> list), ordered by position.
        ``length=None`` drains every page up to the pagination cap.
        """
        group = group or settings.leaderboard_group
        if isinstance(map_uids, str):
            return await self._fetch_leaderboard(map_uids, group, length)
        result: dict[str, list[LeaderboardEntry]] = {}
        for map_uid in dict.fromkeys(map_uids):
            result[map_uid] = await self._fetch_leaderboard(map_uid, group, length)
        return result

    # --- display names ---

    async def resolve_display_names(self, account_ids: list[str]) -> dict[str, str]:
        """Account id -> display name, in chunks; a failed chunk is logged and skipped."""
        if self.oauth is None:
            return {}
        unique_ids = [a for a in dict.fromkeys(account_ids) if a]
        chunk_size = settings.display_names_chunk_size
        url = f"{settings.trackmania_oauth_base_url.rstrip('/')}/api/display-names"
        names: dict[str, str] = {}
        for start in range(0, len(unique_ids), chunk_size):
            chunk = unique_ids[start : start + chunk_size]
            try:
                data = await self._request(
                    url,
                    endpoint="display_names",
                    params=[("accountId[]", account_id) for account_id in chunk],
                    store=self.oauth,
                )
            except PipelineError as e:
                logger.warning(
                    "Display names chunk %s (%s ids) failed: %s", start // chunk_size + 1, len(chunk), type(e).__name__
                )
                continue
            if isinstance(data, dict):
                names.update({k: v for k, v in data.items() if isinstance(v, str)})
        return names

    # --- exchange ---

    async def list_author_maps(self, author: str) -> list[MapInfo]:
        """Every map Trackmania Exchange lists for ``author``, paginated by last MapId up to the cap."""
        if not author or not author.strip():
            raise ValidationError("Missing author name")
        url = f"{settings.exchange_base_url.rstrip('/')}/api/maps"
        maps: list[MapInfo] = []
        after: int | None = None
        for page in range(settings.pagination_max_pages):
            params: dict[str, Any] = {"author": author, "fields": "Name,MapId,MapUid,Authors"}
            if after is not None:
                params["after"] = after
            data = await self._request(url, endpoint="exchange_maps", params=params)
            data = data or {}
            results = data.get("Results") or []
            for item in results:
                if not item.get("MapUid"):
                    continue
                maps.append(
                    MapInfo(map_uid=item["MapUid"], name=item.get("Name") or item["MapUid"], exchange_id=item.get("MapId"))
                )
            if not data.get("More") or not results:
                break
            after = results[-1].get("MapId")
            if after is None:
                break
        else:
            logger.warning("Exchange listing for %s: pagination cap reached", author)
        return maps


def build_leaderboard_client(session_maker: async_sessionmaker[AsyncSession] | None = None) -> LeaderboardClient:
    """Client with one credential store per auth domain; tokens shared through api_tokens when a session maker is given."""
    persistence = TokenPersistence(session_maker) if session_maker is not None else None
    return LeaderboardClient(
        NadeoCredentialStore(persistence=persistence),
        OAuthCredentialStore(persistence=persistence),
    )
