"""guild_etl.battlenet_client

Battle.net game-data API client.

Design principles:
  - One bearer token per client (client-credentials OAuth); no refresh.
  - Every request carries a timeout.
  - Polite: a shared RateLimiter spaces requests, backs off exponentially on
    429 / 5xx / transport errors and trips a safe stop after N consecutive
    failures.
  - 401 / 403 raise AuthenticationError; every other failure raises
    BattleNetError.  Callers decide what is fatal.

Usage:
    with BattleNetClient(client_id, client_secret, region="eu") as client:
        client.authenticate()
        roster = client.fetch_roster("argent-dawn", "my-guild")
"""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Any

import requests

from guild_etl.config import ApiSettings
from guild_etl.normalize import character_slug, realm_slug

log = logging.getLogger(__name__)

# TW OAuth redirects to a dead APAC host; KR issues the same token.
_OAUTH_HOST = {"tw": "kr"}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class BattleNetError(Exception):
    """Raised when a Battle.net request fails (after retries where applicable)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(BattleNetError):
    """Raised on OAuth failure or a 401/403 from a data endpoint."""


# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------

@dataclass
class RateLimiter:
    """Request spacer with jitter and exponential backoff.

    Shared by every worker of one client, so state changes are locked.
    """

    base_delay: float = 0.05
    jitter: float = 0.0
    max_consecutive_failures: int = 5
    _consecutive_failures: int = field(default=0, init=False, repr=False)
    _backoff_mult: float = field(default=1.0, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def sleep(self) -> None:
        """Block for base_delay * backoff_mult ± jitter seconds (never negative)."""
        with self._lock:
            delay = self.base_delay * self._backoff_mult
        delay += random.uniform(-self.jitter, self.jitter)
        if delay > 0:
            time.sleep(delay)

    def on_success(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            self._backoff_mult = 1.0

    def on_failure(self, reason: str = "") -> bool:
        """Record a failure. Returns True if the safe-stop threshold is reached."""
        with self._lock:
            self._consecutive_failures += 1
            self._backoff_mult = min(self._backoff_mult * 2.0, 32.0)
            log.debug("request failure (%s); %d consecutive", reason, self._consecutive_failures)
            return self._consecutive_failures >= self.max_consecutive_failures

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class BattleNetClient:
    """Explicitly-owned API client.  Use as a context manager."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        region: str,
        locale: str = "en_US",
        settings: ApiSettings | None = None,
        session: requests.Session | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.region = region.lower()
        self.locale = locale
        self.settings = settings or ApiSettings()
        self._owns_session = session is None
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": "guild-etl/1.0"})
        self.rate_limiter = rate_limiter or RateLimiter(
            base_delay=self.settings.request_interval_seconds,
            jitter=self.settings.jitter_seconds,
            max_consecutive_failures=self.settings.max_consecutive_failures,
        )
        self.token: str | None = None
        self.requests_sent = 0
        self.rate_limit_hits = 0
        self._stats_lock = threading.Lock()

    def __enter__(self) -> "BattleNetClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_session:
            self.session.close()

    @property
    def api_base(self) -> str:
        return f"https://{self.region}.api.blizzard.com"

    # ------------------------------------------------------------------ #
    # Auth                                                                 #
    # ------------------------------------------------------------------ #

    def authenticate(self) -> str:
        """Exchange client credentials for a bearer token."""
        oauth_host = _OAUTH_HOST.get(self.region, self.region)
        try:
            resp = self.session.post(
                f"https://{oauth_host}.battle.net/oauth/token",
                data={"grant_type": "client_credentials"},
                auth=(self.client_id, self.client_secret),
                timeout=self.settings.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise AuthenticationError(f"OAuth transport error: {exc}") from exc

        if resp.status_code != 200:
            raise AuthenticationError(
                f"OAuth failed for region={self.region}: {resp.status_code} {resp.text[:200]}",
                status_code=resp.status_code,
            )
        token = (resp.json() or {}).get("access_token")
        if not token:
            raise AuthenticationError("OAuth response carried no access_token")
        self.token = token
        log.info("authenticated against %s.battle.net", oauth_host)
        return token

    # ------------------------------------------------------------------ #
    # Transport                                                            #
    # ------------------------------------------------------------------ #

    def _get(self, path: str) -> requests.Response:
        """GET path with spacing + backoff.  Returns the 200 response."""
        if not self.token:
            raise AuthenticationError("Client is not authenticated")

        url = f"{self.api_base}/{path.lstrip('/')}"
        params = {"namespace": f"profile-{self.region}", "locale": self.locale}
        headers = {"Authorization": f"Bearer {self.token}"}
        last_error = "no attempts made"

        for attempt in range(self.settings.max_attempts):
            self.rate_limiter.sleep()
            with self._stats_lock:
                self.requests_sent += 1

            try:
                resp = self.session.get(
                    url, params=params, headers=headers, timeout=self.settings.timeout_seconds,
                )
            except requests.RequestException as exc:
                last_error = f"transport error: {exc}"
                if self.rate_limiter.on_failure("transport"):
                    raise BattleNetError(f"safe stop after repeated failures: {last_error}") from exc
                continue

            if resp.status_code in (401, 403):
                raise AuthenticationError(
                    f"{resp.status_code} from {path}", status_code=resp.status_code,
                )

            if resp.status_code == 429 or resp.status_code >= 500:
                with self._stats_lock:
                    self.rate_limit_hits += 1
                last_error = f"HTTP {resp.status_code}"
                if self.rate_limiter.on_failure(str(resp.status_code)):
                    raise BattleNetError(
                        f"safe stop after repeated failures: {last_error}",
                        status_code=resp.status_code,
                    )
                log.debug("retrying %s after %s (attempt %d)", path, last_error, attempt + 1)
                continue

            if resp.status_code != 200:
                raise BattleNetError(f"HTTP {resp.status_code} from {path}", status_code=resp.status_code)

            self.rate_limiter.on_success()
            return resp

        raise BattleNetError(f"retries exhausted for {path}: {last_error}")

    def _get_json(self, path: str) -> dict[str, Any]:
        resp = self._get(path)
        try:
            data = resp.json()
        except ValueError as exc:
            raise BattleNetError(f"invalid JSON from {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise BattleNetError(f"unexpected payload type from {path}: {type(data).__name__}")
        return data

    def _character_path(self, realm: str, name: str, suffix: str = "") -> str:
        return f"profile/wow/character/{realm_slug(realm)}/{character_slug(name)}{suffix}"

    # ------------------------------------------------------------------ #
    # Endpoints                                                            #
    # ------------------------------------------------------------------ #

    def fetch_roster(self, realm: str, guild_name: str) -> dict[str, Any]:
        return self._get_json(f"data/wow/guild/{realm_slug(realm)}/{realm_slug(guild_name)}/roster")

    def fetch_character_profile(self, realm: str, name: str) -> dict[str, Any]:
        """Character summary.  The Last-Modified header is copied to
        ``last_modified`` so activity gating has a timestamp to work with."""
        resp = self._get(self._character_path(realm, name))
        try:
            data = resp.json()
        except ValueError as exc:
            raise BattleNetError(f"invalid JSON from profile {name}: {exc}") from exc
        if not isinstance(data, dict):
            raise BattleNetError(f"unexpected profile payload for {name}")
        last_modified = resp.headers.get("Last-Modified")
        if last_modified and "last_modified" not in data:
            data["last_modified"] = last_modified
        return data

    def fetch_equipment(self, realm: str, name: str) -> dict[str, Any]:
        return self._get_json(self._character_path(realm, name, "/equipment"))

    def fetch_raid_progress(self, realm: str, name: str) -> dict[str, Any]:
        return self._get_json(self._character_path(realm, name, "/encounters/raids"))

    def fetch_mythic_progress(self, realm: str, name: str) -> dict[str, Any]:
        return self._get_json(self._character_path(realm, name, "/mythic-keystone-profile"))

    def fetch_pvp_summary(self, realm: str, name: str) -> dict[str, Any]:
        return self._get_json(self._character_path(realm, name, "/pvp-summary"))

    def fetch_pvp_bracket(self, realm: str, name: str, bracket: str) -> dict[str, Any]:
        return self._get_json(self._character_path(realm, name, f"/pvp-bracket/{bracket}"))

    def fetch_media(self, realm: str, name: str) -> dict[str, Any]:
        return self._get_json(self._character_path(realm, name, "/character-media"))
