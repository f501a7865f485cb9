"""
Owns the authenticated session for a run and sends every API request.

There is exactly one valid ``Session`` at a time. When calls start answering
401 the manager logs in again, but only once per stale session: each session
carries a generation number, and a caller that observed a 401 on generation
``n`` only triggers a re-login if the current session is still generation
``n`` once it holds the re-auth lock. Everyone else simply picks up the new
session.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional
from urllib.parse import urljoin

from lumisync.exceptions import AuthError, LumiSyncError, NetworkError, SessionExpiredError
from lumisync.models.config import Credentials

from .auth import (
    API_BASE_URL,
    OCP_APIM_SUBSCRIPTION_KEY,
    OCP_APIM_SUBSCRIPTION_KEY_HEADER,
    Authenticated,
    LoginFlow,
)
from .rate_limiter import AdaptiveRateLimiter
from .transport import AiohttpTransport, HttpResponse, Transport

log = logging.getLogger(__name__)

# Refresh a little before the advertised expiry
EXPIRY_MARGIN = 60.0


@dataclass(frozen=True)
class Session:
    token: str = field(repr=False)
    obtained_at: float
    expires_at: Optional[float] = None
    generation: int = 1

    def is_valid(self, now: Optional[float] = None) -> bool:
        if self.expires_at is None:
            return True
        now = time.monotonic() if now is None else now
        return now < self.expires_at


class SessionManager:
    """
    Logs in, keeps the session alive and performs authorised requests with
    retries, rate limiting and a single transparent re-login on expiry.

    Args:
        credentials: Kept for the lifetime of the manager so an expired session
            can be re-established without asking the user again.
        transport: HTTP layer; defaults to an aiohttp backed one.
        flow_factory: Builds the ``LoginFlow`` used for each login attempt.
    """

    def __init__(
        self,
        credentials: Optional[Credentials] = None,
        *,
        transport: Optional[Transport] = None,
        rate_limiter: Optional[AdaptiveRateLimiter] = None,
        flow_factory: Optional[Callable[[Transport], LoginFlow]] = None,
        base_url: str = API_BASE_URL,
        max_attempts: int = 3,
        base_delay: float = 1.5,
    ):
        self._credentials = credentials
        self._transport: Transport = transport or AiohttpTransport()
        self._rate_limiter = rate_limiter or AdaptiveRateLimiter()
        self._flow_factory = flow_factory or LoginFlow
        self._base_url = base_url
        self.max_attempts = max_attempts
        self.base_delay = base_delay

        self._session: Optional[Session] = None
        self._auth_lock = asyncio.Lock()
        self.login_count = 0

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def transport(self) -> Transport:
        return self._transport

    async def __aenter__(self) -> "SessionManager":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        self._session = None
        await self._transport.close()

    async def login(self, credentials: Optional[Credentials] = None) -> Session:
        """
        Runs the full login sequence and installs the resulting session.

        Raises:
            AuthError: The identity provider refused or the flow diverged.
            NetworkError: The identity provider could not be reached.
        """
        if credentials is not None:
            self._credentials = credentials
        async with self._auth_lock:
            return await self._login_locked()

    async def _login_locked(self) -> Session:
        if self._credentials is None:
            raise AuthError("No credentials available to log in")

        authenticated = await self._run_login_flow(self._credentials)
        now = time.monotonic()
        expires_at = None
        if authenticated.expires_in:
            # short-lived tokens keep at least half their lifetime
            margin = min(EXPIRY_MARGIN, authenticated.expires_in / 2)
            expires_at = now + authenticated.expires_in - margin

        generation = self._session.generation + 1 if self._session else 1
        self._session = Session(
            token=authenticated.token,
            obtained_at=now,
            expires_at=expires_at,
            generation=generation,
        )
        self.login_count += 1
        log.info(f"Logged in (session generation {generation})")
        return self._session

    async def _run_login_flow(self, credentials: Credentials) -> Authenticated:
        last_error: Optional[NetworkError] = None
        for attempt in range(1, self.max_attempts + 1):
            flow = self._flow_factory(self._transport)
            try:
                return await flow.run(credentials)
            except NetworkError as e:
                last_error = e
                log.debug(f"Login attempt {attempt}/{self.max_attempts} failed: {e}")
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.base_delay * (2 ** (attempt - 1)))
        raise NetworkError(
            f"Login failed after {self.max_attempts} attempts: {last_error}"
        ) from last_error

    async def _current_session(self) -> Session:
        session = self._session
        if session is None:
            async with self._auth_lock:
                if self._session is None:
                    return await self._login_locked()
                return self._session
        if not session.is_valid():
            log.debug("Session past its expiry, refreshing before the call")
            return await self._refresh(session.generation)
        return session

    async def _refresh(self, stale_generation: int) -> Session:
        """Re-authenticates unless another caller already replaced the stale session."""
        async with self._auth_lock:
            current = self._session
            if current is not None and current.generation != stale_generation:
                return current
            log.info("Session expired, logging in again")
            return await self._login_locked()

    async def authorized_request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, str]] = None,
        form: Optional[Mapping[str, str]] = None,
    ) -> HttpResponse:
        """
        Sends an authenticated request to ``<base_url>/<path>``.

        A 401 triggers one re-login and one retry; a second 401 raises
        ``SessionExpiredError``.
        """
        session = await self._current_session()
        response = await self._send(session, method, path, params, form)
        if response.status != 401:
            return response

        session = await self._refresh(session.generation)
        response = await self._send(session, method, path, params, form)
        if response.status == 401:
            raise SessionExpiredError(
                f"Still unauthorised after logging in again ({path})"
            )
        return response

    async def _send(
        self,
        session: Session,
        method: str,
        path: str,
        params: Optional[Mapping[str, str]],
        form: Optional[Mapping[str, str]],
    ) -> HttpResponse:
        url = urljoin(self._base_url, path)
        headers = {
            "Authorization": f"Bearer {session.token}",
            OCP_APIM_SUBSCRIPTION_KEY_HEADER: OCP_APIM_SUBSCRIPTION_KEY,
        }

        last_error: Optional[LumiSyncError] = None
        for attempt in range(1, self.max_attempts + 1):
            await self._rate_limiter.acquire()
            start_time = time.monotonic()
            try:
                response = await self._transport.request(
                    method, url, params=params, data=form, headers=headers
                )
            except NetworkError as e:
                last_error = e
            else:
                duration_ms = (time.monotonic() - start_time) * 1000
                log.debug(
                    f"{method} {path} -> HTTP {response.status} ({duration_ms:.0f} ms)"
                )
                if response.status == 429:
                    await self._rate_limiter.on_429(_retry_after(response))
                    last_error = NetworkError(f"Rate limited on {path}")
                elif response.status >= 500:
                    last_error = NetworkError(
                        f"Server error HTTP {response.status} on {path}"
                    )
                else:
                    return response

            log.debug(f"Attempt {attempt}/{self.max_attempts} for {path} failed: {last_error}")
            if attempt < self.max_attempts:
                await asyncio.sleep(self.base_delay * (2 ** (attempt - 1)))

        raise NetworkError(
            f"{method} {path} failed after {self.max_attempts} attempts: {last_error}"
        ) from last_error


def _retry_after(response: HttpResponse) -> Optional[float]:
    value = response.headers.get("Retry-After") or response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None
