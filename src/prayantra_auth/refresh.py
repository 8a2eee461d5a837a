"""Token refresh coordination.

A single coordinator object owns the access/refresh token lifecycle for the
process. Refresh tokens are single-use, so every concurrent refresh trigger
(timer tick, 401 retries from several requests) must collapse into one
network call whose outcome all callers share.
"""

import asyncio
import logging
from enum import Enum
from typing import Optional

import httpx

from .config import AuthConfig
from .device import DeviceIdentityManager
from .endpoints import UserRole, endpoints_for
from .errors import AuthError, NoRefreshToken, RefreshRejected, TransportFailure, map_error_response
from .models import RefreshData, SessionTokens, parse_data, parse_envelope
from .session import SessionStore


class RefreshState(str, Enum):
    IDLE = 'idle'
    REFRESHING = 'refreshing'
    DEGRADED = 'degraded'


class TokenRefreshCoordinator:
    """
    Serializes token refreshes and renews the access token in the background.

    State machine: ``IDLE -> REFRESHING -> IDLE`` on success, or
    ``IDLE -> REFRESHING -> DEGRADED`` when the backend rejects the refresh
    token. Degraded sessions keep their Credential Identity so the caller can
    send the user to MPIN entry instead of phone login.

    The network exchange runs in its own task. Callers await it through
    ``asyncio.shield``, so cancelling a caller never abandons a refresh the
    server has already consumed the token for.

    Example:
        >>> coordinator = TokenRefreshCoordinator(http, session, identity, config)
        >>> coordinator.start_background_timer()
        >>> tokens = await coordinator.refresh_tokens()
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        session: SessionStore,
        identity: DeviceIdentityManager,
        config: AuthConfig,
    ):
        self._http = http
        self.session = session
        self.identity = identity
        self.config = config
        self.logger = logging.getLogger(__name__)

        self.state = RefreshState.IDLE
        self.refresh_count = 0
        self._refresh_task: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.Task] = None
        # Bumped when a session ends; refreshes started under an older epoch are not persisted
        self._epoch = 0
        self._persist_lock = asyncio.Lock()

    @property
    def is_refreshing(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    @property
    def timer_running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    async def refresh_tokens(self) -> SessionTokens:
        """
        Exchange the stored refresh token for a new token pair.

        If a refresh is already in flight, waits for that refresh and returns
        its result (or raises its error) instead of issuing another call.

        Returns:
            The new, already persisted token pair

        Raises:
            NoRefreshToken: If no refresh token is stored (no network call made),
                or the session was ended while the refresh was in flight
            RefreshRejected: If the backend rejected the refresh token
            IdentityUnavailable: If the device identity cannot be loaded
            TransportFailure: On network error or timeout
            AuthAPIError: On any other backend error
        """
        if self.is_refreshing:
            self.logger.debug('Refresh in flight, waiting for its result')
        else:
            self._refresh_task = asyncio.get_running_loop().create_task(self._run_refresh())
            self._refresh_task.add_done_callback(self._refresh_done)
        return await asyncio.shield(self._refresh_task)

    async def _run_refresh(self) -> SessionTokens:
        self.state = RefreshState.REFRESHING
        try:
            return await self._refresh_once()
        finally:
            if self.state == RefreshState.REFRESHING:
                self.state = RefreshState.IDLE

    def _refresh_done(self, task: asyncio.Task) -> None:
        # Consume the outcome so a refresh whose callers were all cancelled is not reported as unretrieved
        if not task.cancelled() and task.exception() is not None:
            self.logger.debug(f'Token refresh finished with error: {task.exception()}')

    async def _refresh_once(self) -> SessionTokens:
        epoch = self._epoch
        refresh_token = await self.session.get_refresh_token()
        if not refresh_token:
            raise NoRefreshToken('No refresh token available')

        identity = await self.identity.get_cached_identity()
        credentials = await self.session.load_credentials()
        role = credentials.role if credentials else UserRole.ADMIN

        self.logger.info(f'Refreshing tokens for device {identity.short_id}')
        self.refresh_count += 1
        try:
            response = await self._http.post(
                endpoints_for(role).refresh,
                json={
                    'refresh_token': refresh_token,
                    'device_fingerprint': identity.fingerprint,
                    'user_agent': identity.user_agent,
                },
                headers=identity.headers(),
            )
        except httpx.HTTPError as e:
            raise TransportFailure(f'Token refresh request failed: {e}') from e

        if response.status_code in (400, 401):
            await self._degrade(epoch)
            raise RefreshRejected(f'Refresh token rejected (status: {response.status_code})')

        if response.status_code >= 400:
            try:
                error_data = response.json()
            except ValueError:
                error_data = {}
            raise map_error_response(response.status_code, error_data if isinstance(error_data, dict) else {}, response.headers)

        envelope = parse_envelope(response)
        if not envelope.success or 'tokens' not in envelope.data:
            await self._degrade(epoch)
            raise RefreshRejected(envelope.message or 'Refresh response did not include tokens')

        tokens = parse_data(RefreshData, envelope.data, response.status_code).tokens
        if 'expires_in' not in tokens.model_fields_set:
            tokens = tokens.model_copy(update={'expires_in': int(self.config.access_token_lifetime)})

        # Persist before any caller sees the result
        async with self._persist_lock:
            if epoch != self._epoch:
                self.logger.warning('Session ended during token refresh, discarding new tokens')
                raise NoRefreshToken('Session ended during token refresh')
            tokens = await self.session.save_tokens(tokens)
        self.logger.info('Token refresh successful, new tokens stored')
        return tokens

    async def _degrade(self, epoch: int) -> None:
        async with self._persist_lock:
            if epoch != self._epoch:
                return
            self.logger.warning('Refresh token rejected, clearing session tokens')
            await self.session.clear_tokens()
            self.state = RefreshState.DEGRADED

    async def end_session(self) -> None:
        """
        Clear the session tokens so no refresh can bring them back.

        A refresh still in flight finishes its network call but its tokens
        are discarded.
        """
        async with self._persist_lock:
            self._epoch += 1
            await self.session.clear_tokens()

    def start_background_timer(self) -> None:
        """
        Start renewing the access token every ``refresh_interval`` seconds.

        Idempotent: an existing timer is cancelled first. Must be called from
        within a running event loop.
        """
        self.stop_background_timer()
        if self.state == RefreshState.DEGRADED:
            self.state = RefreshState.IDLE
        self._timer = asyncio.get_running_loop().create_task(self._run_timer())
        self.logger.info(f'Background token refresh started (every {self.config.refresh_interval}s)')

    def stop_background_timer(self) -> None:
        """Cancel the background timer. Safe to call when no timer runs."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
            self.logger.info('Background token refresh stopped')

    async def shutdown(self) -> None:
        """Stop the timer and wait until it and any in-flight refresh have exited."""
        timer = self._timer
        self.stop_background_timer()
        if timer is not None:
            try:
                await timer
            except asyncio.CancelledError:
                pass
        if self._refresh_task is not None:
            # Outcome is consumed by _refresh_done
            await asyncio.wait({self._refresh_task})

    async def _run_timer(self) -> None:
        while True:
            await asyncio.sleep(self.config.refresh_interval)

            if not await self.session.get_refresh_token():
                self.logger.debug('No refresh token stored, skipping background refresh')
                continue

            try:
                await self.refresh_tokens()
            except (RefreshRejected, NoRefreshToken):
                self.logger.warning('Session degraded, background refresh stopping')
                self._timer = None
                return
            except AuthError as e:
                self.logger.error(f'Background token refresh failed: {e}')
            except Exception as e:
                self.logger.error(f'Unexpected error in background token refresh: {e}')
