"""Async HTTP transport that attaches device identity and session headers.

Every outbound call flows through ``AuthTransport.request``. Authenticated
requests that come back 401 trigger a token refresh through the shared
``TokenRefreshCoordinator`` and are re-issued once with the new token.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional

import httpx

from .device import DeviceIdentity, DeviceIdentityManager
from .errors import AuthAPIError, AuthError, TransportFailure, map_error_response
from .models import ApiEnvelope, parse_envelope
from .refresh import TokenRefreshCoordinator
from .session import SessionStore

logger = logging.getLogger(__name__)

# Original send plus one retry after a refresh
MAX_ATTEMPTS = 2


@dataclass(frozen=True)
class RequestAttempt:
    """One attempt at an outbound request, carried through the 401 handling path."""

    method: str
    path: str
    json: Optional[Dict[str, Any]] = None
    params: Optional[Dict[str, Any]] = None
    authenticated: bool = True
    attempt: int = 1
    sent_token: Optional[str] = field(default=None, compare=False)

    @property
    def retryable(self) -> bool:
        return self.authenticated and self.attempt < MAX_ATTEMPTS

    def next_attempt(self) -> 'RequestAttempt':
        return replace(self, attempt=self.attempt + 1, sent_token=None)


class AuthTransport:
    """
    Shared HTTP transport for all auth flows.

    Args:
        http: Configured ``httpx.AsyncClient`` (base URL and global timeout)
        identity: Device identity manager for the identity headers
        session: Session store holding the bearer token
        coordinator: Refresh coordinator shared with the background timer
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        identity: DeviceIdentityManager,
        session: SessionStore,
        coordinator: TokenRefreshCoordinator,
    ):
        self._http = http
        self.identity = identity
        self.session = session
        self.coordinator = coordinator

    async def request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        authenticated: bool = True,
    ) -> httpx.Response:
        """Make an HTTP request with identity headers and 401 recovery.

        Args:
            method: HTTP method (GET, POST, ...)
            path: API endpoint path (e.g., '/auth/validate')
            json: Optional JSON request body
            params: Optional query parameters
            authenticated: Attach the bearer token and refresh on 401. Login
                calls pass False: their 401s mean a wrong OTP/MPIN.

        Returns:
            Successful (2xx/3xx) HTTP response

        Raises:
            IdentityUnavailable: If no device identity can be attached
            TransportFailure: On network error or timeout
            AuthAPIError: Typed error for any 4xx/5xx response
        """
        attempt = RequestAttempt(method.upper(), path, json=json, params=params, authenticated=authenticated)

        while True:
            attempt, response = await self._send(attempt)

            if response.status_code == 401 and attempt.retryable:
                if await self._recover_from_401(attempt):
                    attempt = attempt.next_attempt()
                    continue

            if response.status_code >= 400:
                raise self._error_for(response, attempt)

            return response

    async def call(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        authenticated: bool = True,
    ) -> ApiEnvelope:
        """Like ``request`` but returns the parsed response envelope."""
        response = await self.request(method, path, json=json, params=params, authenticated=authenticated)
        return parse_envelope(response)

    async def device_identity(self) -> DeviceIdentity:
        return await self.identity.get_cached_identity()

    async def _send(self, attempt: RequestAttempt):
        identity = await self.identity.get_cached_identity()
        headers = identity.headers()

        token = None
        if attempt.authenticated:
            token = await self.session.get_access_token()
            if token:
                headers['Authorization'] = f'Bearer {token}'
        attempt = replace(attempt, sent_token=token)

        logger.debug(f'{attempt.method} {attempt.path} (attempt {attempt.attempt}, device {identity.short_id})')
        try:
            response = await self._http.request(
                attempt.method, attempt.path, json=attempt.json, params=attempt.params, headers=headers
            )
        except httpx.TimeoutException as e:
            raise TransportFailure(f'Request timed out: {attempt.method} {attempt.path}') from e
        except httpx.HTTPError as e:
            raise TransportFailure(f'Request failed: {attempt.method} {attempt.path}: {e}') from e

        logger.debug(f'{response.status_code} {attempt.method} {attempt.path}')
        return attempt, response

    async def _recover_from_401(self, attempt: RequestAttempt) -> bool:
        """Renew the session after a 401. Returns True when the request should be re-issued."""
        # Another request already refreshed since this one was sent
        current = await self.session.get_access_token()
        if current and attempt.sent_token and current != attempt.sent_token and not self.coordinator.is_refreshing:
            return True

        try:
            await self.coordinator.refresh_tokens()
        except AuthError as e:
            logger.warning(f'Token refresh after 401 failed for {attempt.method} {attempt.path}: {e}')
            return False
        return True

    def _error_for(self, response: httpx.Response, attempt: RequestAttempt) -> AuthAPIError:
        try:
            error_data = response.json()
        except ValueError:
            error_data = {}
        if not isinstance(error_data, dict):
            error_data = {}

        error = map_error_response(response.status_code, error_data, response.headers, attempt.authenticated)
        logger.info(f'{attempt.method} {attempt.path} failed: {error}')
        return error
