"""Exception hierarchy for the auth client.

Backend error responses are mapped to typed exceptions by HTTP status in
``map_error_response``. Local failures (device identity, token refresh,
input validation, payload decoding) derive from ``AuthError`` directly.
"""

from typing import Mapping, Optional

DEFAULT_RETRY_AFTER_SECONDS = 60


class AuthError(Exception):
    """Base exception for all auth client errors."""

    pass


class AuthAPIError(AuthError):
    """Base exception for backend error responses.

    Attributes:
        error_code: Machine-readable error code (SCREAMING_SNAKE_CASE)
        message: Human-readable error description
        status_code: HTTP status code
    """

    def __init__(self, error_code: str, message: str, status_code: int):
        self.error_code = error_code
        self.message = message
        self.status_code = status_code
        super().__init__(f'[{error_code}] {message}')


class InvalidCredential(AuthAPIError):
    """OTP or MPIN was rejected. Recoverable: clear the input and retry."""

    pass


class Unauthorized(AuthAPIError):
    """Authenticated request rejected with 401 and the session could not be renewed."""

    pass


class DeviceTrustRejected(AuthAPIError):
    """Backend rejected the device fingerprint (403). Never retried."""

    pass


class ResourceConflict(AuthAPIError):
    """Resource already exists (409)."""

    pass


class RateLimited(AuthAPIError):
    """Too many requests (429). Retry is blocked until the wait elapses.

    Attributes:
        retry_after_seconds: Server-supplied wait before the next attempt
    """

    def __init__(self, error_code: str, message: str, status_code: int, retry_after_seconds: int):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(error_code, message, status_code)


class ServerError(AuthAPIError):
    """Backend failure (5xx). Not retried by the transport."""

    pass


class PairingRejected(AuthAPIError):
    """Backend declined the web session pairing (expired or invalid session)."""

    pass


class IdentityUnavailable(AuthError):
    """Device identity could not be read or created. Fatal for authenticated calls."""

    pass


class NoRefreshToken(AuthError):
    """No refresh token is stored; a full login is required."""

    pass


class RefreshRejected(AuthError):
    """Backend rejected the refresh token. Session tokens have been cleared."""

    pass


class MalformedPayload(AuthError):
    """Scanned pairing payload could not be decoded or parsed."""

    pass


class ResendNotAllowed(AuthError):
    """An OTP was requested again before the resend cooldown elapsed."""

    def __init__(self, seconds_remaining: float):
        self.seconds_remaining = seconds_remaining
        super().__init__(f'Resend not yet allowed. Retry in {int(seconds_remaining + 0.999)} seconds.')


class InvalidInput(AuthError):
    """Local validation failed (digit length, MPIN confirmation, phone number)."""

    pass


class FlowStateError(AuthError):
    """Operation is not valid in the current login flow state."""

    pass


class TransportFailure(AuthError):
    """Network error or request timeout before a response was received."""

    pass


class StorageError(AuthError):
    """Key-value store backend failed."""

    pass


def parse_retry_after(error_data: Mapping, headers: Optional[Mapping[str, str]] = None) -> int:
    """Resolve the wait duration from a response body or ``Retry-After`` header."""
    candidates = [error_data.get('retry_after')]
    data = error_data.get('data')
    if isinstance(data, Mapping):
        candidates.append(data.get('retry_after'))
    if headers is not None:
        candidates.append(headers.get('retry-after'))

    for value in candidates:
        if value is None:
            continue
        try:
            return max(0, int(float(value)))
        except (TypeError, ValueError):
            continue
    return DEFAULT_RETRY_AFTER_SECONDS


def map_error_response(
    status_code: int,
    error_data: Mapping,
    headers: Optional[Mapping[str, str]] = None,
    authenticated: bool = True,
) -> AuthAPIError:
    """Map an API error response to a typed exception.

    Args:
        status_code: HTTP status code
        error_data: Error response JSON (``message`` / ``error_code`` / ``retry_after``)
        headers: Response headers, consulted for ``Retry-After``
        authenticated: Whether the request carried a session. Credential errors on
            unauthenticated login calls map to ``InvalidCredential``.

    Returns:
        Appropriate AuthAPIError subclass instance

    Example:
        >>> exc = map_error_response(429, {'message': 'Slow down', 'retry_after': 30})
        >>> isinstance(exc, RateLimited), exc.retry_after_seconds
        (True, 30)
    """
    message = error_data.get('message') or error_data.get('error_message') or 'Unknown error'

    if status_code == 429:
        return RateLimited(
            error_data.get('error_code', 'RATE_LIMITED'),
            message,
            status_code,
            parse_retry_after(error_data, headers),
        )

    if status_code >= 500:
        return ServerError(error_data.get('error_code', 'SERVER_ERROR'), message, status_code)

    status_mapping = {
        403: (DeviceTrustRejected, 'DEVICE_TRUST_REJECTED'),
        409: (ResourceConflict, 'RESOURCE_CONFLICT'),
    }
    if not authenticated:
        status_mapping.update(
            {
                400: (InvalidCredential, 'INVALID_CREDENTIAL'),
                401: (InvalidCredential, 'INVALID_CREDENTIAL'),
                422: (InvalidCredential, 'INVALID_CREDENTIAL'),
            }
        )
    else:
        status_mapping[401] = (Unauthorized, 'UNAUTHORIZED')

    error_class, default_code = status_mapping.get(status_code, (AuthAPIError, 'UNKNOWN'))
    return error_class(error_data.get('error_code', default_code), message, status_code)
