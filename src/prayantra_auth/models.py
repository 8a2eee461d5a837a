"""Data models for the auth backend payloads and persisted session records.

Response models ignore unknown fields so the client keeps working when the
backend adds attributes.
"""

import time
from typing import Any, Dict, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .endpoints import UserRole
from .errors import AuthAPIError

ModelT = TypeVar('ModelT', bound=BaseModel)


class ApiEnvelope(BaseModel):
    """Common ``{success, data, message}`` wrapper around every response body."""

    model_config = ConfigDict(extra='ignore')

    success: bool = Field(True, description='Whether the backend accepted the request')
    data: Dict[str, Any] = Field(default_factory=dict, description='Endpoint-specific payload')
    message: Optional[str] = Field(None, description='Human-readable status message')
    retry_after: Optional[int] = Field(None, description='Cooldown in seconds, sent on throttled requests')

    @field_validator('data', mode='before')
    @classmethod
    def _null_data(cls, value):
        return {} if value is None else value


class SessionTokens(BaseModel):
    """Access/refresh token pair issued on MPIN verification or refresh."""

    model_config = ConfigDict(extra='ignore')

    access_token: str = Field(..., description='Bearer token attached to authenticated requests')
    refresh_token: str = Field(..., description='Single-use token for renewing the access token')
    expires_in: int = Field(300, description='Seconds until the access token expires')
    token_type: str = Field('Bearer', description='Authorization scheme')
    expires_at: Optional[float] = Field(None, description='Epoch seconds when the access token expires')

    def with_expiry(self, now: Optional[float] = None) -> 'SessionTokens':
        """Return a copy with ``expires_at`` computed from ``expires_in``."""
        now = time.time() if now is None else now
        return self.model_copy(update={'expires_at': now + self.expires_in})

    def expires_within(self, seconds: float, now: Optional[float] = None) -> bool:
        """Check whether the access token expires within ``seconds``.

        Tokens without a known expiry are treated as expiring.
        """
        if self.expires_at is None:
            return True
        now = time.time() if now is None else now
        return self.expires_at - now <= seconds


class CredentialIdentity(BaseModel):
    """Role-scoped account identity that lets a later launch skip phone entry."""

    role: UserRole
    subject_id: str = Field(..., description='admin_id or user_id, depending on role')
    phone_number: str = Field(..., description='National phone number without country code')
    country_code: str = Field('+91', description='Opaque dial prefix')

    @property
    def full_phone_number(self) -> str:
        return f'{self.country_code}{self.phone_number}'


class LoginInitiateData(BaseModel):
    model_config = ConfigDict(extra='ignore')

    user_exists: bool = False
    has_mpin: bool = False
    mpin_locked: bool = False
    device_trusted: bool = False
    flow_state: Optional[str] = None
    message: Optional[str] = None
    user_id: Optional[str] = None
    admin_id: Optional[str] = None


class VerifyOtpData(BaseModel):
    model_config = ConfigDict(extra='ignore')

    admin_id: Optional[str] = None
    user_id: Optional[str] = None
    device_trusted: bool = False
    has_mpin: bool = False
    mpin_locked: bool = False
    next_step: Optional[str] = None
    message: Optional[str] = None

    def subject_id(self, role: UserRole) -> Optional[str]:
        if role == UserRole.ADMIN:
            return self.admin_id or self.user_id
        return self.user_id


class VerifyMpinData(BaseModel):
    model_config = ConfigDict(extra='ignore')

    tokens: SessionTokens
    company_context: Optional[Dict[str, Any]] = None
    admin: Optional[Dict[str, Any]] = None
    user: Optional[Dict[str, Any]] = None
    user_id: Optional[str] = None
    message: Optional[str] = None

    @property
    def context(self) -> Dict[str, Any]:
        """Role-specific context payload handed back to the caller."""
        context = {}
        if self.company_context is not None:
            context['company_context'] = self.company_context
        if self.admin is not None:
            context['admin'] = self.admin
        if self.user is not None:
            context['user'] = self.user
        return context


class RefreshData(BaseModel):
    model_config = ConfigDict(extra='ignore')

    tokens: SessionTokens


class ForgotMpinData(BaseModel):
    model_config = ConfigDict(extra='ignore')

    retry_after: Optional[int] = None
    admin_id: Optional[str] = None
    user_id: Optional[str] = None
    message: Optional[str] = None


class PairingPayload(BaseModel):
    """Decoded web-session QR payload."""

    session_id: str = Field(..., description='Web session to bind to this mobile identity')
    raw_payload: str = Field(..., description='Scanned string as received, forwarded as the signature')
    data: Dict[str, Any] = Field(default_factory=dict, description='Full decoded payload')


def parse_envelope(response: httpx.Response) -> ApiEnvelope:
    """Parse a JSON response body into the common envelope.

    Raises:
        AuthAPIError: If the body is not a JSON object
    """
    try:
        body = response.json()
    except ValueError as e:
        raise AuthAPIError('INVALID_RESPONSE', f'Response is not JSON: {e}', response.status_code) from e
    if not isinstance(body, dict):
        raise AuthAPIError('INVALID_RESPONSE', 'Response body is not a JSON object', response.status_code)
    return parse_data(ApiEnvelope, body, response.status_code)


def parse_data(model: Type[ModelT], data: Dict[str, Any], status_code: int = 200) -> ModelT:
    """Validate an envelope's ``data`` payload against ``model``.

    Raises:
        AuthAPIError: If the payload does not match the model
    """
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise AuthAPIError(
            'INVALID_RESPONSE', f'Unexpected {model.__name__} payload: {e.error_count()} invalid field(s)', status_code
        ) from e
