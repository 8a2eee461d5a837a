"""Login flow state machine.

Drives phone entry -> device trust check -> (OTP | MPIN) -> MPIN setup or
verify -> authenticated, for administrators and standard users, plus the
forgot-MPIN sub-flow. Every transition returns a ``FlowResult`` that the UI
maps to a navigation action; the flow itself knows nothing about screens.

Async transitions remember the flow generation they started in. If the user
navigates to another state while a call is in flight, the late result is
discarded instead of being applied to the wrong state.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

from .config import AuthConfig
from .digits import MPIN_LENGTH, OTP_LENGTH, DigitInput
from .endpoints import SEND_OTP, VALIDATE_SESSION, UserRole, endpoints_for
from .errors import (
    AuthAPIError,
    AuthError,
    FlowStateError,
    InvalidCredential,
    InvalidInput,
    RateLimited,
    ResendNotAllowed,
)
from .models import (
    CredentialIdentity,
    ForgotMpinData,
    LoginInitiateData,
    VerifyMpinData,
    VerifyOtpData,
    parse_data,
)
from .refresh import TokenRefreshCoordinator
from .session import SessionStore
from .transport import AuthTransport

logger = logging.getLogger(__name__)

MIN_PHONE_DIGITS = 7
MAX_PHONE_DIGITS = 15
MPIN_RESET_PURPOSE = 'mpin_reset'


class FlowState(str, Enum):
    PHONE_ENTRY = 'phone_entry'
    OTP = 'otp'
    MPIN_ENTRY = 'mpin_entry'
    MPIN_SETUP = 'mpin_setup'
    AUTHENTICATED = 'authenticated'


class ForgotMpinState(str, Enum):
    INITIATE = 'initiate'
    AWAITING_OTP_AND_NEW_MPIN = 'awaiting_otp_and_new_mpin'
    RESET = 'reset'


@dataclass
class FlowResult:
    """Outcome of a flow transition.

    ``applied`` is False when the result arrived after the user had already
    moved to a different state and was discarded.
    """

    state: Union[FlowState, ForgotMpinState]
    applied: bool = True
    message: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)


class ResendGate:
    """
    Tracks OTP sends and decides whether another send is allowed.

    "Can resend" is a pure function of the time elapsed since the last send
    for a key, extended by any server-imposed cooldown.
    """

    def __init__(self, cooldown: float = 30.0, clock: Callable[[], float] = time.monotonic):
        self.cooldown = cooldown
        self._clock = clock
        self._sent_at: Dict[str, float] = {}
        self._blocked_until: Dict[str, float] = {}

    def seconds_remaining(self, key: str) -> float:
        now = self._clock()
        remaining = 0.0
        if key in self._sent_at:
            remaining = max(remaining, self._sent_at[key] + self.cooldown - now)
        if key in self._blocked_until:
            remaining = max(remaining, self._blocked_until[key] - now)
        return remaining

    def can_resend(self, key: str) -> bool:
        return self.seconds_remaining(key) <= 0

    def check(self, key: str) -> None:
        """Raise ``ResendNotAllowed`` while the cooldown for ``key`` is running."""
        remaining = self.seconds_remaining(key)
        if remaining > 0:
            raise ResendNotAllowed(remaining)

    def record_send(self, key: str) -> None:
        self._sent_at[key] = self._clock()

    def block_for(self, key: str, seconds: float) -> None:
        self._blocked_until[key] = self._clock() + seconds


def _otp_key(purpose: str, phone_number: str) -> str:
    return f'{purpose}:{phone_number}'


def _require_digits(value: str, length: int, label: str) -> str:
    if len(value) != length or not value.isdigit():
        raise InvalidInput(f'{label} must be exactly {length} digits')
    return value


class LoginFlow:
    """
    Multi-step login state machine for one user class.

    Example:
        >>> flow = LoginFlow(transport, session, coordinator, role=UserRole.ADMIN)
        >>> result = await flow.submit_phone('9876543210', '+91')
        >>> if result.state == FlowState.OTP:
        ...     result = await flow.verify_otp('123456')
    """

    def __init__(
        self,
        transport: AuthTransport,
        session: SessionStore,
        coordinator: TokenRefreshCoordinator,
        role: UserRole = UserRole.ADMIN,
        config: Optional[AuthConfig] = None,
        resend_gate: Optional[ResendGate] = None,
    ):
        self.transport = transport
        self.session = session
        self.coordinator = coordinator
        self.role = UserRole(role)
        self.config = config or AuthConfig()
        self.resend_gate = resend_gate or ResendGate(self.config.otp_resend_cooldown)

        self.state = FlowState.PHONE_ENTRY
        self.phone_number: Optional[str] = None
        self.country_code: str = self.config.default_country_code
        self.otp_input = DigitInput(OTP_LENGTH)
        self.mpin_input = DigitInput(MPIN_LENGTH)
        self.confirm_input = DigitInput(MPIN_LENGTH)
        self._generation = 0

    @property
    def endpoints(self):
        return endpoints_for(self.role)

    @property
    def full_phone_number(self) -> Optional[str]:
        if not self.phone_number:
            return None
        return f'{self.country_code}{self.phone_number}'

    def _enter(self, state: FlowState) -> None:
        if state != self.state:
            logger.info(f'Login flow ({self.role.value}): {self.state.value} -> {state.value}')
        self.state = state
        self._generation += 1

    def _require(self, *states: FlowState) -> int:
        if self.state not in states:
            expected = ', '.join(s.value for s in states)
            raise FlowStateError(f'Operation requires state {expected}, flow is in {self.state.value}')
        return self._generation

    def _is_stale(self, generation: int) -> bool:
        return generation != self._generation

    def _discard(self, operation: str) -> FlowResult:
        logger.warning(f'Discarding {operation} result: flow moved on to {self.state.value}')
        return FlowResult(self.state, applied=False)

    def go_to(self, state: FlowState) -> None:
        """Record that the user navigated to ``state`` (e.g. back to phone entry)."""
        if state == FlowState.AUTHENTICATED:
            raise FlowStateError('Authenticated state is reached only through MPIN verification')
        self._enter(state)
        if state in (FlowState.PHONE_ENTRY, FlowState.OTP):
            self.otp_input.clear()
        self.mpin_input.clear()
        self.confirm_input.clear()

    def reset(self) -> None:
        """Return to phone entry."""
        self.go_to(FlowState.PHONE_ENTRY)

    async def restore(self) -> FlowResult:
        """
        Reconstruct the flow state at app start from stored session data.

        Stored tokens are validated against the backend (refreshing on 401);
        a valid session starts the background timer. Otherwise tokens are
        cleared and the flow falls back to MPIN entry when a Credential
        Identity with a phone number exists, or phone entry when not.

        Raises:
            IdentityUnavailable: If the device identity cannot be established
        """
        await self.transport.identity.ensure_identity()
        generation = self._generation

        credentials = await self.session.load_credentials()
        if credentials is not None:
            self.role = credentials.role
        tokens = await self.session.load_tokens()

        if tokens is not None:
            try:
                envelope = await self.transport.call('GET', VALIDATE_SESSION)
                valid = envelope.success
            except AuthError as e:
                logger.info(f'Session validation failed: {e}')
                valid = False

            if self._is_stale(generation):
                return self._discard('session validation')

            if valid:
                self.coordinator.start_background_timer()
                self._enter(FlowState.AUTHENTICATED)
                return FlowResult(FlowState.AUTHENTICATED, context=await self.session.load_context() or {})

            await self.coordinator.end_session()

        if credentials is not None:
            self.phone_number = credentials.phone_number
            self.country_code = credentials.country_code
            self._enter(FlowState.MPIN_ENTRY)
            return FlowResult(FlowState.MPIN_ENTRY)

        self._enter(FlowState.PHONE_ENTRY)
        return FlowResult(FlowState.PHONE_ENTRY)

    async def submit_phone(self, phone_number: str, country_code: Optional[str] = None) -> FlowResult:
        """
        Start a login for ``phone_number``.

        A trusted device whose account already has an MPIN goes straight to
        MPIN entry; anything else gets an OTP.

        Raises:
            InvalidInput: If the number does not have 7-15 digits
        """
        generation = self._require(FlowState.PHONE_ENTRY)

        digits = re.sub(r'\D', '', phone_number)
        if not MIN_PHONE_DIGITS <= len(digits) <= MAX_PHONE_DIGITS:
            raise InvalidInput(f'Phone number must have {MIN_PHONE_DIGITS}-{MAX_PHONE_DIGITS} digits')
        country_code = country_code or self.config.default_country_code
        formatted = f'{country_code}{digits}'

        identity = await self.transport.device_identity()
        envelope = await self.transport.call(
            'POST',
            self.endpoints.login_initiate,
            json={'phone_number': formatted, **identity.request_fields()},
            authenticated=False,
        )
        if not envelope.success:
            raise AuthAPIError('LOGIN_INITIATE_FAILED', envelope.message or 'Login could not be started', 200)
        if self._is_stale(generation):
            return self._discard('login initiate')

        data = parse_data(LoginInitiateData, envelope.data)
        self.phone_number = digits
        self.country_code = country_code

        stored = await self.session.load_credentials()
        if stored is not None and (stored.full_phone_number != formatted or stored.role != self.role):
            logger.info('Different account entered, forgetting the stored account id')
            await self.session.clear_credentials()
            stored = None
        await self.session.save_phone(digits, country_code)

        if data.device_trusted and data.has_mpin:
            subject_id = data.admin_id or data.user_id or (stored.subject_id if stored else None)
            if subject_id:
                await self.session.save_credentials(
                    CredentialIdentity(
                        role=self.role, subject_id=subject_id, phone_number=digits, country_code=country_code
                    )
                )
                self._enter(FlowState.MPIN_ENTRY)
                return FlowResult(FlowState.MPIN_ENTRY, message=data.message)
            logger.info('Login initiate returned no account id, verifying by OTP')

        try:
            await self.request_otp(formatted, self.endpoints.otp_purpose)
        except ResendNotAllowed:
            logger.info('OTP already sent recently, reusing it')
        if self._is_stale(generation):
            return self._discard('login initiate')

        self.otp_input.clear()
        self._enter(FlowState.OTP)
        return FlowResult(FlowState.OTP, message=data.message)

    async def request_otp(self, phone_number: str, purpose: str) -> None:
        """
        Send an OTP to ``phone_number``.

        Raises:
            ResendNotAllowed: If the previous send for this number and purpose
                is younger than the cooldown (no request is made)
            RateLimited: If the backend throttles the send
        """
        key = _otp_key(purpose, phone_number)
        self.resend_gate.check(key)

        identity = await self.transport.device_identity()
        try:
            await self.transport.call(
                'POST',
                SEND_OTP,
                json={'phone_number': phone_number, 'purpose': purpose, **identity.request_fields()},
                authenticated=False,
            )
        except RateLimited as e:
            self.resend_gate.block_for(key, e.retry_after_seconds)
            raise

        self.resend_gate.record_send(key)
        logger.info(f'OTP sent ({purpose})')

    def can_resend(self) -> bool:
        return self.seconds_until_resend() <= 0

    def seconds_until_resend(self) -> float:
        if not self.full_phone_number:
            return 0.0
        return self.resend_gate.seconds_remaining(_otp_key(self.endpoints.otp_purpose, self.full_phone_number))

    async def resend_otp(self) -> None:
        self._require(FlowState.OTP)
        await self.request_otp(self.full_phone_number, self.endpoints.otp_purpose)
        self.otp_input.clear()

    async def verify_otp(self, code: Optional[str] = None) -> FlowResult:
        """
        Verify the OTP and store the returned account identity.

        Args:
            code: OTP digits; defaults to the contents of ``otp_input``

        Raises:
            InvalidInput: If the code is not 6 digits
            InvalidCredential: If the backend rejects the code (input is cleared)
        """
        generation = self._require(FlowState.OTP)
        if code is not None:
            self.otp_input.set_value(code)
        code = _require_digits(self.otp_input.value, OTP_LENGTH, 'OTP')

        identity = await self.transport.device_identity()
        try:
            envelope = await self.transport.call(
                'POST',
                self.endpoints.verify_otp,
                json={'phone_number': self.full_phone_number, 'otp': code, **identity.request_fields()},
                authenticated=False,
            )
            if not envelope.success:
                raise InvalidCredential('INVALID_OTP', envelope.message or 'Invalid OTP', 200)
        except InvalidCredential:
            if not self._is_stale(generation):
                self.otp_input.clear()
            raise

        if self._is_stale(generation):
            return self._discard('OTP verification')

        data = parse_data(VerifyOtpData, envelope.data)
        subject_id = data.subject_id(self.role)
        if not subject_id:
            raise AuthAPIError('INVALID_RESPONSE', 'OTP verification did not return an account id', 200)

        await self.session.save_credentials(
            CredentialIdentity(
                role=self.role, subject_id=subject_id, phone_number=self.phone_number, country_code=self.country_code
            )
        )

        next_state = FlowState.MPIN_ENTRY if data.has_mpin else FlowState.MPIN_SETUP
        self.otp_input.clear()
        self._enter(next_state)
        return FlowResult(next_state, message=data.message)

    async def setup_mpin(self, mpin: Optional[str] = None, confirm: Optional[str] = None) -> FlowResult:
        """
        Create the account MPIN, then verify it to open a session.

        Raises:
            InvalidInput: If either entry is not 6 digits or they differ
        """
        generation = self._require(FlowState.MPIN_SETUP)
        if mpin is not None:
            self.mpin_input.set_value(mpin)
        if confirm is not None:
            self.confirm_input.set_value(confirm)

        mpin = _require_digits(self.mpin_input.value, MPIN_LENGTH, 'MPIN')
        confirm = _require_digits(self.confirm_input.value, MPIN_LENGTH, 'Confirm MPIN')
        if mpin != confirm:
            self.confirm_input.clear()
            raise InvalidInput('MPIN and confirmation do not match')

        credentials = await self._require_credentials()
        identity = await self.transport.device_identity()
        envelope = await self.transport.call(
            'POST',
            self.endpoints.setup_mpin,
            json={self.endpoints.id_field: credentials.subject_id, 'mpin': mpin, **identity.request_fields()},
            authenticated=False,
        )
        if not envelope.success:
            raise AuthAPIError('MPIN_SETUP_FAILED', envelope.message or 'MPIN setup failed', 200)
        if self._is_stale(generation):
            return self._discard('MPIN setup')

        logger.info('MPIN set up, verifying to open session')
        return await self._verify_mpin(mpin, generation)

    async def verify_mpin(self, mpin: Optional[str] = None) -> FlowResult:
        """
        Verify the MPIN and open an authenticated session.

        On success the tokens are stored and the background refresh timer is
        started. On rejection all MPIN cells are cleared and focus returns to
        the first one.

        Raises:
            InvalidInput: If the MPIN is not 6 digits
            InvalidCredential: If the backend rejects the MPIN
            FlowStateError: If no account id is stored yet
        """
        generation = self._require(FlowState.MPIN_ENTRY)
        if mpin is not None:
            self.mpin_input.set_value(mpin)
        try:
            mpin = _require_digits(self.mpin_input.value, MPIN_LENGTH, 'MPIN')
        except InvalidInput:
            self.mpin_input.clear()
            raise
        return await self._verify_mpin(mpin, generation)

    async def _verify_mpin(self, mpin: str, generation: int) -> FlowResult:
        credentials = await self._require_credentials()
        identity = await self.transport.device_identity()

        try:
            envelope = await self.transport.call(
                'POST',
                self.endpoints.verify_mpin,
                json={self.endpoints.id_field: credentials.subject_id, 'mpin': mpin, **identity.request_fields()},
                authenticated=False,
            )
            if not envelope.success or 'tokens' not in envelope.data:
                raise InvalidCredential('INVALID_MPIN', envelope.message or 'Invalid MPIN', 200)
        except InvalidCredential:
            if not self._is_stale(generation):
                self.mpin_input.clear()
                self.confirm_input.clear()
            raise

        if self._is_stale(generation):
            return self._discard('MPIN verification')

        data = parse_data(VerifyMpinData, envelope.data)
        await self.session.save_tokens(data.tokens)
        if data.context:
            await self.session.save_context(data.context)

        self.coordinator.start_background_timer()
        self.mpin_input.clear()
        self.confirm_input.clear()
        self._enter(FlowState.AUTHENTICATED)
        return FlowResult(FlowState.AUTHENTICATED, message=data.message, context=data.context)

    async def _require_credentials(self) -> CredentialIdentity:
        credentials = await self.session.load_credentials()
        if credentials is None:
            raise FlowStateError('No account id stored. Complete OTP verification first.')
        return credentials

    def forgot_mpin(self) -> 'ForgotMpinFlow':
        """Start the forgot-MPIN sub-flow for the known phone number."""
        if not self.phone_number:
            raise FlowStateError('Forgot MPIN requires a known phone number')
        return ForgotMpinFlow(self)


class ForgotMpinFlow:
    """
    Forgot-MPIN sub-flow: request an OTP, then reset the MPIN with it.

    On success the parent login flow returns to MPIN entry.
    """

    def __init__(self, login_flow: LoginFlow):
        self.login_flow = login_flow
        self.state = ForgotMpinState.INITIATE
        self.otp_input = DigitInput(OTP_LENGTH)
        self.new_mpin_input = DigitInput(MPIN_LENGTH)
        self.confirm_input = DigitInput(MPIN_LENGTH)

    @property
    def phone_number(self) -> str:
        return self.login_flow.full_phone_number

    @property
    def _gate_key(self) -> str:
        return _otp_key(MPIN_RESET_PURPOSE, self.phone_number)

    def can_resend(self) -> bool:
        return self.login_flow.resend_gate.can_resend(self._gate_key)

    def seconds_until_resend(self) -> float:
        return self.login_flow.resend_gate.seconds_remaining(self._gate_key)

    async def initiate(self) -> FlowResult:
        """
        Ask the backend to send a reset OTP.

        Raises:
            ResendNotAllowed: If the cooldown from a previous request is running
            RateLimited: If the backend throttles the request; the wait is
                recorded so later attempts are blocked locally until it elapses
        """
        if self.state == ForgotMpinState.RESET:
            raise FlowStateError('MPIN has already been reset')

        gate = self.login_flow.resend_gate
        gate.check(self._gate_key)

        identity = await self.login_flow.transport.device_identity()
        try:
            envelope = await self.login_flow.transport.call(
                'POST',
                self.login_flow.endpoints.forgot_mpin,
                json={'phone_number': self.phone_number, **identity.request_fields()},
                authenticated=False,
            )
        except RateLimited as e:
            gate.block_for(self._gate_key, e.retry_after_seconds)
            raise

        retry_after = envelope.retry_after or parse_data(ForgotMpinData, envelope.data).retry_after
        if not envelope.success:
            if retry_after:
                gate.block_for(self._gate_key, retry_after)
                raise RateLimited('RATE_LIMITED', envelope.message or 'Too many requests', 429, retry_after)
            raise AuthAPIError('FORGOT_MPIN_FAILED', envelope.message or 'Could not start MPIN reset', 200)

        gate.record_send(self._gate_key)
        if retry_after:
            gate.block_for(self._gate_key, retry_after)

        self.otp_input.clear()
        self.state = ForgotMpinState.AWAITING_OTP_AND_NEW_MPIN
        logger.info('Forgot MPIN: reset OTP requested')
        return FlowResult(self.state, message=envelope.message)

    async def resend(self) -> FlowResult:
        if self.state != ForgotMpinState.AWAITING_OTP_AND_NEW_MPIN:
            raise FlowStateError('Resend is available only while awaiting the reset OTP')
        return await self.initiate()

    async def reset(
        self, otp: Optional[str] = None, new_mpin: Optional[str] = None, confirm: Optional[str] = None
    ) -> FlowResult:
        """
        Submit the OTP with the new MPIN.

        Raises:
            InvalidInput: If the OTP or MPIN is not 6 digits or confirmation differs
            InvalidCredential: If the backend rejects the OTP
        """
        if self.state != ForgotMpinState.AWAITING_OTP_AND_NEW_MPIN:
            raise FlowStateError('Request a reset OTP first')

        if otp is not None:
            self.otp_input.set_value(otp)
        if new_mpin is not None:
            self.new_mpin_input.set_value(new_mpin)
        if confirm is not None:
            self.confirm_input.set_value(confirm)

        otp = _require_digits(self.otp_input.value, OTP_LENGTH, 'OTP')
        new_mpin = _require_digits(self.new_mpin_input.value, MPIN_LENGTH, 'New MPIN')
        confirm = _require_digits(self.confirm_input.value, MPIN_LENGTH, 'Confirm MPIN')
        if new_mpin != confirm:
            self.confirm_input.clear()
            raise InvalidInput('New MPIN and confirmation do not match')

        flow = self.login_flow
        identity = await flow.transport.device_identity()
        try:
            envelope = await flow.transport.call(
                'POST',
                flow.endpoints.forgot_mpin_verify,
                json={
                    'phone_number': self.phone_number,
                    'otp_code': otp,
                    'new_mpin': new_mpin,
                    **identity.request_fields(),
                },
                authenticated=False,
            )
            if not envelope.success:
                raise InvalidCredential('INVALID_OTP', envelope.message or 'MPIN reset failed', 200)
        except InvalidCredential:
            self.otp_input.clear()
            raise

        data = parse_data(ForgotMpinData, envelope.data)
        subject_id = data.admin_id if flow.role == UserRole.ADMIN else data.user_id
        subject_id = subject_id or data.admin_id or data.user_id
        if subject_id:
            await flow.session.save_credentials(
                CredentialIdentity(
                    role=flow.role, subject_id=subject_id, phone_number=flow.phone_number, country_code=flow.country_code
                )
            )

        self.state = ForgotMpinState.RESET
        self.new_mpin_input.clear()
        self.confirm_input.clear()
        self.otp_input.clear()
        flow.go_to(FlowState.MPIN_ENTRY)
        logger.info('Forgot MPIN: MPIN reset, returning to MPIN entry')
        return FlowResult(FlowState.MPIN_ENTRY, message=data.message or envelope.message)
