"""High-level entry point that wires the auth components together."""

import logging
from typing import Any, Dict, Optional

import httpx

from .config import AuthConfig
from .device import DeviceIdentity, DeviceIdentityManager, DeviceMetadata
from .endpoints import DEVICE_REVOKE_TRUST, DEVICE_TRUST_STATUS, VALIDATE_SESSION, UserRole, endpoints_for
from .errors import AuthError, FlowStateError, InvalidInput
from .flow import LoginFlow, ResendGate
from .pairing import WebPairingHandler
from .refresh import TokenRefreshCoordinator
from .session import SessionStore
from .storage import EncryptedLMDBKeyValueStore, KeyValueStore, LMDBKeyValueStore
from .storage.lmdb_store import derive_vault_key
from .transport import AuthTransport

logger = logging.getLogger(__name__)


class AuthClient:
    """Async client for the Prayantra mobile auth backend.

    Owns the HTTP connection pool, both persistence tiers and the single
    refresh coordinator shared by every flow it hands out.

    Args:
        config: Client configuration (defaults to ``AuthConfig.from_env()``)
        cache: Plaintext store for tokens and credentials (default: LMDB under
            ``config.cache_dir``)
        vault: Secure store for the device identity (default: encrypted LMDB
            under ``config.vault_dir``)
        metadata: Device metadata override (default: read from the host)
        http_transport: Optional httpx transport, used by tests to stub the backend

    Example:
        >>> async with AuthClient(AuthConfig(base_url='https://api.prayantra.in')) as client:
        ...     flow = client.login_flow(UserRole.ADMIN)
        ...     result = await flow.restore()
    """

    def __init__(
        self,
        config: Optional[AuthConfig] = None,
        cache: Optional[KeyValueStore] = None,
        vault: Optional[KeyValueStore] = None,
        metadata: Optional[DeviceMetadata] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or AuthConfig.from_env()

        if cache is None:
            cache = LMDBKeyValueStore(self.config.cache_dir)
        if vault is None:
            key = derive_vault_key(self.config.vault_key) if self.config.vault_key else None
            vault = EncryptedLMDBKeyValueStore(self.config.vault_dir, key=key)
        self.cache = cache
        self.vault = vault

        self._http = httpx.AsyncClient(
            base_url=self.config.api_base_url,
            timeout=self.config.timeout,
            transport=http_transport,
        )

        self.identity = DeviceIdentityManager(vault, cache, self.config, metadata=metadata)
        self.session = SessionStore(cache, self.config.default_country_code)
        self.coordinator = TokenRefreshCoordinator(self._http, self.session, self.identity, self.config)
        self.transport = AuthTransport(self._http, self.identity, self.session, self.coordinator)
        self.resend_gate = ResendGate(self.config.otp_resend_cooldown)

    def login_flow(self, role: UserRole = UserRole.ADMIN) -> LoginFlow:
        """Create a login flow sharing this client's transport and resend gate."""
        return LoginFlow(
            self.transport,
            self.session,
            self.coordinator,
            role=role,
            config=self.config,
            resend_gate=self.resend_gate,
        )

    @property
    def pairing(self) -> WebPairingHandler:
        return WebPairingHandler(self.transport)

    async def device_identity(self) -> DeviceIdentity:
        return await self.identity.ensure_identity()

    async def validate_session(self) -> bool:
        """Check the stored session against the backend, refreshing on 401."""
        if await self.session.load_tokens() is None:
            return False
        try:
            envelope = await self.transport.call('GET', VALIDATE_SESSION)
        except AuthError as e:
            logger.info(f'Session is not valid: {e}')
            return False
        return envelope.success

    async def _role(self) -> UserRole:
        credentials = await self.session.load_credentials()
        return credentials.role if credentials else UserRole.ADMIN

    async def logout(self) -> None:
        """
        End the session but keep the Credential Identity.

        The next launch goes to MPIN entry. The backend logout call is
        best-effort; local tokens are cleared regardless of its outcome.
        A refresh in flight is awaited first so the newest refresh token is
        revoked, and no later refresh can restore the cleared tokens.
        """
        await self.coordinator.shutdown()

        refresh_token = await self.session.get_refresh_token()
        if refresh_token:
            role = await self._role()
            try:
                identity = await self.transport.device_identity()
                await self.transport.request(
                    'POST',
                    endpoints_for(role).logout,
                    json={
                        'refresh_token': refresh_token,
                        'device_fingerprint': identity.fingerprint,
                        'user_agent': identity.user_agent,
                    },
                )
            except AuthError as e:
                logger.warning(f'Backend logout failed, clearing local session anyway: {e}')

        await self.coordinator.end_session()
        logger.info('Logged out (credential identity kept)')

    async def full_logout(self) -> None:
        """Log out and forget this account and the device identity."""
        await self.logout()
        await self.session.clear_credentials()
        await self.identity.remove_identity()
        logger.info('Full logout complete')

    async def change_mpin(self, current_mpin: str, new_mpin: str) -> Dict[str, Any]:
        """Change the MPIN of the logged-in account."""
        for label, value in (('Current MPIN', current_mpin), ('New MPIN', new_mpin)):
            if len(value) != 6 or not value.isdigit():
                raise InvalidInput(f'{label} must be exactly 6 digits')

        credentials = await self.session.load_credentials()
        if credentials is None:
            raise FlowStateError('No account is stored on this device')

        endpoints = endpoints_for(credentials.role)
        identity = await self.transport.device_identity()
        envelope = await self.transport.call(
            'POST',
            endpoints.change_mpin,
            json={
                endpoints.id_field: credentials.subject_id,
                'current_mpin': current_mpin,
                'new_mpin': new_mpin,
                **identity.request_fields(),
            },
        )
        logger.info('MPIN changed')
        return envelope.data

    async def device_trust_status(self) -> Dict[str, Any]:
        identity = await self.transport.device_identity()
        envelope = await self.transport.call('GET', DEVICE_TRUST_STATUS, params={'device_id': identity.device_id})
        return envelope.data

    async def revoke_device_trust(self) -> Dict[str, Any]:
        identity = await self.transport.device_identity()
        envelope = await self.transport.call('POST', DEVICE_REVOKE_TRUST, json={'device_id': identity.device_id})
        logger.info(f'Device trust revoked for {identity.short_id}')
        return envelope.data

    async def close(self):
        """Stop the refresh timer, close the HTTP client and release the stores."""
        await self.coordinator.shutdown()
        await self._http.aclose()
        self.cache.close()
        self.vault.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
