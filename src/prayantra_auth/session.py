"""Session token and credential identity persistence over the cache tier."""

import json
import logging
from typing import Any, Dict, Optional

from .endpoints import UserRole
from .models import CredentialIdentity, SessionTokens
from .storage import KeyValueStore

logger = logging.getLogger(__name__)

ACCESS_TOKEN = 'access_token'
REFRESH_TOKEN = 'refresh_token'
TOKEN_TYPE = 'token_type'
TOKEN_EXPIRES_IN = 'token_expires_in'
TOKEN_EXPIRES_AT = 'token_expires_at'
SESSION_CONTEXT = 'session_context'
ADMIN_ID = 'admin_id'
USER_ID = 'user_id'
USER_ROLE = 'user_role'
PHONE_NUMBER = 'phone_number'
COUNTRY_CODE = 'country_code'

TOKEN_KEYS = [ACCESS_TOKEN, REFRESH_TOKEN, TOKEN_TYPE, TOKEN_EXPIRES_IN, TOKEN_EXPIRES_AT, SESSION_CONTEXT]
CREDENTIAL_KEYS = [ADMIN_ID, USER_ID, USER_ROLE, PHONE_NUMBER, COUNTRY_CODE]


class SessionStore:
    """
    Reads and writes Session Tokens and Credential Identity in the plaintext cache.

    Ordinary logout clears tokens only. Credential Identity survives so the next
    launch can go straight to MPIN entry.
    """

    def __init__(self, cache: KeyValueStore, default_country_code: str = '+91'):
        self.cache = cache
        self.default_country_code = default_country_code

    async def save_tokens(self, tokens: SessionTokens) -> SessionTokens:
        """Persist a token pair, stamping its expiry when missing."""
        if tokens.expires_at is None:
            tokens = tokens.with_expiry()

        await self.cache.set(ACCESS_TOKEN, tokens.access_token)
        await self.cache.set(REFRESH_TOKEN, tokens.refresh_token)
        await self.cache.set(TOKEN_TYPE, tokens.token_type)
        await self.cache.set(TOKEN_EXPIRES_IN, str(tokens.expires_in))
        await self.cache.set(TOKEN_EXPIRES_AT, repr(tokens.expires_at))
        return tokens

    async def load_tokens(self) -> Optional[SessionTokens]:
        """Return the stored token pair, or None unless both tokens exist."""
        access_token = await self.cache.get(ACCESS_TOKEN)
        refresh_token = await self.cache.get(REFRESH_TOKEN)
        if not access_token or not refresh_token:
            return None

        expires_in = await self.cache.get(TOKEN_EXPIRES_IN)
        expires_at = await self.cache.get(TOKEN_EXPIRES_AT)
        return SessionTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            token_type=await self.cache.get(TOKEN_TYPE) or 'Bearer',
            expires_in=int(expires_in) if expires_in else 300,
            expires_at=float(expires_at) if expires_at else None,
        )

    async def get_access_token(self) -> Optional[str]:
        return await self.cache.get(ACCESS_TOKEN)

    async def get_refresh_token(self) -> Optional[str]:
        return await self.cache.get(REFRESH_TOKEN)

    async def clear_tokens(self) -> None:
        await self.cache.delete_many(TOKEN_KEYS)
        logger.info('Session tokens cleared, credential identity preserved')

    async def save_context(self, context: Dict[str, Any]) -> None:
        await self.cache.set(SESSION_CONTEXT, json.dumps(context))

    async def load_context(self) -> Optional[Dict[str, Any]]:
        raw = await self.cache.get(SESSION_CONTEXT)
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning('Ignoring unreadable session context')
            return None

    async def save_phone(self, phone_number: str, country_code: str) -> None:
        await self.cache.set(PHONE_NUMBER, phone_number)
        await self.cache.set(COUNTRY_CODE, country_code)

    async def save_credentials(self, identity: CredentialIdentity) -> None:
        """Persist the role-scoped id together with the phone it was verified for."""
        id_key = ADMIN_ID if identity.role == UserRole.ADMIN else USER_ID
        stale_key = USER_ID if id_key == ADMIN_ID else ADMIN_ID

        await self.cache.delete(stale_key)
        await self.cache.set(id_key, identity.subject_id)
        await self.cache.set(USER_ROLE, identity.role.value)
        await self.save_phone(identity.phone_number, identity.country_code)

    async def load_credentials(self) -> Optional[CredentialIdentity]:
        """Return the stored Credential Identity, or None when incomplete."""
        role_value = await self.cache.get(USER_ROLE)
        admin_id = await self.cache.get(ADMIN_ID)
        user_id = await self.cache.get(USER_ID)
        phone_number = await self.cache.get(PHONE_NUMBER)

        if role_value:
            role = UserRole(role_value)
        else:
            role = UserRole.ADMIN if admin_id else UserRole.USER
        subject_id = admin_id if role == UserRole.ADMIN else user_id

        if not subject_id or not phone_number:
            return None

        return CredentialIdentity(
            role=role,
            subject_id=subject_id,
            phone_number=phone_number,
            country_code=await self.cache.get(COUNTRY_CODE) or self.default_country_code,
        )

    async def stored_phone_for_mpin(self) -> Optional[str]:
        """Full phone number (country code + national number) for MPIN login."""
        phone_number = await self.cache.get(PHONE_NUMBER)
        if not phone_number:
            return None
        country_code = await self.cache.get(COUNTRY_CODE) or self.default_country_code
        return f'{country_code}{phone_number}'

    async def clear_credentials(self) -> None:
        await self.cache.delete_many(CREDENTIAL_KEYS)
        logger.info('Credential identity cleared')
