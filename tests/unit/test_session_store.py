"""Unit tests for SessionStore persistence."""

import pytest

from prayantra_auth.endpoints import UserRole
from prayantra_auth.models import CredentialIdentity, SessionTokens
from prayantra_auth.session import SessionStore


@pytest.fixture
def session(cache):
    return SessionStore(cache)


def _tokens(**overrides):
    values = {'access_token': 'access-1', 'refresh_token': 'refresh-1', 'expires_in': 300}
    values.update(overrides)
    return SessionTokens(**values)


@pytest.mark.unit
class TestSessionTokens:
    @pytest.mark.asyncio
    async def test_save_stamps_expiry(self, session):
        saved = await session.save_tokens(_tokens())

        assert saved.expires_at is not None
        loaded = await session.load_tokens()
        assert loaded.access_token == 'access-1'
        assert loaded.refresh_token == 'refresh-1'
        assert loaded.expires_at == pytest.approx(saved.expires_at)

    @pytest.mark.asyncio
    async def test_load_requires_both_tokens(self, session, cache):
        await cache.set('access_token', 'only-access')

        assert await session.load_tokens() is None

    @pytest.mark.asyncio
    async def test_clear_tokens_keeps_credentials(self, session, cache):
        await session.save_tokens(_tokens())
        await session.save_context({'company_id': 'c-1'})
        await session.save_credentials(CredentialIdentity(role=UserRole.ADMIN, subject_id='admin-1', phone_number='9876543210'))

        await session.clear_tokens()

        assert await session.load_tokens() is None
        assert await session.load_context() is None
        credentials = await session.load_credentials()
        assert credentials.subject_id == 'admin-1'
        assert await session.stored_phone_for_mpin() == '+919876543210'

    def test_expires_within(self):
        tokens = _tokens().with_expiry(now=1000.0)

        assert tokens.expires_within(30, now=1280.0)
        assert not tokens.expires_within(30, now=1000.0)
        assert _tokens().expires_within(30)


@pytest.mark.unit
class TestCredentialIdentity:
    @pytest.mark.asyncio
    async def test_switching_role_drops_other_id(self, session, cache):
        await session.save_credentials(CredentialIdentity(role=UserRole.ADMIN, subject_id='admin-1', phone_number='111111111'))
        await session.save_credentials(
            CredentialIdentity(role=UserRole.USER, subject_id='user-7', phone_number='222222222', country_code='+1')
        )

        snapshot = cache.snapshot()
        assert 'admin_id' not in snapshot
        assert snapshot['user_id'] == 'user-7'

        credentials = await session.load_credentials()
        assert credentials.role == UserRole.USER
        assert credentials.full_phone_number == '+1222222222'

    @pytest.mark.asyncio
    async def test_phone_without_id_is_not_a_credential(self, session):
        await session.save_phone('9876543210', '+91')

        assert await session.load_credentials() is None

    @pytest.mark.asyncio
    async def test_role_inferred_from_legacy_admin_id(self, cache):
        await cache.set('admin_id', 'admin-9')
        await cache.set('phone_number', '9876543210')

        credentials = await SessionStore(cache).load_credentials()

        assert credentials.role == UserRole.ADMIN
        assert credentials.country_code == '+91'

    @pytest.mark.asyncio
    async def test_clear_credentials(self, session, cache):
        await session.save_credentials(CredentialIdentity(role=UserRole.ADMIN, subject_id='admin-1', phone_number='111111111'))

        await session.clear_credentials()

        assert cache.snapshot() == {}

    @pytest.mark.asyncio
    async def test_unreadable_context_is_ignored(self, session, cache):
        await cache.set('session_context', '{not json')

        assert await session.load_context() is None
