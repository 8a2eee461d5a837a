"""Integration tests for the forgot-MPIN sub-flow."""

import json

import pytest

from prayantra_auth.endpoints import UserRole
from prayantra_auth.errors import FlowStateError, InvalidCredential, InvalidInput, RateLimited, ResendNotAllowed
from prayantra_auth.flow import FlowState, ForgotMpinState
from prayantra_auth.models import CredentialIdentity

PHONE = '9876543210'
FULL_PHONE = '+919876543210'


async def _flow_at_mpin_entry(client, backend):
    identity = await client.device_identity()
    backend.add_account(FULL_PHONE, 'admin-1', mpin='246810', trusted_devices={identity.device_id})
    flow = client.login_flow()
    await flow.submit_phone(PHONE)
    return flow


@pytest.mark.integration
class TestForgotMpin:
    @pytest.mark.asyncio
    async def test_initiate_sends_reset_otp(self, client, backend):
        flow = await _flow_at_mpin_entry(client, backend)
        reset_flow = flow.forgot_mpin()

        result = await reset_flow.initiate()

        assert result.state == ForgotMpinState.AWAITING_OTP_AND_NEW_MPIN
        body = json.loads(backend.calls_to('/admin-auth/mpin/forgot')[0].content)
        assert body['phone_number'] == FULL_PHONE
        assert 'device_fingerprint' in body

    @pytest.mark.asyncio
    async def test_reset_returns_to_mpin_entry(self, client, backend):
        flow = await _flow_at_mpin_entry(client, backend)
        reset_flow = flow.forgot_mpin()
        await reset_flow.initiate()

        result = await reset_flow.reset('123456', '135790', '135790')

        assert result.state == FlowState.MPIN_ENTRY
        assert reset_flow.state == ForgotMpinState.RESET
        assert flow.state == FlowState.MPIN_ENTRY
        assert backend.accounts[FULL_PHONE]['mpin'] == '135790'

        try:
            login = await flow.verify_mpin('135790')
            assert login.state == FlowState.AUTHENTICATED
        finally:
            await client.coordinator.shutdown()

    @pytest.mark.asyncio
    async def test_wrong_otp_clears_otp_cells(self, client, backend):
        flow = await _flow_at_mpin_entry(client, backend)
        reset_flow = flow.forgot_mpin()
        await reset_flow.initiate()

        with pytest.raises(InvalidCredential):
            await reset_flow.reset('000000', '135790', '135790')

        assert reset_flow.state == ForgotMpinState.AWAITING_OTP_AND_NEW_MPIN
        assert reset_flow.otp_input.value == ''
        assert backend.accounts[FULL_PHONE]['mpin'] == '246810'

    @pytest.mark.asyncio
    async def test_mismatched_new_mpin(self, client, backend):
        flow = await _flow_at_mpin_entry(client, backend)
        reset_flow = flow.forgot_mpin()
        await reset_flow.initiate()

        with pytest.raises(InvalidInput):
            await reset_flow.reset('123456', '135790', '000000')

        assert backend.calls_to('/admin-auth/mpin/forgot/verify') == []

    @pytest.mark.asyncio
    async def test_reset_before_initiate(self, client, backend):
        flow = await _flow_at_mpin_entry(client, backend)

        with pytest.raises(FlowStateError):
            await flow.forgot_mpin().reset('123456', '135790', '135790')

    @pytest.mark.asyncio
    async def test_requires_known_phone(self, client):
        with pytest.raises(FlowStateError):
            client.login_flow().forgot_mpin()

    @pytest.mark.asyncio
    async def test_works_after_restore(self, client, backend):
        backend.add_account(FULL_PHONE, 'user-3', mpin='246810')
        await client.session.save_credentials(
            CredentialIdentity(role=UserRole.USER, subject_id='user-3', phone_number=PHONE)
        )
        flow = client.login_flow()
        await flow.restore()

        await flow.forgot_mpin().initiate()

        assert len(backend.calls_to('/auth/mpin/forgot')) == 1


@pytest.mark.integration
class TestForgotMpinCooldown:
    @pytest.mark.asyncio
    async def test_resend_within_cooldown(self, client, backend):
        flow = await _flow_at_mpin_entry(client, backend)
        reset_flow = flow.forgot_mpin()
        await reset_flow.initiate()

        with pytest.raises(ResendNotAllowed):
            await reset_flow.resend()

        assert len(backend.calls_to('/admin-auth/mpin/forgot')) == 1

    @pytest.mark.asyncio
    async def test_rate_limit_blocks_locally(self, client, backend):
        flow = await _flow_at_mpin_entry(client, backend)
        backend.overrides['/admin-auth/mpin/forgot'] = (429, {'message': 'Too many requests', 'retry_after': 120})
        reset_flow = flow.forgot_mpin()

        with pytest.raises(RateLimited) as exc_info:
            await reset_flow.initiate()
        assert exc_info.value.retry_after_seconds == 120

        with pytest.raises(ResendNotAllowed):
            await reset_flow.initiate()
        assert reset_flow.seconds_until_resend() > 100
        assert len(backend.calls_to('/admin-auth/mpin/forgot')) == 1

    @pytest.mark.asyncio
    async def test_unsuccessful_envelope_with_retry_after(self, client, backend):
        flow = await _flow_at_mpin_entry(client, backend)
        backend.overrides['/admin-auth/mpin/forgot'] = (
            200,
            {'success': False, 'message': 'Please wait', 'retry_after': 90},
        )
        reset_flow = flow.forgot_mpin()

        with pytest.raises(RateLimited) as exc_info:
            await reset_flow.initiate()

        assert exc_info.value.retry_after_seconds == 90
        assert not reset_flow.can_resend()
        assert reset_flow.state == ForgotMpinState.INITIATE

    @pytest.mark.asyncio
    async def test_login_otp_cooldown_is_separate(self, client, backend):
        flow = client.login_flow()
        await flow.submit_phone(PHONE)

        await flow.forgot_mpin().initiate()

        assert len(backend.calls_to('/otp/send')) == 1
        assert len(backend.calls_to('/admin-auth/mpin/forgot')) == 1
