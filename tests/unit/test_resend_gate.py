"""Unit tests for the OTP resend gate."""

import pytest

from prayantra_auth.errors import ResendNotAllowed
from prayantra_auth.flow import ResendGate


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.mark.unit
class TestResendGate:
    def test_unknown_key_can_resend(self):
        assert ResendGate(30, clock=FakeClock()).can_resend('login:+911234567')

    def test_cooldown_after_send(self):
        clock = FakeClock()
        gate = ResendGate(30, clock=clock)
        gate.record_send('login:+911234567')

        clock.now += 29
        assert not gate.can_resend('login:+911234567')
        assert gate.seconds_remaining('login:+911234567') == pytest.approx(1)

        clock.now += 1
        assert gate.can_resend('login:+911234567')

    def test_keys_are_independent(self):
        gate = ResendGate(30, clock=FakeClock())
        gate.record_send('login:+911234567')

        assert gate.can_resend('mpin_reset:+911234567')
        assert gate.can_resend('login:+919999999')

    def test_server_block_extends_cooldown(self):
        clock = FakeClock()
        gate = ResendGate(30, clock=clock)
        gate.record_send('mpin_reset:+911234567')
        gate.block_for('mpin_reset:+911234567', 120)

        clock.now += 60
        assert gate.seconds_remaining('mpin_reset:+911234567') == pytest.approx(60)

    def test_check_raises_with_remaining_time(self):
        clock = FakeClock()
        gate = ResendGate(30, clock=clock)
        gate.record_send('login:+911234567')
        clock.now += 10

        with pytest.raises(ResendNotAllowed) as exc_info:
            gate.check('login:+911234567')

        assert exc_info.value.seconds_remaining == pytest.approx(20)
