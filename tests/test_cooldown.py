import pytest

from formulabot.cooldown import CooldownGate
from formulabot.errors import CooldownActiveError


class TestCooldownGate:
    def test_first_request_passes(self, clock):
        gate = CooldownGate(interval=4, clock=clock)
        gate.check()
        assert gate.last_request_at == clock.now

    def test_request_inside_interval_is_rejected(self, clock):
        gate = CooldownGate(interval=4, clock=clock)
        gate.check()
        clock.advance(1.5)

        with pytest.raises(CooldownActiveError) as exc_info:
            gate.check()

        assert exc_info.value.remaining == pytest.approx(2.5)

    def test_rejection_does_not_restart_interval(self, clock):
        gate = CooldownGate(interval=4, clock=clock)
        gate.check()
        clock.advance(3)
        with pytest.raises(CooldownActiveError):
            gate.check()

        clock.advance(1)
        gate.check()

    def test_reset(self, clock):
        gate = CooldownGate(interval=4, clock=clock)
        gate.check()
        gate.reset()

        assert gate.remaining() == 0
        gate.check()
