"""Unit tests for the DimensionWaiter module.

Tests polling until a screen populates, the single re-activation,
cancellation and deadline handling.
"""

import threading
from unittest import mock

import pytest

from src.reconciler.dimension_waiter import DimensionWaiter, WaitOutcome
from src.reconciler.gateway import BackendGateway, GatewayError
from src.reconciler.models import Dimensions

from conftest import SESSION, make_env, make_faulty_screen, make_house, make_screen


def graph_with(screen):
    """One house holding one environment with the given screen (or none)."""
    screens = [screen] if screen is not None else []
    return [make_house("h1", [make_env("e1", "h1", screens=screens)])]


UNPOPULATED = graph_with(make_faulty_screen("s1", "e1"))
POPULATED = graph_with(make_screen("s1", "e1"))
MISSING = graph_with(None)


@pytest.fixture
def gateway():
    return mock.Mock(spec=BackendGateway)


def make_waiter(gateway, **kwargs):
    options = {'interval': 0, 'max_attempts': 10, 'reactivate_at': 3}
    options.update(kwargs)
    return DimensionWaiter(gateway, SESSION, Dimensions(1920, 1080), **options)


class TestDimensionWaiterInit:
    """Tests for DimensionWaiter construction."""

    def test_defaults(self, gateway):
        """Test default polling constants."""
        waiter = DimensionWaiter(gateway, SESSION, Dimensions())

        assert waiter.interval == 1.0
        assert waiter.max_attempts == 10
        assert waiter.reactivate_at == 3

    def test_rejects_zero_attempts(self, gateway):
        """Test max_attempts must allow at least one poll."""
        with pytest.raises(ValueError):
            make_waiter(gateway, max_attempts=0)


class TestDimensionWaiterPolling:
    """Tests for the polling loop."""

    def test_success_on_first_poll(self, gateway):
        """Test an already populated screen."""
        gateway.fetch_graph.return_value = POPULATED

        result = make_waiter(gateway).wait("s1", "e1")

        assert result.outcome == WaitOutcome.SUCCESS
        assert result.success
        assert result.attempts == 1
        assert result.screen.width == 1920
        gateway.fetch_graph.assert_called_once_with(force_refresh=True)
        gateway.activate_screen.assert_not_called()

    def test_stops_on_first_populated_poll(self, gateway):
        """Test no further polls after success."""
        gateway.fetch_graph.side_effect = [UNPOPULATED, POPULATED, UNPOPULATED]

        result = make_waiter(gateway).wait("s1", "e1")

        assert result.outcome == WaitOutcome.SUCCESS
        assert result.attempts == 2
        assert gateway.fetch_graph.call_count == 2

    def test_single_reactivation_at_third_poll(self, gateway):
        """Test exactly one extra activation when dimensions stay empty."""
        gateway.fetch_graph.return_value = UNPOPULATED

        result = make_waiter(gateway).wait("s1", "e1")

        assert result.outcome == WaitOutcome.TIMEOUT
        assert result.attempts == 10
        assert result.reactivated
        assert gateway.fetch_graph.call_count == 10
        gateway.activate_screen.assert_called_once_with(
            "s1", True, Dimensions(1920, 1080), SESSION
        )

    def test_reactivation_happens_after_third_poll(self, gateway):
        """Test the activation comes between the third and fourth poll."""
        calls = []
        gateway.fetch_graph.side_effect = lambda force_refresh: calls.append('fetch') or UNPOPULATED
        gateway.activate_screen.side_effect = lambda *args: calls.append('activate')

        make_waiter(gateway, max_attempts=5).wait("s1", "e1")

        assert calls == ['fetch', 'fetch', 'fetch', 'activate', 'fetch', 'fetch']

    def test_no_reactivation_when_populated_at_third_poll(self, gateway):
        """Test success is checked before re-activating."""
        gateway.fetch_graph.side_effect = [UNPOPULATED, UNPOPULATED, POPULATED]

        result = make_waiter(gateway).wait("s1", "e1")

        assert result.success
        assert not result.reactivated
        gateway.activate_screen.assert_not_called()

    def test_custom_reactivation_point(self, gateway):
        """Test the re-activation poll is configurable."""
        gateway.fetch_graph.return_value = UNPOPULATED

        result = make_waiter(gateway, max_attempts=4, reactivate_at=1).wait("s1", "e1")

        assert result.reactivated
        assert gateway.activate_screen.call_count == 1

    def test_not_found(self, gateway):
        """Test a screen that never appears."""
        gateway.fetch_graph.return_value = MISSING

        result = make_waiter(gateway, max_attempts=3).wait("s1", "e1")

        assert result.outcome == WaitOutcome.NOT_FOUND
        assert result.screen is None
        gateway.activate_screen.assert_not_called()

    def test_screen_in_other_environment_is_not_found(self, gateway):
        """Test the environment id is part of the lookup."""
        gateway.fetch_graph.return_value = POPULATED

        result = make_waiter(gateway, max_attempts=2).wait("s1", "e9")

        assert result.outcome == WaitOutcome.NOT_FOUND

    def test_fetch_failure_propagates(self, gateway):
        """Test transport failures are raised, not reported as timeouts."""
        gateway.fetch_graph.side_effect = GatewayError('get_wp_user', 'status 500')

        with pytest.raises(GatewayError):
            make_waiter(gateway).wait("s1", "e1")

    def test_reactivation_failure_keeps_polling(self, gateway):
        """Test a failing re-activation does not end the wait."""
        gateway.fetch_graph.side_effect = [UNPOPULATED] * 3 + [POPULATED]
        gateway.activate_screen.side_effect = GatewayError('upd_screen', 'timeout')

        result = make_waiter(gateway).wait("s1", "e1")

        assert result.success
        assert result.attempts == 4
        assert result.reactivated


class TestDimensionWaiterCancellation:
    """Tests for cancellation and deadlines."""

    def test_cancelled_before_first_poll(self, gateway):
        """Test a set cancel event ends the wait without polling."""
        cancel = threading.Event()
        cancel.set()

        result = make_waiter(gateway).wait("s1", "e1", cancel=cancel)

        assert result.outcome == WaitOutcome.CANCELLED
        assert result.attempts == 0
        gateway.fetch_graph.assert_not_called()

    def test_cancelled_mid_wait(self, gateway):
        """Test cancelling during polling stops further re-activation."""
        cancel = threading.Event()

        def fetch(force_refresh):
            if gateway.fetch_graph.call_count == 2:
                cancel.set()
            return UNPOPULATED

        gateway.fetch_graph.side_effect = fetch

        result = make_waiter(gateway).wait("s1", "e1", cancel=cancel)

        assert result.outcome == WaitOutcome.CANCELLED
        assert gateway.fetch_graph.call_count == 2
        gateway.activate_screen.assert_not_called()

    def test_deadline_passed(self, gateway):
        """Test an expired deadline ends the wait without counting as a timeout."""
        waiter = make_waiter(gateway, clock=lambda: 100.0)

        result = waiter.wait("s1", "e1", deadline=50.0)

        assert result.outcome == WaitOutcome.DEADLINE
        gateway.fetch_graph.assert_not_called()

    def test_deadline_reached_mid_wait(self, gateway):
        """Test a deadline hit between polls is reported as a deadline, not a timeout."""
        now = [0.0]

        def fetch(force_refresh=False):
            now[0] += 30.0
            return UNPOPULATED

        gateway.fetch_graph.side_effect = fetch

        result = make_waiter(gateway, clock=lambda: now[0]).wait("s1", "e1", deadline=50.0)

        assert result.outcome == WaitOutcome.DEADLINE
        assert not result.success
        assert result.attempts == 2
        assert gateway.fetch_graph.call_count == 2
