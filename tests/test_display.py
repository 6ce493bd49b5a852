"""Unit tests for display dimension detection."""

import subprocess
from unittest import mock

from src.reconciler.display import get_screen_dimensions, probe_display
from src.reconciler.models import Dimensions


XRANDR_OUTPUT = (
    "Screen 0: minimum 8 x 8, current 2560 x 1440, maximum 32767 x 32767\n"
    "HDMI-0 connected primary 2560x1440+0+0\n"
)


class TestGetScreenDimensions:
    """Tests for get_screen_dimensions()."""

    def test_configured_values_win(self):
        probe = mock.Mock()

        assert get_screen_dimensions(1280, 720, probe=probe) == Dimensions(1280, 720)
        probe.assert_not_called()

    def test_detected_values(self):
        probe = mock.Mock(return_value=Dimensions(2560, 1440))

        assert get_screen_dimensions(probe=probe) == Dimensions(2560, 1440)

    def test_default_when_nothing_detected(self):
        assert get_screen_dimensions(probe=lambda: None) == Dimensions(1920, 1080)

    def test_partial_config_is_ignored(self):
        assert get_screen_dimensions(1280, None, probe=lambda: None) == Dimensions(1920, 1080)


class TestProbeDisplay:
    """Tests for probe_display()."""

    def test_no_display(self, monkeypatch):
        monkeypatch.delenv('DISPLAY', raising=False)

        assert probe_display() is None

    @mock.patch('src.reconciler.display.subprocess.run')
    def test_parses_xrandr(self, mock_run, monkeypatch):
        monkeypatch.setenv('DISPLAY', ':0')
        mock_run.return_value = mock.Mock(stdout=XRANDR_OUTPUT)

        assert probe_display() == Dimensions(2560, 1440)

    @mock.patch('src.reconciler.display.subprocess.run')
    def test_xrandr_missing(self, mock_run, monkeypatch):
        monkeypatch.setenv('DISPLAY', ':0')
        mock_run.side_effect = FileNotFoundError()

        assert probe_display() is None

    @mock.patch('src.reconciler.display.subprocess.run')
    def test_xrandr_timeout(self, mock_run, monkeypatch):
        monkeypatch.setenv('DISPLAY', ':0')
        mock_run.side_effect = subprocess.TimeoutExpired("xrandr", 5)

        assert probe_display() is None
