"""Unit tests for the YAML configuration layer."""

import tempfile
from pathlib import Path

import pytest
import yaml

import src.common.config as config_module
from src.common.config import Config, get_config


@pytest.fixture
def config_file():
    """Write a small config file."""
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "config.yaml"
        with open(path, 'w') as f:
            yaml.dump({
                'backend': {'base_url': 'https://b.test/ws', 'timeout': 3},
                'session': {'id': 'wp-user-1-' + 'b' * 32},
                'content': {'guest_sessions': {1: 'wp-guest-1'}},
                'reconciler': {'max_attempts': 5},
                'state': {'dir': '~/reconciler-state'},
            }, f)
        yield path


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in config_module.ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)


class TestConfig:
    """Tests for Config."""

    def test_default_config_loads(self):
        """Test the shipped default configuration."""
        config = Config()

        assert config.get('reconciler.max_attempts') == 10
        assert config.get('reconciler.reactivate_at') == 3
        assert config.get('reconciler.max_refresh_attempts') == 2
        assert config.player_environment_name == "Web player"
        assert config.master_ip == "127.0.0.1"
        assert config.ipc_enabled is False

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError):
            Config("/nonexistent/config.yaml")

    def test_properties(self, config_file):
        config = Config(str(config_file))

        assert config.backend_url == 'https://b.test/ws'
        assert config.backend_timeout == 3.0
        assert config.cache_ttl == 5.0
        assert config.default_domain == "1"
        assert config.guest_sessions == {'1': 'wp-guest-1'}
        assert config.state_dir == Path.home() / "reconciler-state"

    def test_dotted_get_and_set(self, config_file):
        config = Config(str(config_file))

        assert config.get('reconciler.max_attempts') == 5
        assert config.get('reconciler.missing', 'x') == 'x'

        config.set('display.width', 1280)
        assert config.get('display.width') == 1280

    def test_env_overrides(self, config_file, monkeypatch):
        monkeypatch.setenv('HSR_SESSION_ID', 'env-session')
        monkeypatch.setenv('HSR_DISPLAY_WIDTH', '1024')

        config = Config(str(config_file))

        assert config.session_id == 'env-session'
        assert config.get('display.width') == 1024

    def test_invalid_int_override(self, config_file, monkeypatch):
        monkeypatch.setenv('HSR_DISPLAY_HEIGHT', 'tall')

        with pytest.raises(ValueError):
            Config(str(config_file))

    def test_save(self, config_file):
        config = Config(str(config_file))
        config.set('session.id', 'saved')
        config.save()

        assert Config(str(config_file)).session_id == 'saved'


class TestGetConfig:
    """Tests for the global config instance."""

    def test_singleton(self, config_file, monkeypatch):
        monkeypatch.setattr(config_module, '_global_config', None)

        first = get_config(str(config_file))
        second = get_config()

        assert first is second
