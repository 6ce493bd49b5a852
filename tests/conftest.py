"""
Pytest fixtures for house screen reconciler tests.

Provides an in-memory backend, graph builders and state fixtures used
across the test files.
"""

import copy
import os
import pytest
from typing import Any, Dict, List, Optional

# Keep test output readable; set before the reconciler modules create their loggers
os.environ.setdefault('HSR_LOG_LEVEL', 'WARNING')

from src.reconciler.gateway import BackendGateway, GatewayError
from src.reconciler.models import Dimensions, Environment, House, Screen
from src.reconciler.state_store import MemoryStateStore, RefreshState


SESSION = "wp-user-8-" + "a" * 32
LOOPBACK = "127.0.0.1"
PLAYER = "Web player"


def make_screen(screen_id: str, environment_id: str, width: int = 1920, height: int = 1080,
                on: bool = True, enabled: bool = True) -> Screen:
    """Build a screen; defaults describe a healthy one."""
    return Screen(id=screen_id, environment_id=environment_id, width=width,
                  height=height, on=on, enabled=enabled)


def make_faulty_screen(screen_id: str, environment_id: str) -> Screen:
    """Enabled screen that never reported dimensions."""
    return make_screen(screen_id, environment_id, width=0, height=0, on=False)


def make_env(env_id: str, house_id: str, name: str = PLAYER, ip: Optional[str] = None,
             screens: Optional[List[Screen]] = None) -> Environment:
    return Environment(id=env_id, house_id=house_id, name=name, ip_address=ip,
                       screens=list(screens or []))


def make_house(house_id: str, environments: Optional[List[Environment]] = None) -> House:
    return House(id=house_id, environments=list(environments or []))


class FakeGateway(BackendGateway):
    """
    In-memory backend.

    Mutations change the stored graph; fetch_graph returns deep copies so
    callers never alias it. Every call is recorded in `calls`.
    """

    def __init__(self, houses: Optional[List[House]] = None):
        self.houses = list(houses or [])
        self.calls: List[tuple] = []
        self.failures: Dict[str, GatewayError] = {}
        self.activation_works = True
        self.create_screen_visible = True
        self.on_activate = None
        self._next_id = 100

    def _fail(self, operation: str) -> None:
        if operation in self.failures:
            raise self.failures[operation]

    def _new_id(self, prefix: str) -> str:
        self._next_id += 1
        return f"{prefix}{self._next_id}"

    def find_env(self, environment_id: str) -> Optional[Environment]:
        for house in self.houses:
            env = house.find_environment(environment_id)
            if env is not None:
                return env
        return None

    def operations(self) -> List[str]:
        """Names of every call except fetches, in order."""
        return [call[0] for call in self.calls if call[0] != 'fetch']

    def count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)

    def fetch_graph(self, force_refresh: bool = False) -> List[House]:
        self.calls.append(('fetch', force_refresh))
        self._fail('fetch')
        return copy.deepcopy(self.houses)

    def activate_screen(self, screen_id: str, on: bool, dimensions: Dimensions,
                        session: str) -> Any:
        self.calls.append(('activate', screen_id, on, dimensions, session))
        self._fail('activate')
        if self.on_activate is not None:
            self.on_activate(screen_id)
        if self.activation_works:
            for house in self.houses:
                for env in house.environments:
                    for screen in env.screens:
                        if screen.id == screen_id:
                            screen.width = dimensions.width
                            screen.height = dimensions.height
                            screen.on = on
        return {}

    def create_environment(self, house_id: str) -> str:
        self.calls.append(('create_environment', house_id))
        self._fail('create_environment')
        env_id = self._new_id("e")
        for house in self.houses:
            if house.id == house_id:
                house.environments.append(make_env(env_id, house_id, ip=LOOPBACK))
        return env_id

    def create_screen(self, environment_id: str,
                      dimensions: Optional[Dimensions] = None) -> Any:
        self.calls.append(('create_screen', environment_id))
        self._fail('create_screen')
        screen_id = self._new_id("s")
        env = self.find_env(environment_id)
        if env is not None and self.create_screen_visible:
            env.screens.append(make_faulty_screen(screen_id, environment_id))
        return {'id': screen_id}

    def remove_environment(self, environment_id: str) -> Any:
        self.calls.append(('remove', environment_id))
        self._fail('remove')
        for house in self.houses:
            house.environments = [e for e in house.environments if e.id != environment_id]
        return {}

    def copy_default_content(self, domain: str, session: str, house_id: str) -> Dict[str, Any]:
        self.calls.append(('copy', domain, session, house_id))
        self._fail('copy')
        return {'success': True, 'results': [], 'message': "Copied 0 playlists from guest account"}


class FakeTimer:
    """threading.Timer stand-in that only fires when told to."""

    instances: List['FakeTimer'] = []

    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.kwargs = kwargs or {}
        self.daemon = False
        self.started = False
        self.cancelled = False
        FakeTimer.instances.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.function(*self.args, **self.kwargs)


@pytest.fixture
def store():
    """Empty in-memory state store."""
    return MemoryStateStore()


@pytest.fixture
def state(store):
    """RefreshState over the in-memory store."""
    return RefreshState(store)


@pytest.fixture
def gateway():
    """Backend with no houses."""
    return FakeGateway()


@pytest.fixture
def fake_timers():
    """Collect FakeTimer instances created during a test."""
    FakeTimer.instances = []
    yield FakeTimer.instances
    FakeTimer.instances = []
