"""
House / Environment / Screen graph returned by the provisioning backend.

The backend encodes booleans as "0"/"1" and sizes as strings; parsing
normalizes both so the rest of the reconciler works with plain types.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


DEFAULT_WIDTH = 1920
DEFAULT_HEIGHT = 1080


def _as_bool(value: Any) -> bool:
    """Parse a backend boolean ("1", 1, True, "true")."""
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _as_int(value: Any) -> int:
    """Parse a backend integer, treating junk as 0."""
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def _as_id(value: Any) -> Optional[str]:
    """Normalize an identifier to a string (backend mixes ints and strings)."""
    if value is None or value == "":
        return None
    return str(value)


@dataclass(frozen=True)
class Dimensions:
    """Pixel size reported for a screen."""

    width: int = DEFAULT_WIDTH
    height: int = DEFAULT_HEIGHT

    def to_dict(self) -> Dict[str, int]:
        return {'width': self.width, 'height': self.height}


@dataclass
class Screen:
    """A device endpoint with power/enabled state and pixel dimensions."""

    id: str
    environment_id: str
    width: int = 0
    height: int = 0
    on: bool = False
    enabled: bool = False
    seq: int = 0

    @property
    def has_dimensions(self) -> bool:
        return self.width > 0 and self.height > 0

    @property
    def is_faulty(self) -> bool:
        """Enabled but missing valid dimensions or not powered on."""
        return self.enabled and (self.width == 0 or self.height == 0 or not self.on)

    @property
    def is_active(self) -> bool:
        """Non-faulty, powered on, with positive dimensions."""
        return self.on and self.has_dimensions and not self.is_faulty

    @property
    def is_populated(self) -> bool:
        """Dimension-wait success predicate."""
        return self.width != 0 and self.height != 0 and self.on

    @classmethod
    def from_dict(cls, data: Dict[str, Any], environment_id: str) -> 'Screen':
        return cls(
            id=str(data.get('id')),
            environment_id=_as_id(data.get('environ')) or environment_id,
            width=_as_int(data.get('width')),
            height=_as_int(data.get('height')),
            on=_as_bool(data.get('on', False)),
            enabled=_as_bool(data.get('enabled', False)),
            seq=_as_int(data.get('seq')),
        )


@dataclass
class Environment:
    """Logical grouping of screens within a house."""

    id: str
    house_id: str
    name: str = ""
    ip_address: Optional[str] = None
    crypt_key: Optional[str] = None
    screens: List[Screen] = field(default_factory=list)

    def is_master(self, master_ip: str = "127.0.0.1") -> bool:
        return self.ip_address == master_ip

    def find_screen(self, screen_id: str) -> Optional[Screen]:
        for screen in self.screens:
            if screen.id == screen_id:
                return screen
        return None

    @property
    def faulty_screens(self) -> List[Screen]:
        return [s for s in self.screens if s.is_faulty]

    @classmethod
    def from_dict(cls, data: Dict[str, Any], house_id: str) -> 'Environment':
        env_id = str(data.get('id'))
        return cls(
            id=env_id,
            house_id=house_id,
            name=data.get('name') or "",
            ip_address=data.get('ip') or None,
            crypt_key=data.get('crypt_key') or None,
            screens=[
                Screen.from_dict(s, env_id)
                for s in (data.get('screens') or [])
                if s
            ],
        )


@dataclass
class House:
    """Top-level tenant owning environments and a selected playlist."""

    id: str
    current_playlist_id: Optional[str] = None
    environments: List[Environment] = field(default_factory=list)

    def find_environment(self, environment_id: str) -> Optional[Environment]:
        for env in self.environments:
            if env.id == environment_id:
                return env
        return None

    def find_screen(self, screen_id: str, environment_id: str) -> Optional[Screen]:
        env = self.find_environment(environment_id)
        return env.find_screen(screen_id) if env else None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'House':
        house_id = str(data.get('id'))
        return cls(
            id=house_id,
            current_playlist_id=_as_id(data.get('current_playlist')),
            environments=[
                Environment.from_dict(e, house_id)
                for e in (data.get('environments') or [])
                if e
            ],
        )


def parse_houses(payload: Dict[str, Any]) -> List[House]:
    """Parse the houses list out of a user-details response."""
    return [House.from_dict(h) for h in (payload.get('houses') or []) if h]


def find_screen(houses: List[House], screen_id: str, environment_id: str) -> Optional[Screen]:
    """Locate a screen anywhere in a fetched graph."""
    for house in houses:
        screen = house.find_screen(screen_id, environment_id)
        if screen is not None:
            return screen
    return None
