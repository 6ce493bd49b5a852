"""
Fault classification for a fetched house.

Pure functions over the model graph; no backend calls and no state.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from src.common.logger import setup_logger
from .models import Environment, House, Screen

logger = setup_logger(__name__)

# Sessions look like "wp-<name>-<domain>-<32 hex>"
_SESSION_DOMAIN = re.compile(r"-(\d+)-[a-f0-9]{32}$")


class HouseCondition(Enum):
    """What a house needs from the reconciler."""
    NO_ENVIRONMENTS = "no_environments"    # Deferred to the pairing flow
    NO_ACTIVE_SCREEN = "no_active_screen"  # Create and/or activate a screen
    FAULTY_PLAYERS = "faulty_players"      # Repair essential, prune the rest
    HEALTHY = "healthy"


@dataclass
class HouseDiagnosis:
    """Classification of one house."""

    house: House
    condition: HouseCondition
    master: Optional[Environment] = None
    essential: List[Environment] = field(default_factory=list)
    non_essential: List[Environment] = field(default_factory=list)

    @property
    def repair_target(self) -> Optional[Environment]:
        """Environment that must end up with a working screen."""
        if self.master is not None:
            return self.master
        return self.house.environments[0] if self.house.environments else None


def domain_from_session(session_id: str, default: str = "1") -> str:
    """Content domain encoded in a session id."""
    match = _SESSION_DOMAIN.search(session_id or "")
    return match.group(1) if match else default


def find_master(house: House, master_ip: str = "127.0.0.1") -> Optional[Environment]:
    """The environment bound to the loopback address, if any."""
    masters = [env for env in house.environments if env.is_master(master_ip)]
    if len(masters) > 1:
        logger.warning(
            "House %s has %d master environments (%s), using %s",
            house.id, len(masters), [m.id for m in masters], masters[0].id
        )
    return masters[0] if masters else None


def is_essential(env: Environment, house: House, master_ip: str = "127.0.0.1") -> bool:
    """The master environment, or the sole environment of a house."""
    return len(house.environments) == 1 or env.is_master(master_ip)


def has_active_screen(house: House) -> bool:
    """Any powered-on, correctly dimensioned screen across all environments."""
    return any(
        screen.is_active
        for env in house.environments
        for screen in env.screens
    )


def faulty_player_environments(house: House, player_name: str = "Web player") -> List[Environment]:
    """Environments with the reserved player name holding a faulty screen."""
    return [
        env for env in house.environments
        if env.name == player_name and env.faulty_screens
    ]


def partition_essential(
    environments: List[Environment],
    house: House,
    master_ip: str = "127.0.0.1"
) -> Tuple[List[Environment], List[Environment]]:
    """Split environments into (essential, non_essential)."""
    essential, non_essential = [], []
    for env in environments:
        if is_essential(env, house, master_ip):
            essential.append(env)
        else:
            non_essential.append(env)
    return essential, non_essential


def screen_to_activate(env: Environment) -> Optional[Screen]:
    """Prefer the first faulty screen, else the first screen at all."""
    faulty = env.faulty_screens
    if faulty:
        return faulty[0]
    return env.screens[0] if env.screens else None


def diagnose(
    house: House,
    player_name: str = "Web player",
    master_ip: str = "127.0.0.1"
) -> HouseDiagnosis:
    """Classify a house into the action the reconciler must take."""
    if not house.environments:
        return HouseDiagnosis(house, HouseCondition.NO_ENVIRONMENTS)

    master = find_master(house, master_ip)

    if not has_active_screen(house):
        return HouseDiagnosis(house, HouseCondition.NO_ACTIVE_SCREEN, master=master)

    faulty = faulty_player_environments(house, player_name)
    if not faulty:
        return HouseDiagnosis(house, HouseCondition.HEALTHY, master=master)

    essential, non_essential = partition_essential(faulty, house, master_ip)
    return HouseDiagnosis(
        house,
        HouseCondition.FAULTY_PLAYERS,
        master=master,
        essential=essential,
        non_essential=non_essential,
    )
