"""
Escalation ladder for screens that do not converge, plus the account
setup phase shown to users and the account flag cleanup helpers.
"""

from enum import Enum
from typing import Dict, List, Optional

from src.common.logger import setup_logger
from .events import ACCOUNT_FLAGS_CLEANED, EventBus
from .state_store import (
    ACCOUNT_JUST_CREATED,
    ACTIVATION_COMPLETE,
    ACTIVATION_IN_PROGRESS,
    CURRENT_HOUSE_ID,
    ENVIRONMENT_CREATION_NEEDED,
    NEEDS_REFRESH,
    NEEDS_SECOND_REFRESH,
    NEW_ACCOUNT_HOUSE_ID,
    PLAYLISTS_COPIED,
    REFRESH_ATTEMPTS,
    REFRESH_SHOWN,
    SCREEN_SETUP_FAILED,
    RefreshState,
    StateStore,
)

logger = setup_logger(__name__)


class LadderStep(Enum):
    """Rung reached after a failed dimension wait."""
    NEEDS_REFRESH = "needs_refresh"            # Prompt the user to reload
    SECOND_REFRESH = "second_refresh"          # Silent retry, no prompt
    EXHAUSTED = "exhausted"                    # Give up until a forced trigger


class EscalationLadder:
    """
    Turns repeated convergence failures into refresh flags.

    Every failure increments refreshAttempts. Once the count before the
    increment has reached `max_refresh_attempts`, the ladder clears all
    refresh flags, resets the counter and sets screenSetupFailed.
    """

    DEFAULT_MAX_REFRESH_ATTEMPTS = 2

    def __init__(self, state: RefreshState, max_refresh_attempts: int = DEFAULT_MAX_REFRESH_ATTEMPTS):
        self.state = state
        self.max_refresh_attempts = max_refresh_attempts

    def record_failure(self) -> LadderStep:
        """Apply one failed wait to the flags and return the rung reached."""
        with self.state.lock:
            previous = self.state.increment_refresh_attempts()

            if previous >= self.max_refresh_attempts:
                self.state.transition(**{
                    NEEDS_REFRESH: False,
                    NEEDS_SECOND_REFRESH: False,
                    REFRESH_SHOWN: False,
                    REFRESH_ATTEMPTS: None,
                    SCREEN_SETUP_FAILED: True,
                })
                logger.warning("Screen setup failed after %d refresh attempts, giving up",
                               previous + 1)
                return LadderStep.EXHAUSTED

            if self.state.refresh_shown or self.state.activation_complete:
                self.state.transition(**{
                    NEEDS_REFRESH: False,
                    NEEDS_SECOND_REFRESH: True,
                })
                logger.info("First refresh did not help, scheduling silent second refresh "
                            "(attempt %d)", previous + 1)
                return LadderStep.SECOND_REFRESH

            self.state.set_flag(NEEDS_REFRESH, True)
            logger.info("Screen did not converge, refresh needed (attempt %d)", previous + 1)
            return LadderStep.NEEDS_REFRESH

    def record_success(self) -> None:
        """Clear every refresh flag after a screen converged."""
        self.state.transition(**{
            NEEDS_REFRESH: False,
            NEEDS_SECOND_REFRESH: False,
            REFRESH_SHOWN: False,
            REFRESH_ATTEMPTS: None,
            SCREEN_SETUP_FAILED: False,
        })

    def __repr__(self) -> str:
        return f"EscalationLadder(max_refresh_attempts={self.max_refresh_attempts})"


class SetupPhase(Enum):
    """Account setup progress as presented to the user."""
    RETRY = "retry"
    COMPLETED = "completed"
    OPTIMIZING = "optimizing"
    FINALIZING = "finalizing"
    SETUP = "setup"
    CREATING = "creating"
    PREPARING = "preparing"
    NONE = "none"


# Attempt count the UI treats as "too many"
RETRY_PHASE_ATTEMPTS = 3


def derive_setup_phase(state: RefreshState) -> SetupPhase:
    """Map the persisted flags to a setup phase, highest priority first."""
    attempts = state.refresh_attempts

    if state.screen_setup_failed or attempts >= RETRY_PHASE_ATTEMPTS:
        return SetupPhase.RETRY
    if state.activation_complete and not state.needs_refresh and not state.needs_second_refresh:
        return SetupPhase.COMPLETED
    if state.activation_complete and 0 < attempts < RETRY_PHASE_ATTEMPTS:
        return SetupPhase.OPTIMIZING
    if state.needs_second_refresh:
        return SetupPhase.FINALIZING
    if state.needs_refresh:
        return SetupPhase.SETUP
    if state.activation_in_progress:
        return SetupPhase.CREATING
    if state.account_just_created:
        return SetupPhase.PREPARING
    return SetupPhase.NONE


# Flags written during account activation. copiedHouses is deliberately
# absent: content is copied at most once per house, even across cleanups.
ACTIVATION_FLAGS = (
    ACTIVATION_COMPLETE,
    ACCOUNT_JUST_CREATED,
    'currentSetupPhase',
    'guestUserId',
    PLAYLISTS_COPIED,
    REFRESH_ATTEMPTS,
    SCREEN_SETUP_FAILED,
    NEEDS_REFRESH,
    NEEDS_SECOND_REFRESH,
    REFRESH_SHOWN,
    ACTIVATION_IN_PROGRESS,
    NEW_ACCOUNT_HOUSE_ID,
    ENVIRONMENT_CREATION_NEEDED,
)

SESSION_FLAGS = (CURRENT_HOUSE_ID,)

# Flags whose presence means an activation was left half-way
STALE_MARKERS = (ACTIVATION_COMPLETE, ACCOUNT_JUST_CREATED, REFRESH_ATTEMPTS, NEEDS_REFRESH)


def cleanup_account_flags(
    store: StateStore,
    reason: str = "manual",
    preserve_session: bool = False,
    bus: Optional[EventBus] = None
) -> Dict[str, List[str]]:
    """
    Remove every account activation flag.

    Args:
        store: Device state store
        reason: Why the cleanup happens (logged and published)
        preserve_session: Keep session flags such as current_house_id
        bus: If given, receives an account-flags-cleaned event

    Returns:
        {'removed': [...], 'preserved': [...], 'not_found': [...]}
    """
    logger.info("Cleaning account flags. Reason: %s", reason)
    cleaned: Dict[str, List[str]] = {'removed': [], 'preserved': [], 'not_found': []}

    with store.lock:
        for key in ACTIVATION_FLAGS:
            if store.get(key) is not None:
                store.delete(key)
                cleaned['removed'].append(key)
            else:
                cleaned['not_found'].append(key)

        for key in SESSION_FLAGS:
            if store.get(key) is None:
                cleaned['not_found'].append(key)
            elif preserve_session:
                cleaned['preserved'].append(key)
            else:
                store.delete(key)
                cleaned['removed'].append(key)

    logger.info("Cleanup complete: removed=%s preserved=%s",
                cleaned['removed'], cleaned['preserved'])

    if bus is not None:
        bus.publish(ACCOUNT_FLAGS_CLEANED, {'reason': reason, 'cleaned': cleaned})

    return cleaned


def has_stale_account_flags(store: StateStore) -> bool:
    """True if an activation left any of its key flags behind."""
    return any(store.get(key) is not None for key in STALE_MARKERS)


def reset_account_flag(store: StateStore, key: str) -> bool:
    """
    Remove one flag.

    Returns:
        True if the flag was present
    """
    with store.lock:
        if store.get(key) is None:
            return False
        store.delete(key)
    logger.info("Reset single flag: %s", key)
    return True
