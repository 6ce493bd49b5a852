"""
Bounded polling for a freshly activated screen.

The backend accepts an activation before it reflects it, so after
activating a screen the reconciler polls the graph until the screen
reports dimensions and power, re-activating it once part way through.
"""

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from src.common.logger import setup_logger
from .gateway import BackendGateway, GatewayError
from .models import Dimensions, Screen, find_screen

logger = setup_logger(__name__)


class WaitOutcome(Enum):
    """How a dimension wait ended."""
    SUCCESS = "success"
    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"
    CANCELLED = "cancelled"    # Superseded or stopped; not a convergence failure
    DEADLINE = "deadline"      # Run budget ran out; not a convergence failure


@dataclass
class WaitResult:
    """Result of one DimensionWaiter run."""

    outcome: WaitOutcome
    attempts: int
    screen: Optional[Screen] = None
    reactivated: bool = False

    @property
    def success(self) -> bool:
        return self.outcome == WaitOutcome.SUCCESS


class DimensionWaiter:
    """
    Re-fetches the graph until a screen's dimensions populate.

    Polls every `interval` seconds, at most `max_attempts` times. At poll
    number `reactivate_at`, if the screen is present but still
    unpopulated, issues exactly one more activate_screen call.
    Ordinary non-convergence is returned as TIMEOUT / NOT_FOUND; only a
    failing fetch raises (GatewayError).
    """

    DEFAULT_INTERVAL = 1.0
    DEFAULT_MAX_ATTEMPTS = 10
    DEFAULT_REACTIVATE_AT = 3

    def __init__(
        self,
        gateway: BackendGateway,
        session: str,
        dimensions: Dimensions,
        interval: float = DEFAULT_INTERVAL,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        reactivate_at: int = DEFAULT_REACTIVATE_AT,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Args:
            gateway: Backend used for polling and re-activation
            session: Session passed to activate_screen
            dimensions: Dimensions sent on re-activation
            interval: Seconds between polls
            max_attempts: Polls before giving up
            reactivate_at: Poll number that triggers the extra activation
            clock: Monotonic time source, compared against deadlines
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.gateway = gateway
        self.session = session
        self.dimensions = dimensions
        self.interval = interval
        self.max_attempts = max_attempts
        self.reactivate_at = reactivate_at
        self._clock = clock

    def wait(
        self,
        screen_id: str,
        environment_id: str,
        cancel: Optional[threading.Event] = None,
        deadline: Optional[float] = None
    ) -> WaitResult:
        """
        Poll until the screen is populated, attempts run out, or cancelled.

        Args:
            screen_id: Screen to watch
            environment_id: Environment that should contain it
            cancel: Set to abandon the wait immediately
            deadline: Clock value after which no further poll is made

        Returns:
            WaitResult

        Raises:
            GatewayError: If a poll fetch fails
        """
        cancel = cancel or threading.Event()
        reactivated = False
        screen: Optional[Screen] = None

        logger.info("Waiting for screen %s in environment %s to report dimensions",
                    screen_id, environment_id)

        for attempt in range(1, self.max_attempts + 1):
            delay = self.interval
            if deadline is not None:
                delay = max(0.0, min(delay, deadline - self._clock()))

            if cancel.wait(delay):
                logger.info("Dimension wait for screen %s cancelled at check %d",
                            screen_id, attempt)
                return WaitResult(WaitOutcome.CANCELLED, attempt - 1, screen, reactivated)

            if deadline is not None and self._clock() >= deadline:
                logger.warning("Dimension wait for screen %s hit the run deadline at check %d",
                               screen_id, attempt)
                return WaitResult(WaitOutcome.DEADLINE, attempt - 1, screen, reactivated)

            houses = self.gateway.fetch_graph(force_refresh=True)
            screen = find_screen(houses, screen_id, environment_id)

            if screen is None:
                logger.debug("Check %d/%d: screen %s not found",
                             attempt, self.max_attempts, screen_id)
                continue

            logger.debug(
                "Check %d/%d: screen %s width=%d height=%d on=%s",
                attempt, self.max_attempts, screen_id, screen.width, screen.height, screen.on
            )

            if screen.is_populated:
                logger.info("Screen %s dimensions populated after %d check(s)",
                            screen_id, attempt)
                return WaitResult(WaitOutcome.SUCCESS, attempt, screen, reactivated)

            if attempt == self.reactivate_at and not reactivated:
                reactivated = True
                logger.info("Screen %s still unpopulated after %d checks, activating again",
                            screen_id, attempt)
                try:
                    self.gateway.activate_screen(screen_id, True, self.dimensions, self.session)
                except GatewayError as e:
                    # The poll loop still decides the outcome
                    logger.error("Re-activation of screen %s failed: %s", screen_id, e)

        if screen is None:
            logger.warning("Screen %s never appeared after %d checks", screen_id, self.max_attempts)
            return WaitResult(WaitOutcome.NOT_FOUND, self.max_attempts, None, reactivated)

        logger.warning("Screen %s still unpopulated after %d checks, giving up",
                       screen_id, self.max_attempts)
        return WaitResult(WaitOutcome.TIMEOUT, self.max_attempts, screen, reactivated)
