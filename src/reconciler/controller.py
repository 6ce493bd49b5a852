"""
Reconciliation controller.

Drives each house toward "at least one environment holding a powered-on,
correctly dimensioned screen":

    IDLE -> FETCHING -> CLASSIFYING -> CONVERGED
                                    -> REPAIRING -> WAITING_DIMENSIONS
                                         -> CONVERGED | ESCALATING
    -> IDLE | FAILED

Only one classification pass runs at a time. Every trigger bumps a
generation counter and cancels the previous run; a run whose generation
is stale stops at its next backend call and never writes flags. Events
are queued together with the flag writes they announce and delivered
once the run lock is released, so a subscriber may trigger a new run.
"""

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from src.common.logger import setup_logger
from .dimension_waiter import DimensionWaiter, WaitOutcome, WaitResult
from .escalation import EscalationLadder, LadderStep
from .events import HOUSE_CREATED, RECONCILE_ERROR, SCREEN_NEEDS_REFRESH, Event, EventBus
from .gateway import BackendGateway, GatewayError
from .models import Dimensions, House
from .policy import HouseCondition, HouseDiagnosis, diagnose, domain_from_session, screen_to_activate
from .state_store import (
    ACCOUNT_JUST_CREATED,
    ACTIVATION_COMPLETE,
    CURRENT_HOUSE_ID,
    ENVIRONMENT_CREATION_NEEDED,
    NEEDS_SECOND_REFRESH,
    NEW_ACCOUNT_HOUSE_ID,
    PLAYLISTS_COPIED,
    REFRESH_SHOWN,
    SCREEN_SETUP_FAILED,
    RefreshState,
)

logger = setup_logger(__name__)


class ControllerState(Enum):
    """Where the controller is in a reconciliation run."""
    IDLE = "idle"
    FETCHING = "fetching"
    CLASSIFYING = "classifying"
    REPAIRING = "repairing"
    WAITING_DIMENSIONS = "waiting_dimensions"
    ESCALATING = "escalating"
    CONVERGED = "converged"
    FAILED = "failed"


class RunOutcome(Enum):
    """Result of a run, or of one house within a run."""
    CONVERGED = "converged"                  # Nothing to do
    REPAIRED = "repaired"                    # Corrective calls succeeded
    DEFERRED = "deferred"                    # Environment creation left to pairing flow
    NOT_FOUND = "not_found"                  # Expected screen never appeared
    ESCALATED = "escalated"                  # Ladder advanced
    EXHAUSTED = "exhausted"                  # Ladder gave up
    SKIPPED = "skipped"                      # Repairs latched off after giving up
    NO_HOUSES = "no_houses"
    ERROR = "error"                          # Backend call failed
    DEADLINE_EXCEEDED = "deadline_exceeded"
    SUPERSEDED = "superseded"                # A newer trigger took over


# Which house outcome dominates when a run covers several houses
_SEVERITY = [
    RunOutcome.CONVERGED,
    RunOutcome.REPAIRED,
    RunOutcome.DEFERRED,
    RunOutcome.SKIPPED,
    RunOutcome.NOT_FOUND,
    RunOutcome.ESCALATED,
    RunOutcome.EXHAUSTED,
]


class RunSuperseded(Exception):
    """A newer run took over; the current one must stop without side effects."""


class DeadlineExceeded(Exception):
    """The run used up its overall time budget."""


@dataclass
class ReconcileError:
    """User-visible record of a failed backend call."""

    operation: str
    message: str
    occurred_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'operation': self.operation,
            'message': self.message,
            'occurred_at': self.occurred_at.isoformat(),
        }


@dataclass
class RunReport:
    """What one reconcile() call did."""

    generation: int
    force_refresh: bool
    outcome: RunOutcome = RunOutcome.CONVERGED
    house_outcomes: Dict[str, RunOutcome] = field(default_factory=dict)
    ladder_steps: List[LadderStep] = field(default_factory=list)
    error: Optional[ReconcileError] = None


@dataclass
class _RunContext:
    generation: int
    cancel: threading.Event
    deadline: float
    report: RunReport
    pending_events: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list)


class ReconciliationController:
    """
    Reconciles house screen state against the provisioning backend.

    Usage:
        controller = ReconciliationController(gateway, RefreshState(store), session)
        controller.start()            # mount run + event subscriptions
        report = controller.reconcile(force_refresh=True)
        controller.stop()
    """

    DEFAULT_RUN_DEADLINE = 120.0
    DEFAULT_HOUSE_CREATED_DEBOUNCE = 1.0
    DEFAULT_SECOND_REFRESH_DELAY = 1.0

    def __init__(
        self,
        gateway: BackendGateway,
        state: RefreshState,
        session: str,
        bus: Optional[EventBus] = None,
        dimensions: Optional[Dimensions] = None,
        player_environment_name: str = "Web player",
        master_ip: str = "127.0.0.1",
        default_domain: str = "1",
        poll_interval: float = DimensionWaiter.DEFAULT_INTERVAL,
        max_attempts: int = DimensionWaiter.DEFAULT_MAX_ATTEMPTS,
        reactivate_at: int = DimensionWaiter.DEFAULT_REACTIVATE_AT,
        max_refresh_attempts: int = EscalationLadder.DEFAULT_MAX_REFRESH_ATTEMPTS,
        run_deadline: float = DEFAULT_RUN_DEADLINE,
        house_created_debounce: float = DEFAULT_HOUSE_CREATED_DEBOUNCE,
        second_refresh_delay: float = DEFAULT_SECOND_REFRESH_DELAY,
        on_error: Optional[Callable[[ReconcileError], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        timer_factory: Callable[..., Any] = threading.Timer
    ):
        """
        Args:
            gateway: Backend access
            state: Persisted refresh flags
            session: Session used for activation and content copy
            bus: Event bus for screen-needs-refresh / house-created
            dimensions: Dimensions reported when activating screens
            player_environment_name: Reserved name of browser player environments
            master_ip: Address marking the master environment
            default_domain: Content domain when the session names none
            poll_interval: Seconds between dimension checks
            max_attempts: Dimension checks before timing out
            reactivate_at: Dimension check that re-activates the screen
            max_refresh_attempts: Failures tolerated before giving up
            run_deadline: Overall seconds allowed for one run
            house_created_debounce: Delay before reacting to house-created
            second_refresh_delay: Delay before the pending second-refresh pass
            on_error: Callback(ReconcileError) when a backend call fails
            clock: Monotonic time source
            timer_factory: threading.Timer-compatible factory for delayed triggers
        """
        self._gateway = gateway
        self._state = state
        self._session = session
        self._bus = bus
        self._dimensions = dimensions or Dimensions()
        self.player_environment_name = player_environment_name
        self.master_ip = master_ip
        self.default_domain = default_domain
        self.run_deadline = run_deadline
        self.house_created_debounce = house_created_debounce
        self.second_refresh_delay = second_refresh_delay
        self._on_error = on_error
        self._clock = clock
        self._timer_factory = timer_factory

        self._ladder = EscalationLadder(state, max_refresh_attempts)
        self._waiter = DimensionWaiter(
            gateway,
            session,
            self._dimensions,
            interval=poll_interval,
            max_attempts=max_attempts,
            reactivate_at=reactivate_at,
            clock=clock,
        )

        # Generation guard
        self._gen_lock = threading.Lock()
        self._generation = 0
        self._cancel: Optional[threading.Event] = None

        # Serializes classification passes
        self._run_lock = threading.Lock()

        self._controller_state = ControllerState.IDLE
        self._last_report: Optional[RunReport] = None
        self._last_error: Optional[ReconcileError] = None

        # Trigger plumbing
        self._timer_lock = threading.Lock()
        self._house_created_timer = None
        self._second_refresh_timer = None
        self._mount_thread: Optional[threading.Thread] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._running = False

    # Properties

    @property
    def state(self) -> ControllerState:
        return self._controller_state

    @property
    def generation(self) -> int:
        with self._gen_lock:
            return self._generation

    @property
    def last_report(self) -> Optional[RunReport]:
        return self._last_report

    @property
    def last_error(self) -> Optional[ReconcileError]:
        return self._last_error

    @property
    def is_running(self) -> bool:
        return self._running

    # Generation guard

    def _begin_run(self) -> _RunContext:
        """Claim a new generation and cancel whatever run held the old one."""
        with self._gen_lock:
            self._generation += 1
            if self._cancel is not None:
                self._cancel.set()
            cancel = threading.Event()
            self._cancel = cancel
            generation = self._generation

        return _RunContext(
            generation=generation,
            cancel=cancel,
            deadline=self._clock() + self.run_deadline,
            report=RunReport(generation=generation, force_refresh=False),
        )

    def _is_current(self, ctx: _RunContext) -> bool:
        with self._gen_lock:
            return ctx.generation == self._generation

    def _checkpoint(self, ctx: _RunContext) -> None:
        """Stop a stale or overdue run before its next suspension point."""
        if not self._is_current(ctx):
            raise RunSuperseded()
        if self._clock() >= ctx.deadline:
            raise DeadlineExceeded()

    @contextmanager
    def _committing(self, ctx: _RunContext):
        """Hold the generation steady while a run writes flags."""
        with self._gen_lock:
            if ctx.generation != self._generation:
                raise RunSuperseded()
            yield

    def _set_state(self, ctx: _RunContext, new_state: ControllerState) -> None:
        with self._gen_lock:
            if ctx.generation == self._generation:
                self._controller_state = new_state

    # Entry point

    def reconcile(self, force_refresh: bool = False) -> RunReport:
        """
        Run one reconciliation pass.

        Args:
            force_refresh: Bypass any cached graph; also lifts a previous
                "screen setup failed" latch

        Returns:
            RunReport for this call. A call superseded by a newer one
            reports SUPERSEDED and leaves no trace in the flags.
        """
        ctx = self._begin_run()
        ctx.report.force_refresh = force_refresh

        with self._run_lock:
            self._run_guarded(ctx, force_refresh)

        self._deliver(ctx)
        return ctx.report

    def _run_guarded(self, ctx: _RunContext, force_refresh: bool) -> None:
        if not self._is_current(ctx):
            ctx.report.outcome = RunOutcome.SUPERSEDED
            logger.info("Run %d superseded before it started", ctx.generation)
            return

        logger.info("Reconciliation run %d started (force_refresh=%s)",
                    ctx.generation, force_refresh)

        try:
            ctx.report.outcome = self._run(ctx, force_refresh)
        except RunSuperseded:
            ctx.report.outcome = RunOutcome.SUPERSEDED
            logger.info("Run %d superseded by a newer trigger, discarding results",
                        ctx.generation)
            return
        except DeadlineExceeded:
            ctx.report.outcome = RunOutcome.DEADLINE_EXCEEDED
            logger.warning("Run %d exceeded its %.0fs deadline",
                           ctx.generation, self.run_deadline)
        except GatewayError as e:
            ctx.report.outcome = RunOutcome.ERROR
            self._record_error(ctx, e)

        self._finish(ctx)

    def _record_error(self, ctx: _RunContext, error: GatewayError) -> None:
        logger.error("Run %d aborted, backend call failed: %s", ctx.generation, error)

        with self._gen_lock:
            if ctx.generation != self._generation:
                return
            record = ReconcileError(error.operation, error.message)
            ctx.report.error = record
            self._last_error = record
            ctx.pending_events.append((RECONCILE_ERROR, record.to_dict()))

    def _deliver(self, ctx: _RunContext) -> None:
        """Hand committed events and errors to listeners, outside the run lock."""
        if ctx.report.error is not None and self._on_error is not None:
            try:
                self._on_error(ctx.report.error)
            except Exception as e:
                logger.error("Error in on_error callback: %s", e)

        if self._bus is None:
            return
        for name, payload in ctx.pending_events:
            self._bus.publish(name, payload)

    def _finish(self, ctx: _RunContext) -> None:
        with self._gen_lock:
            if ctx.generation != self._generation:
                return
            if ctx.report.outcome not in (RunOutcome.ERROR, RunOutcome.DEADLINE_EXCEEDED):
                self._last_error = None
            self._last_report = ctx.report
            if self._state.screen_setup_failed:
                self._controller_state = ControllerState.FAILED
            else:
                self._controller_state = ControllerState.IDLE

        logger.info("Reconciliation run %d finished: %s",
                    ctx.generation, ctx.report.outcome.value)

    # Run body

    def _run(self, ctx: _RunContext, force_refresh: bool) -> RunOutcome:
        if self._state.screen_setup_failed and force_refresh:
            logger.info("Forced trigger: clearing previous screen setup failure")
            with self._committing(ctx):
                self._state.set_flag(SCREEN_SETUP_FAILED, False)

        houses = self._fetch(ctx, force_refresh)
        if not houses:
            logger.info("No houses found")
            return RunOutcome.NO_HOUSES

        with self._committing(ctx):
            self._state.store.set(CURRENT_HOUSE_ID, houses[0].id)

        self._log_snapshot(houses)

        for house in houses:
            ctx.report.house_outcomes[house.id] = self._reconcile_house(ctx, house)

        outcomes = ctx.report.house_outcomes.values()
        deferred = any(o == RunOutcome.DEFERRED for o in outcomes)
        with self._committing(ctx):
            self._state.set_flag(ENVIRONMENT_CREATION_NEEDED, deferred)

        return max(outcomes, key=_SEVERITY.index)

    def _fetch(self, ctx: _RunContext, force_refresh: bool) -> List[House]:
        self._checkpoint(ctx)
        self._set_state(ctx, ControllerState.FETCHING)
        houses = self._gateway.fetch_graph(force_refresh=force_refresh)
        self._checkpoint(ctx)
        return houses

    def _log_snapshot(self, houses: List[House]) -> None:
        for house in houses:
            logger.info(
                "Account snapshot: house=%s environments=%s flags=%s",
                house.id,
                [
                    {
                        'id': env.id,
                        'ip': env.ip_address or 'none',
                        'screen': (
                            f"{env.screens[0].width}x{env.screens[0].height}"
                            if env.screens else 'no_screen'
                        ),
                    }
                    for env in house.environments
                ],
                self._state.snapshot(),
            )

    def _reconcile_house(self, ctx: _RunContext, house: House) -> RunOutcome:
        self._bootstrap_content(ctx, house)

        self._set_state(ctx, ControllerState.CLASSIFYING)
        diagnosis = diagnose(house, self.player_environment_name, self.master_ip)
        logger.info("House %s classified as %s", house.id, diagnosis.condition.value)

        if diagnosis.condition == HouseCondition.NO_ENVIRONMENTS:
            logger.info("House %s has no environments, deferring creation to device pairing",
                        house.id)
            return RunOutcome.DEFERRED

        if diagnosis.condition == HouseCondition.HEALTHY:
            self._set_state(ctx, ControllerState.CONVERGED)
            return RunOutcome.CONVERGED

        if self._state.screen_setup_failed:
            logger.warning("Screen setup previously failed, skipping repairs for house %s "
                           "until a forced refresh", house.id)
            return RunOutcome.SKIPPED

        self._set_state(ctx, ControllerState.REPAIRING)
        if diagnosis.condition == HouseCondition.NO_ACTIVE_SCREEN:
            return self._activate_missing_screen(ctx, diagnosis)
        return self._repair_faulty_players(ctx, diagnosis)

    def _bootstrap_content(self, ctx: _RunContext, house: House) -> None:
        """Copy default content into a just-created account, once per house."""
        if not self._state.account_just_created:
            return
        if self._state.new_account_house_id != house.id:
            return

        if house.id in self._state.copied_houses:
            logger.info("Playlists already copied for house %s", house.id)
        else:
            domain = domain_from_session(self._session, self.default_domain)
            logger.info("Copying default content into house %s (domain %s)", house.id, domain)

            self._checkpoint(ctx)
            result = self._gateway.copy_default_content(domain, self._session, house.id)
            logger.info("Content copy result: %s", result.get('message', result)
                        if isinstance(result, dict) else result)

            # Recorded even if superseded meanwhile: the copy already happened
            self._state.add_copied_house(house.id)

        with self._committing(ctx):
            self._state.transition(**{
                PLAYLISTS_COPIED: True,
                ACCOUNT_JUST_CREATED: False,
                NEW_ACCOUNT_HOUSE_ID: None,
            })

    def _activate_missing_screen(self, ctx: _RunContext, diagnosis: HouseDiagnosis) -> RunOutcome:
        """No working screen anywhere: make the master (or first) environment's work."""
        target = diagnosis.repair_target
        screen = screen_to_activate(target)

        if screen is None:
            logger.info("Environment %s has no screen, creating one", target.id)
            self._checkpoint(ctx)
            self._gateway.create_screen(target.id, self._dimensions)

            houses = self._fetch(ctx, True)
            refreshed = None
            for house in houses:
                refreshed = house.find_environment(target.id) or refreshed
            screen = refreshed.screens[0] if refreshed and refreshed.screens else None

            if screen is None:
                logger.warning("Screen for environment %s not found after creation", target.id)
                return RunOutcome.NOT_FOUND

        result = self._activate_and_wait(ctx, screen.id, target.id)
        outcome = self._settle(ctx, result)
        self._fetch(ctx, True)
        return outcome

    def _repair_faulty_players(self, ctx: _RunContext, diagnosis: HouseDiagnosis) -> RunOutcome:
        """Repair essential player environments, then prune the non-essential ones."""
        outcomes: List[RunOutcome] = []
        repaired = False

        for env in diagnosis.essential:
            screen = env.faulty_screens[0]
            logger.info("Repairing screen %s of essential environment %s", screen.id, env.id)

            result = self._activate_and_wait(ctx, screen.id, env.id)
            outcome = self._settle(ctx, result)
            outcomes.append(outcome)
            if result.success:
                repaired = True
            if outcome == RunOutcome.EXHAUSTED:
                break

        if not repaired:
            if diagnosis.non_essential:
                logger.info(
                    "Keeping %d non-essential faulty environment(s): no essential repair confirmed",
                    len(diagnosis.non_essential)
                )
            if not outcomes:
                return RunOutcome.CONVERGED
            return max(outcomes, key=_SEVERITY.index)

        for env in diagnosis.non_essential:
            logger.info("Removing non-essential environment %s with faulty screens", env.id)
            self._checkpoint(ctx)
            self._gateway.remove_environment(env.id)

        self._fetch(ctx, True)
        outcomes.append(RunOutcome.REPAIRED)
        return max(outcomes, key=_SEVERITY.index)

    def _activate_and_wait(self, ctx: _RunContext, screen_id: str, environment_id: str) -> WaitResult:
        self._checkpoint(ctx)
        self._gateway.activate_screen(screen_id, True, self._dimensions, self._session)

        self._set_state(ctx, ControllerState.WAITING_DIMENSIONS)
        result = self._waiter.wait(
            screen_id,
            environment_id,
            cancel=ctx.cancel,
            deadline=ctx.deadline,
        )

        if result.outcome == WaitOutcome.CANCELLED:
            raise RunSuperseded()
        if result.outcome == WaitOutcome.DEADLINE:
            raise DeadlineExceeded()
        return result

    def _settle(self, ctx: _RunContext, result: WaitResult) -> RunOutcome:
        """Feed a dimension wait result into the escalation ladder."""
        if result.success:
            with self._committing(ctx):
                self._ladder.record_success()
            self._set_state(ctx, ControllerState.CONVERGED)
            return RunOutcome.REPAIRED

        self._set_state(ctx, ControllerState.ESCALATING)
        with self._committing(ctx):
            if self._state.screen_setup_failed:
                # Already gave up earlier in this run
                return RunOutcome.EXHAUSTED
            step = self._ladder.record_failure()
            if step == LadderStep.NEEDS_REFRESH:
                ctx.pending_events.append((SCREEN_NEEDS_REFRESH, {}))
        ctx.report.ladder_steps.append(step)

        if step == LadderStep.EXHAUSTED:
            return RunOutcome.EXHAUSTED
        if result.outcome == WaitOutcome.NOT_FOUND:
            return RunOutcome.NOT_FOUND
        return RunOutcome.ESCALATED

    # Signals from collaborators

    def account_created(self, house_id: str) -> None:
        """Mark a house as belonging to an account that needs bootstrapping."""
        self._state.transition(**{
            ACCOUNT_JUST_CREATED: True,
            NEW_ACCOUNT_HOUSE_ID: house_id,
        })
        logger.info("Account created for house %s", house_id)

    def mark_activation_complete(self) -> None:
        self._state.set_flag(ACTIVATION_COMPLETE, True)

    def mark_refresh_shown(self) -> None:
        """Called by the UI once it has shown the refresh prompt."""
        self._state.set_flag(REFRESH_SHOWN, True)

    # Triggers

    def start(self) -> None:
        """Subscribe to events and run the mount reconciliation in the background."""
        if self._running:
            logger.warning("Reconciliation controller already running")
            return
        self._running = True

        if self._bus is not None:
            self._unsubscribe = self._bus.subscribe(HOUSE_CREATED, self._on_house_created)

        # Flag left by a previous run; flags this mount run sets wait for the next start
        pending_second_refresh = self._state.needs_second_refresh

        self._mount_thread = threading.Thread(
            target=self._mount_run,
            name="ReconcileMount",
            daemon=True
        )
        self._mount_thread.start()

        if pending_second_refresh:
            logger.info("needsSecondRefresh detected, scheduling environment data refresh")
            with self._timer_lock:
                self._second_refresh_timer = self._timer_factory(
                    self.second_refresh_delay, self._second_refresh_pass
                )
                self._second_refresh_timer.daemon = True
                self._second_refresh_timer.start()

        logger.info("Reconciliation controller started")

    def _mount_run(self) -> None:
        self.reconcile(force_refresh=False)

    def _second_refresh_pass(self) -> None:
        """Consume the pending second-refresh flag and force a fresh run."""
        self._state.clear(NEEDS_SECOND_REFRESH, ENVIRONMENT_CREATION_NEEDED)
        logger.info("Running second refresh pass")
        self.reconcile(force_refresh=True)

    def _on_house_created(self, event: Event) -> None:
        house_id = event.payload.get('houseId')
        logger.info("House created event: %s", house_id)

        with self._timer_lock:
            if self._house_created_timer is not None:
                self._house_created_timer.cancel()
            self._house_created_timer = self._timer_factory(
                self.house_created_debounce, self._house_created_fire, args=(house_id,)
            )
            self._house_created_timer.daemon = True
            self._house_created_timer.start()

    def _house_created_fire(self, house_id: Optional[str]) -> None:
        logger.info("Re-fetching environment details after creation of house %s", house_id)
        self.reconcile(force_refresh=True)

    def stop(self) -> None:
        """Cancel pending triggers and any in-flight run."""
        if not self._running:
            return
        self._running = False

        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        with self._timer_lock:
            for timer in (self._house_created_timer, self._second_refresh_timer):
                if timer is not None:
                    timer.cancel()
            self._house_created_timer = None
            self._second_refresh_timer = None

        # Supersede the in-flight run so its dimension wait wakes up
        with self._gen_lock:
            self._generation += 1
            if self._cancel is not None:
                self._cancel.set()

        if self._mount_thread and self._mount_thread.is_alive():
            self._mount_thread.join(timeout=5)
        self._mount_thread = None

        logger.info("Reconciliation controller stopped")

    def get_status(self) -> Dict[str, Any]:
        """Controller status for diagnostics."""
        report = self._last_report
        return {
            'running': self._running,
            'state': self._controller_state.value,
            'generation': self.generation,
            'last_outcome': report.outcome.value if report else None,
            'last_error': self._last_error.to_dict() if self._last_error else None,
            'flags': self._state.snapshot(),
        }

    def __repr__(self) -> str:
        return (
            f"ReconciliationController(state={self._controller_state.value}, "
            f"generation={self.generation})"
        )
