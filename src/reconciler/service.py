"""
House screen reconciler service.

Wires configuration, the per-device state store, the backend gateway and
the event bus into a ReconciliationController, and runs it either once
or as a long-lived service reacting to events.
"""

import argparse
import json
import signal
import sys
import threading
from typing import Any, Dict, Optional

import zmq

from src.common.config import Config
from src.common.device_id import get_or_create_device_id
from src.common.ipc import MessagePublisher, MessageSubscriber
from src.common.logger import setup_logger
from .controller import ReconciliationController, RunOutcome
from .display import get_screen_dimensions
from .escalation import cleanup_account_flags, derive_setup_phase, has_stale_account_flags
from .events import EventBus, ZmqEventBridge
from .gateway import BackendGateway, HttpBackendGateway
from .state_store import JsonFileStateStore, RefreshState, StateStore, state_file_for_device

logger = setup_logger(__name__)


class ReconcilerService:
    """
    Long-running reconciler for one device.

    Usage:
        service = ReconcilerService(Config())
        service.run()   # blocks until SIGINT/SIGTERM
    """

    def __init__(
        self,
        config: Config,
        gateway: Optional[BackendGateway] = None,
        store: Optional[StateStore] = None,
        bus: Optional[EventBus] = None
    ):
        """
        Args:
            config: Loaded configuration
            gateway: Backend override (defaults to HttpBackendGateway)
            store: State store override (defaults to the device's JSON file)
            bus: Event bus override
        """
        self.config = config

        if store is None:
            state_dir = config.state_dir
            self.device_id = get_or_create_device_id(state_dir)
            store = JsonFileStateStore(state_file_for_device(state_dir, self.device_id))
        else:
            self.device_id = None
        self.store = store
        self.state = RefreshState(store)

        if gateway is None:
            gateway = HttpBackendGateway(
                config.backend_url,
                config.session_id,
                guest_sessions=config.guest_sessions,
                timeout=config.backend_timeout,
                cache_ttl=config.cache_ttl,
                environment_name=config.player_environment_name,
                master_ip=config.master_ip,
            )
        self.gateway = gateway

        self.bus = bus or EventBus()
        self.dimensions = get_screen_dimensions(
            config.get('display.width'),
            config.get('display.height'),
        )

        self.controller = ReconciliationController(
            gateway,
            self.state,
            config.session_id,
            bus=self.bus,
            dimensions=self.dimensions,
            player_environment_name=config.player_environment_name,
            master_ip=config.master_ip,
            default_domain=config.default_domain,
            poll_interval=float(config.get('reconciler.poll_interval', 1.0)),
            max_attempts=int(config.get('reconciler.max_attempts', 10)),
            reactivate_at=int(config.get('reconciler.reactivate_at', 3)),
            max_refresh_attempts=int(config.get('reconciler.max_refresh_attempts', 2)),
            run_deadline=float(config.get('reconciler.run_deadline', 120)),
            house_created_debounce=float(config.get('reconciler.house_created_debounce', 1.0)),
            second_refresh_delay=float(config.get('reconciler.second_refresh_delay', 1.0)),
        )

        self._bridge: Optional[ZmqEventBridge] = None
        self._running = False
        self._stop_event = threading.Event()

    def _create_bridge(self) -> ZmqEventBridge:
        context = zmq.Context.instance()
        publisher = MessagePublisher(
            port=int(self.config.get('ipc.pub_port', 5560)),
            service_name="reconciler",
            context=context,
        )
        subscriber = MessageSubscriber(
            host=self.config.get('ipc.sub_host', 'localhost'),
            port=int(self.config.get('ipc.sub_port', 5561)),
            service_name="reconciler",
            context=context,
        )
        return ZmqEventBridge(self.bus, publisher, subscriber)

    def start(self) -> None:
        """Start the event bridge (if enabled) and the controller."""
        if self._running:
            logger.warning("Reconciler service already running")
            return

        logger.info("Starting reconciler service (device %s)", self.device_id)
        self._running = True
        self._stop_event.clear()

        if self.config.ipc_enabled:
            self._bridge = self._create_bridge()
            self._bridge.start()

        self.controller.start()

    def stop(self) -> None:
        """Stop the controller and the event bridge."""
        if not self._running:
            return

        logger.info("Stopping reconciler service...")
        self._running = False
        self._stop_event.set()

        self.controller.stop()

        if self._bridge is not None:
            self._bridge.stop()
            self._bridge = None

        logger.info("Reconciler service stopped")

    def run(self) -> None:
        """Run until SIGINT/SIGTERM."""
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        self.start()
        logger.info("Reconciler running - press Ctrl+C to stop")

        try:
            while self._running:
                if self._stop_event.wait(timeout=1.0):
                    break
        except KeyboardInterrupt:
            logger.info("Received keyboard interrupt")

        self.stop()

    def _signal_handler(self, signum: int, frame) -> None:
        """Handle system signals for graceful shutdown."""
        logger.info("Received signal: %s", signal.Signals(signum).name)
        self._running = False
        self._stop_event.set()

    @property
    def is_running(self) -> bool:
        return self._running

    def get_status(self) -> Dict[str, Any]:
        """Service, controller and setup phase status."""
        return {
            'device_id': self.device_id,
            'running': self._running,
            'dimensions': self.dimensions.to_dict(),
            'setup_phase': derive_setup_phase(self.state).value,
            'stale_account_flags': has_stale_account_flags(self.store),
            'bridge': self._bridge is not None and self._bridge.is_running,
            'controller': self.controller.get_status(),
        }


def main(argv=None) -> int:
    """Command line entry point."""
    parser = argparse.ArgumentParser(description="House screen reconciler")
    parser.add_argument('--config', help="Config file path")
    parser.add_argument('--once', action='store_true', help="Run one reconciliation and exit")
    parser.add_argument('--force', action='store_true', help="Bypass cached backend data")
    parser.add_argument('--status', action='store_true', help="Print status as JSON and exit")
    parser.add_argument('--cleanup', action='store_true',
                        help="Remove account activation flags and exit")

    args = parser.parse_args(argv)

    config = Config(args.config)
    service = ReconcilerService(config)

    if args.cleanup:
        cleaned = cleanup_account_flags(service.store, reason="cli", bus=service.bus)
        print(json.dumps(cleaned, indent=2))
        return 0

    if args.status:
        print(json.dumps(service.get_status(), indent=2))
        return 0

    if args.once:
        report = service.controller.reconcile(force_refresh=args.force)
        print(json.dumps({
            'outcome': report.outcome.value,
            'houses': {k: v.value for k, v in report.house_outcomes.items()},
            'ladder': [step.value for step in report.ladder_steps],
            'error': report.error.to_dict() if report.error else None,
        }, indent=2))
        return 1 if report.outcome == RunOutcome.ERROR else 0

    logger.info("House screen reconciler starting...")
    service.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
