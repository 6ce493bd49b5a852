"""
Provisioning backend access.

BackendGateway is the contract the reconciler depends on. Every operation
is idempotent from the caller's side; transport and backend failures are
raised as GatewayError and never retried here.
"""

import json
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

import requests

from src.common.logger import setup_logger
from .models import Dimensions, House, parse_houses

logger = setup_logger(__name__)


class GatewayError(Exception):
    """A backend call failed (network, HTTP status, or error payload)."""

    def __init__(self, operation: str, message: str):
        super().__init__(f"{operation}: {message}")
        self.operation = operation
        self.message = message


class BackendGateway(ABC):
    """Remote operations on the house / environment / screen graph."""

    @abstractmethod
    def fetch_graph(self, force_refresh: bool = False) -> List[House]:
        """Fetch every house with its environments and screens."""

    @abstractmethod
    def activate_screen(self, screen_id: str, on: bool, dimensions: Dimensions,
                        session: str) -> Any:
        """Power a screen on/off and record its dimensions."""

    @abstractmethod
    def create_environment(self, house_id: str) -> str:
        """Create a player environment; returns its id."""

    @abstractmethod
    def create_screen(self, environment_id: str,
                      dimensions: Optional[Dimensions] = None) -> Any:
        """Create a screen inside an environment."""

    @abstractmethod
    def remove_environment(self, environment_id: str) -> Any:
        """Delete an environment and its screens."""

    @abstractmethod
    def copy_default_content(self, domain: str, session: str, house_id: str) -> Dict[str, Any]:
        """Copy the domain's template playlists into a new account."""


class HttpBackendGateway(BackendGateway):
    """BackendGateway over the backend's versioned web-service endpoints."""

    API_VERSION = 1

    def __init__(
        self,
        base_url: str,
        session_id: str,
        guest_sessions: Optional[Dict[str, str]] = None,
        timeout: float = 10,
        cache_ttl: float = 5,
        environment_name: str = "Web player",
        master_ip: str = "127.0.0.1",
        http: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Args:
            base_url: Web-service root (e.g. https://host/ws)
            session_id: Session used for every call
            guest_sessions: Domain -> template account session
            timeout: Per-request timeout in seconds
            cache_ttl: Seconds a non-forced fetch may reuse the last graph
            environment_name: Name given to created environments
            master_ip: Address given to created environments
            http: requests session (one is created if None)
            clock: Monotonic time source for the graph cache
        """
        self.base_url = base_url.rstrip('/')
        self.session_id = session_id
        self.guest_sessions = dict(guest_sessions or {})
        self.timeout = timeout
        self.cache_ttl = cache_ttl
        self.environment_name = environment_name
        self.master_ip = master_ip
        self._http = http or requests.Session()
        self._clock = clock

        self._cached_graph: Optional[List[House]] = None
        self._cached_at: Optional[float] = None

    def _request(self, method: str, endpoint: str, params: Dict[str, Any]) -> Any:
        """
        Call one endpoint and decode its JSON body.

        Raises:
            GatewayError: On network failure, non-200 status, or an
                error payload from the backend
        """
        url = f"{self.base_url}/{endpoint}"
        query = {'version': self.API_VERSION, **params}

        try:
            response = self._http.request(
                method,
                url,
                params=query,
                headers={'Accept': 'text/x-json'},
                timeout=self.timeout
            )
        except requests.Timeout:
            raise GatewayError(endpoint, "request timed out")
        except requests.RequestException as e:
            raise GatewayError(endpoint, f"request failed: {e}")

        if response.status_code != 200:
            raise GatewayError(endpoint, f"status {response.status_code}")

        if not response.content:
            return {}

        try:
            data = response.json()
        except ValueError:
            raise GatewayError(endpoint, "response is not JSON")

        if isinstance(data, dict) and data.get('tag_name') == 'error':
            raise GatewayError(endpoint, data.get('message') or "backend error")

        return data

    def invalidate(self) -> None:
        """Drop the cached graph so the next fetch goes to the backend."""
        self._cached_graph = None
        self._cached_at = None

    def fetch_graph(self, force_refresh: bool = False) -> List[House]:
        now = self._clock()
        if (
            not force_refresh
            and self._cached_graph is not None
            and self._cached_at is not None
            and now - self._cached_at < self.cache_ttl
        ):
            logger.debug("Using cached graph (age %.1fs)", now - self._cached_at)
            return self._cached_graph

        data = self._request('GET', 'get_wp_user', {
            'session': self.session_id,
            'anticache': int(time.time() * 1000),
        })
        if not isinstance(data, dict):
            raise GatewayError('get_wp_user', "user account data is missing")

        houses = parse_houses(data)
        self._cached_graph = houses
        self._cached_at = now
        logger.debug("Fetched %d house(s)", len(houses))
        return houses

    @staticmethod
    def _screen_params(dimensions: Dimensions, on: bool) -> str:
        return json.dumps({
            'width': dimensions.width,
            'height': dimensions.height,
            'type': 'web',
            'browserScreen': True,
            'on': 1 if on else 0,
        })

    def activate_screen(self, screen_id: str, on: bool, dimensions: Dimensions,
                        session: str) -> Any:
        logger.info("Activating screen %s (%dx%d, on=%s)",
                    screen_id, dimensions.width, dimensions.height, on)
        result = self._request('GET', 'upd_screen', {
            'screen': screen_id,
            'enabled': 1,
            'params': self._screen_params(dimensions, on),
            'session': session or self.session_id,
        })
        self.invalidate()
        return result

    def create_environment(self, house_id: str) -> str:
        logger.info("Creating environment '%s' for house %s", self.environment_name, house_id)
        data = self._request('GET', 'add_environment', {
            'house': house_id,
            'name': self.environment_name,
            'keys': self.environment_name,
            'ip': self.master_ip,
            'session': self.session_id,
        })
        self.invalidate()

        environment_id = data.get('id') if isinstance(data, dict) else None
        if environment_id is None:
            raise GatewayError('add_environment', "no environment id returned")
        return str(environment_id)

    def create_screen(self, environment_id: str,
                      dimensions: Optional[Dimensions] = None) -> Any:
        dimensions = dimensions or Dimensions()
        logger.info("Creating screen for environment %s", environment_id)
        data = self._request('GET', 'add_screen', {
            'environ': environment_id,
            'name': f"Browser Screen ({dimensions.width}x{dimensions.height})",
            'params': json.dumps({
                'width': dimensions.width,
                'height': dimensions.height,
                'type': 'web',
                'browserScreen': True,
            }),
            'enabled': 1,
            'session': self.session_id,
        })
        self.invalidate()

        if not data:
            raise GatewayError('add_screen', "empty response")
        if isinstance(data, dict) and not data.get('id'):
            # Created, but the backend did not say which id it got
            logger.warning("Screen created without an id in the response: %s", data)
        return data

    def remove_environment(self, environment_id: str) -> Any:
        logger.info("Removing environment %s", environment_id)
        result = self._request('POST', 'del_environment', {
            'environ': environment_id,
            'session': self.session_id,
        })
        self.invalidate()
        return result

    def guest_session_for(self, domain: str) -> str:
        """Template account session for a content domain."""
        guest = self.guest_sessions.get(str(domain))
        if guest:
            return guest

        logger.warning("No guest session for domain %s, falling back to domain 1", domain)
        fallback = self.guest_sessions.get("1")
        if not fallback:
            raise GatewayError('get_playlists', f"no guest session configured for domain {domain}")
        return fallback

    def copy_default_content(self, domain: str, session: str, house_id: str) -> Dict[str, Any]:
        guest_session = self.guest_session_for(domain)
        logger.info("Copying playlists from %s into house %s", guest_session, house_id)

        data = self._request('GET', 'get_playlists', {'session': guest_session})
        templates = data.get('playlists', []) if isinstance(data, dict) else []

        results = []
        for template in templates:
            is_default = not template.get('id')
            name = template.get('name') or ""
            target_id = None

            if not is_default:
                created = self._request('POST', 'add_playlist', {
                    'session': session,
                    'name': name,
                })
                target_id = created.get('id') if isinstance(created, dict) else None
                if not target_id:
                    logger.error("Failed to create playlist %s", name)
                    results.append({'name': name, 'success': False,
                                    'error': 'Failed to create playlist'})
                    continue

            montages = template.get('montages') or []
            if montages:
                params: Dict[str, Any] = {
                    'session': session,
                    'montages': ','.join(str(m.get('id')) for m in montages),
                    'checks': ','.join('1' if m.get('is_checked') else '0' for m in montages),
                }
                # The default playlist is addressed by omitting id and name
                if not is_default:
                    params['playlist'] = target_id
                    params['name'] = name
                self._request('POST', 'upd_playlist', params)

            results.append({
                'name': name,
                'new_id': target_id,
                'is_default': is_default,
                'success': True,
                'montage_count': len(montages),
            })

        copied = sum(1 for r in results if r['success'])
        return {
            'success': True,
            'results': results,
            'message': f"Copied {copied} playlists from guest account",
        }

    def __repr__(self) -> str:
        return f"HttpBackendGateway(base_url={self.base_url})"
