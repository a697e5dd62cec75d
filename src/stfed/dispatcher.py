"""Main loop: consume Syncthing events and run matching hooks."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable

from .config import SyncthingConfig
from .events import DomainEvent
from .hooks import HookRegistry
from .supervisor import HookRunner, HookSpawnError
from .syncthing import ServerUnreachable, StreamError, StreamErrorKind, SyncthingClient, SyncthingError

logger = logging.getLogger(__name__)

# Seconds to wait before reconnecting to the Syncthing server
RECONNECT_DELAY = 5.0

ClientFactory = Callable[[SyncthingConfig], SyncthingClient]


@dataclass
class DispatcherStats:
    """Counters emitted by the dispatcher for observability."""

    connections: int = 0
    events_received: int = 0
    hooks_started: int = 0


class Dispatcher:
    """Reads the event stream and hands matching hooks to the runner.

    Lost connections and Syncthing configuration changes restart the stream
    with a fresh client after :data:`RECONNECT_DELAY`. Any other stream
    failure raises :class:`SyncthingError`.
    """

    def __init__(
        self,
        config: SyncthingConfig,
        registry: HookRegistry,
        runner: HookRunner,
        *,
        client_factory: ClientFactory = SyncthingClient,
        reconnect_delay: float = RECONNECT_DELAY,
    ):
        self._config = config
        self._registry = registry
        self._runner = runner
        self._client_factory = client_factory
        self._reconnect_delay = reconnect_delay
        self._stop_event = threading.Event()
        self._stats = DispatcherStats()

    @property
    def stats(self) -> DispatcherStats:
        return self._stats

    def run(self) -> None:
        """Run the event loop until stopped or a fatal error occurs."""

        logger.info("Starting dispatcher for %s with %s hook(s)", self._config.url, len(self._registry))
        try:
            while not self._stop_event.is_set():
                self._run_connection()
                if self._stop_event.is_set():
                    break
                logger.info("Will reconnect in %ss", self._reconnect_delay)
                self._stop_event.wait(self._reconnect_delay)
        except KeyboardInterrupt:
            logger.info("Dispatcher interrupted by user")
        finally:
            logger.info(
                "Dispatcher stopped after %s connections, %s events, %s hooks started",
                self._stats.connections,
                self._stats.events_received,
                self._stats.hooks_started,
            )

    def stop(self) -> None:
        """Signal the dispatcher to stop at the next opportunity."""

        self._stop_event.set()

    def dispatch(self, event: DomainEvent) -> int:
        """Run the hooks matching an event, return how many were started."""

        started = 0
        for dispatched, hook in self._registry.match(event):
            try:
                if self._runner.run(hook, dispatched.path, dispatched.folder):
                    started += 1
            except HookSpawnError:
                logger.exception("Hook %s failed for event %s", hook.describe(), dispatched)
        self._stats.hooks_started += started
        return started

    def _run_connection(self) -> None:
        try:
            client = self._client_factory(self._config)
        except ServerUnreachable as exc:
            logger.warning("Syncthing server is unreachable, will retry. %s", exc)
            return

        self._stats.connections += 1
        with client:
            for item in client.iter_events():
                if isinstance(item, StreamError):
                    self._handle_stream_error(item)
                    return
                self._stats.events_received += 1
                logger.info("New event: %s", item)
                self.dispatch(item)
                if self._stop_event.is_set():
                    return

    def _handle_stream_error(self, error: StreamError) -> None:
        if error.kind is StreamErrorKind.GONE:
            logger.warning("Syncthing server is gone, will restart main loop. %s", error.detail)
        elif error.kind is StreamErrorKind.CONFIG_CHANGED:
            logger.warning("Syncthing server configuration changed, will restart main loop. %s", error.detail)
        else:
            raise SyncthingError(f"Event stream failed ({error.kind.value}): {error.detail}")
