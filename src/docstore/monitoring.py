"""
Monitoring - driver events delivered to listeners.

Listeners are ``pymongo.monitoring`` listeners and are registered on the
driver client, so they see every command, connection pool, server and
topology event the driver produces. The driver builds the events and
redacts authentication commands before they are published.

    class Printer(CommandListener):
        def started(self, event):
            print(event.command_name, event.database_name)

        def succeeded(self, event):
            pass

        def failed(self, event):
            pass

    client = DocumentStoreClient(uri, event_listeners=[Printer(), CommandLogger()])

An exception raised by a listener is logged on this module's logger and
never reaches the operation that produced the event.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable

from pymongo.monitoring import (
    CommandFailedEvent,
    CommandListener,
    CommandStartedEvent,
    CommandSucceededEvent,
    ConnectionPoolListener,
    ServerHeartbeatListener,
    ServerListener,
    TopologyListener,
)

__all__ = [
    "CommandListener",
    "CommandStartedEvent",
    "CommandSucceededEvent",
    "CommandFailedEvent",
    "ConnectionPoolListener",
    "ServerListener",
    "ServerHeartbeatListener",
    "TopologyListener",
    "CommandLogger",
    "guard_listeners",
]

logger = logging.getLogger(__name__)


class CommandLogger(CommandListener):
    """Logs every command the driver sends at DEBUG level."""

    def started(self, event: CommandStartedEvent) -> None:
        logger.debug(
            "%s on %s started (request %s, %s)",
            event.command_name,
            event.database_name,
            event.request_id,
            event.connection_id,
        )

    def succeeded(self, event: CommandSucceededEvent) -> None:
        logger.debug(
            "%s on %s succeeded in %.3fs (request %s)",
            event.command_name,
            event.database_name,
            event.duration_micros / 1e6,
            event.request_id,
        )

    def failed(self, event: CommandFailedEvent) -> None:
        logger.debug(
            "%s on %s failed after %.3fs (request %s): %s",
            event.command_name,
            event.database_name,
            event.duration_micros / 1e6,
            event.request_id,
            event.failure,
        )


def _forward(hook: str) -> Callable[[_Guard, Any], None]:
    def method(self: _Guard, event: Any) -> None:
        self._call(hook, event)

    method.__name__ = hook
    return method


class _Guard:
    """Forwards one kind of event to a listener, logging what it raises."""

    kind = "Event"

    def __init__(self, listener: Any) -> None:
        self.listener = listener

    def _call(self, hook: str, event: Any) -> None:
        try:
            getattr(self.listener, hook)(event)
        except Exception:
            logger.warning("%s listener %r failed in %s", self.kind, self.listener, hook, exc_info=True)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.listener!r})"


class _GuardedCommandListener(_Guard, CommandListener):
    kind = "Command"
    started = _forward("started")
    succeeded = _forward("succeeded")
    failed = _forward("failed")


class _GuardedPoolListener(_Guard, ConnectionPoolListener):
    kind = "Connection pool"
    pool_created = _forward("pool_created")
    pool_ready = _forward("pool_ready")
    pool_cleared = _forward("pool_cleared")
    pool_closed = _forward("pool_closed")
    connection_created = _forward("connection_created")
    connection_ready = _forward("connection_ready")
    connection_closed = _forward("connection_closed")
    connection_check_out_started = _forward("connection_check_out_started")
    connection_check_out_failed = _forward("connection_check_out_failed")
    connection_checked_out = _forward("connection_checked_out")
    connection_checked_in = _forward("connection_checked_in")


class _GuardedServerListener(_Guard, ServerListener):
    kind = "Server"
    opened = _forward("opened")
    description_changed = _forward("description_changed")
    closed = _forward("closed")


class _GuardedHeartbeatListener(_Guard, ServerHeartbeatListener):
    kind = "Heartbeat"
    started = _forward("started")
    succeeded = _forward("succeeded")
    failed = _forward("failed")


class _GuardedTopologyListener(_Guard, TopologyListener):
    kind = "Topology"
    opened = _forward("opened")
    description_changed = _forward("description_changed")
    closed = _forward("closed")


# Command and heartbeat listeners share hook names, so each kind gets its own guard.
_GUARDS: tuple[tuple[type, type[_Guard]], ...] = (
    (CommandListener, _GuardedCommandListener),
    (ConnectionPoolListener, _GuardedPoolListener),
    (ServerListener, _GuardedServerListener),
    (ServerHeartbeatListener, _GuardedHeartbeatListener),
    (TopologyListener, _GuardedTopologyListener),
)


def guard_listeners(listeners: Iterable[Any]) -> list[_Guard]:
    """
    Wrap listeners for registration on the driver client.

    A listener implementing several kinds gets one guard per kind.

    Args:
        listeners: ``pymongo.monitoring`` listener instances.

    Returns:
        The guards, in listener order.
    """
    guards: list[_Guard] = []
    for listener in listeners:
        for base, guard in _GUARDS:
            if isinstance(listener, base):
                guards.append(guard(listener))
    return guards
