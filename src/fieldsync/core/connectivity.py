"""
Connectivity state for the sync core.

Holds the online/offline flag that the sync queue consults before draining
and notifies listeners on every change. Coming back online awaits the
registered reconnect callbacks (normally a queue drain).
"""

import logging
from typing import Any, Awaitable, Callable, List

logger = logging.getLogger(__name__)

StatusListener = Callable[[bool], Any]
ReconnectCallback = Callable[[], Awaitable[Any]]


class ConnectionMonitor:
    """Online/offline indicator with change notifications."""

    def __init__(self, online: bool = True):
        self._online = online
        self._listeners: List[StatusListener] = []
        self._reconnect_callbacks: List[ReconnectCallback] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def __call__(self) -> bool:
        return self._online

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Call ``listener(online)`` on every change. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def on_reconnect(self, callback: ReconnectCallback) -> Callable[[], None]:
        """Await ``callback()`` whenever the state goes from offline to online."""
        self._reconnect_callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._reconnect_callbacks:
                self._reconnect_callbacks.remove(callback)

        return unsubscribe

    async def set_online(self, online: bool) -> None:
        """Record the connectivity state; a no-op when it did not change."""
        if online == self._online:
            return
        self._online = online
        logger.info(f"Connectivity changed: {'online' if online else 'offline'}")

        for listener in list(self._listeners):
            try:
                listener(online)
            except Exception as e:
                logger.error(f"Connectivity listener failed: {e}", exc_info=True)

        if not online:
            return
        for callback in list(self._reconnect_callbacks):
            try:
                await callback()
            except Exception as e:
                logger.error(f"Reconnect callback failed: {e}", exc_info=True)
