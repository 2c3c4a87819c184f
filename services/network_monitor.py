"""Connectivity event source for the sync queue."""
from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional


Listener = Callable[[], None]


class NetworkMonitor:
    """Publishes a reconnect event when connectivity goes from offline to online.

    The platform layer reports reachability through :meth:`set_connected`;
    consumers subscribe instead of polling a shared flag.
    """

    def __init__(self, *, connected: bool = False, logger: Optional[logging.Logger] = None) -> None:
        self._connected = connected
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()
        self.logger = logger or logging.getLogger("ironlog.sync")

    @property
    def is_connected(self) -> bool:
        return self._connected

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def set_connected(self, connected: bool) -> None:
        with self._lock:
            was_offline = not self._connected
            self._connected = connected
            listeners = list(self._listeners)
        if not (was_offline and connected):
            return
        self.logger.info("Network reconnected; notifying %d listener(s)", len(listeners))
        for listener in listeners:
            try:
                listener()
            except Exception:
                self.logger.exception("Reconnect listener failed")


__all__ = ["NetworkMonitor"]
