"""
Lease heartbeat on a daemon thread
"""
from __future__ import annotations

import threading
from typing import Callable, Optional

from .errors import OntologyEngineError
from .logging import get_logger

logger = get_logger(__name__)


class Heartbeat:
    """
    Calls ``beat`` every ``interval`` seconds until stopped.

    ``beat`` returns False once the lease has been lost; ``on_lost`` then runs
    once and the thread exits.

    Usage:
        heartbeat = Heartbeat("dag:123", lambda: store.heartbeat_dag(dag_id, owner), 30.0)
        heartbeat.start()
        ...
        heartbeat.stop()
    """

    def __init__(self, name: str, beat: Callable[[], bool], interval: float,
                 on_lost: Optional[Callable[[], None]] = None):
        self.name = name
        self.beat = beat
        self.interval = interval
        self.on_lost = on_lost
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=f"heartbeat-{self.name}", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 1.0) -> None:
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        self._thread = None

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                alive = self.beat()
            except OntologyEngineError as e:
                # A missed beat is tolerated; the lease only goes stale after several
                logger.warning(
                    "Heartbeat failed",
                    extra={"extra_fields": {"heartbeat": self.name, "error": e.message}}
                )
                continue
            if not alive:
                logger.warning("Lease lost", extra={"extra_fields": {"heartbeat": self.name}})
                if self.on_lost is not None:
                    self.on_lost()
                return
