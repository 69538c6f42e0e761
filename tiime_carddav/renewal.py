"""
Background renewal of cached upstream sessions.

One daemon thread per cached session wakes up at a fixed interval and renews
the session under the cache lock. A failed renewal evicts the session and
ends the thread; the next request with the same credentials logs in again.
"""

import logging
import threading

logger = logging.getLogger(__name__)


class RenewalScheduler:
    """
    Periodically renew one cached session.

    The stop event doubles as the interruptible wait between renewals, so
    ``stop()`` ends the thread without waiting out the interval.

    Args:
        cache: Session cache owning the session (provides ``renew(key, session)``)
        key: Credential key the session is cached under
        session: Session to renew; the scheduler does not own it
        interval: Seconds to wait between renewals
    """

    def __init__(self, cache, key: str, session, interval: float):
        if interval <= 0:
            raise ValueError(f"Renewal interval must be positive: {interval}")
        self.cache = cache
        self.key = key
        self.session = session
        self.interval = interval
        self.renewals = 0

        self._stopped = threading.Event()
        self._thread = None

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("Renewal scheduler already started")
        self._thread = threading.Thread(
            target=self._run, name='session-renewal', daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stopped.set()

    def join(self, timeout: float = None) -> None:
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> bool:
        """
        Perform one renewal cycle.

        Returns:
            True if the session was renewed and the scheduler should continue
        """
        if self.stopped:
            return False
        renewed = self.cache.renew(self.key, self.session)
        if renewed:
            self.renewals += 1
        else:
            self.stop()
        return renewed

    def _run(self) -> None:
        logger.debug(f"Session renewal scheduled every {self.interval}s")
        while not self._stopped.wait(self.interval):
            if not self.run_once():
                break
        logger.debug(f"Session renewal stopped after {self.renewals} renewals")
