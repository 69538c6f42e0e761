"""
Credential-scoped upstream session cache.

Each distinct ``Authorization`` header value maps to at most one upstream
session. A single lock serialises lookups, insertions, evictions and every
renewal, so concurrent first use of a credential logs in exactly once.
"""

import logging
import threading
from typing import Any, Callable, Dict, Optional

from tiime_carddav.auth import Identity, parse_basic_authorization
from tiime_carddav.logging_setup import security_logger
from tiime_carddav.renewal import RenewalScheduler
from tiime_carddav.upstream.base import UpstreamSession

logger = logging.getLogger(__name__)

SessionFactory = Callable[[Identity], UpstreamSession]


class SessionCache:
    """
    Mapping from credential key to upstream session.

    Args:
        factory: Default session factory, called with the decoded identity
        decode: Turns a credential key into an identity; raises
            ``CredentialFormatError`` on malformed input
        renewal_interval: Seconds between background renewals, or None to
            only renew on use
        scheduler_class: Renewal scheduler implementation
    """

    def __init__(self, factory: Optional[SessionFactory] = None,
                 decode: Callable[[str], Identity] = parse_basic_authorization,
                 renewal_interval: Optional[float] = None,
                 scheduler_class=RenewalScheduler):
        self.factory = factory
        self.decode = decode
        self.renewal_interval = renewal_interval
        self.scheduler_class = scheduler_class

        self.lock = threading.Lock()
        self._sessions: Dict[str, UpstreamSession] = {}
        self._schedulers: Dict[str, Any] = {}
        self._closed = False

    def __len__(self) -> int:
        with self.lock:
            return len(self._sessions)

    def __contains__(self, key: str) -> bool:
        with self.lock:
            return key in self._sessions

    def peek(self, key: str) -> Optional[UpstreamSession]:
        """Return the cached session for ``key`` without renewing or creating it."""
        with self.lock:
            return self._sessions.get(key)

    def get_or_create(self, key: str, factory: Optional[SessionFactory] = None) -> UpstreamSession:
        """
        Return a ready-to-use session for ``key``, creating it if needed.

        Args:
            key: Raw credential presentation (the ``Authorization`` header)
            factory: Overrides the cache's default factory

        Returns:
            Cached or newly created session

        Raises:
            CredentialFormatError: If ``key`` cannot be decoded
            UpstreamAuthError: If the upstream rejects the identity
            UpstreamTransientError: If the upstream cannot be reached
        """
        factory = factory or self.factory
        if factory is None:
            raise ValueError("No session factory configured")

        with self.lock:
            if self._closed:
                raise RuntimeError("Session cache is closed")
            session = self._sessions.get(key)
            if session is not None:
                if not session.needs_renewal():
                    return session
                logger.debug("Cached session needs renewal, renewing before use")
                try:
                    session.renew()
                except Exception as e:
                    logger.warning(f"Session renewal on use failed, evicting: {e}")
                    self._evict_locked(key, session)
                    raise
                return session

            identity = self.decode(key)
            session = factory(identity)
            self._sessions[key] = session
            security_logger.log_authentication_attempt('tiime', identity.email, True)
            logger.info(f"Created upstream session for {identity.email} ({len(self._sessions)} cached)")

            if self.renewal_interval:
                scheduler = self.scheduler_class(self, key, session, self.renewal_interval)
                self._schedulers[key] = scheduler
                scheduler.start()

            return session

    def renew(self, key: str, session: UpstreamSession) -> bool:
        """
        Renew ``session`` under the cache lock, evicting it on failure.

        Used by the background scheduler. Failures are logged, never raised.

        Returns:
            True if the session was renewed and is still cached
        """
        with self.lock:
            if self._sessions.get(key) is not session:
                logger.debug("Skipping renewal of a session that is no longer cached")
                return False
            try:
                session.renew()
            except Exception as e:
                logger.warning(f"Background session renewal failed, evicting: {e}")
                self._evict_locked(key, session)
                return False
            logger.debug("Background session renewal succeeded")
            return True

    def evict(self, key: str, session: Optional[UpstreamSession] = None) -> bool:
        """
        Remove the session cached under ``key``.

        Args:
            key: Credential key
            session: When given, only evict if ``key`` still maps to it

        Returns:
            True if an entry was removed
        """
        with self.lock:
            return self._evict_locked(key, session)

    def _evict_locked(self, key: str, session: Optional[UpstreamSession] = None) -> bool:
        cached = self._sessions.get(key)
        if cached is None or (session is not None and cached is not session):
            return False

        del self._sessions[key]
        scheduler = self._schedulers.pop(key, None)
        if scheduler is not None:
            scheduler.stop()
        try:
            cached.close()
        except Exception as e:
            logger.warning(f"Error closing evicted session: {e}")
        security_logger.log_session_eviction(len(self._sessions))
        return True

    def close(self) -> None:
        """Stop every renewal scheduler and drop all sessions."""
        with self.lock:
            self._closed = True
            keys = list(self._sessions)
            for key in keys:
                self._evict_locked(key)
        logger.info(f"Session cache closed, {len(keys)} sessions dropped")
