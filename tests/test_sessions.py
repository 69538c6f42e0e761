#!/usr/bin/env python3
"""
Unit tests for the credential-scoped session cache.
"""

import os
import sys
import threading
import unittest
from unittest.mock import Mock, patch

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tiime_carddav.auth import CredentialFormatError, Identity, encode_basic_authorization
from tiime_carddav.sessions import SessionCache
from tiime_carddav.upstream.base import UpstreamAuthError, UpstreamSession, UpstreamTransientError

KEY = encode_basic_authorization('jane@example.com', 'secret')


class FakeSession(UpstreamSession):
    """Session whose expiry and renewal outcome are set by the test."""

    def __init__(self, identity=None):
        self.identity = identity
        self.expired = False
        self.renew_error = None
        self.renew_calls = 0
        self.closed = False

    def needs_renewal(self):
        return self.expired

    def renew(self):
        self.renew_calls += 1
        if self.renew_error is not None:
            raise self.renew_error
        self.expired = False

    def fetch_page(self, scope, offset, limit):
        return [], False

    def close(self):
        self.closed = True


class CountingFactory:
    """Session factory recording its calls."""

    def __init__(self, error=None, delay_event=None):
        self.calls = []
        self.sessions = []
        self.error = error
        self.delay_event = delay_event
        self.lock = threading.Lock()

    def __call__(self, identity):
        with self.lock:
            self.calls.append(identity)
        if self.delay_event is not None:
            self.delay_event.wait(5)
        if self.error is not None:
            raise self.error
        session = FakeSession(identity)
        self.sessions.append(session)
        return session


class TestSessionCreation(unittest.TestCase):
    """Test cases for lazy session creation."""

    def test_creates_once_and_reuses(self):
        factory = CountingFactory()
        cache = SessionCache(factory)

        first = cache.get_or_create(KEY)
        second = cache.get_or_create(KEY)

        self.assertIs(first, second)
        self.assertEqual(len(factory.calls), 1)
        self.assertEqual(factory.calls[0], Identity('jane@example.com', 'secret'))
        self.assertIn(KEY, cache)
        self.assertEqual(len(cache), 1)

    def test_distinct_keys_get_distinct_sessions(self):
        factory = CountingFactory()
        cache = SessionCache(factory)

        first = cache.get_or_create(KEY)
        second = cache.get_or_create(encode_basic_authorization('john@example.com', 'secret'))

        self.assertIsNot(first, second)
        self.assertEqual(len(cache), 2)

    def test_factory_override(self):
        default = CountingFactory()
        override = CountingFactory()
        cache = SessionCache(default)

        cache.get_or_create(KEY, override)

        self.assertEqual(len(default.calls), 0)
        self.assertEqual(len(override.calls), 1)

    def test_no_factory(self):
        with self.assertRaises(ValueError):
            SessionCache().get_or_create(KEY)

    def test_malformed_credential_skips_factory(self):
        factory = CountingFactory()
        cache = SessionCache(factory)

        with self.assertRaises(CredentialFormatError):
            cache.get_or_create('Bearer abc')

        self.assertEqual(factory.calls, [])
        self.assertEqual(len(cache), 0)

    def test_failed_login_caches_nothing(self):
        factory = CountingFactory(error=UpstreamAuthError('rejected', 401))
        cache = SessionCache(factory)

        with self.assertRaises(UpstreamAuthError):
            cache.get_or_create(KEY)

        self.assertNotIn(KEY, cache)
        factory.error = None
        self.assertIsNotNone(cache.get_or_create(KEY))
        self.assertEqual(len(factory.calls), 2)

    @patch('tiime_carddav.sessions.security_logger')
    def test_creation_is_audited(self, mock_security_logger):
        cache = SessionCache(CountingFactory())
        cache.get_or_create(KEY)
        mock_security_logger.log_authentication_attempt.assert_called_once_with(
            'tiime', 'jane@example.com', True
        )

    def test_closed_cache_rejects_new_sessions(self):
        factory = CountingFactory()
        cache = SessionCache(factory)
        cache.close()

        with self.assertRaises(RuntimeError):
            cache.get_or_create(KEY)
        self.assertEqual(factory.calls, [])


class TestSingleFlight(unittest.TestCase):
    """Concurrent first use of one credential logs in exactly once."""

    THREADS = 8

    def _run_concurrently(self, cache):
        barrier = threading.Barrier(self.THREADS)
        results = [None] * self.THREADS

        def worker(index):
            barrier.wait()
            try:
                results[index] = cache.get_or_create(KEY)
            except Exception as e:
                results[index] = e

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(self.THREADS)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)
        return results

    def test_one_factory_call_same_session(self):
        factory = CountingFactory()
        cache = SessionCache(factory)

        results = self._run_concurrently(cache)

        self.assertEqual(len(factory.calls), 1)
        self.assertTrue(all(result is results[0] for result in results))
        self.assertIsInstance(results[0], FakeSession)

    def test_slow_login_is_not_duplicated(self):
        release = threading.Event()
        factory = CountingFactory(delay_event=release)
        cache = SessionCache(factory)

        timer = threading.Timer(0.2, release.set)
        timer.start()
        try:
            results = self._run_concurrently(cache)
        finally:
            timer.cancel()

        self.assertEqual(len(factory.calls), 1)
        self.assertTrue(all(result is results[0] for result in results))

    def test_failure_is_seen_by_every_caller(self):
        factory = CountingFactory(error=UpstreamAuthError('rejected', 401))
        cache = SessionCache(factory)

        results = self._run_concurrently(cache)

        self.assertTrue(all(isinstance(result, UpstreamAuthError) for result in results))
        self.assertEqual(len(cache), 0)


class TestRenewalOnUse(unittest.TestCase):
    """Sessions needing renewal are renewed before reuse."""

    def test_renews_exactly_once_before_reuse(self):
        factory = CountingFactory()
        cache = SessionCache(factory)
        session = cache.get_or_create(KEY)
        session.expired = True

        reused = cache.get_or_create(KEY)

        self.assertIs(reused, session)
        self.assertEqual(session.renew_calls, 1)
        self.assertEqual(len(factory.calls), 1)

        cache.get_or_create(KEY)
        self.assertEqual(session.renew_calls, 1)

    def test_failed_renewal_evicts_and_recreates(self):
        factory = CountingFactory()
        cache = SessionCache(factory)
        session = cache.get_or_create(KEY)
        session.expired = True
        session.renew_error = UpstreamTransientError('token endpoint down')

        with self.assertRaises(UpstreamTransientError):
            cache.get_or_create(KEY)

        self.assertNotIn(KEY, cache)
        self.assertTrue(session.closed)

        fresh = cache.get_or_create(KEY)
        self.assertIsNot(fresh, session)
        self.assertEqual(len(factory.calls), 2)


class TestEviction(unittest.TestCase):
    """Test cases for eviction and shutdown."""

    def test_evict(self):
        cache = SessionCache(CountingFactory())
        session = cache.get_or_create(KEY)

        self.assertTrue(cache.evict(KEY))
        self.assertFalse(cache.evict(KEY))
        self.assertTrue(session.closed)
        self.assertIsNone(cache.peek(KEY))

    def test_evict_only_matching_session(self):
        cache = SessionCache(CountingFactory())
        cache.get_or_create(KEY)

        self.assertFalse(cache.evict(KEY, FakeSession()))
        self.assertIn(KEY, cache)

    def test_renew_skips_replaced_session(self):
        cache = SessionCache(CountingFactory())
        current = cache.get_or_create(KEY)
        stale = FakeSession()

        self.assertFalse(cache.renew(KEY, stale))
        self.assertEqual(stale.renew_calls, 0)
        self.assertIs(cache.peek(KEY), current)

    def test_renew_failure_evicts(self):
        cache = SessionCache(CountingFactory())
        session = cache.get_or_create(KEY)
        session.renew_error = UpstreamAuthError('password changed', 403)

        self.assertFalse(cache.renew(KEY, session))
        self.assertNotIn(KEY, cache)

    def test_schedulers_started_and_stopped(self):
        scheduler_class = Mock()
        cache = SessionCache(CountingFactory(), renewal_interval=30, scheduler_class=scheduler_class)
        session = cache.get_or_create(KEY)

        scheduler_class.assert_called_once_with(cache, KEY, session, 30)
        scheduler = scheduler_class.return_value
        scheduler.start.assert_called_once_with()

        cache.close()
        scheduler.stop.assert_called_once_with()
        self.assertEqual(len(cache), 0)

    def test_no_scheduler_without_interval(self):
        scheduler_class = Mock()
        cache = SessionCache(CountingFactory(), scheduler_class=scheduler_class)
        cache.get_or_create(KEY)
        scheduler_class.assert_not_called()


if __name__ == '__main__':
    unittest.main()
