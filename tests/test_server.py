#!/usr/bin/env python3
"""
HTTP-level tests for the gatekeeper and the FastAPI application.
"""

import os
import sys
import unittest
from http.client import BadStatusLine
from unittest.mock import Mock, patch

from fastapi.testclient import TestClient

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tiime_carddav.auth import Identity, encode_basic_authorization
from tiime_carddav.server import AuthenticationRequired, Gatekeeper, create_app
from tiime_carddav.sessions import SessionCache
from tiime_carddav.upstream.base import (
    HTTPClient, UpstreamAuthError, UpstreamSession, UpstreamTransientError
)
from tiime_carddav.upstream.tiime import create_session_factory

AUTHORIZATION = encode_basic_authorization('jane@example.com', 'secret')


class FakeTiimeSession(UpstreamSession):

    def __init__(self, identity=None):
        self.identity = identity
        self.closed = False

    def needs_renewal(self):
        return False

    def renew(self):
        pass

    def fetch_page(self, scope, offset, limit):
        if len(scope) == 0:
            return [{'id': 1, 'name': 'Acme'}], False
        if len(scope) == 1:
            return [{'id': 10, 'name': 'Boulangerie Martin'}], False
        return [], False

    def get_client(self, company_id, client_id):
        return {'id': client_id, 'name': 'Boulangerie Martin'}

    def close(self):
        self.closed = True


def make_config(mode='multi', realm='Tiime'):
    config = {
        'server': {'host': '127.0.0.1', 'port': 1234, 'realm': realm, 'mode': mode},
        'tiime': {'page_size': 100},
        'renewal': {'enabled': False, 'interval_seconds': 600},
        'service_account': {},
    }
    if mode == 'single':
        config['service_account'] = {'email': 'ops@example.com', 'password': 'pw', 'company_id': 1}
    return config


class TestGatekeeper(unittest.TestCase):
    """Test cases for session acquisition."""

    def setUp(self):
        self.factory = Mock(side_effect=FakeTiimeSession)
        self.cache = SessionCache(self.factory)

    def test_challenge(self):
        self.assertEqual(Gatekeeper(self.cache, self.factory).challenge, 'Basic realm="Tiime"')
        self.assertEqual(Gatekeeper(self.cache, self.factory, realm='Contacts').challenge,
                         'Basic realm="Contacts"')

    def test_missing_credentials(self):
        with self.assertRaises(AuthenticationRequired):
            Gatekeeper(self.cache, self.factory).acquire(None)
        self.factory.assert_not_called()

    def test_errors_become_authentication_required(self):
        gatekeeper = Gatekeeper(self.cache, self.factory)
        for error in (UpstreamAuthError('rejected', 401), UpstreamTransientError('down')):
            self.factory.side_effect = error
            with self.assertRaises(AuthenticationRequired):
                gatekeeper.acquire(AUTHORIZATION)
        with self.assertRaises(AuthenticationRequired):
            gatekeeper.acquire('Basic !!!')

    def test_unexpected_errors_become_authentication_required(self):
        gatekeeper = Gatekeeper(self.cache, self.factory)
        for error in (AttributeError("'list' object has no attribute 'get'"), ValueError('bad')):
            self.factory.side_effect = error
            with self.assertRaises(AuthenticationRequired):
                gatekeeper.acquire(AUTHORIZATION)
        self.assertEqual(len(self.cache), 0)

    def test_service_key_overrides_header(self):
        service_key = encode_basic_authorization('ops@example.com', 'pw')
        gatekeeper = Gatekeeper(self.cache, self.factory, service_key=service_key)

        session = gatekeeper.acquire(None)

        self.assertEqual(session.identity, Identity('ops@example.com', 'pw'))
        self.assertIs(gatekeeper.acquire(AUTHORIZATION), session)


class TestApplication(unittest.TestCase):
    """Requests through the full application stack."""

    def setUp(self):
        self.factory = Mock(side_effect=FakeTiimeSession)
        self.app = create_app(make_config(), session_factory=self.factory)
        self.client = TestClient(self.app)

    def propfind(self, path='/me', **headers):
        return self.client.request('PROPFIND', path, headers={'Depth': '0', **headers})

    def test_missing_credentials_challenged(self):
        response = self.propfind()

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.headers['www-authenticate'], 'Basic realm="Tiime"')
        self.factory.assert_not_called()

    def test_realm_from_configuration(self):
        app = create_app(make_config(realm='Contacts'), session_factory=self.factory)
        response = TestClient(app).request('PROPFIND', '/me')
        self.assertEqual(response.headers['www-authenticate'], 'Basic realm="Contacts"')

    def test_malformed_credentials_challenged(self):
        response = self.propfind(Authorization='Bearer abc')
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.headers['www-authenticate'], 'Basic realm="Tiime"')
        self.factory.assert_not_called()

    def test_valid_credentials_reach_dispatcher(self):
        response = self.propfind(Authorization=AUTHORIZATION)

        self.assertEqual(response.status_code, 207)
        self.assertIn(b'addressbook-home-set', response.content)
        self.factory.assert_called_once_with(Identity('jane@example.com', 'secret'))

    def test_session_reused_across_requests(self):
        self.propfind(Authorization=AUTHORIZATION)
        self.propfind('/me/contacts/', Authorization=AUTHORIZATION)
        self.assertEqual(self.factory.call_count, 1)
        self.assertEqual(len(self.app.state.cache), 1)

    def test_rejected_login_challenged(self):
        self.factory.side_effect = UpstreamAuthError('rejected', 401)
        response = self.propfind(Authorization=AUTHORIZATION)
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.headers['www-authenticate'], 'Basic realm="Tiime"')

    def test_unreachable_upstream_challenged(self):
        self.factory.side_effect = UpstreamTransientError('down')
        self.assertEqual(self.propfind(Authorization=AUTHORIZATION).status_code, 401)

    def test_unexpected_login_failure_challenged(self):
        self.factory.side_effect = RuntimeError('token endpoint returned a list')
        response = self.propfind(Authorization=AUTHORIZATION)
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.headers['www-authenticate'], 'Basic realm="Tiime"')

    def test_garbled_upstream_response_challenged(self):
        connection = Mock()
        connection.getresponse.side_effect = BadStatusLine('GARBAGE')
        app = create_app(make_config(), session_factory=create_session_factory({'timeout': 1}))

        with patch.object(HTTPClient, '_connect', return_value=connection):
            response = TestClient(app).request(
                'PROPFIND', '/me', headers={'Depth': '0', 'Authorization': AUTHORIZATION}
            )

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.headers['www-authenticate'], 'Basic realm="Tiime"')
        connection.close.assert_called_once_with()

    def test_get_vcard(self):
        response = self.client.get('/me/contacts/1/10', headers={'Authorization': AUTHORIZATION})
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.headers['content-type'].startswith('text/vcard'))
        self.assertIn('FN:Boulangerie Martin', response.text)
        self.assertIn('etag', response.headers)

    def test_write_forbidden(self):
        response = self.client.put('/me/contacts/1/10', content='BEGIN:VCARD',
                                   headers={'Authorization': AUTHORIZATION})
        self.assertEqual(response.status_code, 403)

    def test_requests_are_logged(self):
        with self.assertLogs('tiime_carddav.server', level='INFO') as logs:
            self.propfind(Authorization=AUTHORIZATION)
        self.assertTrue(any('Request PROPFIND http://testserver/me' in line for line in logs.output))

    def test_authorization_not_logged(self):
        with self.assertLogs(level='INFO') as logs:
            self.propfind(Authorization=AUTHORIZATION)
        self.assertFalse(any('c2VjcmV0' in line or 'secret' in line for line in logs.output))

    def test_shutdown_closes_sessions(self):
        with TestClient(self.app) as client:
            client.request('PROPFIND', '/me', headers={'Authorization': AUTHORIZATION})
            session = self.app.state.cache.peek(AUTHORIZATION)
            self.assertIsNotNone(session)
        self.assertEqual(len(self.app.state.cache), 0)
        self.assertTrue(session.closed)


class TestSingleTenantApplication(unittest.TestCase):

    def setUp(self):
        self.factory = Mock(side_effect=FakeTiimeSession)
        self.app = create_app(make_config('single'), session_factory=self.factory)
        self.client = TestClient(self.app)

    def test_no_credentials_needed(self):
        response = self.client.request('PROPFIND', '/me/contacts/', headers={'Depth': '1'})

        self.assertEqual(response.status_code, 207)
        self.assertIn(b'/me/contacts/10', response.content)
        self.factory.assert_called_once_with(Identity('ops@example.com', 'pw'))
        self.assertTrue(self.app.state.codec.single_tenant)

    def test_unauthenticated_exposure_is_logged(self):
        with self.assertLogs('tiime_carddav.server', level='WARNING') as logs:
            create_app(make_config('single'), session_factory=self.factory)
        self.assertTrue(any('no inbound authentication' in line for line in logs.output))


if __name__ == '__main__':
    unittest.main()
