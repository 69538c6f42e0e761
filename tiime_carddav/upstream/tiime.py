"""
Tiime API integration module.

This module implements the UpstreamSession interface on top of the Tiime
REST API. A session is obtained by an OAuth2 password grant against Tiime's
Auth0 tenant and gives read access to the companies, clients and client
contacts of the logged-in user.
"""

import time
import logging
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from tiime_carddav.auth import Identity
from .base import (
    HTTPClient, Page, UpstreamAuthError, UpstreamError, UpstreamNotFoundError,
    UpstreamSession, UpstreamTransientError
)

logger = logging.getLogger(__name__)

DEFAULT_AUTH_URL = 'https://auth0.tiime.fr/oauth/token'
DEFAULT_CLIENT_ID = 'iEbsbe3o66gcTBfGRa012kj1Rb6vjAND'
DEFAULT_AUDIENCE = 'https://chronos/'
DEFAULT_API_URL = 'https://chronos-api.tiime-apps.com/v1'
# Assumed when the token endpoint does not state a lifetime
DEFAULT_TOKEN_LIFETIME = 3600

# e.g. "items 0-99/*" while more pages exist, "items 100-142/143" on the last one
_CONTENT_RANGE = re.compile(r'items\s+(\d+)-(\d+)/(\*|\d+)')


def parse_content_range(value: Optional[str], offset: int, count: int) -> bool:
    """
    Decide from a ``Content-Range`` header whether more records follow.

    Tiime answers ``/*`` as the total while the collection continues past
    the returned range.

    Args:
        value: Header value, or None when absent
        offset: Offset of the requested page
        count: Number of records actually returned

    Returns:
        True if another page should be requested
    """
    if not value:
        return False
    match = _CONTENT_RANGE.search(value)
    if not match:
        logger.warning(f"Unexpected Content-Range header: {value}")
        return False
    total = match.group(3)
    if total == '*':
        return True
    return offset + count < int(total)


class TiimeClient(UpstreamSession):
    """
    Tiime API client implementation.

    The client keeps the current access token and its expiry; ``renew``
    performs a fresh password grant with the identity it was created from.

    Args:
        identity: Email/password used for the password grant
        config: ``tiime`` section of the gateway configuration
        clock: Time source returning seconds since the epoch
    """

    def __init__(self, identity: Identity, config: Optional[Dict[str, Any]] = None,
                 clock: Callable[[], float] = time.time):
        config = config or {}
        self.identity = identity
        self.client_id = config.get('client_id', DEFAULT_CLIENT_ID)
        self.audience = config.get('audience', DEFAULT_AUDIENCE)
        self.refresh_margin = config.get('token_refresh_margin', 60)
        self.clock = clock

        timeout = config.get('timeout', 30)
        verify_ssl = config.get('verify_ssl', True)
        truststore_file = config.get('truststore_file')

        self.auth = HTTPClient(
            config.get('auth_url', DEFAULT_AUTH_URL),
            timeout=timeout, verify_ssl=verify_ssl, truststore_file=truststore_file
        )
        self.api = HTTPClient(
            config.get('api_url', DEFAULT_API_URL),
            timeout=timeout, verify_ssl=verify_ssl, truststore_file=truststore_file,
            default_headers=config.get('app_headers', {'tiime-app': 'tiime'})
        )

        self.access_token = None
        self.expires_at = 0.0
        self.renew_at = 0.0

    @classmethod
    def login(cls, identity: Identity, config: Optional[Dict[str, Any]] = None,
              clock: Callable[[], float] = time.time) -> 'TiimeClient':
        """Create a client and obtain its first access token."""
        client = cls(identity, config, clock=clock)
        client.authenticate()
        return client

    def authenticate(self) -> None:
        """
        Obtain an access token with the OAuth2 password grant.

        Raises:
            UpstreamAuthError: If Tiime rejects the email/password pair
            UpstreamTransientError: If the token endpoint is unreachable
        """
        token_request = {
            'grant_type': 'password',
            'client_id': self.client_id,
            'audience': self.audience,
            'scope': 'openid email',
            'username': self.identity.email,
            'password': self.identity.password,
        }

        logger.debug(f"Requesting Tiime token for {self.identity.email}")
        try:
            response = self.auth.request('POST', '', body=token_request)
        except UpstreamError as e:
            # Auth0 answers invalid_grant with 400 or 403 depending on the tenant
            if e.status_code == 400:
                raise UpstreamAuthError(f"Tiime rejected credentials for {self.identity.email}", 400)
            raise

        token_response = response.data or {}
        if not isinstance(token_response, dict):
            raise UpstreamTransientError(f"Unexpected token response for {self.identity.email}")
        access_token = token_response.get('access_token')
        if not access_token:
            raise UpstreamAuthError(f"Token response missing access_token for {self.identity.email}")

        try:
            expires_in = int(token_response.get('expires_in') or 0)
        except (TypeError, ValueError):
            expires_in = 0
        if expires_in <= 0:
            logger.warning(f"Token response for {self.identity.email} has no lifetime, "
                           f"assuming {DEFAULT_TOKEN_LIFETIME}s")
            expires_in = DEFAULT_TOKEN_LIFETIME

        now = self.clock()
        self.access_token = access_token
        self.expires_at = now + expires_in
        # Short-lived tokens are renewed halfway through their lifetime
        self.renew_at = self.expires_at - min(self.refresh_margin, expires_in / 2)
        headers = dict(self.api.default_headers)
        headers['Authorization'] = f"Bearer {access_token}"
        self.api.default_headers = headers

        logger.info(f"Obtained Tiime token for {self.identity.email}, expires in {expires_in}s")

    def needs_renewal(self) -> bool:
        return self.access_token is None or self.clock() >= self.renew_at

    def renew(self) -> None:
        self.authenticate()

    def get_companies(self) -> List[Dict[str, Any]]:
        """Return the companies the logged-in user can access."""
        response = self.api.request('GET', 'companies')
        return response.data or []

    def get_clients(self, company_id: int, offset: int = 0, limit: int = 100) -> Page:
        """
        Fetch one page of clients of a company.

        Returns:
            Tuple of (clients, has_more)
        """
        headers = {'Range': f"items={offset}-{offset + limit - 1}"}
        response = self.api.request('GET', f'companies/{company_id}/clients', headers=headers)
        clients = response.data or []
        has_more = parse_content_range(response.header('content-range'), offset, len(clients))
        logger.debug(f"Fetched {len(clients)} clients of company {company_id} at offset {offset}")
        return clients, has_more

    def get_client(self, company_id: int, client_id: int) -> Dict[str, Any]:
        response = self.api.request('GET', f'companies/{company_id}/clients/{client_id}')
        if not response.data:
            raise UpstreamNotFoundError(f"Client {client_id} not found in company {company_id}", 404)
        return response.data

    def get_client_contacts(self, company_id: int, client_id: int) -> List[Dict[str, Any]]:
        response = self.api.request('GET', f'companies/{company_id}/clients/{client_id}/contacts')
        return response.data or []

    def get_client_contact(self, company_id: int, client_id: int, contact_id: int) -> Dict[str, Any]:
        """Return one contact of a client; Tiime only lists them per client."""
        for contact in self.get_client_contacts(company_id, client_id):
            if contact.get('id') == contact_id:
                return contact
        raise UpstreamNotFoundError(
            f"Contact {contact_id} not found for client {client_id} in company {company_id}", 404
        )

    def fetch_page(self, scope: Tuple[int, ...], offset: int, limit: int) -> Page:
        """
        Fetch a page of companies, clients or client contacts.

        ``()`` lists companies, ``(company,)`` its clients and
        ``(company, client)`` the contacts of a client. Companies and contacts
        are not paginated by Tiime and are sliced locally.
        """
        if len(scope) == 1:
            return self.get_clients(scope[0], offset, limit)
        if len(scope) == 0:
            records = self.get_companies()
        elif len(scope) == 2:
            records = self.get_client_contacts(scope[0], scope[1])
        else:
            raise ValueError(f"Unsupported scope: {scope}")
        return records[offset:offset + limit], offset + limit < len(records)


def create_session_factory(config: Optional[Dict[str, Any]] = None) -> Callable[[Identity], TiimeClient]:
    """
    Build the session factory handed to the session cache.

    Args:
        config: ``tiime`` section of the gateway configuration
    """
    def factory(identity: Identity) -> TiimeClient:
        return TiimeClient.login(identity, config)

    return factory
