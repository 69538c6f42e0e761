"""
Base upstream session interface and common HTTP functionality.

This module defines the abstract session that the gateway caches per
credential, along with the HTTP client plumbing (SSL, JSON decoding, error
classification) shared by upstream integrations.
"""

import json
import ssl
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union
from urllib.parse import urlencode, urljoin, urlparse
from http.client import HTTPConnection, HTTPException, HTTPSConnection

from tiime_carddav.retry import is_retryable_error

logger = logging.getLogger(__name__)

Page = Tuple[List[Dict[str, Any]], bool]


class UpstreamError(Exception):
    """Base exception for upstream API errors."""
    
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamAuthError(UpstreamError):
    """Raised when the upstream service rejects the presented identity."""
    pass


class UpstreamTransientError(UpstreamError):
    """Raised on network failures and 5xx responses from the upstream service."""
    transient = True


class UpstreamNotFoundError(UpstreamError):
    """Raised when the upstream service has no record for an identifier."""
    pass


class HTTPResponseData:
    """Decoded upstream response: status, headers and parsed JSON body."""
    
    def __init__(self, status: int, headers: Dict[str, str], data: Any):
        self.status = status
        self.headers = headers
        self.data = data
    
    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(name.lower(), default)


class UpstreamSession(ABC):
    """
    Abstract base class for an authenticated upstream session.
    
    Sessions are created by a login call, cached per credential by the
    gateway, and renewed either on use or by a background scheduler.
    """
    
    @abstractmethod
    def needs_renewal(self) -> bool:
        """Return True when the session must be renewed before use."""
        pass
    
    @abstractmethod
    def renew(self) -> None:
        """
        Renew the session credentials.
        
        Raises:
            UpstreamAuthError: If the upstream service rejects the identity
            UpstreamTransientError: If the upstream service is unreachable
        """
        pass
    
    @abstractmethod
    def fetch_page(self, scope: Tuple[int, ...], offset: int, limit: int) -> Page:
        """
        Fetch one page of records under ``scope``.
        
        Args:
            scope: Identifiers of the collection to list, e.g. ``(company_id,)``
            offset: Index of the first record
            limit: Maximum number of records
            
        Returns:
            Tuple of (records, has_more)
        """
        pass
    
    def close(self) -> None:
        """Release any network resources held by the session."""
        pass


def iter_pages(fetch: Callable[[Tuple[int, ...], int, int], Page],
               scope: Tuple[int, ...], page_size: int = 100) -> Iterator[Dict[str, Any]]:
    """
    Lazily iterate every record of a paginated collection.
    
    Each call returns a fresh generator, so iteration can be restarted.
    
    Args:
        fetch: Page fetch function, typically ``session.fetch_page``
        scope: Collection scope passed through to ``fetch``
        page_size: Number of records requested per page
    """
    if page_size <= 0:
        raise ValueError(f"page_size must be positive: {page_size}")
    offset = 0
    while True:
        records, has_more = fetch(scope, offset, page_size)
        yield from records
        if not has_more or not records:
            break
        offset += page_size


class HTTPClient:
    """
    Minimal JSON-over-HTTP client for one upstream host.
    
    Args:
        base_url: Base URL that request paths are resolved against
        timeout: Socket timeout in seconds
        verify_ssl: Whether to verify server certificates
        truststore_file: Optional PEM bundle of trusted CA certificates
        default_headers: Headers sent with every request
    """
    
    def __init__(self, base_url: str, timeout: float = 30, verify_ssl: bool = True,
                 truststore_file: Optional[str] = None,
                 default_headers: Optional[Dict[str, str]] = None):
        self.base_url = base_url
        self.timeout = timeout
        self.verify_ssl = verify_ssl
        self.truststore_file = truststore_file
        self.default_headers = dict(default_headers or {})
        
        self.parsed_url = urlparse(base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')
        
        self.ssl_context = None
        self._setup_ssl_context()
    
    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if self.parsed_url.scheme != 'https':
            return
        
        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.host}")
            return
        
        self.ssl_context = ssl.create_default_context()
        if self.truststore_file:
            try:
                self.ssl_context.load_verify_locations(cafile=self.truststore_file)
                logger.info(f"Loaded PEM truststore: {self.truststore_file}")
            except (OSError, ssl.SSLError) as e:
                raise UpstreamError(f"Truststore loading failed: {e}")
    
    def _connect(self) -> Union[HTTPSConnection, HTTPConnection]:
        if self.parsed_url.scheme == 'https':
            return HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        return HTTPConnection(self.host, timeout=self.timeout)
    
    def request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None,
                headers: Optional[Dict[str, str]] = None,
                params: Optional[Dict[str, Any]] = None) -> HTTPResponseData:
        """
        Make an HTTP request and decode the JSON response.
        
        A new connection is opened per request so that sessions may be used
        from several request threads at once.
        
        Raises:
            UpstreamAuthError: On 401 and 403 responses
            UpstreamNotFoundError: On 404 responses
            UpstreamTransientError: On network errors and retryable statuses
            UpstreamError: On any other failure
        """
        if path:
            full_path = urljoin(self.base_path + '/', path.lstrip('/'))
        else:
            full_path = self.base_path or '/'
        if params:
            full_path += '?' + urlencode(params)
        
        request_headers = {'Accept': 'application/json'}
        request_headers.update(self.default_headers)
        if headers:
            request_headers.update(headers)
        
        request_body = None
        if body is not None:
            request_body = json.dumps(body)
            request_headers['Content-Type'] = 'application/json'
        
        conn = self._connect()
        try:
            logger.debug(f"Making {method} request to {self.host}{full_path}")
            conn.request(method, full_path, request_body, request_headers)
            response = conn.getresponse()
            response_data = response.read().decode('utf-8')
            response_headers = {k.lower(): v for k, v in response.getheaders()}
        except (ConnectionError, TimeoutError, OSError) as e:
            raise UpstreamTransientError(f"Connection error to {self.host}: {e}")
        except HTTPException as e:
            raise UpstreamTransientError(f"Malformed HTTP response from {self.host}: {e!r}")
        except UnicodeDecodeError as e:
            raise UpstreamTransientError(f"Undecodable response from {self.host}: {e}")
        finally:
            conn.close()
        
        logger.debug(f"Response status: {response.status} {response.reason}")
        
        if response.status >= 400:
            message = f"HTTP {response.status}: {response.reason}"
            if response.status in (401, 403):
                raise UpstreamAuthError(message, response.status)
            if response.status == 404:
                raise UpstreamNotFoundError(message, response.status)
            error = UpstreamError(message, response.status)
            if is_retryable_error(error):
                raise UpstreamTransientError(message, response.status)
            raise error
        
        try:
            data = json.loads(response_data) if response_data else None
        except json.JSONDecodeError as e:
            raise UpstreamTransientError(f"Invalid JSON response from {self.host}: {e}")
        
        return HTTPResponseData(response.status, response_headers, data)
