"""
HTTP front end of the CardDAV gateway.

Every request passes through the ``Gatekeeper``: the ``Authorization`` header
value selects (or creates) an upstream session in the ``SessionCache``, and
any failure to obtain one is answered with a Basic authentication challenge.
Authenticated requests are handed to the CardDAV dispatcher.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import Response
from starlette.concurrency import run_in_threadpool

from tiime_carddav import __version__
from tiime_carddav.auth import CredentialFormatError, Identity, encode_basic_authorization
from tiime_carddav.backend import TiimeBackend
from tiime_carddav.carddav import CardDAVHandler, DavRequest
from tiime_carddav.config import MODE_SINGLE
from tiime_carddav.logging_setup import security_logger
from tiime_carddav.paths import PathCodec
from tiime_carddav.sessions import SessionCache
from tiime_carddav.upstream.base import UpstreamError, UpstreamSession
from tiime_carddav.upstream.tiime import create_session_factory

logger = logging.getLogger(__name__)

DAV_METHODS = [
    'OPTIONS', 'GET', 'HEAD', 'PROPFIND', 'REPORT',
    'PUT', 'DELETE', 'MKCOL', 'PROPPATCH', 'COPY', 'MOVE', 'LOCK', 'UNLOCK', 'POST',
]


class AuthenticationRequired(Exception):
    """Raised when a request cannot be bound to an upstream session."""
    pass


class Gatekeeper:
    """
    Bind requests to upstream sessions.

    Args:
        cache: Session cache shared by all requests
        factory: Session factory used on first use of a credential
        realm: Realm announced in the ``WWW-Authenticate`` challenge
        service_key: Fixed credential key for single-tenant deployments;
            when set, the request's own ``Authorization`` header is ignored
    """

    def __init__(self, cache: SessionCache, factory: Callable[[Identity], UpstreamSession],
                 realm: str = 'Tiime', service_key: Optional[str] = None):
        self.cache = cache
        self.factory = factory
        self.realm = realm
        self.service_key = service_key

    @property
    def challenge(self) -> str:
        return f'Basic realm="{self.realm}"'

    def acquire(self, authorization: Optional[str], client: str = "") -> UpstreamSession:
        """
        Return the upstream session for a request.

        Raises:
            AuthenticationRequired: If credentials are missing, malformed or
                rejected, or the upstream could not be reached
        """
        key = self.service_key or authorization
        if not key:
            security_logger.log_authentication_rejected("missing credentials", client)
            raise AuthenticationRequired("Missing credentials")

        try:
            return self.cache.get_or_create(key, self.factory)
        except (CredentialFormatError, UpstreamError) as e:
            security_logger.log_authentication_rejected(f"{type(e).__name__}: {e}", client)
            raise AuthenticationRequired(str(e)) from e
        except Exception as e:
            logger.error(f"Session acquisition failed: {type(e).__name__}: {e}", exc_info=True)
            security_logger.log_authentication_rejected(f"{type(e).__name__}: {e}", client)
            raise AuthenticationRequired(str(e)) from e


def create_app(config: Dict[str, Any], session_factory: Optional[Callable] = None,
               cache: Optional[SessionCache] = None) -> FastAPI:
    """
    Build the gateway application.

    Args:
        config: Loaded gateway configuration
        session_factory: Overrides the Tiime login, mainly for tests
        cache: Pre-built session cache; one is created from ``config`` if None

    Returns:
        FastAPI application serving CardDAV on every path
    """
    server_config = config.get('server', {})
    page_size = config.get('tiime', {}).get('page_size', 100)

    factory = session_factory or create_session_factory(config.get('tiime', {}))
    if cache is None:
        cache = build_cache(config, factory)

    service_key = service_session_key(config)
    if service_key is not None:
        codec = PathCodec(org_id=int(config['service_account']['company_id']))
        logger.warning("Single-tenant mode: requests are served with the service account "
                       "and need no inbound authentication")
    else:
        codec = PathCodec()

    gatekeeper = Gatekeeper(cache, factory, server_config.get('realm', 'Tiime'), service_key)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"CardDAV gateway started, home collection {codec.home}")
        yield
        cache.close()

    app = FastAPI(title="Tiime CardDAV Gateway", version=__version__,
                  lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.cache = cache
    app.state.gatekeeper = gatekeeper
    app.state.codec = codec

    @app.api_route("/{path:path}", methods=DAV_METHODS, include_in_schema=False)
    async def dav_endpoint(request: Request) -> Response:
        logger.info(f"Request {request.method} {request.url}")
        client = request.client.host if request.client else ""
        try:
            session = await run_in_threadpool(
                gatekeeper.acquire, request.headers.get('authorization'), client
            )
        except AuthenticationRequired:
            return Response(
                content="Unauthorized", status_code=401, media_type='text/plain',
                headers={'WWW-Authenticate': gatekeeper.challenge}
            )

        body = await request.body()
        dav_request = DavRequest(
            method=request.method,
            path=request.url.path,
            headers={name.lower(): value for name, value in request.headers.items()},
            body=body,
        )
        handler = CardDAVHandler(TiimeBackend(session, codec, page_size), codec)
        result = await run_in_threadpool(handler.handle, dav_request)
        return Response(content=result.body, status_code=result.status, headers=result.headers)

    return app


def build_cache(config: Dict[str, Any], factory: Callable) -> SessionCache:
    """Create the session cache, with background renewal when enabled."""
    renewal = config.get('renewal', {})
    interval = renewal.get('interval_seconds') if renewal.get('enabled', True) else None
    return SessionCache(factory, renewal_interval=interval)


def service_session_key(config: Dict[str, Any]) -> Optional[str]:
    """Credential key of the single-tenant service account, or None in multi mode."""
    if config.get('server', {}).get('mode') != MODE_SINGLE:
        return None
    service_account = config['service_account']
    return encode_basic_authorization(service_account['email'], service_account['password'])
