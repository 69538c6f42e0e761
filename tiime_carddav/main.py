"""
Command line entry point for the Tiime CardDAV gateway.

Loads configuration, sets up logging, logs the service account in when the
gateway runs single-tenant, and serves the application with uvicorn.
"""

import sys
import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

import uvicorn

from tiime_carddav.auth import parse_basic_authorization
from tiime_carddav.config import ConfigurationError, load_config
from tiime_carddav.logging_setup import get_logging_stats, setup_logging
from tiime_carddav.retry import MaxRetriesExceeded, create_retry_callback, is_retryable_error, retry_call
from tiime_carddav.server import build_cache, create_app, service_session_key
from tiime_carddav.upstream.base import UpstreamError
from tiime_carddav.upstream.tiime import create_session_factory

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_UNHEALTHY = 1
EXIT_CONFIG_ERROR = 2
EXIT_LOGIN_FAILED = 3
EXIT_UNEXPECTED = 4


def login_service_account(config: Dict[str, Any], cache, factory, sleep=None) -> None:
    """
    Log the single-tenant service account in, retrying transient failures.

    Raises:
        UpstreamError: If Tiime rejects the service account
        MaxRetriesExceeded: If Tiime stays unreachable
    """
    key = service_session_key(config)
    if key is None:
        return

    error_config = config.get('error_handling', {})
    retry_kwargs = {}
    if sleep is not None:
        retry_kwargs['sleep'] = sleep

    logger.info(f"Logging in service account {config['service_account']['email']}")
    retry_call(
        cache.get_or_create,
        args=(key, factory),
        max_attempts=error_config.get('max_retries', 3),
        delay=error_config.get('retry_wait_seconds', 5),
        exceptions=(UpstreamError,),
        should_retry=is_retryable_error,
        on_retry=create_retry_callback("Tiime service account login"),
        **retry_kwargs
    )


def health_check(config: Dict[str, Any], factory=None) -> Dict[str, Any]:
    """
    Check configuration, logging and upstream reachability.

    In single-tenant mode the service account is logged in; in multi-tenant
    mode there is no credential to test and the upstream check is skipped.

    Returns:
        Dictionary containing health status and details
    """
    health_status = {
        'status': 'healthy',
        'timestamp': datetime.now().isoformat(),
        'checks': {
            'configuration': {'status': 'healthy', 'mode': config['server']['mode']},
            'logging': get_logging_stats(),
        }
    }

    key = service_session_key(config)
    if key is None:
        health_status['checks']['tiime'] = {
            'status': 'skipped',
            'message': 'No service account in multi-tenant mode'
        }
        return health_status

    factory = factory or create_session_factory(config.get('tiime', {}))
    try:
        session = factory(parse_basic_authorization(key))
        session.close()
        health_status['checks']['tiime'] = {'status': 'healthy', 'message': 'Service account login succeeded'}
    except UpstreamError as e:
        health_status['checks']['tiime'] = {'status': 'unhealthy', 'message': str(e)}
        health_status['status'] = 'unhealthy'
    except Exception as e:
        logger.error(f"Health check login failed: {e}", exc_info=True)
        health_status['checks']['tiime'] = {'status': 'unhealthy', 'message': f"{type(e).__name__}: {e}"}
        health_status['status'] = 'unhealthy'
    return health_status


def run(config_path: Optional[str] = None, check_health: bool = False) -> int:
    """
    Run the gateway until interrupted.

    Returns:
        Exit code
    """
    try:
        config = load_config(config_path)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    setup_logging(config.get('logging', {}))

    if check_health:
        health_status = health_check(config)
        print(json.dumps(health_status, indent=2))
        return EXIT_OK if health_status['status'] == 'healthy' else EXIT_UNHEALTHY

    try:
        factory = create_session_factory(config.get('tiime', {}))
        cache = build_cache(config, factory)

        try:
            login_service_account(config, cache, factory)
        except (UpstreamError, MaxRetriesExceeded) as e:
            logger.error(f"Service account login failed: {e}")
            cache.close()
            return EXIT_LOGIN_FAILED

        app = create_app(config, session_factory=factory, cache=cache)
        server = config['server']
        logger.info(f"Serving CardDAV on {server['host']}:{server['port']} ({server['mode']} mode)")
        uvicorn.run(app, host=server['host'], port=server['port'], log_config=None)
        return EXIT_OK

    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        return EXIT_UNEXPECTED


def main():
    """Main entry point for the application."""
    import argparse

    parser = argparse.ArgumentParser(description='Tiime CardDAV Gateway')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--health-check', action='store_true',
                        help='Check configuration and upstream login, then exit')

    args = parser.parse_args()
    sys.exit(run(args.config, check_health=args.health_check))


if __name__ == "__main__":
    main()
