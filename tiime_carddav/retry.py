"""
Retry utilities for the gateway's startup login.

Request handling and background renewal never retry: a failed request is
reported to the client and a failed renewal evicts the session. The only
retried operation is the service-account login performed at startup in
single-tenant mode.
"""

import time
import logging
from typing import Any, Callable, Optional, Tuple, Type

logger = logging.getLogger(__name__)

# 429 and the 5xx range indicate the upstream may recover on its own
RETRYABLE_STATUS_CODES = frozenset([408, 429])


class MaxRetriesExceeded(Exception):
    """Raised when maximum retry attempts are exceeded."""
    
    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict = None,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    should_retry: Optional[Callable[[Exception], bool]] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None,
    sleep: Callable[[float], None] = time.sleep
) -> Any:
    """
    Call a function with retry logic.
    
    Args:
        func: Function to call
        args: Positional arguments for function
        kwargs: Keyword arguments for function
        max_attempts: Maximum number of attempts
        delay: Initial delay between retries
        backoff: Delay multiplier for exponential backoff
        exceptions: Exception types to catch
        should_retry: Predicate deciding whether a caught exception is retried;
            exceptions it rejects are re-raised immediately
        on_retry: Optional callback for retry events
        sleep: Function used to wait between attempts
        
    Returns:
        Function result
        
    Raises:
        MaxRetriesExceeded: If all retry attempts fail
    """
    if kwargs is None:
        kwargs = {}
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be at least 1: {max_attempts}")
    
    last_exception = None
    current_delay = delay
    
    for attempt in range(max_attempts):
        try:
            result = func(*args, **kwargs)
            if attempt > 0:
                logger.info(f"Operation succeeded on attempt {attempt + 1}")
            return result
        
        except exceptions as e:
            if should_retry is not None and not should_retry(e):
                raise
            last_exception = e
            
            if attempt == max_attempts - 1:
                break
            
            logger.debug(f"Attempt {attempt + 1} failed with {type(e).__name__}: {e}")
            logger.debug(f"Retrying in {current_delay:.1f} seconds...")
            
            if on_retry:
                try:
                    on_retry(attempt + 1, e)
                except Exception as callback_error:
                    logger.warning(f"Retry callback failed: {callback_error}")
            
            sleep(current_delay)
            current_delay *= backoff
    
    raise MaxRetriesExceeded(max_attempts, last_exception)


def is_retryable_error(exception: Exception) -> bool:
    """
    Determine if an exception indicates a transient failure.
    
    Args:
        exception: Exception to check
        
    Returns:
        True for network errors and retryable HTTP statuses
    """
    if isinstance(exception, (ConnectionError, TimeoutError)):
        return True
    
    status_code = getattr(exception, 'status_code', None)
    if isinstance(status_code, int):
        return status_code in RETRYABLE_STATUS_CODES or 500 <= status_code < 600
    
    # Errors raised without a status (connection refused, bad JSON) mark themselves
    return bool(getattr(exception, 'transient', False))


def create_retry_callback(operation_name: str) -> Callable[[int, Exception], None]:
    """
    Create a standard retry callback for logging retry attempts.
    
    Args:
        operation_name: Name of the operation being retried
        
    Returns:
        Callback function for retry events
    """
    def on_retry(attempt: int, exception: Exception):
        logger.warning(f"{operation_name} failed on attempt {attempt}, "
                       f"retrying due to {type(exception).__name__}: {exception}")
    
    return on_retry
