"""
Standardized API Adapter with Unified Retry System
Base class for external payout API integrations: consistent error classification,
bounded retry with exponential backoff and circuit breaker protection
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from functools import wraps
from typing import Any, Callable, Dict, Optional, Tuple

import aiohttp

from models import PayoutErrorCode
from services.circuit_breaker import CircuitOpenError, get_circuit_breaker

logger = logging.getLogger(__name__)


# Retry policy per unified error code: (retryable, first backoff delay in seconds)
RETRY_POLICY: Dict[PayoutErrorCode, Tuple[bool, float]] = {
    PayoutErrorCode.API_TIMEOUT: (True, 1.0),
    PayoutErrorCode.NETWORK_ERROR: (True, 1.0),
    PayoutErrorCode.SERVICE_UNAVAILABLE: (True, 2.0),
    PayoutErrorCode.RATE_LIMIT_EXCEEDED: (True, 2.0),
    PayoutErrorCode.API_AUTHENTICATION_FAILED: (False, 0),
    PayoutErrorCode.API_INVALID_REQUEST: (False, 0),
    PayoutErrorCode.API_INSUFFICIENT_FUNDS: (False, 0),
    PayoutErrorCode.INVALID_BANK_ACCOUNT: (False, 0),
    PayoutErrorCode.CIRCUIT_OPEN: (False, 0),
    PayoutErrorCode.UNKNOWN_ERROR: (False, 0),
}


class ProviderHTTPError(Exception):
    """Non-2xx response from a provider API"""

    def __init__(self, status: int, body: Any, message: str = ""):
        self.status = status
        self.body = body
        super().__init__(message or f"HTTP {status}: {body}")


class APIRetryException(Exception):
    """
    Wrapper exception that includes retry classification information
    """
    def __init__(self, original_exception: Exception, error_code: PayoutErrorCode, retryable: bool):
        self.original_exception = original_exception
        self.error_code = error_code
        self.retryable = retryable
        super().__init__(str(original_exception))


class APIAdapterRetry(ABC):
    """
    Base class for external API integrations with unified retry logic

    Provides:
    - Provider-specific error mapping to PayoutErrorCode
    - Retry with exponential backoff for transient failures
    - Circuit breaker integration
    """

    def __init__(self, service_name: str, timeout: int = 30, max_attempts: int = 3, base_delay: float = 1.0):
        self.service_name = service_name
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.breaker = get_circuit_breaker(
            self._get_circuit_breaker_name(), failure_threshold=5, recovery_timeout=60
        )
        logger.info(f"🔧 APIAdapterRetry initialized for {service_name}")

    @abstractmethod
    def _map_provider_error_to_unified(self, exception: Exception, context: Optional[Dict] = None) -> PayoutErrorCode:
        """Map provider-specific errors to unified error codes"""

    @abstractmethod
    def _get_circuit_breaker_name(self) -> str:
        """Return the circuit breaker name for this API service"""

    def _classify_api_error(self, exception: Exception, context: Optional[Dict] = None) -> Tuple[PayoutErrorCode, bool, float]:
        if isinstance(exception, CircuitOpenError):
            return PayoutErrorCode.CIRCUIT_OPEN, False, 0

        error_code = self._map_provider_error_to_unified(exception, context)
        if error_code == PayoutErrorCode.UNKNOWN_ERROR:
            # Generic fallback by exception type
            if isinstance(exception, asyncio.TimeoutError):
                error_code = PayoutErrorCode.API_TIMEOUT
            elif isinstance(exception, aiohttp.ClientError):
                error_code = PayoutErrorCode.NETWORK_ERROR
            elif isinstance(exception, ProviderHTTPError):
                if exception.status in (401, 403):
                    error_code = PayoutErrorCode.API_AUTHENTICATION_FAILED
                elif exception.status == 429:
                    error_code = PayoutErrorCode.RATE_LIMIT_EXCEEDED
                elif exception.status >= 500:
                    error_code = PayoutErrorCode.SERVICE_UNAVAILABLE
                elif exception.status >= 400:
                    error_code = PayoutErrorCode.API_INVALID_REQUEST

        retryable, delay = RETRY_POLICY.get(error_code, (False, 0))
        logger.info(
            f"🔍 API_ERROR_CLASSIFIED: {self.service_name} - {type(exception).__name__} -> "
            f"{error_code.value} (retryable={retryable})"
        )
        return error_code, retryable, delay

    def api_retry(self, max_attempts: Optional[int] = None, context: Optional[Dict] = None):
        """
        Decorator for API methods to add unified retry logic

        Usage:
            @self.api_retry(max_attempts=3, context={"operation": "create_payout"})
            async def _call():
                return await self._make_http_request(...)
        """
        def decorator(func: Callable) -> Callable:
            @wraps(func)
            async def wrapper(*args, **kwargs) -> Any:
                attempts = max_attempts or self.max_attempts
                operation_start = time.monotonic()

                for attempt in range(1, attempts + 1):
                    try:
                        result = await self.breaker.call(func, *args, **kwargs)
                        logger.debug(
                            f"✅ API_SUCCESS: {self.service_name}.{func.__name__} "
                            f"in {time.monotonic() - operation_start:.3f}s after {attempt} attempt(s)"
                        )
                        return result
                    except Exception as e:
                        error_code, retryable, delay = self._classify_api_error(e, context)
                        if retryable and attempt < attempts:
                            backoff = delay * (2 ** (attempt - 1)) * self.base_delay
                            logger.warning(
                                f"🔄 API_RETRY: {self.service_name}.{func.__name__} attempt {attempt} "
                                f"failed ({error_code.value}) - retrying in {backoff:.1f}s"
                            )
                            await asyncio.sleep(backoff)
                            continue

                        if retryable:
                            logger.error(f"❌ API_MAX_RETRIES: {self.service_name}.{func.__name__} failed after {attempt} attempts")
                        else:
                            logger.error(f"❌ API_NON_RETRYABLE: {self.service_name}.{func.__name__} failed with {error_code.value}")
                        raise APIRetryException(e, error_code, retryable) from e

            return wrapper
        return decorator

    async def _make_http_request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict] = None,
        params: Optional[Dict] = None,
        json: Optional[Dict] = None,
        auth: Optional[aiohttp.BasicAuth] = None,
        timeout: Optional[int] = None,
    ) -> Dict:
        """
        Make HTTP request; non-2xx responses raise ProviderHTTPError carrying the parsed body
        """
        timeout = timeout or self.timeout
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
            async with session.request(
                method=method, url=url, headers=headers, params=params, json=json, auth=auth
            ) as response:
                try:
                    body = await response.json(content_type=None)
                except ValueError:
                    body = {"raw": await response.text()}
                if response.status >= 400:
                    raise ProviderHTTPError(response.status, body)
                return body or {}
