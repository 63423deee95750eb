"""
Circuit Breaker Pattern for External API Calls
Prevents cascading failures when the blockchain RPC or the payout provider degrades
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Type, Union

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Blocking calls due to failures
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitOpenError(Exception):
    """Raised when a call is blocked by an open circuit"""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Circuit breaker {name} is OPEN. Service unavailable.")


class CircuitBreaker:
    """
    In-process circuit breaker for external calls

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Too many failures, requests blocked
    - HALF_OPEN: Testing recovery with limited requests
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        expected_exception: Union[Type[BaseException], Tuple[Type[BaseException], ...]] = Exception,
        half_open_successes: int = 2,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self.half_open_successes = half_open_successes

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.half_open_attempts = 0
        self.last_failure_time: Optional[float] = None
        self.stats = {
            'total_calls': 0,
            'successful_calls': 0,
            'failed_calls': 0,
            'blocked_calls': 0,
        }

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """Execute function with circuit breaker protection"""
        self.stats['total_calls'] += 1

        if self.state == CircuitState.OPEN:
            if self._should_attempt_reset():
                self.state = CircuitState.HALF_OPEN
                self.half_open_attempts = 0
                logger.info(f"Circuit {self.name} entering HALF_OPEN state")
            else:
                self.stats['blocked_calls'] += 1
                raise CircuitOpenError(self.name)

        try:
            if asyncio.iscoroutinefunction(func):
                result = await func(*args, **kwargs)
            else:
                # Wrap synchronous function call with asyncio.to_thread() to prevent event loop blocking
                result = await asyncio.to_thread(func, *args, **kwargs)
        except self.expected_exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def _should_attempt_reset(self) -> bool:
        if self.last_failure_time is None:
            return True
        return time.monotonic() - self.last_failure_time >= self.recovery_timeout

    def _on_success(self):
        self.stats['successful_calls'] += 1
        if self.state == CircuitState.HALF_OPEN:
            self.half_open_attempts += 1
            if self.half_open_attempts >= self.half_open_successes:
                self.state = CircuitState.CLOSED
                self.failure_count = 0
                self.half_open_attempts = 0
                logger.info(f"Circuit {self.name} recovered - now CLOSED")
        else:
            self.failure_count = 0

    def _on_failure(self):
        self.stats['failed_calls'] += 1
        self.failure_count += 1
        self.last_failure_time = time.monotonic()

        if self.state == CircuitState.HALF_OPEN:
            self.state = CircuitState.OPEN
            self.half_open_attempts = 0
            logger.warning(f"Circuit {self.name} failed in HALF_OPEN - returning to OPEN")
        elif self.failure_count >= self.failure_threshold and self.state != CircuitState.OPEN:
            self.state = CircuitState.OPEN
            logger.error(f"Circuit {self.name} opened due to {self.failure_count} failures")

    def reset(self):
        """Manually reset the circuit breaker"""
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.half_open_attempts = 0
        self.last_failure_time = None
        logger.info(f"Circuit {self.name} manually reset")

    def get_state(self) -> Dict:
        return {
            'name': self.name,
            'state': self.state.value,
            'failure_count': self.failure_count,
            'stats': dict(self.stats),
        }


# Global circuit breakers for external services
circuit_breakers: Dict[str, CircuitBreaker] = {
    'razorpay': CircuitBreaker('razorpay', failure_threshold=3, recovery_timeout=120),
}


def get_circuit_breaker(name: str, **kwargs) -> CircuitBreaker:
    """Registry lookup, creating the breaker on first use"""
    breaker = circuit_breakers.get(name)
    if breaker is None:
        breaker = CircuitBreaker(name, **kwargs)
        circuit_breakers[name] = breaker
    return breaker


def get_all_breaker_states() -> Dict:
    return {name: breaker.get_state() for name, breaker in circuit_breakers.items()}
