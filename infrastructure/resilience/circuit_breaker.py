# infrastructure/resilience/circuit_breaker.py
from enum import Enum
from datetime import datetime, timedelta
from typing import Callable, Any, Optional, Dict, List
import asyncio
from dataclasses import dataclass

from domain.errors import UpstreamError
from shared.logging import logger, log_circuit_breaker_event

class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    recovery_timeout: timedelta = timedelta(minutes=2)
    success_threshold: int = 3
    timeout_seconds: float = 30.0

class CircuitBreakerRegistry:
    """Registry of the breakers guarding outbound collaborator calls"""

    def __init__(self):
        self.breakers: Dict[str, 'CircuitBreaker'] = {}

    def get_breaker(self, name: str, config: Optional[CircuitBreakerConfig] = None) -> 'CircuitBreaker':
        if name not in self.breakers:
            self.breakers[name] = CircuitBreaker(name, config or CircuitBreakerConfig())
        return self.breakers[name]

    def get_all_status(self) -> Dict[str, Dict[str, Any]]:
        return {name: breaker.get_status() for name, breaker in self.breakers.items()}

    def open_circuits(self) -> List[str]:
        return [name for name, b in self.breakers.items() if b.state == CircuitState.OPEN]

class CircuitBreaker:
    def __init__(self, name: str, config: CircuitBreakerConfig,
                 clock: Callable[[], datetime] = datetime.utcnow):
        self.name = name
        self.config = config
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[datetime] = None
        self.success_count = 0
        self._clock = clock

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        if self.state == CircuitState.OPEN:
            if self._should_attempt_reset():
                self._transition(CircuitState.HALF_OPEN)
                self.success_count = 0
            else:
                raise CircuitOpenError(f"Circuit breaker for {self.name} is OPEN")

        try:
            result = await asyncio.wait_for(
                func(*args, **kwargs),
                timeout=self.config.timeout_seconds
            )
        except asyncio.TimeoutError:
            self._on_failure()
            raise UpstreamError(
                f"{self.name} call timed out after {self.config.timeout_seconds}s",
                transient=True)
        except UpstreamError as e:
            # A rejected request says nothing about the collaborator's health
            if e.transient:
                self._on_failure()
            else:
                self._on_success()
            raise
        except Exception:
            self._on_failure()
            raise

        self._on_success()
        return result

    def _should_attempt_reset(self) -> bool:
        if not self.last_failure_time:
            return False
        return self._clock() - self.last_failure_time > self.config.recovery_timeout

    def _on_success(self):
        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.config.success_threshold:
                self.failure_count = 0
                self._transition(CircuitState.CLOSED)
        elif self.state == CircuitState.CLOSED and self.failure_count > 0:
            self.failure_count = 0

    def _on_failure(self):
        self.failure_count += 1
        self.last_failure_time = self._clock()

        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.config.failure_threshold:
            if self.state != CircuitState.OPEN:
                self._transition(CircuitState.OPEN)

    def _transition(self, state: CircuitState):
        previous = self.state
        self.state = state
        log_circuit_breaker_event(self.name, "state_change", state.value, self.failure_count,
                                  {"from_state": previous.value})
        if state == CircuitState.OPEN:
            logger.warning("Circuit opened", breaker_name=self.name,
                           failure_count=self.failure_count)

    def get_status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure_time": self.last_failure_time.isoformat() if self.last_failure_time else None,
            "success_count": self.success_count
        }

    def force_open(self):
        """Manually open circuit breaker for testing or emergency"""
        self.last_failure_time = self._clock()
        self._transition(CircuitState.OPEN)

    def force_close(self):
        """Manually close circuit breaker for testing or recovery"""
        self.failure_count = 0
        self.success_count = 0
        self._transition(CircuitState.CLOSED)

class CircuitOpenError(UpstreamError):
    def __init__(self, message: str):
        super().__init__(message, transient=False)
