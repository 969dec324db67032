"""Error classification and circuit breaking for database calls."""
import time
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Any, Callable, Optional, Sequence, Tuple, Type, Union
from loguru import logger
from ..models import ErrorCategory, ErrorSeverity


@dataclass(frozen=True)
class ClassificationRule:
    """Substring patterns that map a message to a category and severity."""
    patterns: Tuple[str, ...]
    category: ErrorCategory
    severity: ErrorSeverity

    def matches(self, message: str) -> bool:
        return any(pattern in message for pattern in self.patterns)


# Ordered: first match wins.
DEFAULT_RULES: Tuple[ClassificationRule, ...] = (
    ClassificationRule(("connection", "network", "timeout"), ErrorCategory.CONNECTION, ErrorSeverity.HIGH),
    ClassificationRule(("syntax", "parse"), ErrorCategory.SYNTAX, ErrorSeverity.LOW),
    ClassificationRule(("constraint", "unique", "foreign key"), ErrorCategory.CONSTRAINT, ErrorSeverity.MEDIUM),
    ClassificationRule(("busy", "timeout"), ErrorCategory.TIMEOUT, ErrorSeverity.MEDIUM),
    ClassificationRule(("permission", "unauthorized", "access denied"), ErrorCategory.PERMISSION, ErrorSeverity.HIGH),
    ClassificationRule(("corrupt", "malformed"), ErrorCategory.CORRUPTION, ErrorSeverity.CRITICAL),
    ClassificationRule(("disk", "space", "full"), ErrorCategory.SPACE, ErrorSeverity.CRITICAL),
    ClassificationRule(("lock", "deadlock"), ErrorCategory.LOCK, ErrorSeverity.MEDIUM),
)


class ErrorClassifier:
    """Maps a raw failure to a (category, severity) pair using an ordered rule table."""

    def __init__(
        self,
        rules: Sequence[ClassificationRule] = DEFAULT_RULES,
        default: Tuple[ErrorCategory, ErrorSeverity] = (ErrorCategory.UNKNOWN, ErrorSeverity.MEDIUM),
    ):
        self.rules = tuple(rules)
        self.default = default

    def classify(self, error: Union[BaseException, str]) -> Tuple[ErrorCategory, ErrorSeverity]:
        message = str(error).lower()
        for rule in self.rules:
            if rule.matches(message):
                return rule.category, rule.severity
        return self.default

    def with_rule(self, rule: ClassificationRule, first: bool = False) -> "ErrorClassifier":
        """Copy of this classifier with an extra rule."""
        rules = (rule,) + self.rules if first else self.rules + (rule,)
        return ErrorClassifier(rules, self.default)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # One trial call in flight


class CircuitBreakerError(Exception):
    """Raised when circuit breaker is open."""
    pass


class CircuitBreaker:
    """Circuit breaker guarding one resource.

    All state changes happen under one lock, so concurrent callers see a
    consistent state, failure count and last failure time.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        open_duration: float = 60.0,
        half_open_probe_delay: float = 30.0,
        expected_exception: Type[BaseException] = Exception,
        name: str = "database",
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Consecutive failures before opening circuit
            open_duration: Longest time in seconds the circuit stays open
            half_open_probe_delay: Seconds after the last failure before a trial call
            expected_exception: Exception type counted as a failure
            name: Circuit breaker name for logging
            clock: Monotonic time source in seconds
        """
        self.failure_threshold = failure_threshold
        self.open_duration = open_duration
        self.half_open_probe_delay = half_open_probe_delay
        self.expected_exception = expected_exception
        self.name = name
        self.clock = clock

        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = CircuitState.CLOSED
        self.lock = Lock()

    @property
    def reset_timeout(self) -> float:
        return min(self.open_duration, self.half_open_probe_delay)

    def call(self, func: Callable, *args, **kwargs) -> Any:
        """Execute function through circuit breaker."""
        self._before_call()
        try:
            result = func(*args, **kwargs)
        except self.expected_exception:
            self._on_failure()
            raise
        except BaseException:
            self._abort_trial()
            raise
        self._on_success()
        return result

    async def call_async(self, func: Callable, *args, **kwargs) -> Any:
        """Execute async function through circuit breaker."""
        self._before_call()
        try:
            result = await func(*args, **kwargs)
        except self.expected_exception:
            self._on_failure()
            raise
        except BaseException:
            self._abort_trial()
            raise
        self._on_success()
        return result

    def _before_call(self):
        with self.lock:
            if self.state == CircuitState.OPEN:
                if self._should_attempt_reset():
                    self.state = CircuitState.HALF_OPEN
                    logger.info(f"Circuit breaker '{self.name}' entering HALF_OPEN state")
                    return
                raise CircuitBreakerError(
                    f"Circuit breaker '{self.name}' is OPEN. "
                    f"Will retry after {self.reset_timeout:.0f}s"
                )
            if self.state == CircuitState.HALF_OPEN:
                raise CircuitBreakerError(
                    f"Circuit breaker '{self.name}' is HALF_OPEN with a trial call in flight"
                )

    def _should_attempt_reset(self) -> bool:
        """Check if enough time has passed to attempt reset."""
        if self.last_failure_time is None:
            return True
        return self.clock() - self.last_failure_time > self.reset_timeout

    def _on_success(self):
        with self.lock:
            if self.state == CircuitState.HALF_OPEN:
                logger.info(f"Circuit breaker '{self.name}' recovered, closing circuit")
            self.failure_count = 0
            self.state = CircuitState.CLOSED

    def _on_failure(self):
        with self.lock:
            self.failure_count += 1
            self.last_failure_time = self.clock()

            if self.state == CircuitState.HALF_OPEN:
                logger.error(f"Circuit breaker '{self.name}' trial call failed, reopening")
                self.state = CircuitState.OPEN
            elif self.failure_count >= self.failure_threshold and self.state != CircuitState.OPEN:
                logger.error(
                    f"Circuit breaker '{self.name}' opened after "
                    f"{self.failure_count} failures"
                )
                self.state = CircuitState.OPEN

    def _abort_trial(self):
        # an uncounted exception (e.g. cancellation) ends the trial without a verdict
        with self.lock:
            if self.state == CircuitState.HALF_OPEN:
                self.state = CircuitState.OPEN

    def reset(self):
        """Manually reset circuit breaker."""
        with self.lock:
            self.failure_count = 0
            self.last_failure_time = None
            self.state = CircuitState.CLOSED
        logger.info(f"Circuit breaker '{self.name}' manually reset")

    def get_state(self) -> dict:
        """Get current circuit breaker state."""
        with self.lock:
            since = None
            if self.last_failure_time is not None:
                since = self.clock() - self.last_failure_time
            return {
                'name': self.name,
                'state': self.state.value,
                'failure_count': self.failure_count,
                'seconds_since_last_failure': since,
                'failure_threshold': self.failure_threshold,
            }
