"""
Error classification and retry control.

Provides:
- Classification of any exception into the orchestrator's error taxonomy
- Retry policy with capped exponential backoff and jitter
- A retry controller that drives coroutines through the policy
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from ..models.audit import ErrorRecord
from ..utils.config import OrchestratorConfig
from ..utils.logger import get_logger
from ..core.exceptions import (
    ErrorCategory,
    JobOrchestratorError,
    RetryExhaustedError,
)

# Substring heuristics for exceptions that carry no category of their own.
# Terminal patterns are checked first.
TERMINAL_PATTERNS = (
    "validation",
    "not found",
    "permission",
    "access denied",
    "business rule",
    "malformed",
)

RETRYABLE_PATTERNS = (
    "timeout",
    "timed out",
    "throttl",
    "rate exceeded",
    "too many requests",
    "connection",
    "econnreset",
    "etimedout",
    "econnrefused",
    "service unavailable",
)


class ErrorClassifier:
    """Maps exceptions onto ErrorRecords."""

    def classify(self, error: BaseException, execution_id: Optional[str] = None) -> ErrorRecord:
        if isinstance(error, JobOrchestratorError):
            return ErrorRecord(
                error_type=type(error).__name__,
                error_code=error.error_code or error.category.name,
                error_message=error.message,
                is_retryable=error.is_retryable,
                category=error.category,
                execution_id=execution_id,
            )

        if isinstance(error, asyncio.TimeoutError):
            return self._record(error, ErrorCategory.TRANSIENT_EXTERNAL, "PROCESSING_TIMEOUT", True, execution_id)

        if isinstance(error, (ConnectionError, OSError)) and not isinstance(
            error, (FileNotFoundError, PermissionError)
        ):
            return self._record(error, ErrorCategory.TRANSIENT_EXTERNAL, "CONNECTION_ERROR", True, execution_id)

        if isinstance(error, FileNotFoundError):
            return self._record(error, ErrorCategory.MALFORMED_INPUT, "INPUT_NOT_FOUND", False, execution_id)

        if isinstance(error, PermissionError):
            return self._record(error, ErrorCategory.MALFORMED_INPUT, "PERMISSION_DENIED", False, execution_id)

        text = f"{type(error).__name__} {error}".lower()
        if any(pattern in text for pattern in TERMINAL_PATTERNS):
            return self._record(error, ErrorCategory.MALFORMED_INPUT, "MALFORMED_INPUT", False, execution_id)
        if any(pattern in text for pattern in RETRYABLE_PATTERNS):
            return self._record(error, ErrorCategory.TRANSIENT_EXTERNAL, "TRANSIENT_EXTERNAL", True, execution_id)

        return self._record(error, ErrorCategory.FATAL, "UNCLASSIFIED", False, execution_id)

    @staticmethod
    def _record(
        error: BaseException,
        category: ErrorCategory,
        error_code: str,
        is_retryable: bool,
        execution_id: Optional[str],
    ) -> ErrorRecord:
        return ErrorRecord(
            error_type=type(error).__name__,
            error_code=error_code,
            error_message=str(error) or type(error).__name__,
            is_retryable=is_retryable,
            category=category,
            execution_id=execution_id,
        )


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    jitter: float = 0.3

    @classmethod
    def from_config(cls, config: OrchestratorConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_retry_attempts,
            backoff_base=config.backoff_base,
            backoff_max=config.backoff_max,
            jitter=config.backoff_jitter,
        )

    def backoff(self, attempt: int, rand: float = 0.5) -> float:
        """
        Delay before the attempt following ``attempt`` (1-based).

        ``rand`` in [0, 1) moves the delay within +/- ``jitter`` of the capped
        exponential value; 0.5 gives the value itself. The result never drops
        below half the base delay.
        """
        capped = min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)
        jittered = capped + capped * self.jitter * (rand * 2 - 1)
        return max(self.backoff_base / 2, jittered)


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of consulting the retry policy after a failure."""
    should_retry: bool
    attempt: int
    delay: float
    error: ErrorRecord
    reason: str


class RetryController:
    """
    Decides and performs retries.

    ``sleep`` and ``rand`` are injectable so backoff waits can be observed
    and made deterministic.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        classifier: Optional[ErrorClassifier] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ):
        self.policy = policy or RetryPolicy()
        self.classifier = classifier or ErrorClassifier()
        self.sleep = sleep
        self.rand = rand
        self.logger = get_logger(__name__)

    def classify(self, error: BaseException, execution_id: Optional[str] = None) -> ErrorRecord:
        return self.classifier.classify(error, execution_id)

    def retry_decision(self, attempt: int, error: BaseException, execution_id: Optional[str] = None) -> RetryDecision:
        """Decide whether a failure on ``attempt`` (1-based) warrants another try."""
        record = self.classify(error, execution_id)

        if not record.is_retryable:
            return RetryDecision(False, attempt, 0.0, record, f"{record.category.value} error is terminal")

        if attempt >= self.policy.max_attempts:
            return RetryDecision(
                False, attempt, 0.0, record,
                f"retry budget of {self.policy.max_attempts} attempts exhausted"
            )

        delay = self.policy.backoff(attempt, self.rand())
        return RetryDecision(True, attempt, delay, record, "retryable")

    async def execute_with_retry(
        self,
        func: Callable[..., Awaitable[Any]],
        *args,
        operation: str = "operation",
        execution_id: Optional[str] = None,
        on_retry: Optional[Callable[[RetryDecision], Awaitable[None]]] = None,
        **kwargs
    ) -> Any:
        """
        Execute a coroutine function with retry logic.

        Terminal errors are re-raised unchanged. A retryable error that
        outlives the budget is raised as RetryExhaustedError chained to the
        last failure.

        Args:
            func: Coroutine function to execute
            operation: Name used in logs and in RetryExhaustedError
            execution_id: Copied into classified error records
            on_retry: Awaited with the decision before each backoff wait

        Returns:
            Function result
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await func(*args, **kwargs)
                if attempt > 1:
                    self.logger.info(f"{operation} succeeded on attempt {attempt}")
                return result

            except asyncio.CancelledError:
                raise

            except Exception as e:
                decision = self.retry_decision(attempt, e, execution_id)

                if not decision.should_retry:
                    if decision.error.is_retryable:
                        self.logger.error(f"{operation} failed after {attempt} attempts", extra={
                            "error_code": decision.error.error_code
                        })
                        raise RetryExhaustedError(operation, attempt, decision.error.error_message) from e

                    self.logger.warning(f"{operation} failed with terminal error: {e}", extra={
                        "error_code": decision.error.error_code,
                        "category": decision.error.category.value
                    })
                    raise

                self.logger.info(
                    f"Retrying {operation} in {decision.delay:.2f} seconds (attempt {attempt}/{self.policy.max_attempts})",
                    extra={"error_code": decision.error.error_code}
                )
                if on_retry is not None:
                    await on_retry(decision)
                await self.sleep(decision.delay)
