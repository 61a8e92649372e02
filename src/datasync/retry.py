import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal

from core.settings import DEFAULT_ESCALATE_EVERY, DEFAULT_MAX_ATTEMPTS, DEFAULT_RETRY_BACKOFF_SECONDS
from datasync.alerting import Alerter
from datasync.errors import ConfigurationError, RetriesExhaustedError
from datasync.sync_config import RetrySpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS
    escalate_every: int = DEFAULT_ESCALATE_EVERY

    @classmethod
    def from_spec(cls, spec: RetrySpec) -> "RetryPolicy":
        return cls(max_attempts=spec.max_attempts, backoff_seconds=spec.backoff_seconds, escalate_every=spec.escalate_every)


@dataclass(frozen=True)
class RetryOutcome:
    status: Literal["success", "exhausted", "fatal"]
    attempts: int
    result: Any = None
    error: BaseException | None = None
    escalated: bool = False


def run_with_retry(
    operation: Callable[[], Any],
    policy: RetryPolicy,
    *,
    description: str,
    alerter: Alerter,
    sleep: Callable[[float], None] = time.sleep,
) -> RetryOutcome:
    """
    Calls `operation` until it succeeds or `policy.max_attempts` is reached.

    Every failure is logged; every `escalate_every`-th consecutive failure is
    sent to the alerter instead. A success following an alert sends a
    recovery notice. Configuration errors are never retried.
    """
    escalated = False
    last_error: BaseException | None = None

    for attempt in range(policy.max_attempts):
        try:
            result = operation()
        except ConfigurationError as e:
            logger.error("Failed to %s, not retrying: %s", description, e)
            return RetryOutcome(status="fatal", attempts=attempt + 1, error=e, escalated=escalated)
        except Exception as e:
            last_error = e
            remaining = policy.max_attempts - attempt - 1
            message = f"Failed to {description}, will retry in {policy.backoff_seconds:g} s. ({remaining} retries left)"

            if attempt % policy.escalate_every == policy.escalate_every - 1:
                escalated = True
                alerter.alert(message, e)
            else:
                logger.warning(message, exc_info=e)

            if remaining > 0:
                sleep(policy.backoff_seconds)
            continue

        if escalated:
            alerter.alert(f"Recovered: {description} succeeded after {attempt} retries.")
        return RetryOutcome(status="success", attempts=attempt + 1, result=result, escalated=escalated)

    return RetryOutcome(status="exhausted", attempts=policy.max_attempts, error=last_error, escalated=escalated)


def retry_or_raise(
    operation: Callable[[], Any],
    policy: RetryPolicy,
    *,
    description: str,
    alerter: Alerter,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    outcome = run_with_retry(operation, policy, description=description, alerter=alerter, sleep=sleep)
    if outcome.status == "fatal":
        raise outcome.error
    if outcome.status == "exhausted":
        raise RetriesExhaustedError(description, outcome.attempts, outcome.error)
    return outcome.result
