from datetime import datetime, timedelta
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator

from .utils import utcnow


class BackoffPolicy(BaseModel):
    """
    Delay between successive attempts of a failing job.

    ``n`` below is the job's retry_count after the failure (1 for the first
    failure):

    - exponential: base_delay_ms * factor ** (n - 1)
    - linear:      base_delay_ms * n
    - fixed:       base_delay_ms

    Every strategy is capped at max_delay_ms.
    """

    strategy: Literal["exponential", "linear", "fixed"] = "exponential"
    base_delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int = Field(default=60_000, ge=0)
    factor: float = Field(default=2.0, ge=1.0)

    @model_validator(mode="after")
    def _cap_not_below_base(self):
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must be >= base_delay_ms")
        return self

    def delay_ms(self, retry_count: int) -> int:
        n = max(int(retry_count), 1)
        if self.strategy == "fixed":
            delay = self.base_delay_ms
        elif self.strategy == "linear":
            delay = self.base_delay_ms * n
        else:
            try:
                delay = self.base_delay_ms * self.factor ** (n - 1)
            except OverflowError:
                delay = self.max_delay_ms
        return int(min(delay, self.max_delay_ms))


class RetryDecision(BaseModel):
    retry_count: int
    give_up: bool
    next_retry_at: Optional[datetime] = None


def decide(
    policy: BackoffPolicy,
    retry_count: int,
    max_retries: int,
    now: Optional[datetime] = None,
    retryable: bool = True,
) -> RetryDecision:
    """
    Apply one failure to a job.

    retry_count counts failed attempts, so a job with max_retries=2 runs at
    most three times and gives up with retry_count=3.
    """
    new_count = retry_count + 1
    if not retryable or new_count > max_retries:
        return RetryDecision(retry_count=new_count, give_up=True)
    now = now or utcnow()
    return RetryDecision(
        retry_count=new_count,
        give_up=False,
        next_retry_at=now + timedelta(milliseconds=policy.delay_ms(new_count)),
    )
