from pydantic import BaseModel, ConfigDict, Field


class RetryPolicy(BaseModel):
    """
    Bounded exponential backoff.

    Attributes
    ----------
    base_delay : float
        Delay before the first retry, in seconds
    max_delay : float
        Upper bound for any delay
    multiplier : float
        Growth factor between two consecutive delays
    max_attempts : int | None
        Attempts before giving up, None retries forever
    """
    base_delay: float = Field(default=5.0, ge=0)
    max_delay: float = Field(default=60.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    max_attempts: int | None = Field(default=None, ge=1)

    model_config = ConfigDict(frozen=True)

    def delay_for(self, attempt: int) -> float:
        """
        Delay to wait after the given failed attempt.

        Parameters
        ----------
        attempt : int
            1-based number of the attempt that just failed

        Returns
        -------
        float
            Delay in seconds
        """
        # exponent capped to keep the float finite
        exponent = min(max(attempt, 1) - 1, 64)
        return min(self.base_delay * self.multiplier ** exponent, self.max_delay)

    def exhausted(self, attempt: int) -> bool:
        """Whether no attempt may follow the given one."""
        return self.max_attempts is not None and attempt >= self.max_attempts
