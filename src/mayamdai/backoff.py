from abc import ABC, abstractmethod

from mayamdai.transport_options import TransportOptions


class ReconnectBackoff(ABC):
    """Decides how long a session sleeps between connection attempts."""

    @abstractmethod
    def get_backoff_ms(self, attempt: int) -> float:
        """Delay before the given attempt.

        Args:
            attempt (int): Number of consecutive failed attempts so far.

        Returns:
            float: Milliseconds to wait.
        """


class FixedIntervalBackoff(ReconnectBackoff):
    """Same delay between every attempt, attempts are unbounded."""

    def __init__(self, interval_ms: float) -> None:
        self.interval_ms = interval_ms

    @classmethod
    def from_options(cls, options: TransportOptions) -> "FixedIntervalBackoff":
        return cls(options.retry_interval_ms)

    def get_backoff_ms(self, attempt: int) -> float:
        return self.interval_ms
