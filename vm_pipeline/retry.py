import time
from collections.abc import Callable
from dataclasses import dataclass, field


@dataclass
class RetryPolicy:
    attempts: int
    sleep_sec: float
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def pause(self, attempt: int) -> None:
        # No pause after the final attempt.
        if attempt < self.attempts and self.sleep_sec > 0:
            self.sleep(self.sleep_sec)
