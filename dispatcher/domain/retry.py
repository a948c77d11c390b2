from dataclasses import dataclass

def calculate_delay(
    attempts: int,
    base_delay_seconds: float = 1.5,
    max_delay_seconds: float = 30.0,
    exponential: bool = True
) -> float:
    """
    Calculates how long to wait before the next send of an item.

    Formula:
        delay = min(base * (2 ^ attempts), max_delay)   if exponential
        delay = base                                     otherwise

    Args:
        attempts: Number of *prior* attempts for the item (zero-based).
                  The first send of an item uses attempts=0, i.e. the base delay.

    Returns:
        float: Delay in seconds. Deterministic, no jitter.
    """
    if not exponential:
        return base_delay_seconds

    if attempts < 0:
        attempts = 0

    # 2^20 * base is far past any sane max_delay; capping keeps the float small.
    safe_attempts = min(attempts, 20)

    delay = base_delay_seconds * (2 ** safe_attempts)

    if delay > max_delay_seconds:
        delay = max_delay_seconds

    return delay

@dataclass(frozen=True)
class BackoffPolicy:
    base_delay: float = 1.5
    max_delay: float = 30.0
    exponential: bool = True

    @classmethod
    def from_config(cls, config) -> "BackoffPolicy":
        return cls(
            base_delay=config.base_delay,
            max_delay=config.max_delay,
            exponential=config.exponential,
        )

    def delay(self, attempt_index: int) -> float:
        return calculate_delay(
            attempt_index,
            base_delay_seconds=self.base_delay,
            max_delay_seconds=self.max_delay,
            exponential=self.exponential,
        )
