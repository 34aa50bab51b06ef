import random
from typing import Optional

from cronqueue.domain.states import Jitter

def backoff_delay(
    attempts: int,
    base_seconds: int = 1,
    cap_seconds: int = 60,
    jitter: str = Jitter.FULL,
    rng: Optional[random.Random] = None
) -> int:
    """
    Seconds to wait before the next attempt, exponential with a cap.

    Formula:
        raw = min(cap, base * 2 ^ (attempts - 1))
        jitter="full" -> uniform integer in [0, raw]
        jitter="none" -> max(1, raw)

    Args:
        attempts: Attempts made so far, including the one that just failed.
                  The claim has already counted it, so the first failure
                  arrives here as attempts=1.
    """
    # 2^30 seconds is decades; anything past that is capped anyway.
    exponent = min(max(0, attempts - 1), 30)
    raw = min(cap_seconds, base_seconds * (2 ** exponent))

    if Jitter(jitter) == Jitter.NONE:
        return max(1, raw)

    rng = rng or random
    return rng.randint(0, max(0, raw))
