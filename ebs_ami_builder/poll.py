"""
Bounded fixed-interval polling.
"""

import logging
import sys
import time
from typing import Callable, Optional, TextIO

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 3


def wait_until(
    check: Callable[[], bool],
    max_attempts: int,
    interval: float = DEFAULT_INTERVAL,
    sleep: Callable[[float], None] = time.sleep,
    progress: Optional[TextIO] = None,
) -> bool:
    """
    Repeatedly evaluate ``check`` until it reports the target condition.

    The interval never backs off. No sleep happens after the final attempt,
    so the wall-clock bound is ``(max_attempts - 1) * interval`` plus the
    time spent in ``check`` itself.

    Args:
        check: Status query returning True once the target state is observed
        max_attempts: Number of times ``check`` may be called
        interval: Seconds to sleep between attempts
        sleep: Sleep function, injectable for tests
        progress: Stream that receives one dot per attempt (stdout if None)

    Returns:
        True if the condition was observed, False if attempts ran out
    """
    stream = progress if progress is not None else sys.stdout

    dots = 0
    for attempt in range(1, max_attempts + 1):
        if check():
            _end_progress(stream, dots)
            return True
        stream.write(".")
        stream.flush()
        dots += 1
        if attempt < max_attempts:
            sleep(interval)

    _end_progress(stream, dots)
    logger.debug(f"Condition not met after {max_attempts} attempts")
    return False


def _end_progress(stream: TextIO, dots: int) -> None:
    if dots:
        stream.write("\n")
        stream.flush()
