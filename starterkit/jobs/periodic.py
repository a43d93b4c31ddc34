import logging
import threading
from datetime import timedelta
from typing import Callable, Union

logger = logging.getLogger("jobs.periodic")


def _seconds(value: Union[timedelta, float, int]) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def run_periodically(
    stop_event: threading.Event,
    fn: Callable[[], object],
    interval: Union[timedelta, float],
    initial_delay: Union[timedelta, float] = 0,
    name: str = "periodic",
) -> threading.Thread:
    """Call ``fn`` after ``initial_delay`` and then every ``interval`` until ``stop_event`` is set.

    An exception from one run is logged and the loop carries on with the next tick.
    Setting ``stop_event`` wakes the thread out of its wait immediately.
    """
    interval_s = _seconds(interval)
    delay_s = _seconds(initial_delay)

    def _run_once():
        try:
            fn()
        except Exception:
            logger.exception(f"{name} run failed")

    def _loop():
        if delay_s > 0 and stop_event.wait(delay_s):
            logger.info(f"{name} stopped")
            return
        if not stop_event.is_set():
            _run_once()
        while not stop_event.wait(interval_s):
            _run_once()
        logger.info(f"{name} stopped")

    thread = threading.Thread(target=_loop, name=name, daemon=True)
    thread.start()
    return thread
