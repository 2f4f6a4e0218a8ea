# nicswap/utils.py
import time
import logging

from nicswap.errors import OperationFailed, WaitTimedOut

log = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5


def poll_until(
    fetch,
    done,
    timeout,
    description,
    failed=None,
    interval=DEFAULT_POLL_INTERVAL,
    sleep=time.sleep,
    clock=time.monotonic,
):
    """
    Call ``fetch`` every ``interval`` seconds until ``done(value)`` holds.

    Args:
        fetch: zero-argument callable returning the current state
        done: predicate on the state, True when the wait is over
        timeout: seconds before giving up with WaitTimedOut
        description: human readable subject used in log and error messages
        failed: optional predicate; True means the provider reported a
            definitive failure and OperationFailed is raised immediately
        interval: seconds between polls
        sleep, clock: injectable for tests

    Returns:
        The state value that satisfied ``done``.
    """
    start = clock()
    while True:
        value = fetch()
        if done(value):
            return value
        if failed is not None and failed(value):
            raise OperationFailed(f"{description} failed (state: {value})")
        if clock() - start >= timeout:
            raise WaitTimedOut(description, timeout, last_state=value)
        log.debug("Waiting for %s. Current state: %s...", description, value)
        sleep(interval)


def timestamp():
    return time.strftime("%Y%m%d%H%M%S")
