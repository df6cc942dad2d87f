"""
Module containing the bounded polling loop shared by the validation and finalization stages
"""
import logging
import time

logger = logging.getLogger(__name__)  # pylint: disable=invalid-name


class PollingError(Exception):
    """Base polling error class"""


class PollingTimeoutError(PollingError):
    """The polled object didn't reach a terminal state before the deadline"""
    def __init__(self, message, last_result=None, attempts=0):
        super().__init__(message)
        self.last_result = last_result
        self.attempts = attempts


class PollingCancelledError(PollingError):
    """Polling has been interrupted by the caller between two attempts"""


def poll_until(fetch, is_terminal, *, interval, timeout, cancel=None, clock=time.monotonic, sleep=time.sleep):
    """
    Calls fetch() every interval seconds till is_terminal(result) is True and returns that result.
    Every attempt is preceded by the interval wait, so a timeout equal to the interval performs
    exactly one attempt. Raises PollingTimeoutError once the deadline has passed and
    PollingCancelledError if the cancel event (threading.Event like) gets set.
    Neither of them interrupts an ongoing fetch().
    """
    deadline = clock() + timeout
    attempts = 0
    result = None
    while clock() < deadline:
        sleep(interval)
        if cancel is not None and cancel.is_set():
            raise PollingCancelledError('Polling cancelled after {} attempt(s)'.format(attempts))

        attempts += 1
        result = fetch()
        if is_terminal(result):
            return result
        logger.debug("Attempt %d didn't reach a terminal state", attempts)

    raise PollingTimeoutError('No terminal state reached after {} attempt(s) in {}s'.format(attempts, timeout),
                              last_result=result, attempts=attempts)
