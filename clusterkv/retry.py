from time import sleep
from typing import Any, Callable, Optional, Tuple, Type, TypeVar

from redis.backoff import AbstractBackoff, NoBackoff

from clusterkv.exceptions import ConnectionError

T = TypeVar("T")


class Retry:
    """Retry a specific number of times after a failure"""

    def __init__(
        self,
        backoff: Optional[AbstractBackoff] = None,
        retries: int = 1,
        supported_errors: Tuple[Type[Exception], ...] = (ConnectionError,),
    ):
        """
        Initialize a `Retry` object with a `Backoff` object
        that retries a maximum of `retries` times.
        You can specify the types of supported errors which trigger
        a retry with the `supported_errors` parameter.
        """
        self._backoff = backoff or NoBackoff()
        self._retries = retries
        self._supported_errors = supported_errors

    def with_retries(self, retries: int) -> "Retry":
        return Retry(self._backoff, retries, self._supported_errors)

    def call_with_retry(
        self,
        do: Callable[[], T],
        fail: Callable[[Exception], Any],
        is_retryable: Optional[Callable[[Exception], bool]] = None,
    ) -> T:
        """
        Execute an operation that might fail and returns its result, or
        raise the exception that was thrown depending on the `Backoff` object.
        `do`: the operation to call. Expects no argument.
        `fail`: the failure handler, expects the last error that was thrown
        """
        self._backoff.reset()
        failures = 0
        while True:
            try:
                return do()
            except self._supported_errors as error:
                if is_retryable and not is_retryable(error):
                    raise
                failures += 1
                if failures > self._retries:
                    raise error
                fail(error)
                backoff = self._backoff.compute(failures)
                if backoff > 0:
                    sleep(backoff)
