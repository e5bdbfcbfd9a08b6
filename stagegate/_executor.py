import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Iterable, List, Optional, Tuple, TypeVar

_T = TypeVar("_T")
_R = TypeVar("_R")


class LoggingThreadPoolExecutor(ThreadPoolExecutor):
    """A thread pool executor that logs exceptions in threads.

    The thread pool executor from the standard library does not automatically surface
    errors encountered in its threads. This executor will log any error encountered with
    the given logger, which makes it safe to use for fire-and-forget work whose future
    nobody inspects.

    :param logger: The logger to use to surface errors.
    :param args: Arguments to pass to the parent class.
    :param kwargs: Keyword arguments to pass to the parent class.
    """

    def __init__(
        self, logger: Optional[logging.Logger] = None, *args: Any, **kwargs: Any
    ) -> None:
        self._logger = logger or logging.getLogger(__name__)
        kwargs.setdefault("thread_name_prefix", "stagegate")
        super().__init__(*args, **kwargs)

    def submit(self, fn: Callable, *args: Any, **kwargs: Any) -> Future:
        future = super().submit(fn, *args, **kwargs)
        future.add_done_callback(self._log_failure)
        return future

    def settle(
        self, fn: Callable[[_T], _R], items: Iterable[_T]
    ) -> List[Tuple[_T, "Future[_R]"]]:
        """Fan out one call per item and wait until every call has finished.

        Unlike ``map``, a failing call does not hide the results of the others: each
        item is returned with its completed future, successful or not.

        :param fn: The function to call with each item.
        :param items: The items to fan out over.
        :return: ``(item, future)`` pairs in the order the items were given.
        """
        submitted = [(item, self.submit(fn, item)) for item in items]
        wait([future for _, future in submitted])
        return submitted

    def _log_failure(self, future: Future) -> None:
        try:
            future.result()
        except Exception:
            self._logger.error("Exception encountered in thread", exc_info=True)
