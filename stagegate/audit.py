"""
The audit trail records every workflow change made through this package. Recording an
event never holds up or fails the change it describes: events are written from a thread
pool, and a failed write is only logged.
"""

import logging
from concurrent.futures import Future
from typing import List, Optional

from stagegate._executor import LoggingThreadPoolExecutor
from stagegate.backend.client import BackendError, Client
from stagegate.backend.models import WorkflowEvent

_logger = logging.getLogger(__name__)


class AuditTrail:
    """Record workflow events and read them back.

    :param client: The client to write events with.
    :param executor: The executor to write events on. If omitted, the trail creates and
        owns one.
    """

    def __init__(
        self, client: Client, executor: Optional[LoggingThreadPoolExecutor] = None
    ) -> None:
        self._client = client
        self._owns_executor = executor is None
        self._executor = executor or LoggingThreadPoolExecutor(_logger, max_workers=1)
        self._in_flight: List[Future] = []

    def log(self, event: WorkflowEvent) -> Optional[Future]:
        """Dispatch an event to the activity log without waiting for it.

        The returned future is only useful for waiting. It never raises for a failed
        write; the failure is logged instead.

        :param event: The event to record.
        :return: The pending write, or ``None`` if it could not be dispatched, e.g.
            because the trail was closed.
        """
        _logger.info(
            f"Logging {event.event_type.value} for Project({event.project_id})"
        )
        try:
            future = self._executor.submit(self._client.insert_event, event)
        except Exception:
            _logger.error(
                f"Failed to dispatch {event.event_type.value} for "
                f"Project({event.project_id})",
                exc_info=True,
            )
            return None
        self._in_flight = [f for f in self._in_flight if not f.done()] + [future]
        return future

    def history(self, project_id: str) -> List[WorkflowEvent]:
        """Return a project's workflow events, newest first.

        An unreadable history is treated as an empty one.
        """
        try:
            return self._client.events_by_project(project_id)
        except BackendError:
            _logger.error(
                f"Failed to fetch workflow history of Project({project_id})",
                exc_info=True,
            )
            return []

    def flush(self) -> None:
        """Wait until every event dispatched so far has been written or has failed."""
        for future in self._in_flight:
            # Failures were already logged by the executor
            future.exception()
        self._in_flight = []

    def close(self) -> None:
        self.flush()
        if self._owns_executor:
            self._executor.shutdown(wait=True)
