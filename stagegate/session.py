"""
A workflow session is the orchestration layer between presentation code and the
workflow service. It tracks the one project a user is looking at, caches the workflow
state of every project it has loaded, and turns the outcome of every change into a
notification for the user.

The cache has no expiry. It stays correct because every change made through the
session evicts the project it changed before reloading it. Changes made elsewhere are
only picked up after ``refresh_workflow_state`` or ``clear_cache``.

Sessions are explicit objects. Create one per user or per request and close it when
done, or use it as a context manager::

    service = ProjectWorkflowService(client)
    with WorkflowSession(service) as session:
        session.load_workflow_state(project_id)
        session.advance_stage(project_id, next_stage_id)
    service.close()
"""

import logging
from enum import Enum
from types import TracebackType
from typing import Callable, Dict, List, Optional, Type

import attr

from stagegate.backend.models import (
    Project,
    ProjectStatus,
    ProjectSubStageProgress,
    SubStageStatus,
    WorkflowEvent,
    WorkflowStage,
)
from stagegate.overlay import (
    OverlayState,
    apply_pending,
    confirm,
    effective_project,
    revert,
)
from stagegate.service import ProjectWorkflowService, ProjectWorkflowState
from stagegate.stages import AutoAdvanceDecision, StageProgress, check_auto_advance
from stagegate.validators import ExitCriteriaResult

_logger = logging.getLogger(__name__)


class SessionStatus(Enum):
    IDLE = "idle"
    LOADING = "loading"
    LOADED = "loaded"
    ERROR = "error"


class NotificationVariant(Enum):
    DEFAULT = "default"
    DESTRUCTIVE = "destructive"


@attr.s(auto_attribs=True, frozen=True)
class Notification:
    """A message for the user about the outcome of something they did.

    :ivar str title: A short headline.
    :ivar str description: One or two sentences of detail.
    :ivar NotificationVariant variant: Whether this reports a failure.
    """

    title: str
    description: str
    variant: NotificationVariant = NotificationVariant.DEFAULT


Notifier = Callable[[Notification], None]


def log_notification(notification: Notification) -> None:
    """A notifier that writes notifications to the log."""
    if notification.variant is NotificationVariant.DESTRUCTIVE:
        _logger.warning(f"{notification.title}: {notification.description}")
    else:
        _logger.info(f"{notification.title}: {notification.description}")


def _failure(title: str, description: str) -> Notification:
    return Notification(title, description, NotificationVariant.DESTRUCTIVE)


class WorkflowSession:
    """Your window onto one project's workflow at a time.

    :param service: The service to read and change workflows with.
    :param notifier: Where to send notifications for the user. Defaults to the log.
    """

    def __init__(
        self, service: ProjectWorkflowService, notifier: Optional[Notifier] = None
    ) -> None:
        self.service = service
        self._notify = notifier or log_notification
        self.status = SessionStatus.IDLE
        self.current_project_id: Optional[str] = None
        self.workflow_state: Optional[ProjectWorkflowState] = None
        self.error: Optional[str] = None
        self._cache: Dict[str, ProjectWorkflowState] = {}
        self._overlay: Optional[OverlayState] = None

    def __enter__(self) -> "WorkflowSession":
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_value: Optional[BaseException],
        traceback: Optional[TracebackType],
    ) -> None:
        self.close()

    @property
    def loading(self) -> bool:
        return self.status is SessionStatus.LOADING

    @property
    def project(self) -> Optional[Project]:
        """The loaded project, including any status change still being written."""
        if self._overlay is None:
            return None
        return effective_project(self._overlay)

    def load_workflow_state(self, project_id: str) -> Optional[ProjectWorkflowState]:
        """Make a project the current one and load its workflow state.

        The cached state is used if there is one.

        :param project_id: The project to load.
        :return: The loaded state, or ``None`` if it could not be loaded.
        """
        self.status = SessionStatus.LOADING
        self.error = None
        self.current_project_id = project_id
        state = self._cache.get(project_id)
        if state is None:
            try:
                state = self.service.build_workflow_state(project_id)
            except Exception:
                _logger.error(
                    f"Failed to load workflow state of Project({project_id})",
                    exc_info=True,
                )
                return self._fail("Failed to load workflow state")
            if state is None:
                return self._fail("Failed to load project workflow state")
            self._cache[project_id] = state
        self.workflow_state = state
        self._overlay = OverlayState(state.project)
        self.status = SessionStatus.LOADED
        return state

    def _fail(self, error: str) -> None:
        self.error = error
        self.workflow_state = None
        self._overlay = None
        self.status = SessionStatus.ERROR
        self._notify(_failure("Error", error))

    def _reload(self, project_id: str) -> None:
        # The write stands even if reloading fails
        self.clear_cache(project_id)
        self.load_workflow_state(project_id)

    def advance_stage(
        self,
        project_id: str,
        target_stage_id: str,
        reason: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> bool:
        """Move a project into another stage if it meets its exit criteria.

        On failure the loaded state is left as it was.

        :param project_id: The project to move.
        :param target_stage_id: The stage to move it into.
        :param reason: Why the project is moved.
        :param user_id: The user moving the project.
        :return: Whether the project was moved.
        """
        try:
            result = self.service.advance_to_stage(
                project_id, target_stage_id, user_id=user_id, reason=reason
            )
        except Exception:
            _logger.error(f"Failed to advance Project({project_id})", exc_info=True)
            self.error = "Failed to advance project stage."
            self._notify(_failure("Error", "Failed to advance project stage."))
            return False
        if not result.success:
            _logger.info(f"Project({project_id}) was not advanced: {result.message}")
            self._notify(
                _failure(
                    "Stage Advancement Failed",
                    "Failed to advance project stage. Please check requirements.",
                )
            )
            return False
        self._reload(project_id)
        self._notify(
            Notification(
                "Stage Advanced", "Project has been advanced to the next stage."
            )
        )
        return True

    def update_project_status(
        self,
        project_id: str,
        status: ProjectStatus,
        reason: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> bool:
        """Change the lifecycle status of a project.

        If the project is the loaded one, the new status is shown while it is being
        written and dropped again if the write fails.

        :param project_id: The project to change.
        :param status: The new status.
        :param reason: Why the status changes.
        :param user_id: The user changing the status.
        :return: Whether the status was changed.
        """
        overlay = self._overlay if project_id == self.current_project_id else None
        if overlay is not None:
            self._overlay = apply_pending(overlay, status)
        try:
            updated = self.service.update_project_status(
                project_id, status, user_id=user_id, reason=reason
            )
        except Exception:
            _logger.error(f"Failed to update Project({project_id})", exc_info=True)
            updated = None
            self.error = "Failed to update project status."
        if updated is None:
            if overlay is not None:
                self._overlay = revert(overlay)
            self._notify(
                _failure("Status Update Failed", "Failed to update project status.")
            )
            return False
        if overlay is not None:
            self._overlay = confirm(overlay, updated)
        self._reload(project_id)
        self._notify(
            Notification(
                "Status Updated",
                f"Project status has been updated to {status.value}.",
            )
        )
        return True

    def update_sub_stage_progress(
        self,
        project_id: str,
        sub_stage_id: str,
        status: SubStageStatus,
        user_id: Optional[str] = None,
    ) -> bool:
        """Move a project's progress through a sub-stage into another status.

        :return: Whether the progress was changed.
        """
        try:
            updated = self.service.update_sub_stage_progress(
                project_id, sub_stage_id, status, user_id=user_id
            )
        except Exception:
            _logger.error(
                f"Failed to update {sub_stage_id} of Project({project_id})",
                exc_info=True,
            )
            return False
        if updated is None:
            return False
        self._reload(project_id)
        return True

    def validate_workflow(self, project_id: str) -> ExitCriteriaResult:
        """Check whether a project may leave its current stage, reading fresh data."""
        try:
            return self.service.validate(project_id)
        except Exception:
            _logger.error(f"Failed to validate Project({project_id})", exc_info=True)
            return ExitCriteriaResult.failure("Failed to validate workflow")

    def get_project_stage(self, project_id: str) -> Optional[WorkflowStage]:
        try:
            return self.service.project_stage(project_id)
        except Exception:
            _logger.error(
                f"Failed to get stage of Project({project_id})", exc_info=True
            )
            return None

    def get_next_possible_stages(self, project_id: str) -> List[WorkflowStage]:
        try:
            return self.service.next_possible_stages(project_id)
        except Exception:
            _logger.error(
                f"Failed to get next stages of Project({project_id})", exc_info=True
            )
            return []

    def can_advance_to_stage(self, project_id: str, target_stage_id: str) -> bool:
        try:
            return self.service.can_advance_to_stage(project_id, target_stage_id)
        except Exception:
            _logger.error(
                f"Failed to check advancement of Project({project_id})", exc_info=True
            )
            return False

    def get_sub_stage_progress(self, project_id: str) -> List[ProjectSubStageProgress]:
        try:
            return self.service.sub_stage_progress(project_id)
        except Exception:
            _logger.error(
                f"Failed to get sub-stage progress of Project({project_id})",
                exc_info=True,
            )
            return []

    def stage_progress(self) -> Optional[StageProgress]:
        """The loaded project's progress out of its current stage."""
        if self.workflow_state is None:
            return None
        return self.workflow_state.progress

    def check_auto_advance(self) -> Optional[AutoAdvanceDecision]:
        """Decide whether the loaded project can move to its next stage by itself."""
        project = self.project
        progress = self.stage_progress()
        if project is None or progress is None:
            return None
        return check_auto_advance(project, progress)

    def execute_auto_advance(self, user_id: Optional[str] = None) -> bool:
        """Move the loaded project to its next stage if it can move by itself.

        :return: Whether the project was moved.
        """
        project = self.project
        decision = self.check_auto_advance()
        if project is None or decision is None or decision.next_stage is None:
            return False
        _logger.info(f"{project}: {decision.reason}")
        return self.advance_stage(
            project.id,
            decision.next_stage.id,
            reason=decision.reason,
            user_id=user_id,
        )

    def log_workflow_event(self, event: WorkflowEvent) -> None:
        """Record an event in the audit trail without waiting for it."""
        try:
            self.service.audit.log(event)
        except Exception:
            _logger.error(f"Failed to log {event.event_type.value}", exc_info=True)

    def get_workflow_history(self, project_id: str) -> List[WorkflowEvent]:
        return self.service.audit.history(project_id)

    def clear_cache(self, project_id: Optional[str] = None) -> None:
        """Evict one project from the cache, or every project if none is given."""
        if project_id is None:
            self._cache.clear()
        else:
            self._cache.pop(project_id, None)

    def refresh_workflow_state(self, project_id: str) -> Optional[ProjectWorkflowState]:
        """Load a project's workflow state from the backend, bypassing the cache."""
        self.clear_cache(project_id)
        return self.load_workflow_state(project_id)

    def close(self) -> None:
        """Wait for audit events still being written and release the session.

        The service is shared and stays usable. Close it separately when done.
        """
        self.service.audit.flush()
        self.clear_cache()
        self.status = SessionStatus.IDLE
        self.current_project_id = None
        self.workflow_state = None
        self._overlay = None
