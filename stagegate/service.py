"""
The workflow service assembles everything known about a project's position in the
pipeline and performs the writes that move it along. It keeps no state of its own:
every call reads fresh data from the backend, so a stage change is always checked
against the project as it is now rather than as it was when the page was loaded.

Writes report their outcome rather than raising. Follow-up work after a successful
write, such as recording the change in the audit trail or preparing the sub-stages of
a new stage, is best-effort and never turns a successful write into a failure.
"""

import logging
from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional

import attr

from stagegate._itertools import find, find_by_id, first_or_none
from stagegate.audit import AuditTrail
from stagegate.backend.client import BackendError, Client
from stagegate.backend.models import (
    Approval,
    DocumentRequirement,
    Project,
    ProjectStatus,
    ProjectSubStageProgress,
    SubStageStatus,
    WorkflowEvent,
    WorkflowEventType,
    WorkflowStage,
)
from stagegate.stages import StageProgress, WorkflowValidator, next_possible_stages
from stagegate.validators import ExitCriteriaResult

_logger = logging.getLogger(__name__)

STATE_NOT_FOUND = "Project workflow state not found"
INVALID_STAGE = "Current stage is invalid"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@attr.s(auto_attribs=True, frozen=True)
class ProjectWorkflowState:
    """Everything presentation code needs to show a project's workflow.

    :ivar Project project: The project.
    :ivar Optional[WorkflowStage] current_stage: The stage the project occupies, if it
        occupies a valid one.
    :ivar List[WorkflowStage] stages: The organization's pipeline, in order.
    :ivar List[ProjectSubStageProgress] sub_stage_progress: The project's progress
        through every sub-stage it has entered.
    :ivar List[Approval] pending_approvals: Approvals on the project awaiting a
        decision.
    :ivar List[DocumentRequirement] required_documents: The documents the current stage
        requires.
    :ivar List[WorkflowStage] next_possible_stages: The current stage and every later
        one.
    :ivar ExitCriteriaResult workflow_validation: The exit criteria of the current
        stage.
    :ivar StageProgress progress: The project's progress out of the current stage.
    """

    project: Project
    current_stage: Optional[WorkflowStage]
    stages: List[WorkflowStage]
    sub_stage_progress: List[ProjectSubStageProgress]
    pending_approvals: List[Approval]
    required_documents: List[DocumentRequirement]
    next_possible_stages: List[WorkflowStage]
    workflow_validation: ExitCriteriaResult
    progress: StageProgress


@attr.s(auto_attribs=True, frozen=True)
class AdvanceResult:
    """The outcome of moving a project to another stage.

    :ivar bool success: Whether the project was moved.
    :ivar str message: A human-readable description of the outcome.
    :ivar Optional[Project] project: The updated project, if it was moved.
    """

    success: bool
    message: str
    project: Optional[Project] = None


class ProjectWorkflowService:
    """Read and change a project's position in the pipeline.

    :param client: The client to talk to the backend with.
    :param validator: The validator to check exit criteria with.
    :param audit: The audit trail to record changes in.
    """

    def __init__(
        self,
        client: Client,
        validator: Optional[WorkflowValidator] = None,
        audit: Optional[AuditTrail] = None,
    ) -> None:
        self.client = client
        self.validator = validator or WorkflowValidator(client)
        self.audit = audit or AuditTrail(client)

    def build_workflow_state(self, project_id: str) -> Optional[ProjectWorkflowState]:
        """Read a project's complete workflow state from the backend.

        :param project_id: The project to read.
        :return: The workflow state, or ``None`` if the project doesn't exist.
        :raises BackendError: If the backend could not be read.
        """
        _logger.info(f"Building workflow state of Project({project_id})")
        project = self.client.project_by_id(project_id)
        if project is None:
            _logger.warning(f"Project({project_id}) does not exist")
            return None

        stages = self.client.stages_by_organization(project.organization_id)
        current = find_by_id(stages, project.current_stage_id)
        if current is None and project.current_stage_id is not None:
            # Retired stages are still a valid place for older projects to be
            current = self.client.stage_by_id(project.current_stage_id)
            if current is not None:
                stages = [*stages, current]

        sub_stage_progress = self.client.sub_stage_progress_by_project(project_id)
        if current is None and project.current_stage_id is not None:
            _logger.warning(f"{project} is in unknown stage {project.current_stage_id}")
            validation = ExitCriteriaResult(
                errors=[INVALID_STAGE],
                required_actions=["Assign project to a workflow stage"],
            )
        else:
            validation = self.validator.validate(project, current, sub_stage_progress)

        return ProjectWorkflowState(
            project=project,
            current_stage=current,
            stages=stages,
            sub_stage_progress=sub_stage_progress,
            pending_approvals=self.client.pending_approvals(project_id),
            required_documents=(
                self.client.document_requirements(current) if current else []
            ),
            next_possible_stages=next_possible_stages(current, stages),
            workflow_validation=validation,
            progress=self.validator.progress(
                project, stages, sub_stage_progress, result=validation
            ),
        )

    def validate(self, project_id: str) -> ExitCriteriaResult:
        """Check whether a project may leave its current stage."""
        state = self.build_workflow_state(project_id)
        if state is None:
            return ExitCriteriaResult.failure(STATE_NOT_FOUND)
        return state.workflow_validation

    def project_stage(self, project_id: str) -> Optional[WorkflowStage]:
        state = self.build_workflow_state(project_id)
        return state.current_stage if state else None

    def next_possible_stages(self, project_id: str) -> List[WorkflowStage]:
        state = self.build_workflow_state(project_id)
        return state.next_possible_stages if state else []

    def sub_stage_progress(self, project_id: str) -> List[ProjectSubStageProgress]:
        return self.client.sub_stage_progress_by_project(project_id)

    def can_advance_to_stage(self, project_id: str, target_stage_id: str) -> bool:
        """Check whether a project may be moved to a given stage right now.

        The project must pass the exit criteria of its current stage, and the target
        must be another stage of the same pipeline.
        """
        state = self.build_workflow_state(project_id)
        if state is None:
            return False
        option = state.progress.option_for(target_stage_id)
        return option is not None and option.can_move_to

    def advance_to_stage(
        self,
        project_id: str,
        target_stage_id: str,
        user_id: Optional[str] = None,
        reason: Optional[str] = None,
        bypass_validation: bool = False,
    ) -> AdvanceResult:
        """Move a project into another stage.

        The exit criteria are checked again against fresh data before writing. The
        target must be another stage of the pipeline, and a project without a stage
        can only enter the first one.

        :param project_id: The project to move.
        :param target_stage_id: The stage to move it into.
        :param user_id: The user asking for the move, for the audit trail.
        :param reason: Why the project is moved, for the audit trail.
        :param bypass_validation: Whether to move the project even if it doesn't meet
            the exit criteria of its current stage.
        """
        try:
            state = self.build_workflow_state(project_id)
        except BackendError:
            _logger.error(f"Failed to read Project({project_id})", exc_info=True)
            state = None
        if state is None:
            return AdvanceResult(False, STATE_NOT_FOUND)

        validation = state.workflow_validation
        if not bypass_validation and not validation.can_advance:
            _logger.info(f"{state.project} does not meet its exit criteria")
            return AdvanceResult(
                False, f"Cannot advance stage: {', '.join(validation.errors)}"
            )

        target = find_by_id(state.stages, target_stage_id)
        if target is None:
            return AdvanceResult(False, "Target stage not found")
        current = state.current_stage
        if current is not None and target.id == current.id:
            return AdvanceResult(False, f"Project is already in {target.name}")
        if current is None and target not in state.next_possible_stages:
            return AdvanceResult(
                False, "Project must enter the pipeline at its first stage"
            )

        _logger.info(f"Moving {state.project} to {target.name}")
        try:
            updated = self.client.set_current_stage(project_id, target, _now())
        except BackendError:
            _logger.error(f"Failed to move {state.project}", exc_info=True)
            updated = None
        if updated is None:
            return AdvanceResult(False, "Failed to update project stage")

        self._initialize_sub_stage_progress(
            project_id, target, state.sub_stage_progress
        )
        self._log(
            WorkflowEventType.STAGE_CHANGED,
            project_id,
            user_id,
            {
                "from_stage": current.id if current else None,
                "to_stage": target.id,
                "reason": reason or "Stage advancement",
                "bypassed_validation": bypass_validation,
            },
        )
        return AdvanceResult(True, f"Project advanced to {target.name}", updated)

    def _initialize_sub_stage_progress(
        self,
        project_id: str,
        stage: WorkflowStage,
        existing: List[ProjectSubStageProgress],
    ) -> None:
        """Create pending progress for every sub-stage of a stage the project entered.

        Sub-stages the project already has progress for, e.g. after moving back to an
        earlier stage, are left as they are.
        """
        try:
            sub_stages = [
                sub_stage
                for sub_stage in self.client.sub_stages_by_stage(stage)
                if find(existing, lambda p: p.sub_stage_id == sub_stage.id) is None
            ]
            self.client.create_sub_stage_progress(project_id, sub_stages)
        except BackendError:
            _logger.error(
                f"Failed to initialize sub-stages of {stage} for Project({project_id})",
                exc_info=True,
            )

    def update_project_status(
        self,
        project_id: str,
        status: ProjectStatus,
        user_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Optional[Project]:
        """Change the lifecycle status of a project and apply its consequences.

        Completing a project completes its pending sub-stages, cancelling it cancels its
        pending approvals, and putting it on hold returns its sub-stages in progress to
        pending.

        :param project_id: The project to change.
        :param status: The new status.
        :param user_id: The user asking for the change, for the audit trail.
        :param reason: Why the status changes, for the audit trail.
        :return: The updated project, or ``None`` if it could not be changed.
        """
        try:
            project = self.client.project_by_id(project_id)
            if project is None:
                _logger.warning(f"Project({project_id}) does not exist")
                return None
            _logger.info(f"Setting status of {project} to {status.value}")
            updated = self.client.set_project_status(project_id, status)
        except BackendError:
            _logger.error(
                f"Failed to set status of Project({project_id})", exc_info=True
            )
            return None
        if updated is None:
            return None

        self._log(
            WorkflowEventType.STATUS_CHANGED,
            project_id,
            user_id,
            {
                "from_status": project.status.value,
                "to_status": status.value,
                "reason": reason or "Status update",
            },
        )
        self._apply_status_side_effects(project_id, status)
        return updated

    def _apply_status_side_effects(
        self, project_id: str, status: ProjectStatus
    ) -> None:
        try:
            if status is ProjectStatus.COMPLETED:
                count = self.client.update_sub_stage_progress_by_status(
                    project_id,
                    SubStageStatus.PENDING,
                    SubStageStatus.COMPLETED,
                    completed_at=_now(),
                )
                _logger.info(f"Completed {count} sub-stage(s) of Project({project_id})")
            elif status is ProjectStatus.CANCELLED:
                count = self.client.cancel_pending_approvals(project_id)
                _logger.info(f"Cancelled {count} approval(s) of Project({project_id})")
            elif status is ProjectStatus.ON_HOLD:
                count = self.client.update_sub_stage_progress_by_status(
                    project_id, SubStageStatus.IN_PROGRESS, SubStageStatus.PENDING
                )
                _logger.info(f"Paused {count} sub-stage(s) of Project({project_id})")
        except BackendError:
            _logger.error(
                f"Failed to apply {status.value} to Project({project_id})",
                exc_info=True,
            )

    def update_sub_stage_progress(
        self,
        project_id: str,
        sub_stage_id: str,
        status: SubStageStatus,
        user_id: Optional[str] = None,
    ) -> Optional[ProjectSubStageProgress]:
        """Move a project's progress through a sub-stage into another status.

        Progress is created if the project has none for the sub-stage yet. Starting a
        sub-stage records when it started, and completing or skipping it records when
        it finished.

        :param project_id: The project making progress.
        :param sub_stage_id: The sub-stage being progressed.
        :param status: The new status.
        :param user_id: The user making the change, for the audit trail.
        :return: The updated progress, or ``None`` if the change isn't allowed or
            could not be written.
        """
        try:
            sub_stage = self.client.sub_stage_by_id(sub_stage_id)
            if sub_stage is None:
                _logger.warning(f"WorkflowSubStage({sub_stage_id}) does not exist")
                return None
            existing = find(
                self.client.sub_stage_progress_by_project(project_id),
                lambda p: p.sub_stage_id == sub_stage_id,
            )
            previous = existing.status if existing else SubStageStatus.PENDING
            if not previous.can_transition_to(status, can_skip=sub_stage.can_skip):
                _logger.warning(
                    f"{sub_stage} of Project({project_id}) can't move from "
                    f"{previous.value} to {status.value}"
                )
                return None

            now = _now()
            timestamps = {}
            if status is SubStageStatus.IN_PROGRESS and not (
                existing and existing.started_at
            ):
                timestamps["started_at"] = now
            if status.is_terminal and previous is not status:
                timestamps["completed_at"] = now

            if existing:
                updated = self.client.update_sub_stage_progress(
                    existing, status, **timestamps
                )
            else:
                updated = first_or_none(
                    self.client.create_sub_stage_progress(
                        project_id, [sub_stage], status=status, **timestamps
                    )
                )
        except BackendError:
            _logger.error(
                f"Failed to update {sub_stage_id} of Project({project_id})",
                exc_info=True,
            )
            return None
        if updated is None:
            return None

        self._log(
            WorkflowEventType.SUB_STAGE_UPDATED,
            project_id,
            user_id,
            {
                "sub_stage_id": sub_stage_id,
                "from_status": previous.value,
                "to_status": status.value,
            },
        )
        return updated

    def close(self) -> None:
        """Wait for audit events still being written and stop recording new ones."""
        self.audit.close()

    def _log(
        self,
        event_type: WorkflowEventType,
        project_id: str,
        user_id: Optional[str],
        data: Mapping[str, Any],
    ) -> None:
        self.audit.log(
            WorkflowEvent(
                event_type=event_type,
                project_id=project_id,
                user_id=user_id,
                data=data,
                timestamp=_now(),
            )
        )
