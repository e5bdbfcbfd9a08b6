"""
A pipeline is an ordered list of ``WorkflowStage`` rows, and a project occupies at most
one of them at a time. This module answers the questions presentation code asks about
a project's position in that pipeline: which stages are behind it, which is current,
which are ahead, where it may move, and whether it is ready to leave.

Moving forward requires the current stage's exit criteria to pass. Moving back to an
earlier stage is also permitted, as an explicit rollback, under the same condition. A
project without a stage enters the pipeline at its first stage.
"""

from __future__ import annotations

from enum import Enum
from typing import List, Optional, Sequence

import attr

from stagegate._itertools import find, find_by_id, first_or_none
from stagegate.backend.client import Client
from stagegate.backend.models import (
    Project,
    ProjectStatus,
    ProjectSubStageProgress,
    WorkflowStage,
)
from stagegate.validators import (
    CompositeExitCriteriaValidator,
    ExitCriteriaResult,
    check_project_status,
)

NO_CURRENT_STAGE = "Project has no current stage"


class StageClassification(Enum):
    """Where a stage sits relative to the stage a project currently occupies."""

    COMPLETED = "completed"
    CURRENT = "current"
    PENDING = "pending"


def classify_stage(
    stage: WorkflowStage, current: Optional[WorkflowStage]
) -> StageClassification:
    """Classify a stage by comparing its order with the current stage's.

    A project without a current stage hasn't started the pipeline, so every stage is
    pending.

    :param stage: The stage to classify.
    :param current: The stage the project currently occupies, if any.
    """
    if current is None or stage.stage_order > current.stage_order:
        return StageClassification.PENDING
    if stage.stage_order < current.stage_order:
        return StageClassification.COMPLETED
    return StageClassification.CURRENT


def _ordered(stages: Sequence[WorkflowStage]) -> List[WorkflowStage]:
    return sorted((s for s in stages if s.is_active), key=lambda s: s.stage_order)


def next_stage(
    current: Optional[WorkflowStage], stages: Sequence[WorkflowStage]
) -> Optional[WorkflowStage]:
    """Given the current stage, determine the next stage in the pipeline.

    If the project has no stage, the next stage is the first stage of the pipeline. If
    the project is in the last stage, the next stage will be ``None``.

    :param current: The stage the project currently occupies, if any.
    :param stages: Every stage of the pipeline, in any order.
    """
    ordered = _ordered(stages)
    if current is None:
        return first_or_none(ordered)
    return find(ordered, lambda s: s.stage_order > current.stage_order)


def next_possible_stages(
    current: Optional[WorkflowStage], stages: Sequence[WorkflowStage]
) -> List[WorkflowStage]:
    """Return the stages a project can be moved to going forward.

    This is the current stage followed by every later stage. A project without a stage
    can only enter the first one.

    :param current: The stage the project currently occupies, if any.
    :param stages: Every stage of the pipeline, in any order.
    """
    ordered = _ordered(stages)
    if current is None:
        return ordered[:1]
    return [s for s in ordered if s.stage_order >= current.stage_order]


@attr.s(auto_attribs=True, frozen=True)
class StageOption:
    """A stage presented as a possible destination for a project.

    :ivar WorkflowStage stage: The candidate stage.
    :ivar StageClassification classification: Where the stage sits relative to the
        project's current stage.
    :ivar bool is_next_stage: Whether this is the stage immediately after the current.
    :ivar bool can_move_to: Whether the project may be moved here right now.
    """

    stage: WorkflowStage
    classification: StageClassification
    is_next_stage: bool
    can_move_to: bool


def _can_enter(
    stage: WorkflowStage,
    current: Optional[WorkflowStage],
    following: Optional[WorkflowStage],
) -> bool:
    if current is None:
        # Projects enter the pipeline at its first stage
        return following is not None and stage.id == following.id
    return stage.id != current.id


def stage_options(
    current: Optional[WorkflowStage],
    stages: Sequence[WorkflowStage],
    result: ExitCriteriaResult,
) -> List[StageOption]:
    """Describe every stage of the pipeline as a destination for the project.

    :param current: The stage the project currently occupies, if any.
    :param stages: Every stage of the pipeline, in any order.
    :param result: The exit criteria of the current stage.
    """
    following = next_stage(current, stages)
    options = []
    for stage in _ordered(stages):
        options.append(
            StageOption(
                stage=stage,
                classification=classify_stage(stage, current),
                is_next_stage=following is not None and stage.id == following.id,
                can_move_to=(
                    result.can_advance and _can_enter(stage, current, following)
                ),
            )
        )
    return options


@attr.s(auto_attribs=True, frozen=True)
class StageProgress:
    """A project's progress out of its current stage.

    :ivar Optional[WorkflowStage] current_stage: The stage the project occupies.
    :ivar Optional[WorkflowStage] next_stage: The stage after it, if any.
    :ivar bool can_advance: Whether the exit criteria of the current stage pass.
    :ivar List[str] exit_criteria: Outstanding requirements, blocking ones first.
    :ivar List[str] required_actions: What to do to meet the requirements.
    :ivar List[StageOption] options: Every stage as a destination for the project.
    """

    current_stage: Optional[WorkflowStage]
    next_stage: Optional[WorkflowStage]
    can_advance: bool
    exit_criteria: List[str]
    required_actions: List[str]
    options: List[StageOption]

    def option_for(self, stage_id: str) -> Optional[StageOption]:
        return find(self.options, lambda o: o.stage.id == stage_id)


class WorkflowValidator:
    """Compute a project's progress through the pipeline.

    :param client: A client to read exit criteria data with.
    :param composite: The validator to check exit criteria with. Defaults to every
        kind of validator.
    """

    def __init__(
        self, client: Client, composite: Optional[CompositeExitCriteriaValidator] = None
    ) -> None:
        self._client = client
        self.composite = composite or CompositeExitCriteriaValidator()

    def validate(
        self,
        project: Project,
        current: Optional[WorkflowStage],
        sub_stage_progress: Sequence[ProjectSubStageProgress],
    ) -> ExitCriteriaResult:
        """Check the exit criteria of the project's current stage.

        A project without a stage has no stage to leave. Only the project-level
        preconditions apply to it entering the pipeline, and the missing stage is
        reported as a warning.
        """
        if current is None:
            return check_project_status(project).merge(
                ExitCriteriaResult(
                    warnings=[NO_CURRENT_STAGE],
                    required_actions=["Assign project to a workflow stage"],
                )
            )
        return self.composite(project, current, sub_stage_progress, self._client)

    def progress(
        self,
        project: Project,
        stages: Sequence[WorkflowStage],
        sub_stage_progress: Sequence[ProjectSubStageProgress],
        result: Optional[ExitCriteriaResult] = None,
    ) -> StageProgress:
        """Describe the project's progress out of its current stage.

        :param project: The project moving through the pipeline.
        :param stages: Every stage of the pipeline.
        :param sub_stage_progress: The project's progress through its sub-stages.
        :param result: Exit criteria already computed for the current stage. If
            omitted, they are validated now.
        """
        current = find_by_id(stages, project.current_stage_id)
        if result is None:
            result = self.validate(project, current, sub_stage_progress)
        return StageProgress(
            current_stage=current,
            next_stage=next_stage(current, stages),
            can_advance=result.can_advance,
            exit_criteria=result.outstanding(),
            required_actions=list(result.required_actions),
            options=stage_options(current, stages, result),
        )

    def __str__(self) -> str:
        return f"{self.__class__.__name__}({self.composite})"


@attr.s(auto_attribs=True, frozen=True)
class AutoAdvanceDecision:
    """Whether a project should be moved on to its next stage without being asked.

    :ivar bool should_advance: Whether to advance.
    :ivar Optional[WorkflowStage] next_stage: The stage to advance to.
    :ivar str reason: A human-readable explanation of the decision.
    """

    should_advance: bool
    next_stage: Optional[WorkflowStage]
    reason: str


def check_auto_advance(
    project: Project, progress: StageProgress
) -> AutoAdvanceDecision:
    """Decide whether a project has met every exit criterion and can move on by itself.

    :param project: The project to check.
    :param progress: The project's progress out of its current stage.
    """
    if project.status is not ProjectStatus.ACTIVE:
        return AutoAdvanceDecision(
            False,
            None,
            f"Auto-advance not applicable for {project.status.value} projects",
        )
    if not progress.can_advance:
        return AutoAdvanceDecision(False, None, "Exit criteria not met")
    if progress.next_stage is None:
        return AutoAdvanceDecision(False, None, "Already at final stage")
    return AutoAdvanceDecision(
        True,
        progress.next_stage,
        f"Auto-advancing to {progress.next_stage.name} - all exit criteria met",
    )
