"""
Exit criteria decide whether a project may leave its current stage. Each kind of
validator inspects one facet of the project, such as its status, its sub-stage
progress, its documents, or its approvals, and reports what it found as an
``ExitCriteriaResult``: blocking errors, non-blocking warnings, and the actions a person
should take to resolve them.

Validators are a closed set of kinds, each backed by a plain function. A new rule is
added by adding a kind and registering its function. The composite validator runs a
list of kinds and merges their findings, so a project can advance only if no kind
reported an error.

Validators never raise. A failure to read from the backend is reported as a blocking
error, and the composite validator converts anything unexpected into a generic one.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

import attr

from stagegate._itertools import find
from stagegate._types import label_or
from stagegate.backend.client import BackendError, Client
from stagegate.backend.models import (
    DocumentStatus,
    Project,
    ProjectStatus,
    ProjectSubStageProgress,
    SubStageStatus,
    WorkflowStage,
)

_logger = logging.getLogger(__name__)

GENERIC_ERROR = "Validation error occurred"


@attr.s(auto_attribs=True, frozen=True)
class ExitCriteriaResult:
    """The findings of one or more validators.

    Every error is blocking and every warning is not. Whether the project can advance
    is derived from the errors, so the two can never disagree.

    :ivar List[str] errors: Problems that prevent the project from advancing.
    :ivar List[str] warnings: Problems that should be surfaced but don't block.
    :ivar List[str] required_actions: Human-readable steps to resolve the problems.
    """

    errors: List[str] = attr.ib(factory=list)
    warnings: List[str] = attr.ib(factory=list)
    required_actions: List[str] = attr.ib(factory=list)

    @property
    def can_advance(self) -> bool:
        return not self.errors

    @classmethod
    def failure(cls, message: str) -> ExitCriteriaResult:
        """A result with a single blocking error and nothing else."""
        return cls(errors=[message])

    def merge(self, other: ExitCriteriaResult) -> ExitCriteriaResult:
        """Concatenate the findings of two results, keeping duplicates."""
        return ExitCriteriaResult(
            errors=[*self.errors, *other.errors],
            warnings=[*self.warnings, *other.warnings],
            required_actions=[*self.required_actions, *other.required_actions],
        )

    def outstanding(self) -> List[str]:
        """Every finding that still needs attention, errors first."""
        return [*self.errors, *self.warnings]


ValidateFn = Callable[
    [Project, WorkflowStage, Sequence[ProjectSubStageProgress], Client],
    ExitCriteriaResult,
]


def check_project_status(project: Project) -> ExitCriteriaResult:
    """Check the project-level preconditions for moving into or out of any stage.

    This only inspects the project already in hand and never reads from the backend.
    """
    errors: List[str] = []
    actions: List[str] = []
    if project.status is not ProjectStatus.ACTIVE:
        errors.append(
            f"Project status is {project.status.value}. "
            "Must be active to advance stages."
        )
        actions.append("Activate project")
    if not project.customer_organization_id:
        errors.append("Customer organization is required")
        actions.append("Assign customer organization")
    if not project.title or not project.title.strip():
        errors.append("Project title is required")
        actions.append("Set project title")
    return ExitCriteriaResult(errors=errors, required_actions=actions)


def validate_project_status(
    project: Project,
    stage: WorkflowStage,
    sub_stage_progress: Sequence[ProjectSubStageProgress],
    client: Client,
) -> ExitCriteriaResult:
    return check_project_status(project)


def validate_sub_stage_completion(
    project: Project,
    stage: WorkflowStage,
    sub_stage_progress: Sequence[ProjectSubStageProgress],
    client: Client,
) -> ExitCriteriaResult:
    """Check that every required sub-stage of the stage has been finished.

    Sub-stages in progress are only a warning. Completed and skipped sub-stages are
    satisfied.
    """
    try:
        required = client.required_sub_stages(stage)
    except BackendError:
        _logger.error(f"Failed to fetch required sub-stages of {stage}", exc_info=True)
        return ExitCriteriaResult.failure("Failed to validate sub-stage completion")

    errors: List[str] = []
    warnings: List[str] = []
    actions: List[str] = []
    for sub_stage in required:
        progress = find(sub_stage_progress, lambda p: p.sub_stage_id == sub_stage.id)
        if progress is None:
            errors.append(f"Sub-stage not started: {sub_stage.name}")
            actions.append(f"Start {sub_stage.name}")
        elif progress.status is SubStageStatus.PENDING:
            errors.append(f"Sub-stage pending: {sub_stage.name}")
            actions.append(f"Complete {sub_stage.name}")
        elif progress.status is SubStageStatus.IN_PROGRESS:
            warnings.append(f"Sub-stage in progress: {sub_stage.name}")
            actions.append(f"Complete {sub_stage.name}")
        elif progress.status is SubStageStatus.BLOCKED:
            errors.append(f"Sub-stage blocked: {sub_stage.name}")
            actions.append(f"Resolve blockers for {sub_stage.name}")
    return ExitCriteriaResult(
        errors=errors, warnings=warnings, required_actions=actions
    )


def validate_document_requirements(
    project: Project,
    stage: WorkflowStage,
    sub_stage_progress: Sequence[ProjectSubStageProgress],
    client: Client,
) -> ExitCriteriaResult:
    """Check that every required document of the stage is on file and approved.

    A missing document blocks advancement. A document that is uploaded but not yet
    approved is only a warning, though getting it approved is still a required action.
    """
    errors: List[str] = []
    warnings: List[str] = []
    actions: List[str] = []
    try:
        for requirement in client.document_requirements(stage):
            name: Optional[str] = (
                requirement.category.name if requirement.category else None
            )
            documents = client.documents_by_category(
                project.id, requirement.document_category_id
            )
            if not documents:
                errors.append(
                    f"Required document missing: {label_or(name, 'Unknown')}"
                )
                actions.append(f"Upload {label_or(name, 'required document')}")
            elif not any(d.status is DocumentStatus.APPROVED for d in documents):
                warnings.append(
                    f"Document pending approval: {label_or(name, 'Unknown')}"
                )
                actions.append(f"Get approval for {label_or(name, 'document')}")
    except BackendError:
        _logger.error(f"Failed to check documents for {project}", exc_info=True)
        return ExitCriteriaResult.failure("Failed to validate document requirements")
    return ExitCriteriaResult(
        errors=errors, warnings=warnings, required_actions=actions
    )


def validate_approval_requirements(
    project: Project,
    stage: WorkflowStage,
    sub_stage_progress: Sequence[ProjectSubStageProgress],
    client: Client,
) -> ExitCriteriaResult:
    """Check that nothing on the project is waiting for approval.

    This is deliberately not scoped to the stage: any pending approval referencing the
    project blocks advancement out of every stage.
    """
    try:
        approvals = client.pending_approvals(project.id)
    except BackendError:
        _logger.error(f"Failed to fetch pending approvals of {project}", exc_info=True)
        return ExitCriteriaResult.failure("Failed to validate approval requirements")

    errors: List[str] = []
    actions: List[str] = []
    for approval in approvals:
        chain = approval.approval_chain.name if approval.approval_chain else None
        errors.append(f"Pending approval: {label_or(chain, 'Unknown')}")
        actions.append(f"Get approval for {label_or(chain, 'item')}")
    return ExitCriteriaResult(errors=errors, required_actions=actions)


class ValidatorKind(Enum):
    """The kinds of exit criteria a project can be checked against.

    Calling a kind runs its validator.
    """

    PROJECT_STATUS = "project_status"
    SUB_STAGE_COMPLETION = "sub_stage_completion"
    DOCUMENT_REQUIREMENTS = "document_requirements"
    APPROVAL_REQUIREMENTS = "approval_requirements"

    def __call__(
        self,
        project: Project,
        stage: WorkflowStage,
        sub_stage_progress: Sequence[ProjectSubStageProgress],
        client: Client,
    ) -> ExitCriteriaResult:
        return _VALIDATE_FNS[self](project, stage, sub_stage_progress, client)

    def __str__(self) -> str:
        return self.value


_VALIDATE_FNS: Dict[ValidatorKind, ValidateFn] = {
    ValidatorKind.PROJECT_STATUS: validate_project_status,
    ValidatorKind.SUB_STAGE_COMPLETION: validate_sub_stage_completion,
    ValidatorKind.DOCUMENT_REQUIREMENTS: validate_document_requirements,
    ValidatorKind.APPROVAL_REQUIREMENTS: validate_approval_requirements,
}

DEFAULT_KINDS = (
    ValidatorKind.PROJECT_STATUS,
    ValidatorKind.SUB_STAGE_COMPLETION,
    ValidatorKind.DOCUMENT_REQUIREMENTS,
    ValidatorKind.APPROVAL_REQUIREMENTS,
)


class CompositeExitCriteriaValidator:
    """Run several kinds of validators and merge their findings.

    Validators are run one after another. Their order doesn't affect the outcome, only
    the order of the merged messages. If a validator raises, its findings are replaced
    with a single generic error and the remaining validators still run.

    :param kinds: The kinds of validators to run. Defaults to all of them. An empty
        list also means all of them.
    """

    def __init__(self, kinds: Optional[Sequence[ValidatorKind]] = None) -> None:
        self.kinds = list(kinds) if kinds else list(DEFAULT_KINDS)

    def __call__(
        self,
        project: Project,
        stage: WorkflowStage,
        sub_stage_progress: Sequence[ProjectSubStageProgress],
        client: Client,
    ) -> ExitCriteriaResult:
        """Check whether a project may leave a stage.

        :param project: The project being checked.
        :param stage: The stage the project would leave.
        :param sub_stage_progress: The project's progress through its sub-stages.
        :param client: A client to read any additional data with.
        :return: The merged findings of every validator.
        """
        result = ExitCriteriaResult()
        for kind in self.kinds:
            try:
                found = kind(project, stage, sub_stage_progress, client)
            except Exception:
                _logger.error(f"Validator {kind} failed on {project}", exc_info=True)
                found = ExitCriteriaResult.failure(GENERIC_ERROR)
            result = result.merge(found)
        return result

    def __str__(self) -> str:
        return f"{self.__class__.__name__}({', '.join(map(str, self.kinds))})"
