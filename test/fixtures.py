from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from stagegate.backend.models import (
    Approval,
    ApprovalChain,
    ApprovalStatus,
    Document,
    DocumentCategory,
    DocumentRequirement,
    DocumentStatus,
    Project,
    ProjectStatus,
    ProjectSubStageProgress,
    SubStageStatus,
    WorkflowEvent,
    WorkflowEventType,
    WorkflowStage,
    WorkflowSubStage,
)

ORGANIZATION_ID = "org-id"


def project(
    id: str = "project-id",
    title: str = "Project title",
    status: ProjectStatus = ProjectStatus.ACTIVE,
    current_stage_id: Optional[str] = "stage-id",
    customer_organization_id: Optional[str] = "customer-id",
    organization_id: str = ORGANIZATION_ID,
    created_at: Optional[datetime] = None,
) -> Project:
    return Project(
        id=id,
        organization_id=organization_id,
        title=title,
        status=status,
        current_stage_id=current_stage_id,
        customer_organization_id=customer_organization_id,
        created_at=created_at,
    )


def stage(
    id: str = "stage-id",
    name: str = "Stage name",
    stage_order: int = 1,
    slug: Optional[str] = None,
    is_active: bool = True,
) -> WorkflowStage:
    return WorkflowStage(
        id=id,
        organization_id=ORGANIZATION_ID,
        name=name,
        slug=slug or name.lower().replace(" ", "_"),
        stage_order=stage_order,
        is_active=is_active,
    )


def sub_stage(
    id: str = "sub-stage-id",
    name: str = "Sub-stage name",
    workflow_stage_id: str = "stage-id",
    sub_stage_order: int = 1,
    is_required: bool = True,
    can_skip: bool = False,
) -> WorkflowSubStage:
    return WorkflowSubStage(
        id=id,
        workflow_stage_id=workflow_stage_id,
        name=name,
        slug=name.lower().replace(" ", "_"),
        sub_stage_order=sub_stage_order,
        is_required=is_required,
        can_skip=can_skip,
    )


def progress(
    id: str = "progress-id",
    sub_stage_id: str = "sub-stage-id",
    status: SubStageStatus = SubStageStatus.PENDING,
    project_id: str = "project-id",
    workflow_stage_id: str = "stage-id",
    started_at: Optional[datetime] = None,
    completed_at: Optional[datetime] = None,
) -> ProjectSubStageProgress:
    return ProjectSubStageProgress(
        id=id,
        project_id=project_id,
        workflow_stage_id=workflow_stage_id,
        sub_stage_id=sub_stage_id,
        status=status,
        started_at=started_at,
        completed_at=completed_at,
    )


def category(
    id: str = "category-id", name: Optional[str] = "Category name"
) -> DocumentCategory:
    return DocumentCategory(id=id, name=name, code=None)


def requirement(
    id: str = "requirement-id",
    stage_id: str = "stage-id",
    category: Optional[DocumentCategory] = category(),
) -> DocumentRequirement:
    return DocumentRequirement(
        id=id,
        stage_id=stage_id,
        document_category_id=category.id if category else "category-id",
        category=category,
    )


def document(
    id: str = "document-id",
    status: DocumentStatus = DocumentStatus.APPROVED,
    project_id: str = "project-id",
    document_category_id: str = "category-id",
) -> Document:
    return Document(
        id=id,
        project_id=project_id,
        document_category_id=document_category_id,
        status=status,
        title="Document title",
    )


def approval_chain(
    id: str = "chain-id", name: Optional[str] = "Chain name"
) -> ApprovalChain:
    return ApprovalChain(id=id, name=name, description=None)


def approval(
    id: str = "approval-id",
    status: ApprovalStatus = ApprovalStatus.PENDING,
    project_id: Optional[str] = "project-id",
    approval_chain: Optional[ApprovalChain] = approval_chain(),
    entity_type: str = "document",
) -> Approval:
    return Approval(
        id=id,
        status=status,
        entity_type=entity_type,
        entity_id="entity-id",
        project_id=project_id,
        due_date=None,
        current_approver_id=None,
        decision_reason=None,
        decision_comments=None,
        delegated_to=None,
        approval_chain=approval_chain,
    )


def event(
    event_type: WorkflowEventType = WorkflowEventType.STAGE_CHANGED,
    project_id: str = "project-id",
    user_id: Optional[str] = "user-id",
    data: Optional[Mapping[str, Any]] = None,
    timestamp: datetime = datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc),
) -> WorkflowEvent:
    return WorkflowEvent(
        event_type=event_type,
        project_id=project_id,
        user_id=user_id,
        data=data if data is not None else {"to_stage": "stage-id"},
        timestamp=timestamp,
    )
