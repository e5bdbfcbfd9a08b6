"""
These models provide a Python translation of the relational backend's data model for
easier, type-safe use in code. Only the tables and columns the workflow engine reads
are modelled. Instances of models are frozen and cannot be modified after
creation/deserialization, to make it clear that mutations must be done through the
backend client and not on the model.

Caution: Defining new fields on these models will cause the client to select them from
the backend on every read, even if the field isn't ever used in code.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, ClassVar, FrozenSet, List, Mapping, Optional, Type, TypeVar

import attr
import cattr  # type: ignore

from stagegate._types import innermost_type

_S = TypeVar("_S", bound="_Serializable")


def _structure_date(obj: str, cls: Type[date]) -> date:
    return cls.fromisoformat(obj[:10])


def _unstructure_date(obj: date) -> str:
    return obj.isoformat()


def _structure_datetime(obj: str, cls: Type[datetime]) -> datetime:
    return cls.fromisoformat(obj.replace("Z", "+00:00"))


def _unstructure_datetime(obj: datetime) -> str:
    # If no timezone is present, assume UTC
    if not obj.tzinfo:
        obj = obj.replace(tzinfo=timezone.utc)
    return obj.isoformat(timespec="milliseconds")


cattr.register_structure_hook(date, _structure_date)
cattr.register_unstructure_hook(date, _unstructure_date)
cattr.register_structure_hook(datetime, _structure_datetime)
cattr.register_unstructure_hook(datetime, _unstructure_datetime)


def _embedded(relation: str) -> Mapping[str, str]:
    """Metadata marking an attribute as a related row embedded by the backend."""
    return {"relation": relation}


def _column(name: str) -> Mapping[str, str]:
    """Metadata marking an attribute that is stored under a different column name."""
    return {"column": name}


@attr.s
class _HasFields:
    """A class that has columns in the backend."""

    @classmethod
    def fields(cls) -> List[str]:
        """Build a list of column selections needed to create the Python model.

        Embedded relations are selected as ``attribute:relation(columns)`` and renamed
        columns as ``attribute:column``, so the rows returned by the backend can be
        structured into the model directly.

        :return: A list of column selections for the ``select`` query parameter.
        """
        selections = []
        for field in attr.fields(cls):
            typ = innermost_type(field.type)
            relation = field.metadata.get("relation")
            column = field.metadata.get("column")
            if relation and isinstance(typ, type) and issubclass(typ, _HasFields):
                columns = ",".join(typ.fields())
                selections.append(f"{field.name}:{relation}({columns})")
            elif column:
                selections.append(f"{field.name}:{column}")
            else:
                selections.append(field.name)
        return selections

    @classmethod
    def select(cls) -> str:
        """Return the ``select`` query parameter for this model."""
        return ",".join(cls.fields())


class _Serializable:
    """An interface for converting a class to/from a dictionary of primitives."""

    @classmethod
    def from_dict(cls: Type[_S], d: dict) -> _S:
        """Deserialize a dictionary into this class.

        :param d: The dictionary of instance values.
        :return: The deserialized class.
        """
        return cattr.structure(d, cls)  # type: ignore

    def to_dict(self) -> dict:
        """Convert this instance into a dictionary.

        :return: The dictionary of instance values.
        """
        return cattr.unstructure(self)  # type: ignore


class Table(Enum):
    """The backend tables the workflow engine reads and writes."""

    ACTIVITY_LOG = "activity_log"
    APPROVALS = "approvals"
    DOCUMENTS = "documents"
    DOCUMENT_REQUIREMENTS = "document_requirements"
    PROJECTS = "projects"
    PROJECT_SUB_STAGE_PROGRESS = "project_sub_stage_progress"
    WORKFLOW_STAGES = "workflow_stages"
    WORKFLOW_SUB_STAGES = "workflow_sub_stages"


@attr.s(frozen=True)
class _Model(_HasFields, _Serializable):
    """Base class for all rows with a primary key.

    :ivar str id: The unique ID of the row.
    :ivar Table table: The table the row lives in.
    """

    id = attr.ib(type=str)
    table: ClassVar[Table]

    def __str__(self) -> str:
        return f"{self.__class__.__name__}({self.id})"


class ProjectStatus(Enum):
    """The lifecycle status of a project, independent of its pipeline stage."""

    ACTIVE = "active"
    ON_HOLD = "on_hold"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class ProjectPriority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


@attr.s(frozen=True)
class Project(_Model):
    """A unit of work, such as a customer RFQ, moving through the pipeline.

    :ivar str id: The unique ID of the project.
    :ivar str organization_id: The organization that owns the project.
    :ivar str title: The project title.
    :ivar ProjectStatus status: The lifecycle status of the project.
    :ivar Optional[str] current_stage_id: The stage the project currently occupies.
    :ivar Optional[str] customer_organization_id: The customer the work is for.
    :ivar Optional[ProjectPriority] priority_level: How urgent the project is.
    :ivar Optional[float] estimated_value: The estimated value of the order.
    :ivar Optional[str] description: The project description.
    :ivar Optional[str] notes: Free-text notes.
    :ivar Optional[str] created_by: The user that created the project.
    :ivar Optional[datetime] stage_entered_at: When the project entered its stage.
    :ivar Optional[datetime] created_at: When the project was created, in UTC.
    :ivar Optional[datetime] updated_at: When the project was last changed, in UTC.
    """

    organization_id = attr.ib(type=str)
    title = attr.ib(type=str)
    status = attr.ib(type=ProjectStatus)
    current_stage_id = attr.ib(type=Optional[str], default=None)
    customer_organization_id = attr.ib(type=Optional[str], default=None)
    priority_level = attr.ib(type=Optional[ProjectPriority], default=None)
    estimated_value = attr.ib(type=Optional[float], default=None)
    description = attr.ib(type=Optional[str], default=None)
    notes = attr.ib(type=Optional[str], default=None)
    created_by = attr.ib(type=Optional[str], default=None)
    stage_entered_at = attr.ib(type=Optional[datetime], default=None)
    created_at = attr.ib(type=Optional[datetime], default=None)
    updated_at = attr.ib(type=Optional[datetime], default=None)
    table: ClassVar[Table] = Table.PROJECTS


@attr.s(frozen=True)
class WorkflowStage(_Model):
    """An ordered pipeline step belonging to an organization.

    :ivar str name: The display name of the stage.
    :ivar str slug: The stable identifier of the stage, e.g. ``technical_review``.
    :ivar int stage_order: The position of the stage in the pipeline. Orders are
        unique and strictly increasing within an organization.
    :ivar bool is_active: Whether the stage is currently in use.
    :ivar List[str] responsible_roles: The user roles that own this stage.
    :ivar Optional[str] exit_criteria: A free-text description of the exit criteria.
    """

    organization_id = attr.ib(type=str)
    name = attr.ib(type=str)
    slug = attr.ib(type=str)
    stage_order = attr.ib(type=int)
    is_active = attr.ib(type=bool, default=True)
    description = attr.ib(type=Optional[str], default=None)
    color = attr.ib(type=Optional[str], default=None)
    responsible_roles = attr.ib(type=List[str], factory=list)
    exit_criteria = attr.ib(type=Optional[str], default=None)
    estimated_duration_days = attr.ib(type=Optional[int], default=None)
    table: ClassVar[Table] = Table.WORKFLOW_STAGES


@attr.s(frozen=True)
class WorkflowSubStage(_Model):
    """A task template within a stage that projects progress through.

    :ivar str workflow_stage_id: The parent stage.
    :ivar str name: The display name of the sub-stage.
    :ivar int sub_stage_order: The position of the sub-stage within its stage.
    :ivar bool is_required: Whether the sub-stage gates leaving the stage.
    :ivar bool requires_approval: Whether finishing the sub-stage needs an approval.
    :ivar bool can_skip: Whether the sub-stage may be skipped.
    :ivar bool auto_advance: Whether the sub-stage advances on its own.
    """

    workflow_stage_id = attr.ib(type=str)
    name = attr.ib(type=str)
    slug = attr.ib(type=str)
    sub_stage_order = attr.ib(type=int)
    is_required = attr.ib(type=bool, default=True)
    requires_approval = attr.ib(type=bool, default=False)
    can_skip = attr.ib(type=bool, default=False)
    auto_advance = attr.ib(type=bool, default=False)
    is_active = attr.ib(type=bool, default=True)
    table: ClassVar[Table] = Table.WORKFLOW_SUB_STAGES


class SubStageStatus(Enum):
    """The state of a project's progress through a sub-stage.

    Progress moves from pending to in progress to completed. Blocked can be reached
    from pending or in progress, and must be resolved back into in progress. Skipped is
    only available for sub-stages that allow it. Completed and skipped are terminal.
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (SubStageStatus.COMPLETED, SubStageStatus.SKIPPED)

    def can_transition_to(
        self, status: SubStageStatus, *, can_skip: bool = False
    ) -> bool:
        """Check whether progress may move from this status to another.

        >>> SubStageStatus.PENDING.can_transition_to(SubStageStatus.IN_PROGRESS)
        True
        >>> SubStageStatus.BLOCKED.can_transition_to(SubStageStatus.COMPLETED)
        False
        >>> SubStageStatus.PENDING.can_transition_to(SubStageStatus.SKIPPED)
        False
        >>> SubStageStatus.IN_PROGRESS.can_transition_to(
        ...     SubStageStatus.SKIPPED, can_skip=True
        ... )
        True

        :param status: The status to move to.
        :param can_skip: Whether the sub-stage allows skipping.
        :return: Whether the transition is allowed. Staying in the same status is
            always allowed.
        """
        if status is self:
            return True
        if status is SubStageStatus.SKIPPED:
            return can_skip and self in _SKIPPABLE
        return status in _SUB_STAGE_TRANSITIONS[self]


_SKIPPABLE = frozenset({SubStageStatus.PENDING, SubStageStatus.IN_PROGRESS})

_SUB_STAGE_TRANSITIONS: Mapping[SubStageStatus, FrozenSet[SubStageStatus]] = {
    SubStageStatus.PENDING: frozenset(
        {SubStageStatus.IN_PROGRESS, SubStageStatus.BLOCKED}
    ),
    SubStageStatus.IN_PROGRESS: frozenset(
        {SubStageStatus.COMPLETED, SubStageStatus.BLOCKED}
    ),
    SubStageStatus.BLOCKED: frozenset({SubStageStatus.IN_PROGRESS}),
    SubStageStatus.COMPLETED: frozenset(),
    SubStageStatus.SKIPPED: frozenset(),
}


@attr.s(frozen=True)
class ProjectSubStageProgress(_Model):
    """A project's progress through one sub-stage.

    There is exactly one progress row per project and sub-stage.

    :ivar str project_id: The project making progress.
    :ivar str workflow_stage_id: The stage the sub-stage belongs to.
    :ivar str sub_stage_id: The sub-stage being progressed.
    :ivar SubStageStatus status: How far the project has got.
    :ivar Optional[str] assigned_to: The user working on the sub-stage.
    :ivar Optional[datetime] started_at: When work started, in UTC.
    :ivar Optional[datetime] completed_at: When work finished, in UTC.
    :ivar Optional[str] notes: Free-text notes.
    """

    project_id = attr.ib(type=str)
    workflow_stage_id = attr.ib(type=str)
    sub_stage_id = attr.ib(type=str)
    status = attr.ib(type=SubStageStatus, default=SubStageStatus.PENDING)
    assigned_to = attr.ib(type=Optional[str], default=None)
    started_at = attr.ib(type=Optional[datetime], default=None)
    completed_at = attr.ib(type=Optional[datetime], default=None)
    notes = attr.ib(type=Optional[str], default=None)
    table: ClassVar[Table] = Table.PROJECT_SUB_STAGE_PROGRESS


@attr.s(frozen=True)
class DocumentCategory(_HasFields, _Serializable):
    """A category of document, such as a drawing package or a quality plan."""

    id = attr.ib(type=str)
    name = attr.ib(type=Optional[str], default=None)
    code = attr.ib(type=Optional[str], default=None)


@attr.s(frozen=True)
class DocumentRequirement(_Model):
    """A document category that must be on file before leaving a stage.

    :ivar str stage_id: The stage the requirement applies to.
    :ivar str document_category_id: The category of document required.
    :ivar bool is_required: Whether the requirement gates leaving the stage.
    :ivar Optional[DocumentCategory] category: The category, if the backend was able
        to resolve it.
    """

    stage_id = attr.ib(type=str)
    document_category_id = attr.ib(type=str)
    is_required = attr.ib(type=bool, default=True)
    category = attr.ib(
        type=Optional[DocumentCategory],
        default=None,
        metadata=_embedded("document_categories"),
    )
    table: ClassVar[Table] = Table.DOCUMENT_REQUIREMENTS


class DocumentStatus(Enum):
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@attr.s(frozen=True)
class Document(_Model):
    """An uploaded document attached to a project."""

    project_id = attr.ib(type=str)
    document_category_id = attr.ib(type=Optional[str])
    status = attr.ib(type=DocumentStatus)
    title = attr.ib(type=Optional[str], default=None)
    table: ClassVar[Table] = Table.DOCUMENTS


class ApprovalStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


@attr.s(frozen=True)
class ApprovalChain(_HasFields, _Serializable):
    """The named chain of approvers an approval request belongs to."""

    id = attr.ib(type=str)
    name = attr.ib(type=Optional[str], default=None)
    description = attr.ib(type=Optional[str], default=None)


@attr.s(frozen=True)
class Approval(_Model):
    """A decision request tied to an entity such as a project, document or RFQ.

    An approval is terminal once it has been decided; only pending approvals can be
    approved or rejected.

    :ivar ApprovalStatus status: Where the approval is in its lifecycle.
    :ivar str entity_type: The kind of entity being approved.
    :ivar str entity_id: The entity being approved.
    :ivar Optional[str] project_id: The project the entity belongs to, if any.
    :ivar Optional[date] due_date: When the decision is due.
    :ivar Optional[str] current_approver_id: Who must make the decision.
    :ivar Optional[str] decision_reason: Why the decision was made.
    :ivar Optional[str] decision_comments: Comments left with the decision.
    :ivar Optional[str] delegated_to: Who the decision was delegated to, if anyone.
    :ivar Optional[ApprovalChain] approval_chain: The approval chain, if resolved.
    """

    status = attr.ib(type=ApprovalStatus)
    entity_type = attr.ib(type=str)
    entity_id = attr.ib(type=str)
    project_id = attr.ib(type=Optional[str], default=None)
    due_date = attr.ib(type=Optional[date], default=None)
    current_approver_id = attr.ib(type=Optional[str], default=None)
    decision_reason = attr.ib(type=Optional[str], default=None)
    decision_comments = attr.ib(type=Optional[str], default=None)
    delegated_to = attr.ib(type=Optional[str], default=None)
    approval_chain = attr.ib(
        type=Optional[ApprovalChain],
        default=None,
        metadata=_embedded("approval_chains"),
    )
    table: ClassVar[Table] = Table.APPROVALS

    @property
    def is_terminal(self) -> bool:
        return self.status is not ApprovalStatus.PENDING


class WorkflowEventType(Enum):
    """The different kinds of workflow changes recorded in the audit trail."""

    STAGE_CHANGED = "stage_changed"
    STATUS_CHANGED = "status_changed"
    SUB_STAGE_UPDATED = "sub_stage_updated"
    DOCUMENT_UPLOADED = "document_uploaded"
    REVIEW_COMPLETED = "review_completed"
    COMMUNICATION_SENT = "communication_sent"


@attr.s(frozen=True)
class WorkflowEvent(_HasFields, _Serializable):
    """An entry in a project's workflow audit trail.

    Events are stored in the activity log, so some attributes are read from columns
    with different names.

    :ivar WorkflowEventType event_type: What kind of change happened.
    :ivar str project_id: The project that changed.
    :ivar Optional[str] user_id: The user that made the change, if known.
    :ivar Mapping[str,Any] data: Details of the change, e.g. the stages moved between.
    :ivar datetime timestamp: When the change happened, in UTC.
    """

    event_type = attr.ib(type=WorkflowEventType, metadata=_column("action"))
    project_id = attr.ib(type=str)
    user_id = attr.ib(type=Optional[str])
    data = attr.ib(type=Mapping[str, Any], metadata=_column("new_values"))
    timestamp = attr.ib(type=datetime, metadata=_column("created_at"))

    def describe(self) -> str:
        """A one-line description of the event for the activity log."""
        details = ", ".join(f"{k}={v}" for k, v in sorted(self.data.items()))
        return f"{self.event_type.value.replace('_', ' ')}: {details}"
