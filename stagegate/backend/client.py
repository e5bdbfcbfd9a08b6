from __future__ import annotations

import logging
from datetime import datetime
from multiprocessing import cpu_count
from typing import Any, List, Mapping, Optional, Type, TypeVar

import cattr  # type: ignore
from requests import RequestException, Session
from requests.adapters import HTTPAdapter

from stagegate.__version__ import __version__
from stagegate._itertools import first_or_none
from stagegate.backend.models import (
    Approval,
    ApprovalStatus,
    Document,
    DocumentRequirement,
    Project,
    ProjectStatus,
    ProjectSubStageProgress,
    SubStageStatus,
    Table,
    WorkflowEvent,
    WorkflowEventType,
    WorkflowStage,
    WorkflowSubStage,
    _Model,
)

_M = TypeVar("_M", bound=_Model)

_logger = logging.getLogger(__name__)


# Here, we increase the maximum number of connections we save in the pool.
# Bulk decisions fan out one request per approval, and using the default value of 10
# results in us discarding connections as soon as more than 10 run in parallel.
# The new value matches the default number of threads in a ThreadPoolExecutor.
_CONNECTION_POOL_SIZE = (cpu_count() or 1) * 5

_REST_PATH = "/rest/v1"


class BackendError(Exception):
    """Raised when the backend cannot be reached or rejects a request."""


def _eq(value: Any) -> str:
    if isinstance(value, bool):
        return f"eq.{str(value).lower()}"
    return f"eq.{value}"


class Client:
    """A client to access the hosted relational backend over its REST interface.

    Tables are addressed as ``/rest/v1/<table>`` and filtered with ``column=eq.value``
    query parameters. Row-level security on the backend scopes every request to the
    organization of the credentials used.

    :param url: The base URL of the backend, e.g. ``https://example.supabase.co``.
    :param api_key: The project API key for the backend.
    :param access_token: A user access token. If omitted, requests are authorized
        with the API key itself.
    :param timeout: Seconds to wait for the backend before giving up. By default
        requests wait indefinitely.
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        *,
        access_token: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self._base_url = url.rstrip("/") + _REST_PATH
        self._timeout = timeout
        self._session = Session()
        self._session.headers.update(
            {
                "apikey": api_key,
                "Authorization": f"Bearer {access_token or api_key}",
                "Accept": "application/json",
                "User-Agent": f"stagegate/{__version__}",
            }
        )
        self._session.mount(
            "https://", HTTPAdapter(pool_maxsize=_CONNECTION_POOL_SIZE)
        )

    def _request(
        self,
        method: str,
        table: Table,
        *,
        params: Optional[Mapping[str, str]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
    ) -> List[dict]:
        headers = {"Prefer": prefer} if prefer else None
        try:
            response = self._session.request(
                method,
                f"{self._base_url}/{table.value}",
                params=params,
                json=json,
                headers=headers,
                timeout=self._timeout,
            )
            response.raise_for_status()
        except RequestException as e:
            raise BackendError(f"{method} {table.value} failed: {e}") from e
        if not response.content:
            return []
        return response.json()

    def _select(self, cls: Type[_M], params: Mapping[str, str]) -> List[_M]:
        params = {"select": cls.select(), **params}
        rows = self._request("GET", cls.table, params=params)
        return [cls.from_dict(row) for row in rows]

    def _select_one(self, cls: Type[_M], id: str) -> Optional[_M]:
        return first_or_none(self._select(cls, {"id": _eq(id)}))

    def _update(
        self, cls: Type[_M], params: Mapping[str, str], values: Mapping[str, Any]
    ) -> List[_M]:
        rows = self._request(
            "PATCH",
            cls.table,
            params={"select": cls.select(), **params},
            json=cattr.unstructure(values),
            prefer="return=representation",
        )
        return [cls.from_dict(row) for row in rows]

    def project_by_id(self, id: str) -> Optional[Project]:
        """Return the project for the given ID, or ``None`` if there isn't one."""
        _logger.debug(f"Fetching Project({id})")
        return self._select_one(Project, id)

    def stage_by_id(self, id: str) -> Optional[WorkflowStage]:
        """Return the stage for the given ID, or ``None`` if there isn't one."""
        _logger.debug(f"Fetching WorkflowStage({id})")
        return self._select_one(WorkflowStage, id)

    def sub_stage_by_id(self, id: str) -> Optional[WorkflowSubStage]:
        """Return the sub-stage for the given ID, or ``None`` if there isn't one."""
        _logger.debug(f"Fetching WorkflowSubStage({id})")
        return self._select_one(WorkflowSubStage, id)

    def approval_by_id(self, id: str) -> Optional[Approval]:
        """Return the approval for the given ID, or ``None`` if there isn't one."""
        _logger.debug(f"Fetching Approval({id})")
        return self._select_one(Approval, id)

    def stages_by_organization(self, organization_id: str) -> List[WorkflowStage]:
        """Given an organization, return its active workflow stages in pipeline order.

        :param organization_id: The organization to fetch stages for.
        """
        _logger.debug(f"Fetching stages for organization {organization_id}")
        return self._select(
            WorkflowStage,
            {
                "organization_id": _eq(organization_id),
                "is_active": _eq(True),
                "order": "stage_order.asc",
            },
        )

    def sub_stages_by_stage(
        self, stage: WorkflowStage, *, only_required: bool = False
    ) -> List[WorkflowSubStage]:
        """Given a stage, return its active sub-stages in order.

        :param stage: The stage to fetch sub-stages for.
        :param only_required: Whether to return only sub-stages that gate leaving the
            stage.
        """
        _logger.debug(f"Fetching sub-stages of {stage}")
        params = {
            "workflow_stage_id": _eq(stage.id),
            "is_active": _eq(True),
            "order": "sub_stage_order.asc",
        }
        if only_required:
            params["is_required"] = _eq(True)
        return self._select(WorkflowSubStage, params)

    def required_sub_stages(self, stage: WorkflowStage) -> List[WorkflowSubStage]:
        """Given a stage, return the sub-stages that must be finished to leave it."""
        return self.sub_stages_by_stage(stage, only_required=True)

    def sub_stage_progress_by_project(
        self, project_id: str
    ) -> List[ProjectSubStageProgress]:
        """Given a project, return its progress through every sub-stage, oldest first.

        :param project_id: The project to fetch progress for.
        """
        _logger.debug(f"Fetching sub-stage progress of Project({project_id})")
        return self._select(
            ProjectSubStageProgress,
            {"project_id": _eq(project_id), "order": "created_at.asc"},
        )

    def document_requirements(self, stage: WorkflowStage) -> List[DocumentRequirement]:
        """Given a stage, return its required documents with their categories.

        :param stage: The stage to fetch document requirements for.
        """
        _logger.debug(f"Fetching document requirements of {stage}")
        return self._select(
            DocumentRequirement,
            {"stage_id": _eq(stage.id), "is_required": _eq(True)},
        )

    def documents_by_category(
        self, project_id: str, category_id: str
    ) -> List[Document]:
        """Return the documents uploaded to a project in a given category.

        :param project_id: The project the documents are attached to.
        :param category_id: The document category to filter to.
        """
        _logger.debug(f"Fetching documents in {category_id} for Project({project_id})")
        return self._select(
            Document,
            {
                "project_id": _eq(project_id),
                "document_category_id": _eq(category_id),
            },
        )

    def pending_approvals(self, project_id: str) -> List[Approval]:
        """Return every pending approval referencing a project, newest first.

        :param project_id: The project to fetch approvals for.
        """
        _logger.debug(f"Fetching pending approvals of Project({project_id})")
        return self._select(
            Approval,
            {
                "project_id": _eq(project_id),
                "status": _eq(ApprovalStatus.PENDING.value),
                "order": "created_at.desc",
            },
        )

    def events_by_project(self, project_id: str) -> List[WorkflowEvent]:
        """Return the workflow events recorded for a project, newest first.

        :param project_id: The project to fetch the history of.
        """
        _logger.debug(f"Fetching workflow history of Project({project_id})")
        rows = self._request(
            "GET",
            Table.ACTIVITY_LOG,
            params={
                "select": WorkflowEvent.select(),
                "project_id": _eq(project_id),
                "entity_type": _eq("project"),
                "action": f"in.({','.join(t.value for t in WorkflowEventType)})",
                "order": "created_at.desc",
            },
        )
        return [WorkflowEvent.from_dict(row) for row in rows]

    # Writes

    def set_current_stage(
        self, project_id: str, stage: WorkflowStage, entered_at: datetime
    ) -> Optional[Project]:
        """Move a project into a stage.

        :param project_id: The project to move.
        :param stage: The stage to move it into.
        :param entered_at: When the project entered the stage.
        :return: The updated project, or ``None`` if the project doesn't exist.
        """
        _logger.debug(f"Moving Project({project_id}) to {stage}")
        updated = self._update(
            Project,
            {"id": _eq(project_id)},
            {"current_stage_id": stage.id, "stage_entered_at": entered_at},
        )
        return first_or_none(updated)

    def set_project_status(
        self, project_id: str, status: ProjectStatus
    ) -> Optional[Project]:
        """Change the lifecycle status of a project.

        :param project_id: The project to change.
        :param status: The new status.
        :return: The updated project, or ``None`` if the project doesn't exist.
        """
        _logger.debug(f"Setting status of Project({project_id}) to {status.value}")
        updated = self._update(Project, {"id": _eq(project_id)}, {"status": status})
        return first_or_none(updated)

    def create_sub_stage_progress(
        self,
        project_id: str,
        sub_stages: List[WorkflowSubStage],
        *,
        status: SubStageStatus = SubStageStatus.PENDING,
        started_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
        assigned_to: Optional[str] = None,
    ) -> List[ProjectSubStageProgress]:
        """Create progress rows for a project in a set of sub-stages.

        :param project_id: The project making progress.
        :param sub_stages: The sub-stages to create progress for.
        :param status: The status to create the rows in.
        :return: The created progress rows.
        """
        _logger.debug(
            f"Creating progress for {len(sub_stages)} sub-stage(s) of "
            f"Project({project_id})"
        )
        if not sub_stages:
            return []
        entries = [
            {
                "project_id": project_id,
                "workflow_stage_id": sub_stage.workflow_stage_id,
                "sub_stage_id": sub_stage.id,
                "status": status,
                "started_at": started_at,
                "completed_at": completed_at,
                "assigned_to": assigned_to,
            }
            for sub_stage in sub_stages
        ]
        rows = self._request(
            "POST",
            Table.PROJECT_SUB_STAGE_PROGRESS,
            params={"select": ProjectSubStageProgress.select()},
            json=cattr.unstructure(entries),
            prefer="return=representation",
        )
        return [ProjectSubStageProgress.from_dict(row) for row in rows]

    def update_sub_stage_progress(
        self,
        progress: ProjectSubStageProgress,
        status: SubStageStatus,
        **timestamps: datetime,
    ) -> Optional[ProjectSubStageProgress]:
        """Change the status of a progress row.

        :param progress: The progress row to change.
        :param status: The new status.
        :param timestamps: ``started_at`` and/or ``completed_at`` values to record.
        :return: The updated row, or ``None`` if it no longer exists.
        """
        _logger.debug(f"Setting {progress} to {status.value}")
        updated = self._update(
            ProjectSubStageProgress,
            {"id": _eq(progress.id)},
            {"status": status, **timestamps},
        )
        return first_or_none(updated)

    def update_sub_stage_progress_by_status(
        self,
        project_id: str,
        from_status: SubStageStatus,
        to_status: SubStageStatus,
        **timestamps: datetime,
    ) -> int:
        """Move every progress row of a project in one status into another.

        :param project_id: The project whose progress should change.
        :param from_status: Only rows in this status are changed.
        :param to_status: The status to move the rows to.
        :return: How many rows changed.
        """
        _logger.debug(
            f"Moving {from_status.value} sub-stages of Project({project_id}) "
            f"to {to_status.value}"
        )
        updated = self._update(
            ProjectSubStageProgress,
            {"project_id": _eq(project_id), "status": _eq(from_status.value)},
            {"status": to_status, **timestamps},
        )
        return len(updated)

    def cancel_pending_approvals(self, project_id: str) -> int:
        """Cancel every pending approval referencing a project.

        :param project_id: The project whose approvals should be cancelled.
        :return: How many approvals were cancelled.
        """
        _logger.debug(f"Cancelling pending approvals of Project({project_id})")
        updated = self._update(
            Approval,
            {
                "project_id": _eq(project_id),
                "status": _eq(ApprovalStatus.PENDING.value),
            },
            {"status": ApprovalStatus.CANCELLED},
        )
        return len(updated)

    def decide_approval(
        self,
        approval_id: str,
        decision: ApprovalStatus,
        *,
        decided_at: datetime,
        reason: Optional[str] = None,
        comments: Optional[str] = None,
    ) -> bool:
        """Record a decision on an approval that is still pending.

        Approvals that have already been decided are left untouched.

        :param approval_id: The approval to decide.
        :param decision: Either approved or rejected.
        :param decided_at: When the decision was made.
        :param reason: Why the decision was made.
        :param comments: Comments left with the decision.
        :return: Whether the approval was pending and is now decided.
        """
        _logger.debug(f"Setting Approval({approval_id}) to {decision.value}")
        updated = self._update(
            Approval,
            {"id": _eq(approval_id), "status": _eq(ApprovalStatus.PENDING.value)},
            {
                "status": decision,
                "decision_reason": reason,
                "decision_comments": comments,
                "decided_at": decided_at,
            },
        )
        return bool(updated)

    def insert_event(self, event: WorkflowEvent) -> None:
        """Append a workflow event to the activity log.

        :param event: The event to record.
        """
        _logger.debug(
            f"Recording {event.event_type.value} on Project({event.project_id})"
        )
        row = {
            "project_id": event.project_id,
            "user_id": event.user_id,
            "entity_type": "project",
            "entity_id": event.project_id,
            "action": event.event_type,
            "description": event.describe(),
            "old_values": {},
            "new_values": event.data,
            "metadata": event.data,
            "created_at": event.timestamp,
        }
        self._request(
            "POST",
            Table.ACTIVITY_LOG,
            json=cattr.unstructure(row),
            prefer="return=minimal",
        )
