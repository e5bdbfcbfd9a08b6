from stagegate.__version__ import __version__
from stagegate.backend.client import BackendError, Client
from stagegate.service import (
    AdvanceResult,
    ProjectWorkflowService,
    ProjectWorkflowState,
)
from stagegate.session import Notification, SessionStatus, WorkflowSession
from stagegate.stages import WorkflowValidator
from stagegate.validators import (
    CompositeExitCriteriaValidator,
    ExitCriteriaResult,
    ValidatorKind,
)

__all__ = [
    "__version__",
    "AdvanceResult",
    "BackendError",
    "Client",
    "CompositeExitCriteriaValidator",
    "ExitCriteriaResult",
    "Notification",
    "ProjectWorkflowService",
    "ProjectWorkflowState",
    "SessionStatus",
    "ValidatorKind",
    "WorkflowSession",
    "WorkflowValidator",
]
