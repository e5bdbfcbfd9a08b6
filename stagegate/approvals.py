"""
Decisions on approvals, one at a time or in bulk. A bulk decision sends one request per
approval in parallel and reports how many went through. It is not atomic: some
approvals can be decided while others fail, and that is reported as a partial result
rather than an error.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional

import attr

from stagegate._executor import LoggingThreadPoolExecutor
from stagegate.backend.client import Client
from stagegate.backend.models import ApprovalStatus

_logger = logging.getLogger(__name__)

_DECISIONS = (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED)


@attr.s(auto_attribs=True, frozen=True)
class BulkDecisionResult:
    """The outcome of deciding several approvals at once.

    :ivar int requested: How many approvals a decision was requested for.
    :ivar List[str] succeeded: The approvals that were decided.
    :ivar List[str] failed: The approvals that weren't, because the request failed or
        because they were no longer pending.
    """

    requested: int
    succeeded: List[str] = attr.ib(factory=list)
    failed: List[str] = attr.ib(factory=list)

    @property
    def all_succeeded(self) -> bool:
        return not self.failed

    @property
    def is_partial(self) -> bool:
        return bool(self.succeeded) and bool(self.failed)


def decide(
    client: Client,
    approval_id: str,
    decision: ApprovalStatus,
    reason: Optional[str] = None,
    comments: Optional[str] = None,
) -> bool:
    """Approve or reject a single pending approval.

    Approvals that have already been decided or cancelled are left as they are.

    :param client: The client to write the decision with.
    :param approval_id: The approval to decide.
    :param decision: Either ``APPROVED`` or ``REJECTED``.
    :param reason: Why the decision was made.
    :param comments: Comments to leave with the decision.
    :return: Whether the approval was decided.
    """
    if decision not in _DECISIONS:
        raise ValueError(f"{decision} is not a decision")
    decided = client.decide_approval(
        approval_id,
        decision,
        decided_at=datetime.now(timezone.utc),
        reason=reason,
        comments=comments,
    )
    if not decided:
        _logger.warning(f"Approval({approval_id}) is no longer pending")
    return decided


def _bulk_decide(
    client: Client,
    approval_ids: Iterable[str],
    decision: ApprovalStatus,
    reason: Optional[str],
    comments: Optional[str],
) -> BulkDecisionResult:
    ids = list(approval_ids)
    _logger.info(f"Setting {len(ids)} approval(s) to {decision.value}")
    succeeded: List[str] = []
    failed: List[str] = []
    with LoggingThreadPoolExecutor(_logger) as executor:
        settled = executor.settle(
            lambda id: decide(client, id, decision, reason, comments), ids
        )
    for id, future in settled:
        if future.exception() is None and future.result():
            succeeded.append(id)
        else:
            failed.append(id)
    result = BulkDecisionResult(requested=len(ids), succeeded=succeeded, failed=failed)
    if result.is_partial:
        _logger.warning(
            f"Only {len(succeeded)} of {len(ids)} approval(s) set to {decision.value}"
        )
    return result


def bulk_approve(
    client: Client, approval_ids: Iterable[str], comments: Optional[str] = None
) -> BulkDecisionResult:
    """Approve several approvals at once.

    :param client: The client to write the decisions with.
    :param approval_ids: The approvals to approve.
    :param comments: Comments to leave with every decision.
    """
    return _bulk_decide(client, approval_ids, ApprovalStatus.APPROVED, None, comments)


def bulk_reject(
    client: Client,
    approval_ids: Iterable[str],
    reason: str,
    comments: Optional[str] = None,
) -> BulkDecisionResult:
    """Reject several approvals at once.

    :param client: The client to write the decisions with.
    :param approval_ids: The approvals to reject.
    :param reason: Why the approvals are rejected.
    :param comments: Comments to leave with every decision.
    """
    return _bulk_decide(client, approval_ids, ApprovalStatus.REJECTED, reason, comments)
