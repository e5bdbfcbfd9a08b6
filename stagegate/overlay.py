"""
A status change is shown to the user before the backend has confirmed it. The state the
user sees is the project as last confirmed by the backend with at most one pending
change laid over it. Once the write finishes, the pending change is either replaced by
the backend's answer or thrown away.

Every function here is pure and returns a new ``OverlayState``.
"""

from __future__ import annotations

from typing import Optional

import attr

from stagegate.backend.models import Project, ProjectStatus


@attr.s(auto_attribs=True, frozen=True)
class OverlayState:
    """A confirmed project and an optional unconfirmed status change.

    :ivar Project confirmed: The project as last read from or written to the backend.
    :ivar Optional[ProjectStatus] pending: A status the user asked for that the backend
        hasn't confirmed yet.
    """

    confirmed: Project
    pending: Optional[ProjectStatus] = None

    @property
    def is_pending(self) -> bool:
        return self.pending is not None


def apply_pending(state: OverlayState, status: ProjectStatus) -> OverlayState:
    """Lay a requested status change over the confirmed project.

    A newer request replaces any change that is still pending.
    """
    return attr.evolve(state, pending=status)


def confirm(state: OverlayState, project: Optional[Project] = None) -> OverlayState:
    """Adopt the backend's answer and drop the pending change.

    :param state: The current overlay.
    :param project: The project returned by the backend. If omitted, the pending
        change is folded into the confirmed project as-is.
    """
    if project is None:
        project = effective_project(state)
    return OverlayState(confirmed=project)


def revert(state: OverlayState) -> OverlayState:
    """Throw away the pending change, e.g. because the write failed."""
    return OverlayState(confirmed=state.confirmed)


def effective_project(state: OverlayState) -> Project:
    """The project as it should be shown: the confirmed one with any pending change.

    >>> from stagegate.backend.models import Project, ProjectStatus
    >>> project = Project("p1", "org", "Acme Bracket RFQ", ProjectStatus.ACTIVE)
    >>> state = apply_pending(OverlayState(project), ProjectStatus.ON_HOLD)
    >>> effective_project(state).status
    <ProjectStatus.ON_HOLD: 'on_hold'>
    >>> effective_project(revert(state)).status
    <ProjectStatus.ACTIVE: 'active'>
    """
    if state.pending is None:
        return state.confirmed
    return attr.evolve(state.confirmed, status=state.pending)
